"""
Debounced presence state machine.

A noisy per-frame verdict only flips the reported state after enough
consecutive agreeing frames *and* once a minimum hold time has passed since
the previous flip::

    UNCONFIRMED --(frames_to_confirm qualifying)--> CONFIRMED
    CONFIRMED   --(held for frames_to_confirm)-----> STABLE
    CONFIRMED/STABLE --(a disqualifying frame)-----> LOSING
    LOSING      --(a qualifying frame)-------------> CONFIRMED / STABLE
    LOSING      --(frames_to_lose, hold elapsed)---> UNCONFIRMED

Time is injected by the caller (milliseconds from any monotonic clock) so
the machine is deterministic under test.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


class DetectionPhase(Enum):
    UNCONFIRMED = auto()
    CONFIRMED   = auto()
    STABLE      = auto()
    LOSING      = auto()


@dataclass
class DetectionState:
    """
    Hysteresis counters for one binary decision.

    Parameters
    ----------
    frames_to_confirm:
        Consecutive qualifying frames needed to switch on.
    frames_to_lose:
        Consecutive disqualifying frames needed to switch off.
    hold_ms:
        Minimum time since the last toggle before switching off.
    hold_on_confirm:
        Also require *hold_ms* before switching back on.  Has no effect
        before the first toggle.
    """

    frames_to_confirm: int
    frames_to_lose: int
    hold_ms: float
    hold_on_confirm: bool = False

    is_detected: bool = False
    consecutive_true_frames: int = 0
    consecutive_false_frames: int = 0
    frames_since_toggle: int = 0
    last_toggle_time: Optional[float] = None

    def update(self, qualifying: bool, now_ms: float) -> bool:
        """Feed one frame's verdict; return the debounced state."""
        self.frames_since_toggle += 1
        if qualifying:
            self.consecutive_true_frames += 1
            self.consecutive_false_frames = 0
            if (
                not self.is_detected
                and self.consecutive_true_frames >= self.frames_to_confirm
                and (not self.hold_on_confirm or self._hold_elapsed(now_ms))
            ):
                self._toggle(True, now_ms)
        else:
            self.consecutive_false_frames += 1
            self.consecutive_true_frames = 0
            if (
                self.is_detected
                and self.consecutive_false_frames >= self.frames_to_lose
                and self._hold_elapsed(now_ms)
            ):
                self._toggle(False, now_ms)
        return self.is_detected

    def reset(self) -> None:
        self.is_detected = False
        self.consecutive_true_frames = 0
        self.consecutive_false_frames = 0
        self.frames_since_toggle = 0
        self.last_toggle_time = None

    @property
    def phase(self) -> DetectionPhase:
        if not self.is_detected:
            return DetectionPhase.UNCONFIRMED
        if self.consecutive_false_frames > 0:
            return DetectionPhase.LOSING
        if self.frames_since_toggle >= self.frames_to_confirm:
            return DetectionPhase.STABLE
        return DetectionPhase.CONFIRMED

    def _hold_elapsed(self, now_ms: float) -> bool:
        if self.last_toggle_time is None:
            return True
        return now_ms - self.last_toggle_time >= self.hold_ms

    def _toggle(self, detected: bool, now_ms: float) -> None:
        self.is_detected = detected
        self.last_toggle_time = now_ms
        self.frames_since_toggle = 0
