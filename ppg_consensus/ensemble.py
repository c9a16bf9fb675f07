"""
Multi-channel ensemble coordinator.

Fans each sample out to N :class:`~ppg_consensus.channel.ChannelAnalyzer`
instances whose initial gains are spread around 1.0, then:

* combines their verdicts with the frame-level coverage / motion metrics
  into one debounced ``finger_detected`` flag (consensus + hysteresis);
  a well-placed finger counts on its own only while the channels are
  still acquiring (one window plus a short grace);
* nudges each channel's gain with a small bounded controller so the
  channels stay spread over a useful range;
* merges the per-channel BPM estimates into one robust value (IQR outlier
  rejection followed by a quality-weighted mean).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ppg_consensus.channel import ChannelAnalyzer, ChannelResult
from ppg_consensus.config import ChannelConfig, EnsembleConfig
from ppg_consensus.hysteresis import DetectionPhase, DetectionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class MultiChannelResult:
    timestamp: float                        # ms of the newest sample
    channels: Tuple[ChannelResult, ...]
    aggregated_bpm: Optional[float]
    aggregated_quality: int                 # 0 – 100
    finger_detected: bool
    phase: DetectionPhase = DetectionPhase.UNCONFIRMED


def iqr_mask(values: Sequence[float]) -> np.ndarray:
    """Boolean mask of values inside ``[Q1 - 1.5·IQR, Q3 + 1.5·IQR]``."""
    v = np.asarray(values, dtype=np.float64)
    if v.size < 3:
        return np.ones(v.size, dtype=bool)
    q1, q3 = np.percentile(v, [25, 75])
    iqr = q3 - q1
    return (v >= q1 - 1.5 * iqr) & (v <= q3 + 1.5 * iqr)


def aggregate_bpm(
    candidates: Sequence[Tuple[float, float]],
    fallback: Sequence[float] = (),
) -> Optional[float]:
    """
    Merge per-channel BPM estimates.

    Parameters
    ----------
    candidates:
        ``(bpm, quality)`` pairs that already passed the plausibility and
        quality filters.
    fallback:
        Low-quality but plausible BPMs, averaged only when *candidates* is
        empty.

    Returns ``None`` when neither list holds anything.
    """
    if not candidates:
        if len(fallback) == 0:
            return None
        return round(float(np.mean(fallback)), 1)

    bpms = np.array([c[0] for c in candidates], dtype=np.float64)
    weights = np.array([max(0.0, c[1]) for c in candidates], dtype=np.float64)

    keep = iqr_mask(bpms)
    if not keep.any():
        return round(float(np.median(bpms)), 1)

    kept, w = bpms[keep], weights[keep]
    if w.sum() <= 0:
        return round(float(kept.mean()), 1)
    return round(float(np.average(kept, weights=w)), 1)


class ChannelEnsemble:
    """
    Coordinator owning *n_channels* analyzers.

    Parameters
    ----------
    n_channels:
        Number of virtual channels (default 6).
    window_seconds:
        Analysis window handed to every channel.
    config:
        Ensemble-level thresholds.
    channel_config:
        Per-channel thresholds, shared by all channels.
    """

    def __init__(
        self,
        n_channels: int = 6,
        window_seconds: float = 8.0,
        config: EnsembleConfig | None = None,
        channel_config: ChannelConfig | None = None,
    ) -> None:
        self.n_channels = max(1, int(n_channels))
        self.window_seconds = window_seconds
        self.config = config or EnsembleConfig()
        self.channel_config = channel_config or ChannelConfig()

        self._channels: List[ChannelAnalyzer] = [
            ChannelAnalyzer(
                channel_id=i,
                window_seconds=window_seconds,
                initial_gain=self.initial_gain(i),
                config=self.channel_config,
            )
            for i in range(self.n_channels)
        ]
        self._state = DetectionState(
            frames_to_confirm=self.config.frames_to_confirm,
            frames_to_lose=self.config.frames_to_lose,
            hold_ms=self.config.hold_ms,
            hold_on_confirm=True,
        )
        self._coverage_ema: Optional[float] = None
        self._motion_ema: Optional[float] = None
        self._last_timestamp: float = 0.0
        self._acquire_start_ms: Optional[float] = None
        self._acquire_grace_ms = (window_seconds + self.config.acquisition_grace_s) * 1000.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def initial_gain(self, channel_id: int) -> float:
        """Deterministic gain diversity: ``1 + (i - n//2) · spread``."""
        return 1.0 + (channel_id - self.n_channels // 2) * self.config.gain_spread

    def push_sample(self, value: float, timestamp_ms: float) -> None:
        """Feed one sample to every channel."""
        if math.isfinite(timestamp_ms) and timestamp_ms > self._last_timestamp:
            self._last_timestamp = float(timestamp_ms)
        for ch in self._channels:
            ch.push_sample(value, timestamp_ms)

    def analyze_all(
        self,
        coverage_ratio: float = 0.0,
        motion_metric: float = 0.0,
        now_ms: float | None = None,
    ) -> MultiChannelResult:
        """
        Per-frame entry point.

        Parameters
        ----------
        coverage_ratio:
            Fraction of the ROI judged to be lit skin (0 – 1).
        motion_metric:
            Frame-difference magnitude (≥ 0).
        now_ms:
            Clock for the hold times.  Defaults to the newest sample time.
        """
        cfg = self.config
        if now_ms is None:
            now_ms = self._last_timestamp

        coverage = self._smooth_coverage(coverage_ratio)
        motion = self._smooth_motion(motion_metric)

        results = tuple(ch.analyze(now_ms) for ch in self._channels)

        detected = [r for r in results if r.is_finger_detected]
        n_detected = len(detected)
        detected_quality = (
            sum(r.quality for r in detected) / n_detected if n_detected else 0.0
        )

        coverage_ok = coverage > cfg.min_coverage
        motion_ok = motion < cfg.max_motion
        consensus_ok = n_detected >= math.ceil(self.n_channels * cfg.consensus_fraction)
        quality_ok = detected_quality >= cfg.min_detected_quality
        strong = coverage_ok and motion_ok and consensus_ok and quality_ok
        placed = coverage >= cfg.pre_min_coverage and motion <= cfg.pre_max_motion
        if not placed:
            self._acquire_start_ms = None
        pre_detection = placed and self._acquiring(now_ms)

        was_detected = self._state.is_detected
        finger = self._state.update(strong or pre_detection, now_ms)
        if finger != was_detected:
            logger.info(
                "Finger %s (channels=%d/%d coverage=%.2f motion=%.1f quality=%.0f)",
                "detected" if finger else "lost",
                n_detected, self.n_channels, coverage, motion, detected_quality,
            )

        self._apply_gain_feedback(results)

        candidates, fallback = [], []
        for r in results:
            if r.bpm is None or not (cfg.bpm_low <= r.bpm <= cfg.bpm_high):
                continue
            fallback.append(r.bpm)
            if r.quality >= cfg.min_bpm_quality:
                candidates.append((r.bpm, float(r.quality)))

        return MultiChannelResult(
            timestamp=self._last_timestamp,
            channels=results,
            aggregated_bpm=aggregate_bpm(candidates, fallback),
            aggregated_quality=self._aggregate_quality(results, n_detected),
            finger_detected=finger,
            phase=self._state.phase,
        )

    def adjust_channel_gain(self, channel_id: int, delta: float) -> None:
        """Relative gain change for one channel; ignored for unknown ids."""
        if 0 <= channel_id < len(self._channels):
            self._channels[channel_id].adjust_gain_rel(delta)

    def get_gains(self) -> List[float]:
        return [ch.get_gain() for ch in self._channels]

    @property
    def channels(self) -> Tuple[ChannelAnalyzer, ...]:
        return tuple(self._channels)

    @property
    def finger_detected(self) -> bool:
        return self._state.is_detected

    @property
    def state(self) -> DetectionState:
        """Ensemble-level hysteresis state (read-only use)."""
        return self._state

    def reset(self) -> None:
        """Restart detection from scratch; every gain returns to 1.0."""
        for ch in self._channels:
            ch.reset(gain=1.0)
        self._state.reset()
        self._coverage_ema = None
        self._motion_ema = None
        self._last_timestamp = 0.0
        self._acquire_start_ms = None
        logger.info("Ensemble reset (%d channels).", self.n_channels)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _smooth_coverage(self, value: float) -> float:
        value = min(1.0, max(0.0, value)) if math.isfinite(value) else 0.0
        a = self.config.metric_alpha
        if self._coverage_ema is None:
            self._coverage_ema = value
        else:
            self._coverage_ema = self._coverage_ema * (1.0 - a) + value * a
        return self._coverage_ema

    def _smooth_motion(self, value: float) -> float:
        value = max(0.0, value) if math.isfinite(value) else self.config.max_motion
        a = self.config.metric_alpha
        if self._motion_ema is None:
            self._motion_ema = value
        else:
            self._motion_ema = self._motion_ema * (1.0 - a) + value * a
        return self._motion_ema

    def _acquiring(self, now_ms: float) -> bool:
        """True while a well-placed finger is still inside its acquisition grace."""
        if self._acquire_start_ms is None:
            self._acquire_start_ms = now_ms
        return now_ms - self._acquire_start_ms <= self._acquire_grace_ms

    def _apply_gain_feedback(self, results: Sequence[ChannelResult]) -> None:
        cfg = self.config
        for r in results:
            ch = self._channels[r.channel_id]
            if r.is_finger_detected:
                if r.quality < cfg.low_quality and r.gain < cfg.max_boost_gain:
                    ch.adjust_gain_rel(cfg.gain_step_up)
                elif r.quality > cfg.high_quality and r.gain > 1.0:
                    ch.adjust_gain_rel(-cfg.gain_step_down)
            elif r.gain > cfg.high_gain:
                ch.adjust_gain_rel(-cfg.gain_step_down)
            elif r.gain < cfg.low_gain and r.snr >= cfg.some_signal_snr:
                ch.adjust_gain_rel(cfg.gain_step_up)

    def _aggregate_quality(self, results: Sequence[ChannelResult], n_detected: int) -> int:
        cfg = self.config
        if not results:
            return 0
        quality = sum(r.quality for r in results) / len(results)
        quality += cfg.agreement_bonus * n_detected / self.n_channels

        phase = self._state.phase
        if phase is DetectionPhase.STABLE:
            quality += cfg.stability_bonus
        elif phase is DetectionPhase.LOSING:
            quality -= min(
                cfg.max_instability_penalty,
                cfg.instability_penalty_per_frame * self._state.consecutive_false_frames,
            )
        return int(round(min(100.0, max(0.0, quality))))
