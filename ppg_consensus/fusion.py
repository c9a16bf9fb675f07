"""
Red/green sample fusion.

Turns a :class:`~ppg_consensus.frame_metrics.FrameSample` into the single
scalar the ensemble analyses, plus adjusted coverage and motion metrics.

Algorithm
---------
1. Track the DC level of the red and green means with a slow EMA
   (α = 0.97, about one second at 30 fps).
2. Limit how fast the combined AC part may move between frames so a
   sudden motion artefact cannot inject a step into the waveform.
3. Weight the red and green components by how trustworthy each looks in
   this frame (coverage, motion, skin tone, clipping) and blend them.

The output keeps the weighted DC level so downstream brightness gates keep
working in raw 0 – 255 units.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from ppg_consensus.frame_metrics import FrameSample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FusedSample:
    timestamp_ms: float
    value: float
    coverage_ratio: float
    motion_metric: float


class SampleFuser:
    """
    Stateful R/G combiner.

    Parameters
    ----------
    dc_alpha:
        EMA retention for the DC trackers.
    min_slew:
        Floor of the per-frame AC slew limit.
    slew_per_std:
        Slew limit per unit of ROI brightness standard deviation.
    """

    def __init__(
        self,
        dc_alpha: float = 0.97,
        min_slew: float = 1.5,
        slew_per_std: float = 0.8,
    ) -> None:
        self.dc_alpha = dc_alpha
        self.min_slew = min_slew
        self.slew_per_std = slew_per_std
        self._dc_red: Optional[float] = None
        self._dc_green: Optional[float] = None
        self._last_ac: float = 0.0

    def fuse(self, s: FrameSample) -> Optional[FusedSample]:
        """Combine one frame; returns ``None`` for non-finite input."""
        if not all(math.isfinite(v) for v in (s.r_mean, s.g_mean, s.b_mean, s.timestamp_ms)):
            logger.debug("Skipping non-finite frame sample at %s ms.", s.timestamp_ms)
            return None

        if self._dc_red is None or self._dc_green is None:
            self._dc_red, self._dc_green = s.r_mean, s.g_mean
        a = self.dc_alpha
        self._dc_red = a * self._dc_red + (1.0 - a) * s.r_mean
        self._dc_green = a * self._dc_green + (1.0 - a) * s.g_mean
        ac_red = s.r_mean - self._dc_red
        ac_green = s.g_mean - self._dc_green

        # Slew-limit the common AC component.
        max_delta = max(self.min_slew, s.brightness_std * self.slew_per_std)
        combined = (ac_red + ac_green) * 0.5
        delta = combined - self._last_ac
        if abs(delta) > max_delta:
            adjust = self._last_ac + math.copysign(max_delta, delta) - combined
            ac_red += adjust
            ac_green += adjust
        self._last_ac = (ac_red + ac_green) * 0.5

        w_red, w_green = self._weights(s)
        denom = max(1e-3, w_red + w_green)
        ac = (w_red * ac_red + w_green * ac_green) / denom
        dc = (w_red * self._dc_red + w_green * self._dc_green) / denom

        return FusedSample(
            timestamp_ms=s.timestamp_ms,
            value=dc + ac,
            coverage_ratio=self.adjusted_coverage(s),
            motion_metric=self.adjusted_motion(s),
        )

    @staticmethod
    def adjusted_coverage(s: FrameSample) -> float:
        """Boost coverage for red-dominant, unclipped skin; damp it otherwise."""
        skin_like = s.red_fraction > 0.42 and 1.1 < s.rg_ratio < 4.0
        factor = (1.2 if skin_like else 0.8) * (1.0 if s.saturation_ratio < 0.15 else 0.7)
        return min(1.0, max(0.0, s.coverage_ratio * factor))

    @staticmethod
    def adjusted_motion(s: FrameSample) -> float:
        """Frame difference plus a penalty for a non-uniform ROI."""
        return max(0.0, s.frame_diff) + (6.0 if s.brightness_std > 8.0 else 0.0)

    def reset(self) -> None:
        self._dc_red = None
        self._dc_green = None
        self._last_ac = 0.0

    @staticmethod
    def _weights(s: FrameSample) -> tuple[float, float]:
        coverage_w = min(1.0, max(0.0, (s.coverage_ratio - 0.12) / 0.28))
        motion_w = 1.0 / (1.0 + 0.6 * max(0.0, s.frame_diff))
        skin_w = min(1.0, max(0.0, (s.rg_ratio - 1.0) / 2.5))
        sat_w = max(0.0, 1.0 - s.saturation_ratio * 1.6)
        w_red = coverage_w * motion_w * skin_w * sat_w
        w_green = coverage_w * motion_w * max(0.4, 1.0 - abs(s.rg_ratio - 0.9))
        return w_red, w_green
