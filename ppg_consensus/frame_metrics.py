"""
Per-frame measurements of the fingertip region of interest.

When a finger covers the lens with the torch on, the ROI becomes:
  - Dominated by reddish tones (light transmitted through tissue).
  - Mostly uniform, with only the slow pulsatile brightness change.
  - Nearly static between frames unless the finger moves.

:class:`FrameAnalyzer` reduces each BGR ROI to a :class:`FrameSample` of
colour means plus the two side metrics the ensemble consumes: the fraction
of skin-bright pixels (coverage) and the frame-to-frame difference (motion).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np


@dataclass(frozen=True)
class FrameSample:
    timestamp_ms: float
    r_mean: float
    g_mean: float
    b_mean: float
    brightness_mean: float
    brightness_std: float
    coverage_ratio: float     # 0 – 1
    frame_diff: float         # mean |Δgrey| vs previous frame
    saturation_ratio: float   # share of clipped red pixels
    red_fraction: float       # r / (r + g + b)
    rg_ratio: float


def center_roi(frame: np.ndarray, fraction: float = 0.35) -> np.ndarray:
    """Central square crop whose side is *fraction* of the shorter dimension."""
    h, w = frame.shape[:2]
    side = max(1, int(min(w, h) * fraction))
    x0 = (w - side) // 2
    y0 = (h - side) // 2
    return frame[y0:y0 + side, x0:x0 + side]


class FrameAnalyzer:
    """
    Measures successive ROI frames.

    Parameters
    ----------
    min_red:
        Minimum red intensity (0 – 255) for a pixel to count as lit skin.
    red_dominance:
        Minimum ``red / green`` ratio for a pixel to count as skin.
    saturation_level:
        Red intensity at or above which a pixel is considered clipped.
    motion_size:
        Frames are downscaled to this size before differencing so sensor
        noise averages out.
    """

    def __init__(
        self,
        min_red: float = 60.0,
        red_dominance: float = 1.05,
        saturation_level: float = 250.0,
        motion_size: Tuple[int, int] = (32, 32),
    ) -> None:
        self.min_red = min_red
        self.red_dominance = red_dominance
        self.saturation_level = saturation_level
        self.motion_size = motion_size
        self._prev_grey: np.ndarray | None = None

    def measure(self, roi: np.ndarray, timestamp_ms: float = 0.0) -> FrameSample:
        """
        Reduce *roi* to a :class:`FrameSample`.

        Parameters
        ----------
        roi:
            BGR image array (H × W × 3, uint8).
        timestamp_ms:
            Capture time of the frame.
        """
        b_ch = roi[:, :, 0].astype(np.float64)
        g_ch = roi[:, :, 1].astype(np.float64)
        r_ch = roi[:, :, 2].astype(np.float64)

        mean_r = float(r_ch.mean())
        mean_g = float(g_ch.mean())
        mean_b = float(b_ch.mean())
        total = mean_r + mean_g + mean_b

        skin = (r_ch >= self.min_red) & (r_ch >= self.red_dominance * g_ch)
        coverage = float(skin.mean())
        saturation = float((r_ch >= self.saturation_level).mean())

        grey = cv2.cvtColor(roi, cv2.COLOR_BGR2GRAY)
        brightness_std = float(grey.std())
        small = cv2.resize(grey, self.motion_size, interpolation=cv2.INTER_AREA)
        if self._prev_grey is None or self._prev_grey.shape != small.shape:
            frame_diff = 0.0
        else:
            frame_diff = float(cv2.absdiff(small, self._prev_grey).mean())
        self._prev_grey = small

        return FrameSample(
            timestamp_ms=float(timestamp_ms),
            r_mean=mean_r,
            g_mean=mean_g,
            b_mean=mean_b,
            brightness_mean=total / 3.0,
            brightness_std=brightness_std,
            coverage_ratio=coverage,
            frame_diff=frame_diff,
            saturation_ratio=saturation,
            red_fraction=mean_r / total if total > 0 else 0.0,
            rg_ratio=mean_r / mean_g if mean_g > 1.0 else 2.0,
        )

    def reset(self) -> None:
        self._prev_grey = None
