"""
Time-domain heartbeat detector.

Algorithm
---------
1. Candidate peaks are local maxima at least ``min_interval_s`` apart
   (``scipy.signal.find_peaks`` keeps the tallest of any crowded group).
2. A candidate survives only if it exceeds ``mean + k·std`` of a moving
   window centred on it, so the threshold follows slow amplitude changes.
3. RR intervals are taken between consecutive surviving peaks whose spacing
   is physiologically plausible (0.4 – 1.5 s by default); longer gaps are
   treated as missed beats and skipped rather than averaged in.
4. Intervals further than 2σ from their mean are discarded and the BPM is
   ``60000 / mean(RR)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.ndimage import uniform_filter1d
from scipy.signal import find_peaks


@dataclass(frozen=True)
class PeakResult:
    peaks: Tuple[int, ...] = ()
    rr_intervals: Tuple[float, ...] = ()   # milliseconds
    bpm: Optional[float] = None
    amplitude: float = 0.0
    rr_cv: float = 0.0

    @property
    def is_valid(self) -> bool:
        return len(self.peaks) >= 3 and self.bpm is not None


def detect_peaks(
    signal: Sequence[float],
    fs: float,
    min_interval_s: float = 0.4,
    max_interval_s: float = 1.5,
    threshold_k: float = 0.5,
    window_s: float = 2.0,
    bpm_low: float = 40.0,
    bpm_high: float = 180.0,
) -> PeakResult:
    """
    Detect heartbeats in a conditioned PPG waveform.

    Parameters
    ----------
    signal:
        Band-passed, smoothed waveform sampled uniformly at *fs*.
    fs:
        Sample rate in Hz.
    min_interval_s, max_interval_s:
        Refractory distance and longest accepted beat-to-beat gap.
    threshold_k:
        Multiplier on the local standard deviation above the local mean.
    window_s:
        Length of the moving window used for the dynamic threshold.
    bpm_low, bpm_high:
        Range outside which the BPM is reported as ``None``.

    Returns an empty :class:`PeakResult` when less than one second of signal
    is available.
    """
    x = np.asarray(signal, dtype=np.float64)
    if fs <= 0 or x.size < max(3, int(fs)):
        return PeakResult()

    distance = max(1, int(min_interval_s * fs))
    window = max(3, int(window_s * fs))

    local_mean = uniform_filter1d(x, size=window, mode="nearest")
    local_sq = uniform_filter1d(x * x, size=window, mode="nearest")
    local_std = np.sqrt(np.maximum(local_sq - local_mean * local_mean, 0.0))

    candidates, _ = find_peaks(x, distance=distance)
    if candidates.size == 0:
        return PeakResult()
    threshold = local_mean[candidates] + threshold_k * local_std[candidates]
    peaks = candidates[x[candidates] > threshold]
    if peaks.size == 0:
        return PeakResult()

    amplitude = _mean_amplitude(x, peaks, distance)

    gaps = np.diff(peaks) / fs
    plausible = (gaps >= min_interval_s) & (gaps <= max_interval_s)
    rr = gaps[plausible] * 1000.0

    if rr.size >= 2:
        mean_rr = rr.mean()
        std_rr = rr.std()
        if std_rr > 0:
            rr = rr[np.abs(rr - mean_rr) <= 2.0 * std_rr]

    rr_cv = float(rr.std() / max(1.0, rr.mean())) if rr.size else 0.0

    bpm: Optional[float] = None
    if rr.size >= 2:
        candidate = float(round(60000.0 / rr.mean()))
        if bpm_low <= candidate <= bpm_high:
            bpm = candidate

    return PeakResult(
        peaks=tuple(int(p) for p in peaks),
        rr_intervals=tuple(float(r) for r in rr),
        bpm=bpm,
        amplitude=amplitude,
        rr_cv=rr_cv,
    )


def _mean_amplitude(x: np.ndarray, peaks: np.ndarray, lookback: int) -> float:
    """Mean peak-to-preceding-valley height."""
    heights = [x[p] - x[max(0, p - lookback):p + 1].min() for p in peaks]
    return float(np.mean(heights)) if heights else 0.0
