"""
DSP primitives for the PPG channel analyzer.

Building blocks
---------------
* :class:`Biquad` – second-order band-pass (RBJ cookbook, constant 0 dB peak)
  run as a single SOS section so its state can be carried or reset.
* :func:`goertzel_power` / :func:`narrowband_spectrum` – spectral power at
  arbitrary target frequencies without a full FFT.
* :func:`smooth_signal` – Savitzky–Golay polynomial smoother.
* :func:`resample_uniform` – irregular camera timestamps onto a uniform grid.
* :func:`spectral_snr` / :func:`spectral_concentration` – quality measures
  over a pseudo-spectrum.

References
----------
- Bristow-Johnson R., "Cookbook formulae for audio EQ biquad filter
  coefficients."
- Goertzel G., "An algorithm for the evaluation of finite trigonometric
  series." Am. Math. Monthly, 1958.
- Savitzky A., Golay M.J.E., "Smoothing and differentiation of data by
  simplified least squares procedures." Anal. Chem., 1964.
"""

from __future__ import annotations

import logging
from typing import Sequence, Tuple

import numpy as np
from scipy.signal import lfilter, savgol_filter, sosfilt

logger = logging.getLogger(__name__)

_EPS = 1e-6


class Biquad:
    """
    Recursive band-pass filter with explicit state.

    The state (``zi``) survives across :meth:`process` calls so a stream can
    be filtered in chunks; :meth:`reset` (also called by
    :meth:`set_bandpass`) clears it so independent buffers never leak into
    each other.
    """

    def __init__(self) -> None:
        self._sos: np.ndarray = np.array([[1.0, 0.0, 0.0, 1.0, 0.0, 0.0]])
        self._zi: np.ndarray = np.zeros((1, 2))
        self.center_hz: float = 0.0
        self.bandwidth_hz: float = 0.0
        self.fs: float = 0.0

    def set_bandpass(self, center_hz: float, bandwidth_hz: float, fs: float) -> None:
        """
        Design the band-pass section and clear the filter state.

        Parameters
        ----------
        center_hz:
            Centre frequency.  Clamped below 0.45 × *fs*.
        bandwidth_hz:
            -3 dB bandwidth; ``Q = center_hz / bandwidth_hz``.
        fs:
            Sample rate of the signal that will be processed.
        """
        fs = max(float(fs), _EPS)
        center = min(max(float(center_hz), 1e-3), 0.45 * fs)
        bandwidth = max(float(bandwidth_hz), 1e-3)

        w0 = 2.0 * np.pi * center / fs
        q = center / bandwidth
        alpha = np.sin(w0) / (2.0 * q)
        a0 = 1.0 + alpha

        self._sos = np.array([[
            alpha / a0, 0.0, -alpha / a0,
            1.0, -2.0 * np.cos(w0) / a0, (1.0 - alpha) / a0,
        ]])
        self.center_hz = center
        self.bandwidth_hz = bandwidth
        self.fs = fs
        self.reset()

    def reset(self) -> None:
        """Zero the internal delay line."""
        self._zi = np.zeros((1, 2))

    def process(self, signal: Sequence[float]) -> np.ndarray:
        """Filter *signal*, continuing from the current state."""
        x = np.asarray(signal, dtype=np.float64)
        if x.size == 0:
            return x.copy()
        y, self._zi = sosfilt(self._sos, x, zi=self._zi)
        return y

    @property
    def sos(self) -> np.ndarray:
        return self._sos.copy()


def goertzel_power(signal: Sequence[float], fs: float, freq: float) -> float:
    """
    Power of *signal* at *freq* (Hz) using the Goertzel recurrence.

    Normalised by N² so a unit-amplitude sine at *freq* yields ~0.25.
    """
    x = np.asarray(signal, dtype=np.float64)
    n = x.size
    if n == 0 or fs <= 0:
        return 0.0
    coeff = 2.0 * np.cos(2.0 * np.pi * freq / fs)
    # s[n] = x[n] + coeff * s[n-1] - s[n-2]
    s = lfilter([1.0], [1.0, -coeff, 1.0], x)
    s1 = s[-1]
    s2 = s[-2] if n > 1 else 0.0
    power = s1 * s1 + s2 * s2 - coeff * s1 * s2
    return max(0.0, float(power)) / (n * n)


def narrowband_spectrum(
    signal: Sequence[float], fs: float, freqs: Sequence[float]
) -> np.ndarray:
    """
    Evaluate :func:`goertzel_power` over a sweep of frequencies at once.

    Projects the signal onto one complex exponential per frequency, so the
    cost is O(len(freqs) × len(signal)) rather than a full transform.
    """
    x = np.asarray(signal, dtype=np.float64)
    f = np.asarray(freqs, dtype=np.float64)
    n = x.size
    if n == 0 or fs <= 0 or f.size == 0:
        return np.zeros(f.size)
    phase = 2.0 * np.pi * np.outer(f / fs, np.arange(n))
    re = np.cos(phase) @ x
    im = np.sin(phase) @ x
    return (re * re + im * im) / (n * n)


def smooth_signal(
    signal: Sequence[float], window: int = 13, polyorder: int = 2
) -> np.ndarray:
    """
    Savitzky–Golay smoothing.

    *window* is forced odd and at least 5, then shrunk to fit the signal.
    Signals shorter than 5 samples are returned unchanged.
    """
    x = np.asarray(signal, dtype=np.float64)
    if x.size < 5:
        return x.copy()
    window = max(5, int(window))
    if window % 2 == 0:
        window += 1
    if window > x.size:
        window = x.size if x.size % 2 == 1 else x.size - 1
    polyorder = min(int(polyorder), window - 2)
    return savgol_filter(x, window, polyorder, mode="interp")


def resample_uniform(
    times: Sequence[float], values: Sequence[float], n: int
) -> Tuple[np.ndarray, float]:
    """
    Resample an irregularly timed series onto *n* uniform points.

    Each output point blends the two bracketing raw samples with a
    smoothstep weight.  The bracketing indices come from a single
    ``searchsorted`` over the sorted grid.

    Returns
    -------
    (signal, fs):
        Resampled values and the effective sample rate of the grid.
    """
    t = np.asarray(times, dtype=np.float64)
    v = np.asarray(values, dtype=np.float64)
    if t.size == 0 or n <= 0:
        return np.zeros(0), 0.0
    if n == 1:
        return v[:1].copy(), 0.0

    span = max(1e-3, float(t[-1] - t[0]))
    grid = t[0] + np.linspace(0.0, span, n)

    lo = np.clip(np.searchsorted(t, grid, side="right") - 1, 0, t.size - 1)
    hi = np.minimum(lo + 1, t.size - 1)
    dt = t[hi] - t[lo]
    safe_dt = np.where(dt > 0, dt, 1.0)
    alpha = np.clip(np.where(dt > 0, (grid - t[lo]) / safe_dt, 0.0), 0.0, 1.0)
    weight = alpha * alpha * (3.0 - 2.0 * alpha)

    return v[lo] * (1.0 - weight) + v[hi] * weight, (n - 1) / span


def spectral_snr(powers: Sequence[float], noise_fraction: float = 0.7) -> float:
    """
    Peak power over the median of the weakest *noise_fraction* of powers.

    The median of the bottom share is used instead of the minimum so a
    single null in the sweep cannot inflate the ratio.
    """
    p = np.sort(np.asarray(powers, dtype=np.float64))[::-1]
    if p.size == 0:
        return 0.0
    start = int(np.floor(p.size * (1.0 - noise_fraction)))
    noise = p[start:] if start < p.size else p[-1:]
    noise_power = float(np.median(noise))
    return float(p[0] / max(_EPS, noise_power))


def spectral_concentration(
    freqs: Sequence[float],
    powers: Sequence[float],
    peak_hz: float,
    half_width_hz: float = 0.2,
) -> float:
    """Share of the sweep's power lying within ±*half_width_hz* of *peak_hz*."""
    f = np.asarray(freqs, dtype=np.float64)
    p = np.asarray(powers, dtype=np.float64)
    total = float(p.sum())
    if p.size == 0 or total <= _EPS * _EPS:
        return 0.0
    mask = np.abs(f - peak_hz) <= half_width_hz
    return float(p[mask].sum() / total)
