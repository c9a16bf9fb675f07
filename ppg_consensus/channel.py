"""
Single-channel PPG analyzer.

Algorithm
---------
1. Keep a rolling buffer of ``(time, value × gain)`` samples spanning the
   last ``window_seconds``.
2. Resample the buffer onto a fixed 256-point uniform grid and z-score it.
3. Band-pass around a resting heart rate (biquad, 1.6 Hz / 1.0 Hz) and
   smooth with Savitzky–Golay.
4. Sweep narrow-band (Goertzel) power over 0.8 – 4.0 Hz; the strongest
   frequency is the spectral BPM candidate.
5. Detect beats in the time domain for RR intervals and a temporal BPM.
6. Score quality, gate the raw detection verdict and debounce it.

Several analyzers fed with the same input but different gains form the
ensemble in :mod:`ppg_consensus.ensemble`.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, NamedTuple, Optional, Tuple

import numpy as np

from ppg_consensus.config import ChannelConfig
from ppg_consensus.dsp import (
    Biquad,
    narrowband_spectrum,
    resample_uniform,
    smooth_signal,
    spectral_concentration,
    spectral_snr,
)
from ppg_consensus.hysteresis import DetectionState
from ppg_consensus.peaks import PeakResult, detect_peaks

logger = logging.getLogger(__name__)


class Sample(NamedTuple):
    time: float     # seconds
    value: float


@dataclass(frozen=True, eq=False)
class ChannelResult:
    channel_id: int
    calibrated_signal: np.ndarray = field(repr=False)
    bpm: Optional[float]
    rr_intervals: Tuple[float, ...]    # milliseconds
    snr: float
    quality: int                       # 0 – 100
    is_finger_detected: bool
    gain: float


class ChannelAnalyzer:
    """
    Conditions one virtual channel and emits a :class:`ChannelResult`.

    Parameters
    ----------
    channel_id:
        Index of this channel inside its ensemble.
    window_seconds:
        Length of the rolling analysis window.
    initial_gain:
        Multiplier applied to incoming values; clamped to the configured
        gain range.
    config:
        Thresholds and tuning constants.
    """

    def __init__(
        self,
        channel_id: int = 0,
        window_seconds: float = 8.0,
        initial_gain: float = 1.0,
        config: ChannelConfig | None = None,
    ) -> None:
        self.channel_id = channel_id
        self.window_seconds = window_seconds
        self.config = config or ChannelConfig()
        cfg = self.config

        maxlen = int(math.ceil(1.5 * window_seconds * cfg.sample_rate_hint))
        self._buffer: Deque[Sample] = deque(maxlen=max(maxlen, cfg.min_samples))
        self._gain: float = self._clamp_gain(initial_gain)

        self._bandpass = Biquad()
        self._sweep = np.linspace(cfg.sweep_low_hz, cfg.sweep_high_hz, cfg.sweep_points)
        self._rr_history: Deque[float] = deque(maxlen=cfg.rr_history_size)
        self._quality_ema: Optional[float] = None
        self._state = DetectionState(
            frames_to_confirm=cfg.min_true_frames,
            frames_to_lose=cfg.min_false_frames,
            hold_ms=cfg.hold_ms,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push_sample(self, value: float, timestamp_ms: float) -> None:
        """Append one raw sample and drop samples older than the window."""
        t = float(timestamp_ms) / 1000.0
        if not (math.isfinite(value) and math.isfinite(t)):
            logger.debug("Channel %d: dropping non-finite sample.", self.channel_id)
            return
        if self._buffer and t <= self._buffer[-1].time:
            logger.debug(
                "Channel %d: dropping out-of-order sample at %.3f s.",
                self.channel_id, t,
            )
            return

        self._buffer.append(Sample(t, float(value) * self._gain))
        cutoff = t - self.window_seconds
        while self._buffer[0].time < cutoff:
            self._buffer.popleft()

    def analyze(self, now_ms: float | None = None) -> ChannelResult:
        """
        Analyse the current buffer.

        Parameters
        ----------
        now_ms:
            Clock used for the hysteresis hold time.  Defaults to the newest
            sample's timestamp.
        """
        cfg = self.config
        if len(self._buffer) < cfg.min_samples:
            return self._empty_result()

        if now_ms is None:
            now_ms = self._buffer[-1].time * 1000.0

        raw = np.array(self._buffer, dtype=np.float64)
        sampled, fs = resample_uniform(raw[:, 0], raw[:, 1], cfg.resample_points)

        mean = float(sampled.mean())
        variance = float(sampled.var())
        std = math.sqrt(variance)
        if std > cfg.min_std_for_normalization:
            normalized = (sampled - mean) / std
        else:
            normalized = sampled - mean

        self._bandpass.set_bandpass(cfg.bandpass_center_hz, cfg.bandpass_width_hz, fs)
        filtered = self._bandpass.process(normalized)
        smooth = smooth_signal(filtered, cfg.smoothing_window, cfg.smoothing_polyorder)

        powers = narrowband_spectrum(smooth, fs, self._sweep)
        peak_idx = int(np.argmax(powers))
        peak_power = float(powers[peak_idx])
        peak_hz = float(self._sweep[peak_idx])
        snr = spectral_snr(powers, cfg.noise_fraction)
        # Taken on the unfiltered signal; the band-pass alone concentrates broadband noise.
        concentration = spectral_concentration(
            self._sweep,
            narrowband_spectrum(normalized, fs, self._sweep),
            peak_hz,
            cfg.concentration_half_width_hz,
        )
        bpm_spectral = float(round(peak_hz * 60.0)) if peak_power > cfg.min_peak_power else None

        beats = detect_peaks(
            smooth,
            fs,
            min_interval_s=cfg.min_peak_interval_s,
            max_interval_s=cfg.max_peak_interval_s,
            threshold_k=cfg.peak_threshold_k,
            window_s=cfg.peak_window_s,
        )
        if beats.rr_intervals:
            self._rr_history.append(float(np.mean(beats.rr_intervals)))

        ac_std = float(smooth.std())
        quality = self._composite_quality(snr, variance, peak_power)

        brightness_ok = cfg.min_mean <= mean <= cfg.max_mean
        variance_ok = variance >= cfg.min_variance
        if self._state.is_detected:
            raw_detected = brightness_ok and (variance_ok or snr >= cfg.maintain_snr)
        else:
            raw_detected = (
                brightness_ok
                and variance_ok
                and snr >= cfg.min_snr
                and ac_std >= cfg.min_ac_std
                and concentration >= cfg.min_concentration
                and self._bpm_agrees(bpm_spectral, beats.bpm)
                and self._rhythm_regular(beats)
            )

        was_detected = self._state.is_detected
        detected = self._state.update(raw_detected, now_ms)
        if detected != was_detected:
            logger.debug(
                "Channel %d %s (mean=%.1f var=%.2f snr=%.2f conc=%.2f)",
                self.channel_id,
                "acquired" if detected else "lost",
                mean, variance, snr, concentration,
            )

        if self._quality_ema is None:
            self._quality_ema = quality
        else:
            a = cfg.quality_alpha
            self._quality_ema = self._quality_ema * (1.0 - a) + quality * a

        bpm = beats.bpm if beats.bpm is not None else bpm_spectral
        if bpm is not None and not (cfg.bpm_low <= bpm <= cfg.bpm_high):
            bpm = None
        if not (detected or raw_detected):
            bpm = None

        return ChannelResult(
            channel_id=self.channel_id,
            calibrated_signal=smooth,
            bpm=bpm,
            rr_intervals=beats.rr_intervals,
            snr=snr,
            quality=int(round(min(100.0, max(0.0, self._quality_ema)))),
            is_finger_detected=detected,
            gain=self._gain,
        )

    def adjust_gain_rel(self, delta: float) -> None:
        """Scale the gain by ``1 + delta``; the result is clamped."""
        old = self._gain
        self._gain = self._clamp_gain(self._gain * (1.0 + delta))
        logger.debug(
            "Channel %d gain %.3f -> %.3f (%+.1f%%)",
            self.channel_id, old, self._gain, delta * 100.0,
        )

    def set_gain(self, gain: float) -> None:
        self._gain = self._clamp_gain(gain)

    def get_gain(self) -> float:
        return self._gain

    @property
    def gain(self) -> float:
        return self._gain

    @property
    def is_finger_detected(self) -> bool:
        return self._state.is_detected

    @property
    def buffer_fill_ratio(self) -> float:
        """How full the rolling buffer is relative to the nominal window (0 – 1)."""
        expected = self.window_seconds * self.config.sample_rate_hint
        return min(1.0, len(self._buffer) / max(1.0, expected))

    def __len__(self) -> int:
        return len(self._buffer)

    def reset(self, gain: float = 1.0) -> None:
        """Clear buffer, RR history, quality smoothing and detection state."""
        self._buffer.clear()
        self._rr_history.clear()
        self._quality_ema = None
        self._state.reset()
        self._bandpass.reset()
        self._gain = self._clamp_gain(gain)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _clamp_gain(self, gain: float) -> float:
        if not math.isfinite(gain):
            return self.config.min_gain if gain < 0 else self.config.max_gain
        return max(self.config.min_gain, min(self.config.max_gain, float(gain)))

    def _empty_result(self) -> ChannelResult:
        return ChannelResult(
            channel_id=self.channel_id,
            calibrated_signal=np.zeros(0),
            bpm=None,
            rr_intervals=(),
            snr=0.0,
            quality=0,
            is_finger_detected=False,
            gain=self._gain,
        )

    def _composite_quality(self, snr: float, variance: float, peak_power: float) -> float:
        cfg = self.config
        spectral = min(cfg.quality_snr_max, max(0.0, (snr - 1.0) * cfg.quality_snr_slope))
        if variance > cfg.min_variance:
            variance_part = cfg.quality_variance_ok
        else:
            variance_part = cfg.quality_variance_low
        n = len(self._buffer)
        stability = next((pts for count, pts in cfg.quality_stability if n >= count), 0.0)
        strength = min(
            cfg.quality_strength_max,
            max(0.0, (peak_power - cfg.quality_strength_floor) * cfg.quality_strength_slope),
        )
        return min(100.0, spectral + variance_part + stability + strength)

    def _bpm_agrees(self, spectral: Optional[float], temporal: Optional[float]) -> bool:
        cfg = self.config
        if spectral is None or temporal is None:
            return False
        if not (cfg.bpm_low <= spectral <= cfg.bpm_high):
            return False
        if not (cfg.bpm_low <= temporal <= cfg.bpm_high):
            return False
        return abs(spectral - temporal) <= cfg.max_bpm_disagreement

    def _rhythm_regular(self, beats: PeakResult) -> bool:
        cfg = self.config
        if len(beats.rr_intervals) < cfg.min_rr_count or beats.rr_cv > cfg.max_rr_cv:
            return False
        if len(self._rr_history) >= 3:
            history = np.asarray(self._rr_history)
            if history.std() / max(1.0, history.mean()) > cfg.max_rr_cv:
                return False
        return True
