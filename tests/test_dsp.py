"""
Unit tests for the DSP primitives and the peak detector.
Run with:  pytest tests/test_dsp.py
"""

from __future__ import annotations

import numpy as np
import pytest

from ppg_consensus.dsp import (
    Biquad,
    goertzel_power,
    narrowband_spectrum,
    resample_uniform,
    smooth_signal,
    spectral_concentration,
    spectral_snr,
)
from ppg_consensus.peaks import detect_peaks


def _sine(freq_hz: float, fs: float, seconds: float, amplitude: float = 1.0) -> np.ndarray:
    t = np.arange(int(fs * seconds)) / fs
    return amplitude * np.sin(2 * np.pi * freq_hz * t)


# ---------------------------------------------------------------------------
# Biquad
# ---------------------------------------------------------------------------

class TestBiquad:

    def test_passes_center_attenuates_far_band(self):
        fs = 32.0
        bq = Biquad()
        bq.set_bandpass(1.6, 1.0, fs)
        centre = bq.process(_sine(1.6, fs, 20))
        bq.reset()
        far = bq.process(_sine(8.0, fs, 20))
        # Compare steady-state amplitudes
        assert np.abs(centre[-64:]).max() > 0.9
        assert np.abs(far[-64:]).max() < 0.3

    def test_stable_across_cardiac_band(self):
        rng = np.random.default_rng(3)
        noise = rng.normal(0, 1, 2048)
        for fs in (16.0, 30.0, 64.0):
            for f0 in (0.7, 1.6, 3.0):
                bq = Biquad()
                bq.set_bandpass(f0, 1.0, fs)
                out = bq.process(noise)
                assert np.all(np.isfinite(out))
                assert np.abs(out).max() < 20.0

    def test_reset_prevents_state_leakage(self):
        fs = 32.0
        x = _sine(1.2, fs, 4)
        bq = Biquad()
        bq.set_bandpass(1.6, 1.0, fs)
        first = bq.process(x)
        bq.reset()
        second = bq.process(x)
        np.testing.assert_allclose(first, second)

    def test_state_carries_between_chunks(self):
        fs = 32.0
        x = _sine(1.2, fs, 4)
        whole = Biquad()
        whole.set_bandpass(1.6, 1.0, fs)
        chunked = Biquad()
        chunked.set_bandpass(1.6, 1.0, fs)
        expected = whole.process(x)
        got = np.concatenate([chunked.process(x[:50]), chunked.process(x[50:])])
        np.testing.assert_allclose(got, expected, atol=1e-12)

    def test_sos_unity_gain_at_center(self):
        bq = Biquad()
        bq.set_bandpass(1.6, 1.0, 32.0)
        sos = bq.sos
        assert sos.shape == (1, 6)
        assert sos[0, 3] == 1.0
        z = np.exp(-1j * 2 * np.pi * 1.6 / 32.0)
        b0, b1, b2, a0, a1, a2 = sos[0]
        h = (b0 + b1 * z + b2 * z * z) / (a0 + a1 * z + a2 * z * z)
        assert abs(h) == pytest.approx(1.0)
        # Returned coefficients are a copy.
        sos[0, 0] = 0.0
        assert bq.sos[0, 0] != 0.0

    def test_center_clamped_below_nyquist(self):
        bq = Biquad()
        bq.set_bandpass(100.0, 1.0, 20.0)
        assert bq.center_hz <= 0.45 * 20.0
        assert np.all(np.isfinite(bq.process(np.ones(32))))


# ---------------------------------------------------------------------------
# Narrow-band power
# ---------------------------------------------------------------------------

class TestNarrowbandPower:

    def test_goertzel_peak_at_target(self):
        fs = 32.0
        x = _sine(1.5, fs, 8)
        on = goertzel_power(x, fs, 1.5)
        off = goertzel_power(x, fs, 2.5)
        assert on == pytest.approx(0.25, rel=0.05)
        assert off < on / 50

    def test_goertzel_non_negative_and_empty(self):
        rng = np.random.default_rng(1)
        x = rng.normal(0, 1, 256)
        for f in np.linspace(0.8, 4.0, 20):
            assert goertzel_power(x, 32.0, f) >= 0.0
        assert goertzel_power([], 32.0, 1.0) == 0.0

    def test_sweep_matches_goertzel(self):
        rng = np.random.default_rng(2)
        x = rng.normal(0, 1, 256)
        freqs = np.linspace(0.8, 4.0, 40)
        sweep = narrowband_spectrum(x, 31.9, freqs)
        single = np.array([goertzel_power(x, 31.9, f) for f in freqs])
        np.testing.assert_allclose(sweep, single, rtol=1e-6, atol=1e-12)

    def test_sweep_shape(self):
        freqs = np.linspace(0.8, 4.0, 120)
        assert narrowband_spectrum(_sine(1.2, 30.0, 8), 30.0, freqs).shape == (120,)
        assert narrowband_spectrum([], 30.0, freqs).shape == (120,)


# ---------------------------------------------------------------------------
# Smoothing / resampling
# ---------------------------------------------------------------------------

class TestSmoothing:

    def test_length_preserved_and_noise_reduced(self):
        rng = np.random.default_rng(4)
        clean = _sine(1.2, 32.0, 8)
        noisy = clean + rng.normal(0, 0.3, clean.size)
        out = smooth_signal(noisy, 13)
        assert out.shape == noisy.shape
        assert np.std(out - clean) < np.std(noisy - clean)

    def test_even_window_is_made_odd(self):
        out = smooth_signal(np.arange(40, dtype=float), 12)
        np.testing.assert_allclose(out, np.arange(40, dtype=float), atol=1e-9)

    def test_short_signal_returned_unchanged(self):
        np.testing.assert_array_equal(smooth_signal([1.0, 2.0, 3.0]), [1.0, 2.0, 3.0])


class TestResample:

    def test_uniform_grid_and_rate(self):
        rng = np.random.default_rng(5)
        t = np.cumsum(rng.uniform(0.025, 0.045, 200))
        v = np.sin(2 * np.pi * 1.0 * t)
        out, fs = resample_uniform(t, v, 256)
        assert out.shape == (256,)
        assert fs == pytest.approx(255 / (t[-1] - t[0]))
        assert out[0] == pytest.approx(v[0])
        assert out[-1] == pytest.approx(v[-1])

    def test_values_stay_within_bracketing_samples(self):
        t = np.array([0.0, 1.0, 2.0])
        v = np.array([0.0, 10.0, 0.0])
        out, _ = resample_uniform(t, v, 21)
        assert out.min() >= 0.0
        assert out.max() <= 10.0

    def test_empty(self):
        out, fs = resample_uniform([], [], 256)
        assert out.size == 0
        assert fs == 0.0


# ---------------------------------------------------------------------------
# SNR / concentration
# ---------------------------------------------------------------------------

class TestSpectralQuality:

    def test_snr_uses_median_not_minimum(self):
        powers = np.full(100, 1.0)
        powers[0] = 50.0
        powers[-1] = 0.0
        assert spectral_snr(powers) == pytest.approx(50.0)

    def test_snr_zero_floor_is_clamped(self):
        snr = spectral_snr(np.zeros(50))
        assert np.isfinite(snr)
        assert snr == 0.0

    def test_concentration(self):
        freqs = np.linspace(0.8, 4.0, 120)
        powers = np.zeros(120)
        powers[10] = 1.0
        assert spectral_concentration(freqs, powers, freqs[10]) == pytest.approx(1.0)
        assert spectral_concentration(freqs, np.ones(120), freqs[60]) < 0.2
        assert spectral_concentration(freqs, np.zeros(120), 1.0) == 0.0


# ---------------------------------------------------------------------------
# Peak detector
# ---------------------------------------------------------------------------

class TestPeakDetector:

    def test_clean_sine_rr_and_bpm(self):
        fs = 32.0
        res = detect_peaks(_sine(1.2, fs, 8), fs)
        assert res.is_valid
        assert res.bpm == pytest.approx(72, abs=2)
        assert np.mean(res.rr_intervals) == pytest.approx(833, abs=25)
        assert res.rr_cv < 0.05

    def test_refractory_distance(self):
        fs = 32.0
        res = detect_peaks(_sine(1.2, fs, 8) + 0.2 * _sine(6.0, fs, 8), fs)
        gaps = np.diff(res.peaks) / fs
        assert np.all(gaps >= int(0.4 * fs) / fs)

    def test_long_gaps_excluded_from_rr(self):
        fs = 32.0
        x = _sine(1.2, fs, 10)
        x[96:192] = -1.0          # three missing beats
        res = detect_peaks(x, fs)
        assert all(rr <= 1500.0 for rr in res.rr_intervals)

    def test_too_short_returns_empty(self):
        res = detect_peaks(np.zeros(10), 32.0)
        assert res.peaks == ()
        assert res.bpm is None
        assert not res.is_valid
