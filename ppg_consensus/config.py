"""
Tunable constants for the channel analyzer and the ensemble coordinator.

The numbers below were tuned empirically against fingertip captures at
~30 fps.  They are plain frozen dataclasses so a host can build a variant
(``dataclasses.replace``) without mutating the defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class ChannelConfig:
    # Buffer / resampling
    sample_rate_hint: float = 30.0
    min_samples: int = 50
    resample_points: int = 256
    min_std_for_normalization: float = 0.5

    # Conditioning
    bandpass_center_hz: float = 1.6
    bandpass_width_hz: float = 1.0
    smoothing_window: int = 13
    smoothing_polyorder: int = 2

    # Spectral sweep
    sweep_low_hz: float = 0.8
    sweep_high_hz: float = 4.0
    sweep_points: int = 120
    min_peak_power: float = 1e-5
    noise_fraction: float = 0.7
    concentration_half_width_hz: float = 0.2

    # Peak detector
    min_peak_interval_s: float = 0.4     # 150 BPM
    max_peak_interval_s: float = 1.5     # 40 BPM
    peak_threshold_k: float = 0.5
    peak_window_s: float = 2.0
    rr_history_size: int = 10

    # Acquire gate
    min_mean: float = 60.0
    max_mean: float = 240.0
    min_variance: float = 2.5
    min_snr: float = 3.0
    min_ac_std: float = 0.25
    bpm_low: float = 45.0
    bpm_high: float = 180.0
    max_bpm_disagreement: float = 8.0
    min_rr_count: int = 5
    max_rr_cv: float = 0.15
    min_concentration: float = 0.5

    # Maintain gate (looser than acquire)
    maintain_snr: float = 1.5

    # Hysteresis
    min_true_frames: int = 3
    min_false_frames: int = 10
    hold_ms: float = 400.0

    # Quality score: spectral + variance + stability + strength, capped at 100
    quality_alpha: float = 0.25
    quality_snr_max: float = 40.0
    quality_snr_slope: float = 28.0
    quality_variance_ok: float = 30.0
    quality_variance_low: float = 8.0
    # (minimum buffered samples, points); first match wins
    quality_stability: Tuple[Tuple[int, float], ...] = ((150, 22.0), (100, 18.0), (0, 12.0))
    quality_strength_max: float = 20.0
    quality_strength_floor: float = 1e-4
    quality_strength_slope: float = 65000.0

    # Gain
    min_gain: float = 0.1
    max_gain: float = 10.0


@dataclass(frozen=True)
class EnsembleConfig:
    gain_spread: float = 0.03

    # Frame-level metric smoothing
    metric_alpha: float = 0.15

    # Strong condition
    min_coverage: float = 0.05
    max_motion: float = 20.0
    consensus_fraction: float = 0.32
    min_detected_quality: float = 30.0

    # Pre-detection: finger well placed, BPM not converged yet
    pre_min_coverage: float = 0.35
    pre_max_motion: float = 8.0
    # Pre-detection only counts until the analysis window plus this margin
    # has passed with the finger in place; after that channels must agree.
    acquisition_grace_s: float = 2.0

    # Hysteresis
    frames_to_confirm: int = 6
    frames_to_lose: int = 25
    hold_ms: float = 1000.0

    # Gain controller
    low_quality: float = 50.0
    high_quality: float = 95.0
    gain_step_up: float = 0.05
    gain_step_down: float = 0.02
    high_gain: float = 1.5
    max_boost_gain: float = 3.0
    low_gain: float = 0.5
    some_signal_snr: float = 2.0

    # BPM aggregation
    bpm_low: float = 50.0
    bpm_high: float = 160.0
    min_bpm_quality: float = 40.0

    # Quality aggregation
    agreement_bonus: float = 20.0
    stability_bonus: float = 10.0
    instability_penalty_per_frame: float = 1.0
    max_instability_penalty: float = 15.0
