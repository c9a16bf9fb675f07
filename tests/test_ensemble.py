"""
Unit tests for the channel ensemble and BPM aggregation.
Run with:  pytest tests/test_ensemble.py
"""

from __future__ import annotations

import numpy as np
import pytest

from ppg_consensus.channel import ChannelResult
from ppg_consensus.config import EnsembleConfig
from ppg_consensus.ensemble import ChannelEnsemble, aggregate_bpm, iqr_mask
from ppg_consensus.hysteresis import DetectionPhase

FPS = 30.0


def _ppg(n: int, hz: float = 1.2, mean: float = 120.0, amp: float = 5.0) -> np.ndarray:
    t = np.arange(n) / FPS
    return mean + amp * np.sin(2 * np.pi * hz * t)


def _result(channel_id: int, detected: bool, quality: int, gain: float, snr: float = 0.0) -> ChannelResult:
    return ChannelResult(
        channel_id=channel_id,
        calibrated_signal=np.zeros(0),
        bpm=None,
        rr_intervals=(),
        snr=snr,
        quality=quality,
        is_finger_detected=detected,
        gain=gain,
    )


def _run(ens: ChannelEnsemble, values, start: int = 0, coverage: float = 0.9, motion: float = 0.0):
    results = []
    for i, v in enumerate(values):
        ens.push_sample(float(v), (start + i) * 1000.0 / FPS)
        results.append(ens.analyze_all(coverage, motion))
    return results


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

class TestAggregateBpm:

    def test_outlier_rejected(self):
        bpm = aggregate_bpm([(70, 80), (71, 80), (69, 80), (70, 80), (150, 80)])
        assert 69.0 <= bpm <= 71.0

    def test_quality_weighting(self):
        bpm = aggregate_bpm([(70, 90), (80, 10)])
        assert bpm == pytest.approx(71.0)

    def test_fallback_used_without_candidates(self):
        assert aggregate_bpm([], fallback=[60, 64]) == pytest.approx(62.0)

    def test_none_when_empty(self):
        assert aggregate_bpm([]) is None
        assert aggregate_bpm([], fallback=[]) is None

    def test_zero_weights_plain_mean(self):
        assert aggregate_bpm([(70, 0), (74, 0)]) == pytest.approx(72.0)

    def test_rounded_to_tenth(self):
        bpm = aggregate_bpm([(70, 1), (71, 2)])
        assert bpm == round(bpm, 1)

    def test_iqr_mask_small_sets_keep_everything(self):
        assert iqr_mask([10, 200]).all()
        mask = iqr_mask([70, 71, 69, 70, 150])
        assert mask.tolist() == [True, True, True, True, False]


# ---------------------------------------------------------------------------
# Ensemble
# ---------------------------------------------------------------------------

class TestChannelEnsemble:

    def test_initial_gain_diversity(self):
        ens = ChannelEnsemble(n_channels=6)
        gains = ens.get_gains()
        assert len(set(gains)) == 6
        assert gains[3] == pytest.approx(1.0)
        assert gains[0] == pytest.approx(1.0 - 3 * EnsembleConfig().gain_spread)
        assert all(0.1 <= g <= 10.0 for g in gains)

    def test_no_data(self):
        ens = ChannelEnsemble()
        res = ens.analyze_all(0.0, 0.0)
        assert res.aggregated_bpm is None
        assert not res.finger_detected
        assert res.phase is DetectionPhase.UNCONFIRMED
        assert len(res.channels) == 6
        assert 0 <= res.aggregated_quality <= 100

    def test_adjust_channel_gain_bad_id_is_noop(self):
        ens = ChannelEnsemble()
        before = ens.get_gains()
        ens.adjust_channel_gain(-1, 0.5)
        ens.adjust_channel_gain(99, 0.5)
        assert ens.get_gains() == before
        ens.adjust_channel_gain(0, 0.5)
        assert ens.get_gains()[0] == pytest.approx(before[0] * 1.5)

    def test_clean_pulse_gives_bpm(self):
        ens = ChannelEnsemble()
        res = _run(ens, _ppg(300))[-1]
        assert res.finger_detected
        assert res.aggregated_bpm is not None
        assert abs(res.aggregated_bpm - 72.0) <= 3.0
        assert sum(c.is_finger_detected for c in res.channels) >= 2
        assert res.aggregated_quality > 50

    def test_poor_coverage_blocks_detection(self):
        ens = ChannelEnsemble()
        results = _run(ens, np.full(120, 120.0), coverage=0.0)
        assert not any(r.finger_detected for r in results)

    def test_loss_needs_full_lose_count(self):
        cfg = EnsembleConfig()
        ens = ChannelEnsemble(config=cfg)
        n = 300
        warm = _run(ens, _ppg(n))
        assert warm[-1].finger_detected
        # Heavy motion: both the strong and the pre-detection condition fail.
        lost = _run(ens, _ppg(60)[:cfg.frames_to_lose], start=n, motion=1000.0)
        flags = [r.finger_detected for r in lost]
        assert all(flags[: cfg.frames_to_lose - 1])
        assert flags[cfg.frames_to_lose - 1] is False
        assert lost[0].phase is DetectionPhase.LOSING

    def test_reset_round_trip(self):
        ens = ChannelEnsemble()
        first = _run(ens, _ppg(300))[-1]
        ens.reset()
        assert ens.get_gains() == [1.0] * ens.n_channels
        assert not ens.finger_detected
        assert all(len(ch) == 0 for ch in ens.channels)
        second = _run(ens, _ppg(300))[-1]
        assert first.aggregated_bpm is not None
        assert second.aggregated_bpm is not None
        assert abs(first.aggregated_bpm - 72.0) <= 3.0
        assert abs(second.aggregated_bpm - 72.0) <= 3.0

    def test_gain_feedback_stays_bounded(self):
        ens = ChannelEnsemble()
        _run(ens, _ppg(300))
        assert all(0.5 <= g <= 3.0 for g in ens.get_gains())

    def test_flat_signal_released_after_acquisition(self):
        """A well-placed but pulseless input is only trusted while acquiring."""
        ens = ChannelEnsemble()
        results = _run(ens, np.full(420, 120.0), coverage=0.9)
        assert results[10].finger_detected
        assert not any(c.is_finger_detected for r in results for c in r.channels)
        tail = results[-60:]
        assert not any(r.finger_detected for r in tail)
        assert tail[-1].phase is DetectionPhase.UNCONFIRMED
        assert tail[-1].aggregated_bpm is None

    def test_flat_signal_not_reacquired_while_placed(self):
        ens = ChannelEnsemble()
        _run(ens, np.full(420, 120.0), coverage=0.9)
        later = _run(ens, np.full(300, 120.0), start=420, coverage=0.9)
        assert not any(r.finger_detected for r in later)

    def test_consensus_confirms_at_moderate_coverage(self):
        cfg = EnsembleConfig()
        coverage = 0.2
        assert cfg.min_coverage < coverage < cfg.pre_min_coverage
        ens = ChannelEnsemble(config=cfg)
        results = _run(ens, _ppg(300), coverage=coverage)
        assert not results[10].finger_detected
        assert results[-1].finger_detected
        first = next(r for r in results if r.finger_detected)
        assert sum(c.is_finger_detected for c in first.channels) >= 2

    def test_flat_signal_at_moderate_coverage_never_confirms(self):
        ens = ChannelEnsemble()
        results = _run(ens, np.full(300, 120.0), coverage=0.2)
        assert not any(r.finger_detected for r in results)


# ---------------------------------------------------------------------------
# Gain controller
# ---------------------------------------------------------------------------

class TestGainFeedback:

    def _ensemble(self, gains):
        ens = ChannelEnsemble(n_channels=len(gains))
        for ch, g in zip(ens.channels, gains):
            ch.set_gain(g)
        return ens

    def test_each_branch_moves_gain(self):
        cfg = EnsembleConfig()
        ens = self._ensemble([1.0, 1.2, 2.0, 0.3])
        ens._apply_gain_feedback([
            _result(0, detected=True, quality=30, gain=1.0),
            _result(1, detected=True, quality=98, gain=1.2),
            _result(2, detected=False, quality=0, gain=2.0),
            _result(3, detected=False, quality=10, gain=0.3, snr=2.5),
        ])
        gains = ens.get_gains()
        assert gains[0] == pytest.approx(1.0 * (1 + cfg.gain_step_up))
        assert gains[1] == pytest.approx(1.2 * (1 - cfg.gain_step_down))
        assert gains[2] == pytest.approx(2.0 * (1 - cfg.gain_step_down))
        assert gains[3] == pytest.approx(0.3 * (1 + cfg.gain_step_up))

    def test_guards_leave_gain_alone(self):
        ens = self._ensemble([1.0, 3.0, 1.0, 0.3])
        ens._apply_gain_feedback([
            _result(0, detected=True, quality=98, gain=1.0),    # already at unity
            _result(1, detected=True, quality=30, gain=3.0),    # boost ceiling
            _result(2, detected=True, quality=70, gain=1.0),    # comfortable
            _result(3, detected=False, quality=0, gain=0.3, snr=1.0),  # no signal
        ])
        assert ens.get_gains() == pytest.approx([1.0, 3.0, 1.0, 0.3])


# ---------------------------------------------------------------------------
# Quality aggregation
# ---------------------------------------------------------------------------

class TestAggregateQuality:

    def _results(self, quality: int, n: int = 4):
        return [_result(i, detected=False, quality=quality, gain=1.0) for i in range(n)]

    def test_mean_and_agreement_bonus(self):
        ens = ChannelEnsemble(n_channels=4)
        assert ens._aggregate_quality(self._results(50), 0) == 50
        assert ens._aggregate_quality(self._results(50), 2) == 60
        assert ens._aggregate_quality(self._results(50), 4) == 70

    def test_stability_bonus(self):
        cfg = EnsembleConfig()
        ens = ChannelEnsemble(n_channels=4, config=cfg)
        st = ens.state
        st.is_detected = True
        st.frames_since_toggle = cfg.frames_to_confirm
        assert st.phase is DetectionPhase.STABLE
        assert ens._aggregate_quality(self._results(50), 0) == 50 + cfg.stability_bonus

    def test_losing_penalty_is_bounded(self):
        cfg = EnsembleConfig()
        ens = ChannelEnsemble(n_channels=4, config=cfg)
        st = ens.state
        st.is_detected = True
        st.consecutive_false_frames = 5
        assert st.phase is DetectionPhase.LOSING
        assert ens._aggregate_quality(self._results(50), 0) == 45
        st.consecutive_false_frames = 40
        assert ens._aggregate_quality(self._results(50), 0) == 50 - cfg.max_instability_penalty

    def test_clamped(self):
        ens = ChannelEnsemble(n_channels=4)
        st = ens.state
        st.is_detected = True
        st.frames_since_toggle = 100
        assert ens._aggregate_quality(self._results(100), 4) == 100
        assert ens._aggregate_quality(self._results(0), 0) == 0
