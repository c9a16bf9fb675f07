"""
PPG Consensus – fingertip photoplethysmography from a camera brightness stream.
Several gain-diverse channels analyse the same signal; their verdicts are
combined into a debounced finger-presence flag and one robust BPM estimate.
"""

from ppg_consensus.channel import ChannelAnalyzer, ChannelResult
from ppg_consensus.config import ChannelConfig, EnsembleConfig
from ppg_consensus.ensemble import ChannelEnsemble, MultiChannelResult, aggregate_bpm
from ppg_consensus.hysteresis import DetectionPhase, DetectionState

__version__ = "0.1.0"
__author__ = "ppg_consensus"

__all__ = [
    "ChannelAnalyzer",
    "ChannelConfig",
    "ChannelEnsemble",
    "ChannelResult",
    "DetectionPhase",
    "DetectionState",
    "EnsembleConfig",
    "MultiChannelResult",
    "aggregate_bpm",
]
