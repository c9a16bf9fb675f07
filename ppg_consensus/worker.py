"""
Background worker that owns a :class:`ChannelEnsemble`.

The frame producer never touches the ensemble directly: it posts samples
to a bounded inbox and reads :class:`MultiChannelResult` objects from an
outbox.  When the analysis falls behind, new samples are dropped instead
of blocking the producer; PPG analysis tolerates the lower effective rate.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Optional, Union

from ppg_consensus.ensemble import ChannelEnsemble, MultiChannelResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _SampleMessage:
    value: float
    timestamp_ms: float
    coverage: float
    motion: float


class _Control:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"<{self.name}>"


_RESET = _Control("reset")
_STOP = _Control("stop")

_Message = Union[_SampleMessage, _Control]


class EnsembleWorker:
    """
    Runs an ensemble on a dedicated daemon thread.

    Parameters
    ----------
    ensemble:
        The coordinator to drive.  After :meth:`start` only the worker
        thread may touch it.
    inbox_size:
        Maximum queued samples before new ones are dropped.
    outbox_size:
        Maximum unread results; the oldest is discarded when full.

    Usage::

        with EnsembleWorker(ChannelEnsemble()) as worker:
            worker.submit(value, ts_ms, coverage, motion)
            result = worker.get_result(timeout=0.1)
    """

    def __init__(
        self,
        ensemble: ChannelEnsemble | None = None,
        inbox_size: int = 8,
        outbox_size: int = 4,
    ) -> None:
        self._ensemble = ensemble or ChannelEnsemble()
        self._inbox: "queue.Queue[_Message]" = queue.Queue(maxsize=max(1, inbox_size))
        self._outbox: "queue.Queue[MultiChannelResult]" = queue.Queue(maxsize=max(1, outbox_size))
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._latest: Optional[MultiChannelResult] = None
        self.dropped: int = 0
        self.processed: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Worker already running – ignoring duplicate start().")
            return
        self._thread = threading.Thread(target=self._run, name="ppg-ensemble", daemon=True)
        self._thread.start()
        logger.info("Ensemble worker started (%d channels).", self._ensemble.n_channels)

    def stop(self, timeout: float = 2.0) -> None:
        if self._thread is None:
            return
        # The stop marker must get through even when the inbox is full.
        while True:
            try:
                self._inbox.put_nowait(_STOP)
                break
            except queue.Full:
                try:
                    self._inbox.get_nowait()
                except queue.Empty:
                    pass
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Ensemble worker did not stop within %.1f s.", timeout)
        self._thread = None
        logger.info(
            "Ensemble worker stopped (processed=%d dropped=%d).",
            self.processed, self.dropped,
        )

    def __enter__(self) -> "EnsembleWorker":
        self.start()
        return self

    def __exit__(self, *_) -> None:
        self.stop()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def submit(
        self,
        value: float,
        timestamp_ms: float,
        coverage_ratio: float = 0.0,
        motion_metric: float = 0.0,
    ) -> bool:
        """Queue one frame's sample.  Returns ``False`` if it was dropped."""
        try:
            self._inbox.put_nowait(
                _SampleMessage(value, timestamp_ms, coverage_ratio, motion_metric)
            )
        except queue.Full:
            self.dropped += 1
            if self.dropped % 30 == 1:
                logger.debug("Worker inbox full – %d samples dropped so far.", self.dropped)
            return False
        return True

    def request_reset(self) -> bool:
        """Ask the worker thread to reset the ensemble."""
        try:
            self._inbox.put_nowait(_RESET)
        except queue.Full:
            return False
        return True

    def get_result(self, timeout: float | None = None) -> Optional[MultiChannelResult]:
        """Next unread result, or ``None`` if none arrives within *timeout*."""
        try:
            if timeout is None:
                return self._outbox.get_nowait()
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    @property
    def latest_result(self) -> Optional[MultiChannelResult]:
        with self._lock:
            return self._latest

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            msg = self._inbox.get()
            if msg is _STOP:
                break
            if msg is _RESET:
                self._ensemble.reset()
                continue
            self._ensemble.push_sample(msg.value, msg.timestamp_ms)
            result = self._ensemble.analyze_all(msg.coverage, msg.motion)
            self.processed += 1
            self._publish(result)
        logger.debug("Worker loop exited.")

    def _publish(self, result: MultiChannelResult) -> None:
        with self._lock:
            self._latest = result
        while True:
            try:
                self._outbox.put_nowait(result)
                return
            except queue.Full:
                try:
                    self._outbox.get_nowait()
                except queue.Empty:
                    pass
