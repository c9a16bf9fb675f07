"""
Frame source for fingertip capture.

Wraps OpenCV ``VideoCapture`` so the pipeline can read either a live camera
(by device index) or a recorded clip (by path).  Every frame comes with a
timestamp in milliseconds: the container's position for files, a monotonic
clock for live devices.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Generator, Tuple, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)

Source = Union[int, str, Path]


def parse_source(text: str) -> Source:
    """``"0"`` → device index 0; anything else is treated as a path."""
    return int(text) if text.isdigit() else Path(text)


class FrameSource:
    """
    Parameters
    ----------
    source:
        Device index or path to a video file.
    resolution:
        Requested (width, height) for live devices.  Ignored for files.
    fps:
        Requested frame rate for live devices.  Ignored for files.
    """

    def __init__(
        self,
        source: Source = 0,
        resolution: Tuple[int, int] = (640, 480),
        fps: int = 30,
    ) -> None:
        self.source = source
        self.resolution = resolution
        self.fps = fps
        self._cap: cv2.VideoCapture | None = None

    @property
    def is_file(self) -> bool:
        return not isinstance(self.source, int)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open the device or file."""
        target = self.source if isinstance(self.source, int) else str(self.source)
        cap = cv2.VideoCapture(target)
        if not cap.isOpened():
            raise RuntimeError(f"Cannot open video source {self.source!r}")
        if not self.is_file:
            w, h = self.resolution
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
            cap.set(cv2.CAP_PROP_FPS, self.fps)
        self._cap = cap
        logger.info(
            "Source opened – %s %dx%d @ %.1f fps",
            self.source,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            cap.get(cv2.CAP_PROP_FPS),
        )

    def close(self) -> None:
        if self._cap is None:
            return
        self._cap.release()
        self._cap = None
        logger.info("Source closed.")

    def __enter__(self) -> "FrameSource":
        self.open()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read_frame(self) -> Tuple[float, np.ndarray] | None:
        """
        Capture a single frame.

        Returns
        -------
        (timestamp_ms, frame) or *None* on failure.  ``frame`` is BGR uint8.
        """
        if self._cap is None:
            raise RuntimeError("Source is not open.  Call open() first.")
        ok, frame = self._cap.read()
        if not ok:
            return None
        if self.is_file:
            ts = float(self._cap.get(cv2.CAP_PROP_POS_MSEC))
        else:
            ts = time.monotonic() * 1000.0
        return ts, frame

    def frames(self) -> Generator[Tuple[float, np.ndarray], None, None]:
        """
        Yield ``(timestamp_ms, frame)`` until the source ends or fails.

        A file ends at its first failed read; a live device is given ten
        consecutive failures before giving up.
        """
        null_streak = 0
        while self._cap is not None:
            item = self.read_frame()
            if item is None:
                if self.is_file:
                    logger.info("End of file reached.")
                    break
                null_streak += 1
                logger.warning("VideoCapture.read() returned False.")
                if null_streak >= 10:
                    logger.error("Source returned 10 consecutive empty reads – aborting.")
                    break
                continue
            null_streak = 0
            yield item
