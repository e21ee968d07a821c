"""Camera frame sources.

The camera read is the pacing primitive of the capture loop: ``read()`` blocks
(off the event loop) until the device delivers the next frame.
"""

from __future__ import annotations

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

import cv2
import numpy as np

from voteguard.face.errors import ResourceAcquisitionError
from voteguard.utils.log import get_logger

logger = get_logger(__name__)


class FrameSource(ABC):
    @abstractmethod
    def open(self) -> None:
        pass

    @abstractmethod
    async def read(self) -> np.ndarray:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass


class OpenCVCamera(FrameSource):
    """Local webcam through ``cv2.VideoCapture``.

    Example:
        >>> cam = OpenCVCamera(0)
        >>> cam.open()
        >>> frame = await cam.read()
        >>> cam.close()
    """

    def __init__(
        self,
        index: int = 0,
        width: int = 640,
        height: int = 480,
        warmup_attempts: int = 20,
        warmup_interval_s: float = 0.1,
    ):
        self.index = index
        self.width = int(width)
        self.height = int(height)
        self.warmup_attempts = int(warmup_attempts)
        self.warmup_interval_s = float(warmup_interval_s)
        self._cap: Optional[cv2.VideoCapture] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def open(self) -> None:
        """Open the device and wait for its first non-empty frame."""
        if self._cap is not None:
            return
        cap = cv2.VideoCapture(self.index)
        if not cap.isOpened():
            cap.release()
            raise ResourceAcquisitionError(f"Cannot open camera {self.index}")

        # Ideal resolution only; the device may deliver something else.
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)

        for _ in range(self.warmup_attempts):
            ok, frame = cap.read()
            if ok and frame is not None and frame.size > 0:
                h, w = frame.shape[:2]
                if (w, h) != (self.width, self.height):
                    logger.info(f"Camera {self.index} delivers {w}x{h} (requested {self.width}x{self.height})")
                self._cap = cap
                return
            time.sleep(self.warmup_interval_s)

        cap.release()
        raise ResourceAcquisitionError(f"Camera {self.index} produced no frames")

    def _read_frame(self) -> np.ndarray:
        with self._lock:
            cap = self._cap
            if cap is None:
                raise ResourceAcquisitionError("Camera is not open")
            ok, frame = cap.read()
        if not ok or frame is None:
            raise ResourceAcquisitionError(f"Failed to read frame from camera {self.index}")
        return frame

    async def read(self) -> np.ndarray:
        return await asyncio.to_thread(self._read_frame)

    def close(self) -> None:
        with self._lock:
            cap, self._cap = self._cap, None
        if cap is not None:
            cap.release()
            logger.debug(f"Camera {self.index} released")
