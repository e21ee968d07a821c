"""Model provider interface.

The quality, liveness, enrollment and verification logic only talks to these
two capabilities, so a local ONNX detector, a WASM build or a remote inference
service can be swapped in without touching them:

- ``FaceDetector``: box + confidence (+ landmarks when cheap), used every frame.
- ``ModelProvider``: adds landmark + descriptor extraction, used on capture.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from voteguard.face.types import DetectionResult


class FaceDetector(ABC):
    """Detection-only capability."""

    # Length of produced descriptors, when known.
    descriptor_dim: Optional[int] = None

    async def load(self) -> None:
        """Acquire model resources. Raise ``ResourceAcquisitionError`` on failure."""
        return None

    @abstractmethod
    async def detect(self, frame: np.ndarray) -> Optional[DetectionResult]:
        """Detect the most confident face in a BGR frame.

        Returns None (never raises) when no face is found.
        """
        pass

    def close(self) -> None:
        return None


class ModelProvider(FaceDetector):
    """Detection + landmarks + descriptor capability."""

    @abstractmethod
    async def detect_with_descriptor(self, frame: np.ndarray) -> Optional[DetectionResult]:
        """Like ``detect`` but the result carries ``descriptor`` and ``landmarks``."""
        pass
