"""Face quality gating.

All four checks must pass for a sample to be usable: a single defect blocks
capture, so enrollment prefers false rejections over false accepts.
"""

from __future__ import annotations

import math
from typing import List, Optional

import cv2
import numpy as np

from voteguard.config import QualityConfig
from voteguard.face.types import BoundingBox, Landmarks, QualityMetrics

# Discrete Laplacian [0,-1,0,-1,4,-1,0,-1,0].
_LAPLACIAN = np.array([[0, -1, 0], [-1, 4, -1], [0, -1, 0]], dtype=np.float64)


def to_gray(region: np.ndarray) -> np.ndarray:
    """Per-pixel mean of the three color channels (channel order does not matter)."""
    arr = np.asarray(region)
    if arr.ndim == 2:
        return arr.astype(np.float64)
    return arr[..., :3].astype(np.float64).mean(axis=2)


class QualityAnalyzer:
    def __init__(self, config: Optional[QualityConfig] = None):
        self.config = config or QualityConfig()

    @staticmethod
    def brightness(region: np.ndarray) -> float:
        gray = to_gray(region)
        if gray.size == 0:
            return 0.0
        return float(gray.mean())

    @staticmethod
    def sharpness(region: np.ndarray) -> float:
        """Mean squared Laplacian response over interior pixels."""
        gray = to_gray(region)
        if gray.ndim != 2 or gray.shape[0] < 3 or gray.shape[1] < 3:
            return 0.0
        response = cv2.filter2D(gray, cv2.CV_64F, _LAPLACIAN, borderType=cv2.BORDER_REPLICATE)
        interior = response[1:-1, 1:-1]
        return float(np.sum(interior * interior) / interior.size)

    @staticmethod
    def face_angle(landmarks: Optional[Landmarks]) -> float:
        """Roll angle in degrees from the two eye-cluster centroids."""
        if landmarks is None:
            return 0.0
        left = np.asarray(landmarks.left_eye, dtype=np.float64).reshape(-1, 2)
        right = np.asarray(landmarks.right_eye, dtype=np.float64).reshape(-1, 2)
        if left.size == 0 or right.size == 0:
            return 0.0
        lc = left.mean(axis=0)
        rc = right.mean(axis=0)
        return float(math.degrees(math.atan2(rc[1] - lc[1], rc[0] - lc[0])))

    def evaluate(self, brightness: float, sharpness: float, size: int, angle: float) -> QualityMetrics:
        cfg = self.config
        issues: List[str] = []
        if brightness < cfg.min_brightness:
            issues.append("Too dark")
        if brightness > cfg.max_brightness:
            issues.append("Too bright")
        if sharpness < cfg.min_sharpness:
            issues.append("Blurry image")
        if size < cfg.min_face_size:
            issues.append("Face too small")
        if size > cfg.max_face_size:
            issues.append("Face too large")
        if abs(angle) > cfg.max_tilt_degrees:
            issues.append("Head tilted too much")

        return QualityMetrics(
            brightness=float(brightness),
            sharpness=float(sharpness),
            size=int(size),
            angle=float(angle),
            is_good_quality=len(issues) == 0,
            issues=issues,
        )

    def analyze_region(self, region: np.ndarray, landmarks: Optional[Landmarks], size: int) -> QualityMetrics:
        return self.evaluate(
            brightness=self.brightness(region),
            sharpness=self.sharpness(region),
            size=int(size),
            angle=self.face_angle(landmarks),
        )

    def analyze(self, frame: np.ndarray, box: BoundingBox, landmarks: Optional[Landmarks] = None) -> QualityMetrics:
        """Crop ``box`` out of ``frame`` and score it. Size uses the unclipped box."""
        x1, y1, x2, y2 = box.clip(frame.shape)
        region = frame[y1:y2, x1:x2]
        return self.analyze_region(region, landmarks, box.size)
