from __future__ import annotations

import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np


class ResultKind(Enum):
    """Outcome kinds returned (never raised) by the public entry points."""

    SUCCESS = "success"
    NO_FACE_DETECTED = "no_face_detected"
    QUALITY_INSUFFICIENT = "quality_insufficient"
    NO_ENROLLMENT_FOUND = "no_enrollment_found"
    MATCH_FAILED = "match_failed"
    OPERATION_TIMEOUT = "operation_timeout"
    RESOURCE_ACQUISITION = "resource_acquisition"
    # Controller only.
    BUSY = "busy"
    CANCELLED = "cancelled"
    FALLBACK = "fallback"

    @property
    def counts_as_failure(self) -> bool:
        """Whether this outcome consumes one of the controller's attempts."""
        return self in (ResultKind.MATCH_FAILED, ResultKind.OPERATION_TIMEOUT)


@dataclass
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def size(self) -> int:
        return int(min(self.width, self.height))

    @classmethod
    def from_xyxy(cls, bbox) -> "BoundingBox":
        x1, y1, x2, y2 = [float(v) for v in bbox[:4]]
        return cls(x=x1, y=y1, width=max(0.0, x2 - x1), height=max(0.0, y2 - y1))

    def clip(self, frame_shape: Tuple[int, ...]) -> Tuple[int, int, int, int]:
        """Integer (x1, y1, x2, y2) clipped to the frame; may be empty."""
        h, w = int(frame_shape[0]), int(frame_shape[1])
        x1 = int(max(0, min(w, round(self.x))))
        y1 = int(max(0, min(h, round(self.y))))
        x2 = int(max(x1, min(w, round(self.x + self.width))))
        y2 = int(max(y1, min(h, round(self.y + self.height))))
        return x1, y1, x2, y2


@dataclass
class Landmarks:
    """Eye landmark clusters in source-frame pixel coordinates.

    ``left_eye``/``right_eye`` are (N, 2) arrays. The 68-point layout gives
    six points per eye (corner, two upper lid, corner, two lower lid), the
    5-point layout a single center point.
    """

    left_eye: np.ndarray
    right_eye: np.ndarray
    points: Optional[np.ndarray] = None

    @classmethod
    def from_68(cls, points) -> "Landmarks":
        pts = np.asarray(points, dtype=np.float64)[:, :2]
        return cls(left_eye=pts[36:42], right_eye=pts[42:48], points=pts)

    @classmethod
    def from_5(cls, kps) -> "Landmarks":
        pts = np.asarray(kps, dtype=np.float64)[:, :2]
        return cls(left_eye=pts[0:1], right_eye=pts[1:2], points=pts)


@dataclass
class DetectionResult:
    box: BoundingBox
    confidence: float
    descriptor: Optional[np.ndarray] = None
    landmarks: Optional[Landmarks] = None


@dataclass
class QualityMetrics:
    brightness: float
    sharpness: float
    size: int
    angle: float
    is_good_quality: bool
    issues: List[str] = field(default_factory=list)


@dataclass
class LivenessChecks:
    # None means the check could not be evaluated for this frame.
    eye_movement: Optional[bool] = None
    head_movement: Optional[bool] = None
    blink_detected: Optional[bool] = None
    depth_variation: Optional[bool] = None

    TOTAL = 4

    def passed(self) -> int:
        values = [self.eye_movement, self.head_movement, self.blink_detected, self.depth_variation]
        return sum(1 for v in values if v)


@dataclass
class LivenessResult:
    is_live: bool = False
    confidence: float = 0.0
    checks: LivenessChecks = field(default_factory=LivenessChecks)
    motion_percentage: Optional[float] = None


@dataclass
class LivenessState:
    """Per-session liveness memory, owned by one controller or engine run."""

    previous_frame: Optional[np.ndarray] = None
    angles: List[float] = field(default_factory=list)
    last_result: Optional[LivenessResult] = None

    def reset(self) -> None:
        self.previous_frame = None
        self.angles = []
        self.last_result = None


@dataclass
class EnrollmentOutcome:
    success: bool
    descriptors: List[np.ndarray] = field(default_factory=list)
    quality_scores: List[float] = field(default_factory=list)
    average_descriptor: Optional[np.ndarray] = None
    error: Optional[str] = None
    liveness_passed: bool = False
    kind: ResultKind = ResultKind.SUCCESS


@dataclass
class VerificationResult:
    kind: ResultKind
    is_authorized: bool = False
    confidence: float = 0.0
    best_distance: float = float("inf")
    regime: str = ""
    error: Optional[str] = None


@dataclass
class VerificationAttempt:
    """Audit record for one verification (or enrollment) decision."""

    user_id: str
    success: bool
    confidence_score: float
    liveness_passed: bool
    timestamp: float = field(default_factory=time.time)
    kind: ResultKind = ResultKind.SUCCESS
    reason: Optional[str] = None
    event_type: str = "face_verification"

    def to_event(self) -> Dict:
        event = {
            "userId": str(self.user_id),
            "success": bool(self.success),
            "confidenceScore": float(self.confidence_score),
            "livenessPassed": bool(self.liveness_passed),
            "timestamp": float(self.timestamp),
            "eventType": self.event_type,
            "kind": self.kind.value,
        }
        if self.reason:
            event["reason"] = str(self.reason)
        return event
