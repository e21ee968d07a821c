"""Heuristic motion/geometry liveness.

Best-effort anti-spoofing only (static photos, frozen replays); it is not a
security guarantee.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from voteguard.config import LivenessConfig, QualityConfig
from voteguard.face.quality import QualityAnalyzer
from voteguard.face.types import (
    Landmarks,
    LivenessChecks,
    LivenessResult,
    LivenessState,
    QualityMetrics,
)
from voteguard.utils.log import get_logger

logger = get_logger(__name__)


def motion_percentage(
    previous: np.ndarray,
    current: np.ndarray,
    stride: int = 10,
    diff_threshold: int = 30,
) -> Optional[float]:
    """Percent of sampled pixels whose |dR|+|dG|+|dB| exceeds ``diff_threshold``.

    Samples every ``stride``-th pixel in row-major order. Returns None when the
    frames do not share a shape.
    """
    prev = np.asarray(previous)
    cur = np.asarray(current)
    if prev.shape != cur.shape or cur.size == 0:
        return None
    channels = cur.shape[2] if cur.ndim == 3 else 1
    step = max(1, int(stride))
    p = prev.reshape(-1, channels)[::step, :3].astype(np.int32)
    c = cur.reshape(-1, channels)[::step, :3].astype(np.int32)
    diff = np.abs(c - p).sum(axis=1)
    changed = int(np.count_nonzero(diff > int(diff_threshold)))
    return float(changed) / float(diff.shape[0]) * 100.0


def eye_openness(landmarks: Landmarks) -> Optional[float]:
    """Mean vertical eyelid distance across both eyes, in pixels."""
    heights = []
    for eye in (landmarks.left_eye, landmarks.right_eye):
        pts = np.asarray(eye, dtype=np.float64).reshape(-1, 2)
        if pts.shape[0] == 6:
            # 68-point eye: points 1 and 5 are upper and lower lid.
            heights.append(abs(float(pts[1, 1] - pts[5, 1])))
        elif pts.shape[0] >= 2:
            heights.append(float(np.ptp(pts[:, 1])))
    if not heights:
        return None
    return float(np.mean(heights))


class LivenessDetector:
    def __init__(self, config: Optional[LivenessConfig] = None, quality: Optional[QualityConfig] = None):
        self.config = config or LivenessConfig()
        self.quality_config = quality or QualityConfig()

    def motion_in_band(self, pct: Optional[float]) -> bool:
        if pct is None:
            return False
        return self.config.min_motion_percent < pct < self.config.max_motion_percent

    def check(
        self,
        previous: Optional[np.ndarray],
        current: np.ndarray,
        landmarks: Optional[Landmarks] = None,
        quality: Optional[QualityMetrics] = None,
        state: Optional[LivenessState] = None,
    ) -> LivenessResult:
        """Score one frame.

        When ``state`` is given it supplies the previous frame (``previous`` is
        then ignored), collects the pose angle history and is updated with
        ``current``.
        """
        cfg = self.config
        checks = LivenessChecks()
        pct: Optional[float] = None

        if state is not None:
            previous = state.previous_frame

        # The first frame of a session has nothing to diff against.
        if previous is None:
            checks.eye_movement = True
        else:
            pct = motion_percentage(previous, current, cfg.pixel_stride, cfg.pixel_diff_threshold)
            checks.eye_movement = self.motion_in_band(pct)

        if landmarks is not None:
            openness = eye_openness(landmarks)
            if openness is not None:
                checks.blink_detected = openness > cfg.eye_openness_min

            angle = QualityAnalyzer.face_angle(landmarks)
            if state is not None:
                state.angles.append(angle)
                history = state.angles
            else:
                history = [angle]
            if len(history) >= 2:
                movement = float(max(history) - min(history))
            else:
                movement = abs(angle)
            checks.head_movement = cfg.min_head_movement < movement < cfg.max_head_movement

        if quality is not None:
            checks.depth_variation = quality.size > self.quality_config.min_face_size * cfg.depth_size_factor

        # Checks that could not run count as not passed.
        confidence = float(checks.passed()) / float(LivenessChecks.TOTAL)
        is_live = confidence >= cfg.min_confidence and quality is not None and quality.is_good_quality

        result = LivenessResult(is_live=is_live, confidence=confidence, checks=checks, motion_percentage=pct)
        if state is not None:
            state.previous_frame = np.array(current, copy=True)
            state.last_result = result
        return result
