from typing import Dict, List, Optional, Sequence

import numpy as np

from voteguard.face.types import EnrollmentOutcome, LivenessResult, QualityMetrics


def descriptor_to_list(descriptor) -> List[float]:
    """Plain JSON-compatible float list for a descriptor."""
    return [float(x) for x in np.asarray(descriptor, dtype=np.float64).reshape(-1)]


def descriptors_to_lists(descriptors: Sequence) -> List[List[float]]:
    return [descriptor_to_list(d) for d in descriptors]


def descriptor_from_list(values) -> Optional[np.ndarray]:
    """Inverse of ``descriptor_to_list``; None for anything that is not a flat numeric list."""
    if not isinstance(values, (list, tuple)) or not values:
        return None
    try:
        arr = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if arr.ndim != 1:
        return None
    return arr


def serialize_quality(q: Optional[QualityMetrics]) -> Optional[Dict]:
    if q is None:
        return None
    return {
        "brightness": round(float(q.brightness), 3),
        "sharpness": round(float(q.sharpness), 3),
        "size": int(q.size),
        "angle": round(float(q.angle), 3),
        "isGoodQuality": bool(q.is_good_quality),
        "issues": list(q.issues),
    }


def serialize_liveness(r: Optional[LivenessResult]) -> Optional[Dict]:
    if r is None:
        return None
    checks = r.checks
    return {
        "isLive": bool(r.is_live),
        "confidence": round(float(r.confidence), 4),
        "motionPercentage": None if r.motion_percentage is None else round(float(r.motion_percentage), 4),
        "checks": {
            "eyeMovement": checks.eye_movement,
            "headMovement": checks.head_movement,
            "blinkDetected": checks.blink_detected,
            "depthVariation": checks.depth_variation,
        },
    }


def serialize_outcome(outcome: EnrollmentOutcome, include_descriptors: bool = True) -> Dict:
    """Serialize an EnrollmentOutcome for hand-off to the enrollment backend."""
    out = {
        "success": bool(outcome.success),
        "sampleCount": len(outcome.descriptors),
        "qualityScores": [float(s) for s in outcome.quality_scores],
        "livenessPassed": bool(outcome.liveness_passed),
        "kind": outcome.kind.value,
        "error": outcome.error,
    }
    if include_descriptors:
        out["descriptors"] = descriptors_to_lists(outcome.descriptors)
        out["averageDescriptor"] = (
            descriptor_to_list(outcome.average_descriptor) if outcome.average_descriptor is not None else None
        )
    return out
