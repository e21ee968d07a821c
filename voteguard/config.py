from __future__ import annotations

from dataclasses import dataclass, field, replace


@dataclass(frozen=True)
class ThresholdRegime:
    """Named pair of bounds a match must satisfy to be authorized."""

    name: str
    # Best Euclidean distance must not exceed this.
    max_distance: float
    # confidence = max(0, 1 - distance) must reach this.
    min_confidence: float

    @classmethod
    def from_distance(cls, threshold: float, name: str = "custom") -> "ThresholdRegime":
        t = float(threshold)
        return cls(name=name, max_distance=t, min_confidence=max(0.0, 1.0 - t))

    def relaxed(self, max_distance: float) -> "ThresholdRegime":
        return replace(
            self,
            name=f"{self.name}+relaxed",
            max_distance=float(max_distance),
            min_confidence=min(self.min_confidence, max(0.0, 1.0 - float(max_distance))),
        )


# First-class verification.
STRICT_REGIME = ThresholdRegime(name="strict", max_distance=0.35, min_confidence=0.65)
# Retry flows.
LENIENT_REGIME = ThresholdRegime(name="lenient", max_distance=0.5, min_confidence=0.4)


@dataclass
class QualityConfig:
    min_brightness: float = 50.0
    max_brightness: float = 200.0
    # Mean squared Laplacian response over the face crop.
    min_sharpness: float = 0.3
    # min(width, height) of the face box, in source-frame pixels.
    min_face_size: int = 100
    max_face_size: int = 800
    max_tilt_degrees: float = 15.0


@dataclass
class LivenessConfig:
    # Compare every Nth pixel between frames.
    pixel_stride: int = 10
    # Sum of |dR|+|dG|+|dB| above this marks a pixel as changed.
    pixel_diff_threshold: int = 30
    # Percent of sampled pixels changed; outside (min, max) is a photo or noise.
    min_motion_percent: float = 0.5
    max_motion_percent: float = 15.0
    # Vertical eyelid distance in pixels.
    eye_openness_min: float = 2.0
    min_head_movement: float = 2.0
    max_head_movement: float = 20.0
    # Face must exceed min_face_size * factor.
    depth_size_factor: float = 1.2
    min_confidence: float = 0.5


@dataclass
class PermissiveTestingConfig:
    """Testing-only relaxations. Never enable in production.

    Relaxing the distance bound on repeated attempts, and approving on bare
    detection, both weaken identity assurance.
    """

    enabled: bool = False
    relax_step: float = 0.05
    distance_ceiling: float = 0.6
    auto_approve_on_detection: bool = False
    auto_approve_min_detection: float = 0.3


@dataclass
class VerificationConfig:
    initial_regime: ThresholdRegime = STRICT_REGIME
    retry_regime: ThresholdRegime = LENIENT_REGIME
    permissive: PermissiveTestingConfig = field(default_factory=PermissiveTestingConfig)


@dataclass
class EnrollmentConfig:
    sample_count: int = 5
    inter_sample_delay_ms: int = 500
    # Stored with each enrollment record.
    confidence_threshold: float = 0.6
    min_detection_confidence: float = 0.7


@dataclass
class TimeoutConfig:
    # Single descriptor extraction.
    descriptor_s: float = 5.0
    # Whole capture -> decision flow.
    capture_flow_s: float = 12.0
    # Camera/model acquisition.
    resource_s: float = 10.0
    store_s: float = 5.0


@dataclass
class ControllerConfig:
    max_attempts: int = 2
    recognition_interval_initial_s: float = 3.0
    recognition_interval_s: float = 2.0
    # Progress reaches 100% after this long in detection.
    scan_duration_s: float = 10.0
    min_detection_confidence: float = 0.3
    auto_recognize: bool = True
    auto_retry: bool = True
    require_liveness: bool = True


@dataclass
class FaceAuthConfig:
    # Used when the model provider does not report its own descriptor length.
    descriptor_dim: int = 128
    quality: QualityConfig = field(default_factory=QualityConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    enrollment: EnrollmentConfig = field(default_factory=EnrollmentConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
