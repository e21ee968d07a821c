from __future__ import annotations

import asyncio
import math
from typing import List, Optional

import numpy as np

from voteguard.config import EnrollmentConfig, TimeoutConfig
from voteguard.face.audit import AuditSink, dispatch
from voteguard.face.errors import OperationTimeout
from voteguard.face.liveness import LivenessDetector
from voteguard.face.provider import ModelProvider
from voteguard.face.quality import QualityAnalyzer
from voteguard.face.types import EnrollmentOutcome, LivenessState, ResultKind, VerificationAttempt
from voteguard.utils.aio import run_with_timeout
from voteguard.utils.log import get_logger
from voteguard.utils.math import as_descriptor, mean_descriptor

logger = get_logger(__name__)

INSUFFICIENT_SAMPLES_ERROR = (
    "Not enough high-quality face samples captured. Please ensure good lighting and face positioning."
)


def sample_quality_score(detection_confidence: float, issue_count: int) -> float:
    """detection confidence decayed by 10% per residual quality issue."""
    return float(detection_confidence) * (1.0 - float(issue_count) / 10.0)


class EnrollmentEngine:
    """Multi-sample enrollment with quality gating.

    Captures up to ``sample_count`` samples with a pause between them (natural
    micro-movement), keeps only good-quality descriptors and fails unless at
    least half of the attempts produced one. Persistence is the caller's job.
    """

    def __init__(
        self,
        provider: ModelProvider,
        analyzer: Optional[QualityAnalyzer] = None,
        config: Optional[EnrollmentConfig] = None,
        timeouts: Optional[TimeoutConfig] = None,
        liveness: Optional[LivenessDetector] = None,
        audit: Optional[AuditSink] = None,
        descriptor_dim: Optional[int] = None,
    ):
        self.provider = provider
        self.analyzer = analyzer or QualityAnalyzer()
        self.config = config or EnrollmentConfig()
        self.timeouts = timeouts or TimeoutConfig()
        self.liveness = liveness
        self.audit = audit
        self.descriptor_dim = descriptor_dim

    def _failure(self, error: str, kind: ResultKind, liveness_passed: bool = False) -> EnrollmentOutcome:
        return EnrollmentOutcome(
            success=False,
            descriptors=[],
            quality_scores=[],
            average_descriptor=None,
            error=error,
            liveness_passed=liveness_passed,
            kind=kind,
        )

    def _audit(self, user_id: Optional[str], outcome: EnrollmentOutcome) -> None:
        if not user_id:
            return
        score = float(np.mean(outcome.quality_scores)) if outcome.quality_scores else 0.0
        dispatch(
            self.audit,
            VerificationAttempt(
                user_id=str(user_id),
                success=bool(outcome.success),
                confidence_score=score,
                liveness_passed=bool(outcome.liveness_passed),
                kind=outcome.kind,
                reason=None if outcome.success else outcome.kind.value,
                event_type="face_enrollment",
            ),
        )

    async def enroll(
        self,
        frame_source,
        sample_count: Optional[int] = None,
        inter_sample_delay_ms: Optional[int] = None,
        *,
        user_id: Optional[str] = None,
    ) -> EnrollmentOutcome:
        """Capture and aggregate samples from ``frame_source`` (anything with ``async read()``)."""
        n = int(sample_count if sample_count is not None else self.config.sample_count)
        delay_ms = int(inter_sample_delay_ms if inter_sample_delay_ms is not None else self.config.inter_sample_delay_ms)
        if n < 1:
            outcome = self._failure("sample_count must be at least 1", ResultKind.QUALITY_INSUFFICIENT)
            self._audit(user_id, outcome)
            return outcome

        descriptors: List[np.ndarray] = []
        scores: List[float] = []
        live_flags: List[bool] = []
        state = LivenessState()
        expected_dim = self.descriptor_dim
        faces_seen = 0
        timeouts = 0

        try:
            for i in range(n):
                if i > 0 and delay_ms > 0:
                    await asyncio.sleep(delay_ms / 1000.0)

                frame = await frame_source.read()
                try:
                    detection = await run_with_timeout(
                        self.provider.detect_with_descriptor(frame),
                        self.timeouts.descriptor_s,
                        "descriptor extraction",
                    )
                except OperationTimeout as e:
                    # Skipped; the sample slot is still consumed.
                    timeouts += 1
                    logger.warning(f"Enrollment sample {i + 1}/{n} skipped: {e}")
                    continue

                if detection is None:
                    logger.debug(f"Enrollment sample {i + 1}/{n}: no face")
                    continue
                faces_seen += 1
                if detection.confidence < self.config.min_detection_confidence:
                    logger.debug(f"Enrollment sample {i + 1}/{n}: low detection confidence {detection.confidence:.3f}")
                    continue

                quality = self.analyzer.analyze(frame, detection.box, detection.landmarks)
                if self.liveness is not None:
                    live = self.liveness.check(None, frame, detection.landmarks, quality, state=state)
                    live_flags.append(live.is_live)

                if not quality.is_good_quality:
                    logger.info(f"Enrollment sample {i + 1}/{n} rejected: {', '.join(quality.issues)}")
                    continue

                vec = as_descriptor(detection.descriptor)
                if vec is None:
                    continue
                if expected_dim is None:
                    expected_dim = int(vec.shape[0])
                if int(vec.shape[0]) != expected_dim:
                    logger.warning(
                        f"Enrollment sample {i + 1}/{n}: descriptor length {vec.shape[0]} != {expected_dim}, skipped"
                    )
                    continue

                descriptors.append(vec)
                scores.append(sample_quality_score(detection.confidence, len(quality.issues)))
        except Exception as e:
            # Camera or model failure mid-run.
            logger.error(f"Enrollment aborted: {e}")
            outcome = self._failure(str(e) or "Enrollment failed", ResultKind.RESOURCE_ACQUISITION)
            self._audit(user_id, outcome)
            return outcome

        liveness_passed = any(live_flags)
        required = int(math.ceil(n / 2.0))
        if len(descriptors) < required:
            if timeouts == n:
                kind = ResultKind.OPERATION_TIMEOUT
            elif faces_seen == 0:
                kind = ResultKind.NO_FACE_DETECTED
            else:
                kind = ResultKind.QUALITY_INSUFFICIENT
            logger.warning(f"Enrollment failed: {len(descriptors)}/{n} good samples, {required} required")
            outcome = self._failure(INSUFFICIENT_SAMPLES_ERROR, kind, liveness_passed)
            self._audit(user_id, outcome)
            return outcome

        outcome = EnrollmentOutcome(
            success=True,
            descriptors=descriptors,
            quality_scores=scores,
            average_descriptor=mean_descriptor(descriptors),
            error=None,
            liveness_passed=liveness_passed,
            kind=ResultKind.SUCCESS,
        )
        logger.info(f"Enrollment captured {len(descriptors)}/{n} good samples")
        self._audit(user_id, outcome)
        return outcome
