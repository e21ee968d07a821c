from __future__ import annotations

import math
from typing import Optional, Sequence, Union

import numpy as np

from voteguard.config import ThresholdRegime, VerificationConfig
from voteguard.face.audit import AuditSink, dispatch
from voteguard.face.errors import ResourceAcquisitionError
from voteguard.face.gallery import EnrollmentStore
from voteguard.face.matcher import DescriptorMatcher
from voteguard.face.types import ResultKind, VerificationAttempt, VerificationResult
from voteguard.utils.log import get_logger

logger = get_logger(__name__)

# Absorbs float error so exact boundary values (0.35 / 0.65) pass.
_EPS = 1e-9


class VerificationEngine:
    """Nearest-neighbour descriptor verification with an audit trail.

    Every call emits exactly one audit record, whatever the outcome.
    """

    def __init__(
        self,
        config: Optional[VerificationConfig] = None,
        audit: Optional[AuditSink] = None,
        matcher: Optional[DescriptorMatcher] = None,
    ):
        self.config = config or VerificationConfig()
        self.audit = audit
        self.matcher = matcher or DescriptorMatcher()

    def regime_for_attempt(self, attempt: int) -> ThresholdRegime:
        """Strict on the first attempt, lenient on retries.

        In permissive testing mode the retry bound loosens by ``relax_step`` per
        additional failure, never beyond ``distance_ceiling``.
        """
        if attempt <= 0:
            return self.config.initial_regime

        regime = self.config.retry_regime
        perm = self.config.permissive
        if perm.enabled and attempt > 1:
            target = min(
                float(perm.distance_ceiling),
                regime.max_distance + float(perm.relax_step) * (attempt - 1),
            )
            if target > regime.max_distance:
                logger.warning(
                    f"PERMISSIVE TESTING MODE: relaxing distance bound "
                    f"{regime.max_distance:.3f} -> {target:.3f} on attempt {attempt + 1}"
                )
                regime = regime.relaxed(target)
        return regime

    def _resolve_regime(self, threshold: Union[ThresholdRegime, float, None], attempt: int) -> ThresholdRegime:
        if threshold is None:
            return self.regime_for_attempt(attempt)
        if isinstance(threshold, ThresholdRegime):
            return threshold
        return ThresholdRegime.from_distance(float(threshold))

    @staticmethod
    def decide(best_distance: float, regime: ThresholdRegime):
        """Return (is_authorized, confidence) for a best distance under ``regime``."""
        if not math.isfinite(best_distance):
            return False, 0.0
        confidence = max(0.0, 1.0 - float(best_distance))
        ok = best_distance <= regime.max_distance + _EPS and confidence >= regime.min_confidence - _EPS
        return bool(ok), float(confidence)

    def _auto_approve(self, detection_confidence: Optional[float]) -> bool:
        perm = self.config.permissive
        if not (perm.enabled and perm.auto_approve_on_detection) or detection_confidence is None:
            return False
        return float(detection_confidence) > float(perm.auto_approve_min_detection)

    def record(
        self,
        user_id: str,
        result: VerificationResult,
        liveness_passed: bool,
    ) -> None:
        """Emit the audit record for ``result``."""
        success = result.kind is ResultKind.SUCCESS and result.is_authorized
        reason = None
        if not success:
            if result.kind is ResultKind.MATCH_FAILED:
                reason = "low_confidence" if liveness_passed else "liveness_failed"
            else:
                reason = result.kind.value
        dispatch(
            self.audit,
            VerificationAttempt(
                user_id=str(user_id),
                success=success,
                confidence_score=float(result.confidence),
                liveness_passed=bool(liveness_passed),
                kind=result.kind,
                reason=reason,
            ),
        )

    def verify(
        self,
        live,
        enrolled: Optional[Sequence],
        threshold: Union[ThresholdRegime, float, None] = None,
        *,
        user_id: str = "",
        liveness_passed: bool = False,
        attempt: int = 0,
        detection_confidence: Optional[float] = None,
    ) -> VerificationResult:
        regime = self._resolve_regime(threshold, attempt)
        result = VerificationResult(kind=ResultKind.MATCH_FAILED, regime=regime.name)
        try:
            if enrolled is None or len(enrolled) == 0:
                result = VerificationResult(
                    kind=ResultKind.NO_ENROLLMENT_FOUND,
                    regime=regime.name,
                    error="No enrolled face data found",
                )
                return result

            best_distance, _ = self.matcher.best_match(live, enrolled)
            authorized, confidence = self.decide(best_distance, regime)
            if not authorized and self._auto_approve(detection_confidence):
                logger.warning(
                    f"PERMISSIVE TESTING MODE: auto-approving user {user_id or '-'} on face detection "
                    f"(detection={detection_confidence:.3f}, distance={best_distance:.4f})"
                )
                authorized = True
            result = VerificationResult(
                kind=ResultKind.SUCCESS if authorized else ResultKind.MATCH_FAILED,
                is_authorized=authorized,
                confidence=confidence,
                best_distance=float(best_distance),
                regime=regime.name,
            )
            logger.info(
                f"Face verification user={user_id or '-'} regime={regime.name} "
                f"distance={best_distance:.4f} confidence={confidence:.4f} authorized={authorized}"
            )
            return result
        except Exception as e:
            logger.error(f"Face verification error for user {user_id or '-'}: {e}")
            result = VerificationResult(kind=ResultKind.MATCH_FAILED, regime=regime.name, error=str(e))
            return result
        finally:
            self.record(user_id, result, liveness_passed)

    def verify_user(
        self,
        user_id: str,
        live,
        store: EnrollmentStore,
        threshold: Union[ThresholdRegime, float, None] = None,
        *,
        liveness_passed: bool = False,
        attempt: int = 0,
        detection_confidence: Optional[float] = None,
    ) -> VerificationResult:
        """Load the user's enrolled descriptors from ``store`` and verify against them."""
        try:
            enrolled = store.load(user_id)
        except ResourceAcquisitionError as e:
            logger.error(f"Enrollment store unavailable for user {user_id}: {e}")
            result = VerificationResult(
                kind=ResultKind.RESOURCE_ACQUISITION,
                regime=self._resolve_regime(threshold, attempt).name,
                error=str(e),
            )
            self.record(user_id, result, liveness_passed)
            return result
        enrolled = [np.asarray(d, dtype=np.float64) for d in enrolled]
        return self.verify(
            live,
            enrolled,
            threshold,
            user_id=user_id,
            liveness_passed=liveness_passed,
            attempt=attempt,
            detection_confidence=detection_confidence,
        )
