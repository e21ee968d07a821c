"""Capture/detection loop controller.

Owns one camera session: a per-frame detection loop that keeps UI state fresh,
at most one in-flight capture (enrollment or verification), the attempt
counter and the hand-off to fallback authentication.

State machine::

    IDLE -> INITIALIZING -> DETECTING <-> QUALITY_GATED -> CAPTURING -> PROCESSING
         -> SUCCEEDED | FAILED (-> INITIALIZING on retry) | FALLBACK
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

import numpy as np

from voteguard.config import FaceAuthConfig
from voteguard.face.audit import AuditSink
from voteguard.face.enrollment import EnrollmentEngine
from voteguard.face.errors import FaceAuthError, OperationTimeout, ResourceAcquisitionError
from voteguard.face.fallback import FallbackAuthenticator
from voteguard.face.gallery import EnrollmentStore
from voteguard.face.liveness import LivenessDetector
from voteguard.face.provider import ModelProvider
from voteguard.face.quality import QualityAnalyzer
from voteguard.face.types import (
    DetectionResult,
    EnrollmentOutcome,
    LivenessResult,
    LivenessState,
    QualityMetrics,
    ResultKind,
    VerificationResult,
)
from voteguard.face.verification import VerificationEngine
from voteguard.utils.aio import run_with_timeout
from voteguard.utils.log import get_logger
from voteguard.utils.serializer import serialize_liveness, serialize_outcome, serialize_quality
from voteguard.video.camera import FrameSource

logger = get_logger(__name__)

FALLBACK_NOTICE = "Multiple verification failures. Switching to alternate verification..."


class ControllerState(Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    DETECTING = "detecting"
    QUALITY_GATED = "quality_gated"
    CAPTURING = "capturing"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    FALLBACK = "fallback"


class ControllerMode(Enum):
    VERIFY = "verify"
    ENROLL = "enroll"


_SCANNING = (ControllerState.DETECTING, ControllerState.QUALITY_GATED)


@dataclass
class ControllerObservation:
    """UI-facing snapshot published on every frame and state change."""

    state: ControllerState
    face_detected: bool = False
    confidence: float = 0.0
    quality: Optional[QualityMetrics] = None
    liveness: Optional[LivenessResult] = None
    attempts: int = 0
    progress: float = 0.0
    message: str = ""

    @property
    def quality_issues(self):
        return list(self.quality.issues) if self.quality is not None else []

    @property
    def liveness_confidence(self) -> float:
        return float(self.liveness.confidence) if self.liveness is not None else 0.0

    def to_dict(self) -> Dict:
        return {
            "state": self.state.value,
            "faceDetected": bool(self.face_detected),
            "confidence": round(float(self.confidence), 4),
            "qualityIssues": self.quality_issues,
            "quality": serialize_quality(self.quality),
            "liveness": serialize_liveness(self.liveness),
            "attempts": int(self.attempts),
            "progress": round(float(self.progress), 4),
            "message": self.message,
        }


@dataclass
class CaptureResult:
    kind: ResultKind
    state: ControllerState = ControllerState.IDLE
    message: str = ""
    attempts: int = 0
    verification: Optional[VerificationResult] = None
    enrollment: Optional[EnrollmentOutcome] = None
    quality: Optional[QualityMetrics] = None
    liveness: Optional[LivenessResult] = None
    # Set only once fallback authentication ran.
    fallback_passed: Optional[bool] = None

    @property
    def success(self) -> bool:
        return self.kind is ResultKind.SUCCESS

    def to_dict(self) -> Dict:
        out = {
            "kind": self.kind.value,
            "state": self.state.value,
            "message": self.message,
            "attempts": int(self.attempts),
            "quality": serialize_quality(self.quality),
            "liveness": serialize_liveness(self.liveness),
            "fallbackPassed": self.fallback_passed,
        }
        if self.verification is not None:
            out["verification"] = {
                "isAuthorized": bool(self.verification.is_authorized),
                "confidence": float(self.verification.confidence),
                "regime": self.verification.regime,
            }
        if self.enrollment is not None:
            out["enrollment"] = serialize_outcome(self.enrollment, include_descriptors=False)
        return out


class _ControllerFrames:
    """Frame source view handed to the enrollment engine."""

    def __init__(self, controller: "CaptureController"):
        self._controller = controller

    async def read(self) -> np.ndarray:
        return await self._controller._next_frame()


class CaptureController:
    def __init__(
        self,
        mode,
        user_id: str,
        provider: ModelProvider,
        frame_source: FrameSource,
        *,
        store: EnrollmentStore,
        verifier: Optional[VerificationEngine] = None,
        enroller: Optional[EnrollmentEngine] = None,
        analyzer: Optional[QualityAnalyzer] = None,
        liveness: Optional[LivenessDetector] = None,
        fallback: Optional[FallbackAuthenticator] = None,
        audit: Optional[AuditSink] = None,
        config: Optional[FaceAuthConfig] = None,
        on_update: Optional[Callable[[ControllerObservation], None]] = None,
        enrolled_by: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if store is None:
            raise ValueError("an enrollment store is required")
        self.mode = ControllerMode(mode)
        self.user_id = str(user_id)
        self.provider = provider
        self.frame_source = frame_source
        self.store = store
        self.config = config or FaceAuthConfig()
        self.analyzer = analyzer or QualityAnalyzer(self.config.quality)
        self.liveness = liveness or LivenessDetector(self.config.liveness, self.config.quality)
        self.verifier = verifier or VerificationEngine(self.config.verification, audit=audit)
        self.enroller = enroller or EnrollmentEngine(
            provider,
            self.analyzer,
            self.config.enrollment,
            self.config.timeouts,
            liveness=self.liveness,
            audit=audit,
        )
        self._owns_verifier = verifier is None
        self._owns_enroller = enroller is None
        self.fallback = fallback
        self.on_update = on_update
        self.enrolled_by = enrolled_by
        self._clock = clock

        self.state = ControllerState.IDLE
        self.attempts = 0
        self.last_observation: Optional[ControllerObservation] = None
        self.last_result: Optional[CaptureResult] = None

        self._generation = 0
        self._background = True
        self._in_flight = False
        self._terminal = False
        self._fallback_invoked = False
        self._loop_task: Optional[asyncio.Task] = None
        self._flow_task: Optional[asyncio.Future] = None
        self._auto_task: Optional[asyncio.Task] = None

        self._liveness_state = LivenessState()
        self._latest_frame: Optional[np.ndarray] = None
        self._frame_event = asyncio.Event()
        self._latest_detection: Optional[DetectionResult] = None
        self._latest_quality: Optional[QualityMetrics] = None
        self._scan_started: Optional[float] = None
        self._last_recognition: Optional[float] = None

    # ------------------------------------------------------------------ state

    @property
    def busy(self) -> bool:
        return self._in_flight

    def progress(self) -> float:
        if self._scan_started is None:
            return 0.0
        duration = max(1e-6, float(self.config.controller.scan_duration_s))
        return float(min(1.0, max(0.0, (self._clock() - self._scan_started) / duration)))

    def _observe(self, message: str = "") -> ControllerObservation:
        det = self._latest_detection
        return ControllerObservation(
            state=self.state,
            face_detected=det is not None,
            confidence=float(det.confidence) if det is not None else 0.0,
            quality=self._latest_quality,
            liveness=self._liveness_state.last_result,
            attempts=self.attempts,
            progress=self.progress(),
            message=message,
        )

    def _publish(self, observation: ControllerObservation) -> None:
        self.last_observation = observation
        if self.on_update is None:
            return
        try:
            self.on_update(observation)
        except Exception as e:
            logger.warning(f"on_update callback failed: {e}")

    def _set_state(self, state: ControllerState, message: str = "") -> None:
        if state is not self.state:
            logger.debug(f"Controller[{self.mode.value}:{self.user_id}] {self.state.value} -> {state.value}")
        self.state = state
        self._publish(self._observe(message))

    def _reset_session(self) -> None:
        self._liveness_state.reset()
        self._latest_frame = None
        self._latest_detection = None
        self._latest_quality = None

    def _begin_scan(self) -> None:
        now = self._clock()
        self._scan_started = now
        self._last_recognition = now

    # -------------------------------------------------------------- lifecycle

    async def _acquire(self) -> None:
        if not self.frame_source.is_open:
            await asyncio.to_thread(self.frame_source.open)
        await self.provider.load()
        self._apply_descriptor_dim()

    def _apply_descriptor_dim(self) -> None:
        dim = self.provider.descriptor_dim or self.config.descriptor_dim
        if self._owns_verifier:
            self.verifier.matcher.expected_dim = dim
        if self._owns_enroller:
            self.enroller.descriptor_dim = dim

    async def start(self, background: bool = True) -> bool:
        """Acquire camera and model, then enter detection.

        Returns False (state ``FAILED``) when resources cannot be acquired.
        """
        if self.state not in (ControllerState.IDLE, ControllerState.FAILED):
            return True
        self._background = background
        self._set_state(ControllerState.INITIALIZING, "Starting camera...")
        try:
            await run_with_timeout(self._acquire(), self.config.timeouts.resource_s, "camera and model acquisition")
        except Exception as e:
            logger.error(f"Failed to acquire camera/model: {e}")
            self.frame_source.close()
            self.last_result = CaptureResult(
                kind=ResultKind.RESOURCE_ACQUISITION,
                state=ControllerState.FAILED,
                message=str(e),
                attempts=self.attempts,
            )
            self._set_state(ControllerState.FAILED, f"Camera or face model unavailable: {e}")
            return False

        self._begin_scan()
        self._set_state(ControllerState.DETECTING, "Position your face in the frame")
        if background:
            self._spawn_loop()
        return True

    def _spawn_loop(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._run_loop())

    async def retry(self) -> bool:
        """FAILED -> INITIALIZING -> DETECTING, re-acquiring the camera if it was released."""
        if self._terminal or self.state in (ControllerState.SUCCEEDED, ControllerState.FALLBACK):
            return False
        if self.state not in (ControllerState.FAILED, ControllerState.IDLE):
            return True
        self._reset_session()
        if self.state is ControllerState.IDLE or not self.frame_source.is_open:
            self.state = ControllerState.FAILED
            return await self.start(background=self._background)
        self._set_state(ControllerState.INITIALIZING, "Retrying...")
        self._begin_scan()
        self._set_state(ControllerState.DETECTING, "Position your face in the frame")
        if self._background:
            self._spawn_loop()
        return True

    def stop(self) -> None:
        """Cancel the loop and any in-flight capture, release the camera, return to IDLE."""
        self._generation += 1
        for task in (self._loop_task, self._flow_task, self._auto_task):
            if task is not None and not task.done():
                task.cancel()
        self._loop_task = None
        self._flow_task = None
        self._auto_task = None
        self._in_flight = False
        self.frame_source.close()
        self._reset_session()
        self.attempts = 0
        self._terminal = False
        self._fallback_invoked = False
        self._scan_started = None
        self._set_state(ControllerState.IDLE, "Stopped")

    # ------------------------------------------------------------ frame loop

    def _publish_frame(self, frame: np.ndarray) -> None:
        self._latest_frame = frame
        event, self._frame_event = self._frame_event, asyncio.Event()
        event.set()

    async def _next_frame(self) -> np.ndarray:
        if self._loop_task is not None and not self._loop_task.done():
            event = self._frame_event
            await event.wait()
            return self._latest_frame
        return await self.frame_source.read()

    def _is_finished(self) -> bool:
        if self.state in (ControllerState.SUCCEEDED, ControllerState.FALLBACK, ControllerState.IDLE):
            return True
        return self.state is ControllerState.FAILED and self._terminal

    async def _run_loop(self) -> None:
        gen = self._generation
        try:
            while gen == self._generation and not self._is_finished():
                if self.state is ControllerState.FAILED and not self._in_flight:
                    if not self.config.controller.auto_retry:
                        break
                    await self.retry()
                frame = await self.frame_source.read()
                if gen != self._generation:
                    break
                await self.process_frame(frame)
                await asyncio.sleep(0)
        except ResourceAcquisitionError as e:
            if gen == self._generation:
                logger.error(f"Camera stream lost: {e}")
                self._set_state(ControllerState.FAILED, f"Camera unavailable: {e}")

    async def process_frame(self, frame: np.ndarray) -> ControllerObservation:
        """Lightweight per-frame pass: detection, quality, liveness, auto-trigger."""
        self._publish_frame(frame)
        cc = self.config.controller

        if self._in_flight or self.state not in _SCANNING:
            observation = self._observe()
            self._publish(observation)
            return observation

        detection = None
        try:
            detection = await run_with_timeout(
                self.provider.detect(frame), self.config.timeouts.descriptor_s, "face detection"
            )
        except OperationTimeout as e:
            logger.debug(str(e))

        # A capture may have started while detection was running.
        if self._in_flight or self.state not in _SCANNING:
            observation = self._observe()
            self._publish(observation)
            return observation

        quality = None
        liveness = None
        if detection is not None and detection.confidence >= cc.min_detection_confidence:
            quality = self.analyzer.analyze(frame, detection.box, detection.landmarks)
            liveness = self.liveness.check(None, frame, detection.landmarks, quality, state=self._liveness_state)
        else:
            detection = None
        self._latest_detection = detection
        self._latest_quality = quality

        ready = (
            detection is not None
            and quality.is_good_quality
            and (liveness.is_live or not cc.require_liveness)
        )
        if detection is None:
            self.state = ControllerState.DETECTING
            message = "Position your face in the frame"
        elif ready:
            self.state = ControllerState.DETECTING
            message = "Face detected"
        else:
            self.state = ControllerState.QUALITY_GATED
            message = "; ".join(quality.issues) if quality.issues else "Hold still, checking liveness"

        observation = self._observe(message)
        self._publish(observation)

        if ready and self._should_auto_recognize():
            self._last_recognition = self._clock()
            self._auto_task = asyncio.create_task(self.capture())
        return observation

    def _should_auto_recognize(self) -> bool:
        cc = self.config.controller
        if self.mode is not ControllerMode.VERIFY or not cc.auto_recognize or self._in_flight:
            return False
        if self._scan_started is None or self._last_recognition is None:
            return False
        now = self._clock()
        if now - self._scan_started < cc.scan_duration_s / 2.0:
            interval = cc.recognition_interval_initial_s
        else:
            interval = cc.recognition_interval_s
        return now - self._last_recognition >= interval

    # --------------------------------------------------------------- capture

    def _result(self, kind: ResultKind, message: str = "", **kwargs) -> CaptureResult:
        return CaptureResult(kind=kind, state=self.state, message=message, attempts=self.attempts, **kwargs)

    async def capture(self) -> CaptureResult:
        """Run one enrollment or verification attempt.

        At most one capture is in flight per controller; a concurrent call
        returns ``BUSY``. Results that arrive after ``stop()`` are discarded.
        """
        if self._in_flight:
            return self._result(ResultKind.BUSY, "A capture is already in progress")
        if self.state is ControllerState.FALLBACK:
            return self._result(ResultKind.FALLBACK, FALLBACK_NOTICE, fallback_passed=self._fallback_passed())
        if self._is_finished() and self.last_result is not None and self.state is not ControllerState.IDLE:
            return self.last_result

        self._in_flight = True
        gen = self._generation
        try:
            if self.state is ControllerState.IDLE:
                ok = await self.start(background=False)
            elif self.state is ControllerState.FAILED:
                ok = await self.retry()
            else:
                ok = True
            if not ok:
                return self._result(ResultKind.RESOURCE_ACQUISITION, "Camera or face model unavailable")

            self._last_recognition = self._clock()
            self._set_state(ControllerState.CAPTURING, "Capturing...")
            flow = self._verify_flow() if self.mode is ControllerMode.VERIFY else self._enroll_flow()
            self._flow_task = asyncio.ensure_future(flow)
            try:
                result = await run_with_timeout(self._flow_task, self.config.timeouts.capture_flow_s, "capture flow")
            except OperationTimeout as e:
                logger.warning(f"Capture for user {self.user_id} timed out: {e}")
                result = CaptureResult(kind=ResultKind.OPERATION_TIMEOUT, message=str(e))
                self._record_error(result.kind, str(e))
            except ResourceAcquisitionError as e:
                logger.error(f"Capture for user {self.user_id} lost a resource: {e}")
                result = CaptureResult(
                    kind=ResultKind.RESOURCE_ACQUISITION, message=f"Camera or face model unavailable: {e}"
                )
                self._record_error(result.kind, str(e))
            except asyncio.CancelledError:
                if gen != self._generation:
                    return CaptureResult(kind=ResultKind.CANCELLED, state=self.state, message="Capture cancelled")
                raise
            except Exception as e:
                logger.error(f"Capture for user {self.user_id} failed: {e}")
                result = CaptureResult(kind=ResultKind.MATCH_FAILED, message="Face not recognized. Please try again.")
                self._record_error(result.kind, str(e))

            if gen != self._generation:
                logger.info(f"Discarding late capture result for user {self.user_id}")
                return CaptureResult(kind=ResultKind.CANCELLED, state=self.state, message="Capture cancelled")
            return await self._conclude(result)
        finally:
            if gen == self._generation:
                self._in_flight = False
                self._flow_task = None

    def _record_error(self, kind: ResultKind, error: str) -> None:
        # Enrollment runs audit themselves.
        if self.mode is ControllerMode.VERIFY:
            self.verifier.record(self.user_id, VerificationResult(kind=kind, error=error), self._liveness_passed())

    def _liveness_passed(self) -> bool:
        last = self._liveness_state.last_result
        return bool(last.is_live) if last is not None else False

    def _fallback_passed(self) -> Optional[bool]:
        if self.last_result is not None and self.last_result.kind is ResultKind.FALLBACK:
            return self.last_result.fallback_passed
        return None

    async def _verify_flow(self) -> CaptureResult:
        t = self.config.timeouts
        frame = await self._next_frame()
        detection = await run_with_timeout(
            self.provider.detect_with_descriptor(frame), t.descriptor_s, "descriptor extraction"
        )
        if detection is None or detection.descriptor is None:
            return CaptureResult(
                kind=ResultKind.NO_FACE_DETECTED,
                message="No face detected. Please position your face in the frame.",
            )

        quality = self.analyzer.analyze(frame, detection.box, detection.landmarks)
        if not quality.is_good_quality:
            return CaptureResult(
                kind=ResultKind.QUALITY_INSUFFICIENT,
                quality=quality,
                message="; ".join(quality.issues),
            )

        liveness = self._liveness_state.last_result
        if liveness is None:
            liveness = self.liveness.check(None, frame, detection.landmarks, quality, state=self._liveness_state)

        self._set_state(ControllerState.PROCESSING, "Verifying identity...")
        try:
            enrolled = await run_with_timeout(
                asyncio.to_thread(self.store.load, self.user_id), t.store_s, "enrollment lookup"
            )
        except ResourceAcquisitionError as e:
            logger.error(f"Enrollment lookup failed for user {self.user_id}: {e}")
            verification = VerificationResult(kind=ResultKind.RESOURCE_ACQUISITION, error=str(e))
            self.verifier.record(self.user_id, verification, liveness.is_live)
            return CaptureResult(
                kind=ResultKind.RESOURCE_ACQUISITION,
                verification=verification,
                quality=quality,
                liveness=liveness,
                message="Face verification service unavailable",
            )

        verification = self.verifier.verify(
            detection.descriptor,
            enrolled,
            user_id=self.user_id,
            liveness_passed=liveness.is_live,
            attempt=self.attempts,
            detection_confidence=detection.confidence,
        )
        if verification.kind is ResultKind.SUCCESS:
            message = "Face verified successfully"
        elif verification.kind is ResultKind.NO_ENROLLMENT_FOUND:
            message = "No enrolled face found. Please complete face enrollment first."
        else:
            message = "Face not recognized. Please try again."
        return CaptureResult(
            kind=verification.kind,
            verification=verification,
            quality=quality,
            liveness=liveness,
            message=message,
        )

    async def _enroll_flow(self) -> CaptureResult:
        outcome = await self.enroller.enroll(_ControllerFrames(self), user_id=self.user_id)
        if not outcome.success:
            return CaptureResult(kind=outcome.kind, enrollment=outcome, message=outcome.error or "Enrollment failed")

        self._set_state(ControllerState.PROCESSING, "Saving enrollment...")
        try:
            saved = await run_with_timeout(
                asyncio.to_thread(
                    self.store.save,
                    self.user_id,
                    outcome.descriptors,
                    self.config.enrollment.confidence_threshold,
                    self.enrolled_by,
                ),
                self.config.timeouts.store_s,
                "enrollment save",
            )
        except OperationTimeout:
            raise
        except FaceAuthError as e:
            logger.error(f"Enrollment save failed for user {self.user_id}: {e}")
            return CaptureResult(kind=ResultKind.RESOURCE_ACQUISITION, enrollment=outcome, message=str(e))
        if not saved.success:
            return CaptureResult(
                kind=ResultKind.RESOURCE_ACQUISITION,
                enrollment=outcome,
                message=f"Failed to save enrollment: {saved.error}",
            )
        return CaptureResult(
            kind=ResultKind.SUCCESS,
            enrollment=outcome,
            message=f"Face enrolled with {len(outcome.descriptors)} samples",
        )

    def _counts(self, kind: ResultKind) -> bool:
        if self.mode is ControllerMode.VERIFY:
            return kind.counts_as_failure
        return kind in (
            ResultKind.MATCH_FAILED,
            ResultKind.OPERATION_TIMEOUT,
            ResultKind.NO_FACE_DETECTED,
            ResultKind.QUALITY_INSUFFICIENT,
        )

    async def _conclude(self, result: CaptureResult) -> CaptureResult:
        kind = result.kind
        max_attempts = max(1, int(self.config.controller.max_attempts))

        if kind is ResultKind.SUCCESS:
            self._set_state(ControllerState.SUCCEEDED, result.message)
        elif kind is ResultKind.NO_ENROLLMENT_FOUND:
            self._terminal = True
            self._set_state(ControllerState.FAILED, result.message)
        elif kind is ResultKind.RESOURCE_ACQUISITION:
            self._set_state(ControllerState.FAILED, result.message)
        elif self._counts(kind):
            self.attempts += 1
            logger.info(f"Attempt {self.attempts}/{max_attempts} failed for user {self.user_id}: {kind.value}")
            if self.attempts >= max_attempts:
                result = await self._hand_off(result)
            else:
                self._set_state(
                    ControllerState.FAILED,
                    f"{result.message} ({max_attempts - self.attempts} attempts remaining)",
                )
        else:
            # No face / poor quality: guidance only, back to scanning.
            self._set_state(ControllerState.DETECTING, result.message)

        result.state = self.state
        result.attempts = self.attempts
        self.last_result = result
        return result

    async def _hand_off(self, failed: CaptureResult) -> CaptureResult:
        self._publish(self._observe(FALLBACK_NOTICE))
        self._set_state(ControllerState.FALLBACK, FALLBACK_NOTICE)
        passed: Optional[bool] = None
        if self.fallback is not None and not self._fallback_invoked:
            self._fallback_invoked = True
            logger.warning(f"Face verification exhausted for user {self.user_id}; invoking fallback")
            try:
                passed = await self.fallback.authenticate(self.user_id)
            except Exception as e:
                logger.error(f"Fallback authentication failed for user {self.user_id}: {e}")
                passed = False
        return CaptureResult(
            kind=ResultKind.FALLBACK,
            message=FALLBACK_NOTICE,
            verification=failed.verification,
            enrollment=failed.enrollment,
            quality=failed.quality,
            liveness=failed.liveness,
            fallback_passed=passed,
        )
