from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from voteguard.backend.client import EdgeFunctionClient
from voteguard.face.audit import AuditSink
from voteguard.face.errors import BackendError, ResourceAcquisitionError
from voteguard.face.fallback import FallbackAuthenticator
from voteguard.face.gallery import EnrollmentStore, StoreResult
from voteguard.utils.log import get_logger
from voteguard.utils.serializer import descriptor_from_list, descriptors_to_lists

logger = get_logger(__name__)


class HttpEnrollmentStore(EnrollmentStore):
    """Enrollment store behind the ``face-enrollment`` edge function.

    The service encrypts descriptors at rest and applies the supersede policy
    on save; this side only moves plain float lists.
    """

    def __init__(self, client: EdgeFunctionClient, function: str = "face-enrollment"):
        self.client = client
        self.function = function

    def save(
        self,
        user_id: str,
        descriptors: Sequence,
        threshold: float = 0.6,
        enrolled_by: Optional[str] = None,
    ) -> StoreResult:
        payload = {
            "userId": str(user_id),
            "faceDescriptors": descriptors_to_lists(descriptors),
            "enrolledBy": enrolled_by,
            "confidenceThreshold": float(threshold),
        }
        try:
            body = self.client.call(self.function, payload, method="POST")
        except BackendError as e:
            return StoreResult(False, str(e))
        if body.get("success"):
            logger.info(f"Saved {len(payload['faceDescriptors'])} descriptors for user {user_id}")
            return StoreResult(True)
        return StoreResult(False, str(body.get("error") or "enrollment rejected"))

    def load(self, user_id: str) -> List[np.ndarray]:
        try:
            body = self.client.call(self.function, method="GET", params={"userId": str(user_id)})
        except BackendError as e:
            if e.status == 404:
                return []
            raise ResourceAcquisitionError(f"enrollment service unavailable: {e}") from e

        rows = body.get("enrollments")
        if not isinstance(rows, list):
            # Older deployments answer with a single record.
            single = body.get("enrollment")
            rows = [single] if isinstance(single, dict) else []

        out: List[np.ndarray] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            vec = descriptor_from_list(row.get("face_descriptor"))
            if vec is not None:
                out.append(vec)
        return out

    def remove(self, user_id: str) -> StoreResult:
        try:
            body = self.client.call(self.function, {"userId": str(user_id)}, method="DELETE")
        except BackendError as e:
            return StoreResult(False, str(e))
        if body.get("success"):
            return StoreResult(True)
        return StoreResult(False, str(body.get("error") or "removal rejected"))


class HttpAuditSink(AuditSink):
    """Posts each event to an audit edge function."""

    def __init__(self, client: EdgeFunctionClient, function: str = "face-verification-attempts"):
        self.client = client
        self.function = function

    def emit(self, event: Dict) -> None:
        self.client.call(self.function, event, method="POST")


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


class OtpFallbackAuthenticator(FallbackAuthenticator):
    """One-time-code fallback over ``auth-request-otp`` / ``auth-verify-otp``.

    ``phone_lookup(user_id)`` returns the phone number on file and
    ``code_prompt(phone)`` collects the code from the user; both may be async.
    """

    def __init__(
        self,
        client: EdgeFunctionClient,
        phone_lookup: Callable[[str], Union[Optional[str], Awaitable[Optional[str]]]],
        code_prompt: Callable[[str], Union[Optional[str], Awaitable[Optional[str]]]],
        request_function: str = "auth-request-otp",
        verify_function: str = "auth-verify-otp",
    ):
        self.client = client
        self.phone_lookup = phone_lookup
        self.code_prompt = code_prompt
        self.request_function = request_function
        self.verify_function = verify_function

    async def authenticate(self, user_id: str) -> bool:
        phone = await _resolve(self.phone_lookup(user_id))
        if not phone:
            logger.warning(f"No phone number on file for user {user_id}; OTP fallback unavailable")
            return False
        try:
            sent = await asyncio.to_thread(self.client.call, self.request_function, {"phoneNumber": phone})
            if not sent.get("success"):
                logger.warning(f"OTP request rejected for user {user_id}: {sent.get('error')}")
                return False

            code = await _resolve(self.code_prompt(phone))
            if not code:
                return False
            checked = await asyncio.to_thread(
                self.client.call, self.verify_function, {"phoneNumber": phone, "otp": str(code)}
            )
        except BackendError as e:
            logger.error(f"OTP fallback failed for user {user_id}: {e}")
            return False
        ok = bool(checked.get("success"))
        logger.info(f"OTP fallback for user {user_id}: {'verified' if ok else 'rejected'}")
        return ok
