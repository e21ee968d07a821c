from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from voteguard.face.errors import BackendError
from voteguard.utils.log import get_logger

logger = get_logger(__name__)


class EdgeFunctionClient:
    """Minimal JSON client for ``<base_url>/functions/v1/<name>`` endpoints.

    Example:
        >>> client = EdgeFunctionClient("https://project.example.co", api_key="...")
        >>> client.call("face-enrollment", params={"userId": "u1"}, method="GET")
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        auth_token: Optional[str] = None,
    ):
        self.base_url = str(base_url).rstrip("/")
        self.api_key = api_key
        # Per-user bearer token; falls back to the anon key.
        self.auth_token = auth_token
        self.session = session or requests.Session()
        self.timeout = float(timeout)

    def url(self, name: str) -> str:
        return f"{self.base_url}/functions/v1/{name}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        token = self.auth_token or self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def call(
        self,
        name: str,
        payload: Optional[Dict[str, Any]] = None,
        method: str = "POST",
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Invoke an edge function and return its decoded JSON body.

        Raises:
            BackendError: transport failure, non-2xx status or a non-JSON body.
        """
        try:
            resp = self.session.request(
                method.upper(),
                self.url(name),
                json=payload,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Edge function {name} unreachable: {e}")
            raise BackendError(f"{name}: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if not (200 <= int(resp.status_code) < 300):
            detail = body.get("error") if isinstance(body, dict) else None
            logger.error(f"Edge function {name} returned HTTP {resp.status_code}: {detail or resp.text[:200]}")
            raise BackendError(f"{name}: HTTP {resp.status_code} {detail or ''}".strip(), status=int(resp.status_code))
        if not isinstance(body, dict):
            raise BackendError(f"{name}: unexpected response body", status=int(resp.status_code))
        return body
