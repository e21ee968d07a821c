"""Clients for the backend edge functions.

Provides:
- ``EdgeFunctionClient``: JSON-over-HTTP calls to ``<base_url>/functions/v1/<name>``
- ``HttpEnrollmentStore``: enrollment save/load/remove through ``face-enrollment``
- ``HttpAuditSink``: verification/enrollment audit events
- ``OtpFallbackAuthenticator``: one-time-code fallback after face attempts run out
"""

from __future__ import annotations
