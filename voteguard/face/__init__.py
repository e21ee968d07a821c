"""Face enrollment and verification core (provider/quality/liveness/matcher).

Public entry points return a ``ResultKind`` outcome instead of raising, so the
capture controller can decide on retries and fallback.
"""
