from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from voteguard.face.errors import OperationTimeout

T = TypeVar("T")


async def run_with_timeout(aw: Awaitable[T], seconds: float, what: str) -> T:
    """Await ``aw`` for at most ``seconds``.

    On expiry the inner task is cancelled, so its late result is never
    observed, and ``OperationTimeout`` is raised instead of ``asyncio.TimeoutError``.
    """
    try:
        return await asyncio.wait_for(aw, timeout=float(seconds))
    except asyncio.TimeoutError:
        raise OperationTimeout(what, seconds) from None
