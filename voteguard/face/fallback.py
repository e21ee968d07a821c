from __future__ import annotations

import inspect

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Union


class FallbackAuthenticator(ABC):
    """Out-of-band secondary verification (e.g. one-time code) used after face attempts run out."""

    @abstractmethod
    async def authenticate(self, user_id: str) -> bool:
        pass


class CallbackFallback(FallbackAuthenticator):
    """Wraps a plain or async callable ``fn(user_id) -> bool``."""

    def __init__(self, fn: Callable[[str], Union[bool, Awaitable[bool]]]):
        self.fn = fn

    async def authenticate(self, user_id: str) -> bool:
        res = self.fn(user_id)
        if inspect.isawaitable(res):
            res = await res
        return bool(res)
