from __future__ import annotations

import asyncio
import json
import threading

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Set

from voteguard.face.types import VerificationAttempt
from voteguard.utils.log import get_logger

logger = get_logger(__name__)


class AuditSink(ABC):
    """Receives security-relevant events ({userId, success, confidenceScore, livenessPassed, timestamp, ...})."""

    @abstractmethod
    def emit(self, event: Dict) -> None:
        pass


class LoggingAuditSink(AuditSink):
    def __init__(self, logger_name: str = "voteguard.audit"):
        self._logger = get_logger(logger_name)

    def emit(self, event: Dict) -> None:
        self._logger.info(json.dumps(event, ensure_ascii=False, sort_keys=True))


class JsonlAuditSink(AuditSink):
    """Appends one JSON object per line."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def emit(self, event: Dict) -> None:
        line = json.dumps(event, ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")


def emit_safely(sink: Optional[AuditSink], attempt: VerificationAttempt) -> bool:
    """Deliver an audit record; delivery failures are logged, never propagated."""
    if sink is None:
        return False
    event = attempt.to_event()
    try:
        sink.emit(event)
        return True
    except Exception as e:
        logger.warning(f"Audit delivery failed for user {attempt.user_id}: {e}")
        return False


# Deliveries handed to worker threads; kept referenced until they finish.
_pending: Set[asyncio.Future] = set()


def dispatch(sink: Optional[AuditSink], attempt: VerificationAttempt) -> None:
    """Deliver an audit record without blocking the running event loop.

    Inside a loop the sink runs on a worker thread and the caller returns at
    once; without a loop the record is delivered inline.
    """
    if sink is None:
        return
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        emit_safely(sink, attempt)
        return
    task = asyncio.ensure_future(asyncio.to_thread(emit_safely, sink, attempt))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def drain(timeout: Optional[float] = None) -> None:
    """Wait for this loop's outstanding audit deliveries."""
    loop = asyncio.get_running_loop()
    waiting = [t for t in _pending if not t.done() and t.get_loop() is loop]
    if waiting:
        await asyncio.wait(waiting, timeout=timeout)
