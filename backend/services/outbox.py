"""
HRMS Approvals - Side-Effect Outbox

Notifications and audit entries are queued here after a workflow transition
has been written, then dispatched by a background worker with its own retry
policy. A failed side effect is logged and dropped; it never reaches the
request that caused it.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from services.app_config import OUTBOX_MAX_ATTEMPTS, OUTBOX_RETRY_DELAY_SECONDS

logger = logging.getLogger(__name__)


class JobKind(str, Enum):
    NOTIFICATION = "notification"
    AUDIT = "audit"


@dataclass
class OutboxJob:
    kind: str
    payload: Dict[str, Any]
    attempts: int = 0
    last_error: Optional[str] = None
    enqueued_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class SideEffectOutbox:
    """
    In-process outbox.

    enqueue_* never blocks or raises. start() launches the worker on the
    running loop; stop() cancels it and flushes what is left. drain() runs
    every pending job to completion and is what tests call directly.
    """

    def __init__(
        self,
        notifier,
        audit_sink,
        max_attempts: int = OUTBOX_MAX_ATTEMPTS,
        retry_delay: float = OUTBOX_RETRY_DELAY_SECONDS
    ):
        self.notifier = notifier
        self.audit_sink = audit_sink
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._pending: Deque[OutboxJob] = deque()
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.dead_letters: List[OutboxJob] = []
        self.dispatched = 0

    # ==================== ENQUEUE ====================

    def enqueue(self, kind: str, payload: Dict[str, Any]) -> None:
        self._pending.append(OutboxJob(kind=kind, payload=payload))
        if self._wakeup is not None:
            self._wakeup.set()

    def enqueue_notification(self, payload: Dict[str, Any]) -> None:
        self.enqueue(JobKind.NOTIFICATION.value, payload)

    def enqueue_audit(self, payload: Dict[str, Any]) -> None:
        self.enqueue(JobKind.AUDIT.value, payload)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ==================== DISPATCH ====================

    async def _handle(self, job: OutboxJob) -> None:
        if job.kind == JobKind.NOTIFICATION.value:
            await self.notifier.send(job.payload)
        elif job.kind == JobKind.AUDIT.value:
            await self.audit_sink.record(job.payload)
        else:
            raise ValueError(f"Unknown outbox job kind: {job.kind}")

    async def _dispatch(self, job: OutboxJob) -> bool:
        while job.attempts < self.max_attempts:
            job.attempts += 1
            try:
                await self._handle(job)
                self.dispatched += 1
                return True
            except asyncio.CancelledError:
                job.attempts -= 1
                raise
            except Exception as e:
                job.last_error = str(e)
                logger.warning(
                    "Outbox %s job failed (attempt %d/%d): %s",
                    job.kind, job.attempts, self.max_attempts, e
                )
                if job.attempts < self.max_attempts and self.retry_delay > 0:
                    await asyncio.sleep(self.retry_delay * job.attempts)

        logger.error(
            "Outbox %s job dropped after %d attempts: %s (payload action=%s)",
            job.kind, job.attempts, job.last_error, job.payload.get("action")
        )
        self.dead_letters.append(job)
        return False

    async def drain(self) -> int:
        """Dispatch every pending job. Returns how many succeeded."""
        succeeded = 0
        while self._pending:
            job = self._pending.popleft()
            try:
                ok = await self._dispatch(job)
            except asyncio.CancelledError:
                self._pending.appendleft(job)
                raise
            if ok:
                succeeded += 1
        return succeeded

    # ==================== WORKER ====================

    async def _worker(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            await self.drain()

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._wakeup = asyncio.Event()
        if self._pending:
            self._wakeup.set()
        self._task = asyncio.create_task(self._worker())
        logger.info("Side-effect outbox worker started")

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.info("Side-effect outbox worker stopped")
        self._task = None
        self._wakeup = None
        if self._pending:
            logger.info("Flushing %d pending side effects", len(self._pending))
            await self.drain()
