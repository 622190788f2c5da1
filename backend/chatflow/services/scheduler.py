"""
Continuation Scheduler
Fires delay-block continuations and retries deferred events
"""
import logging
import asyncio
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any, Callable, Awaitable
from dataclasses import dataclass, field
from enum import Enum

from ..core.config import settings
from ..core.exceptions import SchedulerError
from ..models.events import InboundEvent

logger = logging.getLogger(__name__)


class ContinuationStatus(str, Enum):
    """Status of a scheduled continuation"""
    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ContinuationKind(str, Enum):
    DELAY = "delay"  # Delay block elapsed
    DEFERRED = "deferred"  # Event re-delivered after lease contention


@dataclass
class ScheduledContinuation:
    """Represents a scheduled re-invocation of the runtime"""
    token: str
    flow_id: Optional[str]
    conversation_id: str
    due_at: datetime
    kind: ContinuationKind = ContinuationKind.DELAY
    event: Optional[InboundEvent] = None
    status: ContinuationStatus = ContinuationStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    fired_at: Optional[datetime] = None
    error: Optional[str] = None

    def build_event(self) -> InboundEvent:
        """Event handed to the runtime when this continuation fires"""
        if self.event is not None:
            return self.event
        return InboundEvent(
            event_id=f"continuation:{self.token}",
            conversation_id=self.conversation_id,
            flow_id=self.flow_id,
            triggered_by_scheduler=self.token,
        )


ContinuationHandler = Callable[[InboundEvent], Awaitable[Any]]


class ContinuationScheduler:
    """
    In-process scheduler for flow continuations.

    Nothing blocks while waiting: a continuation is a row in ``scheduled``
    and a background loop hands due ones to the registered handler
    (the runtime's handle_event).
    """

    def __init__(
        self,
        check_interval: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
        retention_seconds: Optional[float] = None
    ):
        """
        Initialize the scheduler.

        Args:
            check_interval: Seconds between checks for due continuations
            clock: Returns the current time (injected for tests)
            retention_seconds: How long finished continuations are kept
        """
        self.scheduled: Dict[str, ScheduledContinuation] = {}
        self.check_interval = settings.SCHEDULER_CHECK_INTERVAL if check_interval is None else check_interval
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.retention_seconds = settings.SCHEDULER_RETENTION_SECONDS if retention_seconds is None else retention_seconds
        self._handler: Optional[ContinuationHandler] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    def set_handler(self, handler: ContinuationHandler) -> None:
        """Register the coroutine that receives fired continuations"""
        self._handler = handler

    async def _add(
        self,
        conversation_id: str,
        flow_id: Optional[str],
        after_seconds: float,
        kind: ContinuationKind,
        token: Optional[str] = None,
        event: Optional[InboundEvent] = None
    ) -> str:
        if after_seconds is None or math.isnan(after_seconds) or after_seconds < 0:
            raise SchedulerError(f"Invalid continuation delay: {after_seconds}")

        async with self._lock:
            token = token or uuid.uuid4().hex
            if token in self.scheduled:
                raise SchedulerError(f"Continuation token already scheduled: {token}")

            continuation = ScheduledContinuation(
                token=token,
                flow_id=flow_id,
                conversation_id=conversation_id,
                due_at=self.clock() + timedelta(seconds=after_seconds),
                kind=kind,
                event=event,
            )
            self.scheduled[token] = continuation

        logger.info(
            f"Continuation {token} ({kind.value}) scheduled for {continuation.due_at.isoformat()} "
            f"[flow: {flow_id}, conversation: {conversation_id}]"
        )
        return token

    async def schedule_continuation(
        self,
        flow_id: str,
        conversation_id: str,
        after_seconds: float,
        token: Optional[str] = None
    ) -> str:
        """
        Schedule the resumption of a delay block.

        Args:
            flow_id: Flow ID
            conversation_id: Conversation ID
            after_seconds: Delay before the runtime is re-invoked
            token: Token to use (generated when omitted)

        Returns:
            Continuation token echoed back as ``triggered_by_scheduler``

        Raises:
            SchedulerError: if the continuation cannot be scheduled
        """
        return await self._add(conversation_id, flow_id, after_seconds, ContinuationKind.DELAY, token=token)

    async def defer_event(self, event: InboundEvent, after_seconds: Optional[float] = None) -> str:
        """Re-deliver an event later (used when the lease is busy)"""
        delay = settings.DEFERRED_RETRY_SECONDS if after_seconds is None else after_seconds
        return await self._add(
            event.conversation_id,
            event.flow_id,
            delay,
            ContinuationKind.DEFERRED,
            event=event,
        )

    async def cancel(self, token: str) -> bool:
        """Cancel a pending continuation"""
        async with self._lock:
            continuation = self.scheduled.get(token)
            if continuation and continuation.status == ContinuationStatus.PENDING:
                continuation.status = ContinuationStatus.CANCELLED
                logger.info(f"Continuation {token} cancelled")
                return True
        return False

    def is_scheduled(self, token: str) -> bool:
        return token in self.scheduled

    def get_pending(self, conversation_id: Optional[str] = None) -> List[ScheduledContinuation]:
        return [
            c for c in self.scheduled.values()
            if c.status == ContinuationStatus.PENDING
            and (conversation_id is None or c.conversation_id == conversation_id)
        ]

    async def process_due(self, now: Optional[datetime] = None) -> int:
        """
        Fire every pending continuation that is due.

        Returns:
            Number of continuations fired
        """
        now = now or self.clock()

        async with self._lock:
            due = sorted(
                (c for c in self.scheduled.values()
                 if c.status == ContinuationStatus.PENDING and c.due_at <= now),
                key=lambda c: c.due_at,
            )
            for continuation in due:
                continuation.status = ContinuationStatus.FIRED
                continuation.fired_at = now

        fired = 0
        for continuation in due:
            if await self._fire(continuation):
                fired += 1
        return fired

    async def _fire(self, continuation: ScheduledContinuation) -> bool:
        if self._handler is None:
            logger.error(f"No handler registered, continuation {continuation.token} dropped")
            continuation.status = ContinuationStatus.FAILED
            continuation.error = "No handler registered"
            return False

        try:
            logger.info(f"Firing continuation {continuation.token} ({continuation.kind.value})")
            await self._handler(continuation.build_event())
            return True
        except Exception as e:
            logger.exception(f"Error firing continuation {continuation.token}: {e}")
            continuation.status = ContinuationStatus.FAILED
            continuation.error = str(e)
            return False

    def get_stats(self) -> Dict[str, Any]:
        """
        Get scheduler statistics.

        Returns:
            Statistics dictionary
        """
        status_counts = {}
        for status in ContinuationStatus:
            status_counts[status.value] = sum(
                1 for c in self.scheduled.values() if c.status == status
            )

        return {
            "total": len(self.scheduled),
            "by_status": status_counts,
            "running": self._running,
        }

    async def start_scheduler(self) -> None:
        """Start the background scheduler"""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info("Continuation scheduler started")

    async def stop_scheduler(self) -> None:
        """Stop the background scheduler"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Continuation scheduler stopped")

    async def _scheduler_loop(self) -> None:
        """Background loop that fires due continuations"""
        while self._running:
            try:
                fired = await self.process_due()
                if fired > 0:
                    logger.debug(f"Fired {fired} continuations")
                self.cleanup()
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            await asyncio.sleep(self.check_interval)

    def cleanup(self, older_than_seconds: Optional[float] = None) -> int:
        """
        Remove fired/failed/cancelled continuations.

        Returns:
            Number of continuations removed
        """
        if older_than_seconds is None:
            older_than_seconds = self.retention_seconds
        cutoff = self.clock() - timedelta(seconds=older_than_seconds)
        to_remove = [
            token for token, c in self.scheduled.items()
            if c.status != ContinuationStatus.PENDING and c.created_at < cutoff
        ]

        for token in to_remove:
            del self.scheduled[token]

        if to_remove:
            logger.info(f"Cleaned up {len(to_remove)} old continuations")

        return len(to_remove)
