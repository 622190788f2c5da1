"""
Flow Runtime
Routes inbound events to flow executions under a per-conversation lease
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Any, Dict, List

from ..core.config import settings
from ..core.exceptions import (
    ExecutionAlreadyActive,
    ExecutionConflict,
    ExecutionNotFound,
    FlowNotFound,
    LeaseUnavailable,
)
from ..flow.context import ExecutionContext, ExecutionStatus
from ..flow.executor import AdvanceOutcome, AdvanceStatus, FlowExecutor
from ..flow.triggers import resolve_trigger
from ..models.events import InboundEvent, OutboundMessage
from ..models.flow import FlowGraph
from .flows import FlowRepository, create_flow_repository
from .lease import LeaseManager
from .scheduler import ContinuationScheduler
from .store import ExecutionStore, SaveResult, create_execution_store
from .tags import TagStore, create_tag_store
from .transport import Transport, create_transport
from .webhook_client import WebhookClient

logger = logging.getLogger(__name__)


FLOW_NOT_FOUND = "FLOW_NOT_FOUND"


class RuntimeStatus(str, Enum):
    """What the runtime did with an inbound event"""
    ADVANCED = "advanced"
    STARTED = "started"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"  # Lease busy, event re-delivered later
    NO_FLOW = "no_flow"  # No execution and no trigger matched


@dataclass
class RuntimeOutcome:
    """Result of routing one event"""

    status: RuntimeStatus
    flow_id: Optional[str] = None
    flow_name: Optional[str] = None
    advance: Optional[AdvanceOutcome] = None
    reason: Optional[str] = None

    @property
    def flow_executed(self) -> bool:
        return self.status in (RuntimeStatus.ADVANCED, RuntimeStatus.STARTED)

    @property
    def flow_started(self) -> bool:
        return self.status == RuntimeStatus.STARTED

    @property
    def context(self) -> Optional[ExecutionContext]:
        return self.advance.context if self.advance else None

    @property
    def messages(self) -> List[OutboundMessage]:
        return self.advance.messages if self.advance else []

    @property
    def should_continue_to_ai(self) -> bool:
        """True when the conversation is (back) in the AI agent's hands"""
        if self.status == RuntimeStatus.NO_FLOW:
            return True
        return self.context is not None and self.context.status == ExecutionStatus.TRANSFERRED_TO_AI

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the process-message response shape"""
        data: Dict[str, Any] = {
            "success": True,
            "flow_executed": self.flow_executed,
            "flow_started": self.flow_started,
            "flow_id": self.flow_id,
            "flow_name": self.flow_name,
            "should_continue_to_ai": self.should_continue_to_ai,
            "status": self.status.value,
            "messages": [m.model_dump(mode="json") for m in self.messages],
            "reason": self.reason,
        }
        if self.advance is not None:
            context = self.advance.context
            data.update({
                "execution_id": context.id,
                "execution_status": context.status.value,
                "current_block_id": context.current_block_id,
                "transfer_target": self.advance.transfer_target.value if self.advance.transfer_target else None,
                "notify_agent": self.advance.notify_agent,
                "flow_context": self.advance.flow_context,
                "error": self.advance.error,
                "error_code": self.advance.error_code,
            })
        return data


_ADVANCE_TO_RUNTIME = {
    AdvanceStatus.ADVANCED: RuntimeStatus.ADVANCED,
    AdvanceStatus.IGNORED: RuntimeStatus.IGNORED,
    AdvanceStatus.DUPLICATE: RuntimeStatus.DUPLICATE,
}


class FlowRuntime:
    """
    Entry point for inbound events.

    Every mutation of an execution happens while holding the lease for its
    (flow, conversation) pair; a version conflict on save restarts the work
    from a fresh load.
    """

    def __init__(
        self,
        store: ExecutionStore,
        flows: FlowRepository,
        executor: FlowExecutor,
        lease_manager: Optional[LeaseManager] = None,
        scheduler: Optional[ContinuationScheduler] = None,
        max_conflict_retries: Optional[int] = None
    ):
        self.store = store
        self.flows = flows
        self.executor = executor
        self.lease_manager = lease_manager or LeaseManager()
        self.scheduler = scheduler
        self.max_conflict_retries = max_conflict_retries or settings.MAX_CONFLICT_RETRIES

    # ==================== Inbound Events ====================

    async def handle_event(self, event: InboundEvent) -> RuntimeOutcome:
        """
        Route an inbound event.

        Scheduler continuations resume their execution; other events continue
        the conversation's active execution or start a triggered flow.
        """
        logger.debug(f"Handling event {event.event_id} for conversation {event.conversation_id}")

        if event.is_continuation:
            if not event.flow_id:
                logger.warning(f"Continuation {event.triggered_by_scheduler} has no flow id, ignored")
                return RuntimeOutcome(RuntimeStatus.IGNORED, reason="continuation without flow")
            return await self._with_lease(event.flow_id, event, start=False)

        active = await self.store.find_active(event.conversation_id, event.client_id, event.flow_id)
        if active is not None:
            return await self._with_lease(active.flow_id, event, start=False)

        flows = await self.flows.list_active(event.client_id)
        if event.flow_id:
            flows = [graph for graph in flows if graph.id == event.flow_id]

        has_prior = await self.store.has_any(event.conversation_id)
        graph = resolve_trigger(flows, event, has_prior_execution=has_prior)
        if graph is None:
            logger.debug(f"No flow for conversation {event.conversation_id}, continuing to AI")
            return RuntimeOutcome(RuntimeStatus.NO_FLOW)

        return await self._with_lease(graph.id, event, start=True, graph=graph)

    async def _with_lease(
        self,
        flow_id: str,
        event: InboundEvent,
        start: bool,
        graph: Optional[FlowGraph] = None
    ) -> RuntimeOutcome:
        try:
            async with self.lease_manager.lease(flow_id, event.conversation_id):
                return await self._process(flow_id, event, start, graph)
        except LeaseUnavailable:
            if self.scheduler is None:
                raise
            await self.scheduler.defer_event(event)
            logger.info(f"Event {event.event_id} deferred, lease busy [flow: {flow_id}]")
            return RuntimeOutcome(RuntimeStatus.DEFERRED, flow_id=flow_id, reason="lease busy")

    async def _process(
        self,
        flow_id: str,
        event: InboundEvent,
        start: bool,
        graph: Optional[FlowGraph] = None,
        variables: Optional[Dict[str, Any]] = None
    ) -> RuntimeOutcome:
        """Load (or create) the execution and advance it; caller holds the lease"""
        graph = graph or await self.flows.get(flow_id)
        started = False
        last_conflict: Optional[ExecutionConflict] = None

        for attempt in range(1, self.max_conflict_retries + 1):
            context = await self.store.load(flow_id, event.conversation_id)

            if start and (context is None or not context.is_active):
                if context is not None and context.has_processed(event.event_id):
                    logger.info(f"Event {event.event_id} already started execution {context.id}, not restarting")
                    return RuntimeOutcome(
                        RuntimeStatus.DUPLICATE,
                        flow_id=flow_id,
                        flow_name=graph.name if graph else None,
                        advance=AdvanceOutcome(status=AdvanceStatus.DUPLICATE, context=context),
                        reason="event already processed",
                    )
                if graph is None or not graph.is_active:
                    raise FlowNotFound(flow_id)
                context = await self.store.create(
                    flow_id,
                    event.conversation_id,
                    graph.start_block_id,
                    client_id=event.client_id or graph.client_id,
                    variables=variables,
                )
                started = True
                logger.info(
                    f"Started flow '{graph.name or flow_id}' for conversation "
                    f"{event.conversation_id} [execution: {context.id}]"
                )

            if context is None:
                return RuntimeOutcome(RuntimeStatus.IGNORED, flow_id=flow_id, reason="no execution")

            if graph is None:
                return await self._pause_orphan(context)

            try:
                outcome = await self.executor.advance(graph, context, event)
            except ExecutionConflict as e:
                logger.warning(f"{e} - retrying ({attempt}/{self.max_conflict_retries})")
                last_conflict = e
                continue

            status = _ADVANCE_TO_RUNTIME[outcome.status]
            if started and status == RuntimeStatus.ADVANCED:
                status = RuntimeStatus.STARTED
            return RuntimeOutcome(
                status,
                flow_id=flow_id,
                flow_name=graph.name,
                advance=outcome,
                reason=outcome.reason,
            )

        logger.error(f"Giving up on event {event.event_id} after {self.max_conflict_retries} conflicts")
        raise last_conflict

    async def _pause_orphan(self, context: ExecutionContext) -> RuntimeOutcome:
        """Pause an execution whose flow no longer exists"""
        if context.is_active:
            context.set_paused(f"{FLOW_NOT_FOUND}: {context.flow_id}")
            if await self.store.save(context) == SaveResult.CONFLICT:
                raise ExecutionConflict(context.id, context.version)
        return RuntimeOutcome(
            RuntimeStatus.IGNORED,
            flow_id=context.flow_id,
            advance=AdvanceOutcome(status=AdvanceStatus.IGNORED, context=context),
            reason="flow not found",
        )

    # ==================== Explicit Operations ====================

    async def start_flow(
        self,
        flow_id: str,
        conversation_id: str,
        variables: Optional[Dict[str, Any]] = None,
        event: Optional[InboundEvent] = None
    ) -> RuntimeOutcome:
        """
        Start a flow for a conversation (manual trigger).

        Raises:
            FlowNotFound: if the flow does not exist or is inactive
            ExecutionAlreadyActive: if the pair already has an active execution
            LeaseUnavailable: if the lease could not be acquired
        """
        graph = await self.flows.get(flow_id)
        if graph is None or not graph.is_active:
            raise FlowNotFound(flow_id)

        event = event or InboundEvent(conversation_id=conversation_id, flow_id=flow_id)

        async with self.lease_manager.lease(flow_id, conversation_id):
            existing = await self.store.load(flow_id, conversation_id)
            if existing is not None and existing.is_active:
                raise ExecutionAlreadyActive(existing.id, conversation_id)
            return await self._process(flow_id, event, True, graph, variables)

    async def cancel(self, flow_id: str, conversation_id: str) -> ExecutionContext:
        """
        Force an execution into CANCELLED.

        Raises:
            ExecutionNotFound: if there is no execution record
            InvalidTransition: if the execution already finished
            LeaseUnavailable: if the lease could not be acquired
        """
        async with self.lease_manager.lease(flow_id, conversation_id):
            for attempt in range(1, self.max_conflict_retries + 1):
                context = await self.store.load(flow_id, conversation_id)
                if context is None:
                    raise ExecutionNotFound(flow_id, conversation_id)

                token = context.pending_delay_token
                context.transition(ExecutionStatus.CANCELLED)

                if await self.store.save(context) == SaveResult.CONFLICT:
                    logger.warning(f"Conflict cancelling execution {context.id} ({attempt}/{self.max_conflict_retries})")
                    continue

                if token and self.scheduler is not None:
                    await self.scheduler.cancel(token)

                logger.info(f"Execution {context.id} cancelled")
                return context

        raise ExecutionConflict(context.id, context.version)

    async def restore_continuations(self) -> int:
        """
        Re-schedule delays persisted by a previous process.

        Each active execution waiting on a delay gets its continuation back
        under the same token; overdue ones fire on the next scheduler pass.

        Returns:
            Number of continuations restored
        """
        if self.scheduler is None:
            return 0

        now = self.scheduler.clock()
        restored = 0
        for context in await self.store.list_pending_delays():
            token = context.pending_delay_token
            if self.scheduler.is_scheduled(token):
                continue

            remaining = (context.resume_at - now).total_seconds() if context.resume_at else 0.0
            await self.scheduler.schedule_continuation(
                context.flow_id,
                context.conversation_id,
                max(remaining, 0.0),
                token=token,
            )
            restored += 1

        if restored:
            logger.info(f"Restored {restored} delay continuations")
        return restored

    async def get_execution(self, flow_id: str, conversation_id: str) -> ExecutionContext:
        """
        Raises:
            ExecutionNotFound: if there is no execution record
        """
        context = await self.store.load(flow_id, conversation_id)
        if context is None:
            raise ExecutionNotFound(flow_id, conversation_id)
        return context


def create_flow_runtime(
    store: Optional[ExecutionStore] = None,
    flows: Optional[FlowRepository] = None,
    transport: Optional[Transport] = None,
    tag_store: Optional[TagStore] = None,
    scheduler: Optional[ContinuationScheduler] = None,
    webhook_client: Optional[WebhookClient] = None,
    lease_manager: Optional[LeaseManager] = None
) -> FlowRuntime:
    """
    Factory function to wire a FlowRuntime.

    Missing collaborators come from settings; the scheduler's handler is
    pointed at the new runtime.
    """
    store = store or create_execution_store()
    scheduler = scheduler or ContinuationScheduler()
    executor = FlowExecutor(
        store=store,
        transport=transport or create_transport(),
        tag_store=tag_store or create_tag_store(),
        scheduler=scheduler,
        webhook_client=webhook_client,
    )
    runtime = FlowRuntime(
        store=store,
        flows=flows or create_flow_repository(),
        executor=executor,
        lease_manager=lease_manager,
        scheduler=scheduler,
    )
    scheduler.set_handler(runtime.handle_event)
    return runtime
