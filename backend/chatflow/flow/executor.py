"""
Flow Executor - Drives an execution through its blocks for one inbound event
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Any, Dict, List, Callable

from ..core.config import settings
from ..core.exceptions import DeliveryError, ExecutionConflict, SchedulerError
from ..models.events import InboundEvent, OutboundMessage
from ..models.flow import BlockBase, FlowGraph
from ..services.scheduler import ContinuationScheduler
from ..services.store import ExecutionStore, SaveResult
from ..services.tags import TagStore
from ..services.transport import DeliveryReceipt, Transport
from ..services.webhook_client import WebhookClient
from .context import ExecutionContext, ExecutionStatus, utcnow
from .evaluator import BlockEvaluator
from .result import (
    ResultType,
    StepResult,
    TagOperation,
    TagOperationType,
    TransferTarget,
    WebhookRequest,
    error_result,
)

logger = logging.getLogger(__name__)


BLOCK_NOT_FOUND = "BLOCK_NOT_FOUND"
STEP_LIMIT_EXCEEDED = "STEP_LIMIT_EXCEEDED"


class AdvanceStatus(str, Enum):
    """What advance() did with an event"""
    ADVANCED = "advanced"
    IGNORED = "ignored"  # Nothing to do for this event, state unchanged
    DUPLICATE = "duplicate"  # Event id already processed


@dataclass
class AdvanceOutcome:
    """Everything one advance() call produced"""

    status: AdvanceStatus
    context: ExecutionContext
    results: List[StepResult] = field(default_factory=list)
    messages: List[OutboundMessage] = field(default_factory=list)
    receipts: List[DeliveryReceipt] = field(default_factory=list)
    continuation_token: Optional[str] = None
    delay_seconds: Optional[float] = None
    reason: Optional[str] = None

    @property
    def last_result(self) -> Optional[StepResult]:
        return self.results[-1] if self.results else None

    @property
    def error(self) -> Optional[str]:
        result = self.last_result
        return result.error if result and result.is_error() else None

    @property
    def error_code(self) -> Optional[str]:
        result = self.last_result
        return result.error_code if result and result.is_error() else None

    @property
    def transfer_target(self) -> Optional[TransferTarget]:
        result = self.last_result
        return result.transfer_target if result else None

    @property
    def flow_context(self) -> Optional[str]:
        result = self.last_result
        return result.flow_context if result else None

    @property
    def notify_agent(self) -> bool:
        result = self.last_result
        return bool(result and result.transfer_target == TransferTarget.HUMAN and result.notify_agent)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "status": self.status.value,
            "execution_status": self.context.status.value,
            "current_block_id": self.context.current_block_id,
            "messages": [m.model_dump(mode="json") for m in self.messages],
            "receipts": [r.to_dict() for r in self.receipts],
            "continuation_token": self.continuation_token,
            "transfer_target": self.transfer_target.value if self.transfer_target else None,
            "notify_agent": self.notify_agent,
            "flow_context": self.flow_context,
            "error": self.error,
            "error_code": self.error_code,
            "reason": self.reason,
            "results": [r.to_dict() for r in self.results],
        }


class FlowExecutor:
    """
    Execution engine.

    advance() evaluates blocks until the execution waits (reply or delay),
    transfers, ends or fails, then persists the context once and performs
    the side effects: tag operations, delay scheduling, message delivery.
    A webhook call is preceded by a checkpoint save.
    """

    def __init__(
        self,
        store: ExecutionStore,
        transport: Transport,
        tag_store: Optional[TagStore] = None,
        scheduler: Optional[ContinuationScheduler] = None,
        webhook_client: Optional[WebhookClient] = None,
        block_evaluator: Optional[BlockEvaluator] = None,
        max_steps: Optional[int] = None,
        event_history: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the FlowExecutor.

        Args:
            store: Execution store
            transport: Outbound message delivery
            tag_store: Receives add_tag/remove_tag operations
            scheduler: Schedules delay continuations
            webhook_client: Performs webhook-block calls
            block_evaluator: Per-block evaluation
            max_steps: Max blocks evaluated per advance call
            event_history: Processed event ids remembered for dedup
            clock: Returns the current time (injected for tests)
        """
        self.store = store
        self.transport = transport
        self.tag_store = tag_store
        self.scheduler = scheduler
        self.webhook_client = webhook_client or WebhookClient()
        self.evaluator = block_evaluator or BlockEvaluator()
        self.max_steps = max_steps or settings.FLOW_MAX_STEPS
        self.event_history = event_history or settings.PROCESSED_EVENT_HISTORY
        self.clock = clock or utcnow

    # ==================== Entry Point ====================

    async def advance(
        self,
        graph: FlowGraph,
        context: ExecutionContext,
        event: InboundEvent
    ) -> AdvanceOutcome:
        """
        Advance an execution with one inbound event.

        Evaluation errors never raise: they end as an error result with the
        execution paused.

        Raises:
            ExecutionConflict: the context was saved by someone else
            DeliveryError: a message could not be delivered (state is saved)
            SchedulerError: a delay could not be scheduled (state is saved)
        """
        if not context.is_active:
            return self._skip(context, AdvanceStatus.IGNORED, f"execution is {context.status.value}")

        if context.has_processed(event.event_id):
            logger.info(f"Event {event.event_id} already processed [execution: {context.id}]")
            return self._skip(context, AdvanceStatus.DUPLICATE, "event already processed")

        reply: Optional[InboundEvent] = None
        delay_elapsed = False

        if context.awaiting_delay:
            if event.triggered_by_scheduler != context.pending_delay_token:
                return self._skip(context, AdvanceStatus.IGNORED, "waiting for delay continuation")
            delay_elapsed = True
        elif event.is_continuation:
            return self._skip(context, AdvanceStatus.IGNORED, "stale continuation token")
        elif context.awaiting_reply:
            if not event.has_reply:
                return self._skip(context, AdvanceStatus.IGNORED, "event carries no reply")
            reply = event

        outcome = AdvanceOutcome(status=AdvanceStatus.ADVANCED, context=context)
        tag_operations: List[TagOperation] = []
        now = self.clock()
        steps = 0

        while True:
            block = graph.get_block(context.current_block_id)

            if block is None:
                result = error_result(f"Block not found: {context.current_block_id}", BLOCK_NOT_FOUND)
                result.block_id = context.current_block_id
                outcome.results.append(result)
                self._halt(context, result, now)
                break

            if steps >= self.max_steps:
                result = error_result(
                    f"Step limit of {self.max_steps} blocks per event exceeded",
                    STEP_LIMIT_EXCEEDED
                )
                result.block_id = block.id
                result.block_type = block.type
                outcome.results.append(result)
                self._halt(context, result, now)
                break

            result = self.evaluator.evaluate(block, graph, context, reply=reply, delay_elapsed=delay_elapsed)
            reply = None
            delay_elapsed = False
            steps += 1

            outcome.results.append(result)
            outcome.messages.extend(result.messages)

            if result.is_error():
                self._halt(context, result, now)
                break

            if result.is_suspension():
                context.last_step_at = now
                if result.result_type == ResultType.AWAIT_REPLY:
                    context.awaiting_reply = True
                    break
                token = uuid.uuid4().hex
                context.pending_delay_token = token
                context.resume_at = now + timedelta(seconds=result.delay_seconds)
                outcome.continuation_token = token
                outcome.delay_seconds = result.delay_seconds
                break

            note = None
            updates = dict(result.variable_updates)
            if result.webhook_request is not None:
                response = await self._call_webhook(context, result.webhook_request)
                updates.update(response.variable_updates)
                if not response.success:
                    note = f"webhook failed: {response.error}"
            context.update_variables(updates)
            tag_operations.extend(result.tag_operations)

            if self._finish_if_terminal(block, result, context, now):
                break

            context.record_step(
                block.id,
                block.type,
                now,
                user_response=result.user_response,
                interactive_response_id=result.interactive_response_id,
                next_block_id=result.next_block_id,
                note=note,
            )

            if not result.next_block_id:
                logger.info(f"Block '{block.id}' has no target, ending flow [execution: {context.id}]")
                context.transition(ExecutionStatus.COMPLETED, now)
                break

            context.move_to_block(result.next_block_id)

        context.remember_event(event.event_id, self.event_history)
        await self._save(context)

        logger.info(
            f"Advanced execution {context.id} through {steps} blocks -> "
            f"{context.status.value} at '{context.current_block_id}'"
        )

        await self._apply_tags(context, tag_operations)

        scheduler_error: Optional[SchedulerError] = None
        if outcome.continuation_token:
            try:
                await self._schedule(context, outcome)
            except SchedulerError as e:
                logger.error(f"Could not schedule continuation for execution {context.id}: {e}")
                scheduler_error = e

        await self._deliver(context, outcome)

        if scheduler_error is not None:
            raise scheduler_error

        return outcome

    # ==================== Helpers ====================

    @staticmethod
    def _skip(context: ExecutionContext, status: AdvanceStatus, reason: str) -> AdvanceOutcome:
        logger.debug(f"Event not applied to execution {context.id}: {reason}")
        return AdvanceOutcome(status=status, context=context, reason=reason)

    @staticmethod
    def _halt(context: ExecutionContext, result: StepResult, now: datetime) -> None:
        """Record an evaluation error and pause the execution on its block"""
        description = f"{result.error_code}: {result.error}" if result.error_code else result.error
        context.record_step(
            result.block_id or "",
            result.block_type or "unknown",
            now,
            note=description,
        )
        context.set_paused(description, now)

    @staticmethod
    def _finish_if_terminal(
        block: BlockBase,
        result: StepResult,
        context: ExecutionContext,
        now: datetime
    ) -> bool:
        if not result.is_terminal():
            return False

        if result.result_type == ResultType.TRANSFER:
            context.record_step(block.id, block.type, now, target=result.transfer_target.value)
            status = (
                ExecutionStatus.TRANSFERRED_TO_AI
                if result.transfer_target == TransferTarget.AI
                else ExecutionStatus.TRANSFERRED_TO_HUMAN
            )
            context.transition(status, now)
            logger.info(f"Execution {context.id} transferred to {result.transfer_target.value}")
            return True

        if result.result_type == ResultType.END:
            context.record_step(block.id, block.type, now)
            context.transition(ExecutionStatus.COMPLETED, now)
            return True

        return False

    async def _save(self, context: ExecutionContext) -> None:
        if await self.store.save(context) == SaveResult.CONFLICT:
            raise ExecutionConflict(context.id, context.version)

    async def _call_webhook(self, context: ExecutionContext, request: WebhookRequest):
        # Checkpoint before the external call
        await self._save(context)
        response = await self.webhook_client.call(request)
        if not response.success:
            logger.warning(
                f"Webhook block failed ({response.error}), continuing "
                f"[execution: {context.id}]"
            )
        return response

    async def _apply_tags(self, context: ExecutionContext, operations: List[TagOperation]) -> None:
        if not operations:
            return
        if self.tag_store is None:
            logger.warning(f"No tag store configured, {len(operations)} tag operations dropped")
            return

        for operation in operations:
            try:
                if operation.operation == TagOperationType.ADD:
                    await self.tag_store.add_tag(context.conversation_id, operation.tag)
                else:
                    await self.tag_store.remove_tag(context.conversation_id, operation.tag)
            except Exception as e:
                logger.error(
                    f"Tag operation {operation.operation.value} '{operation.tag}' failed "
                    f"[conversation: {context.conversation_id}]: {e}"
                )

    async def _schedule(self, context: ExecutionContext, outcome: AdvanceOutcome) -> None:
        if self.scheduler is None:
            raise SchedulerError("No scheduler configured for delay blocks")
        await self.scheduler.schedule_continuation(
            context.flow_id,
            context.conversation_id,
            outcome.delay_seconds,
            token=outcome.continuation_token,
        )

    async def _deliver(self, context: ExecutionContext, outcome: AdvanceOutcome) -> None:
        for message in outcome.messages:
            try:
                receipt = await self.transport.send_message(
                    context.conversation_id,
                    message.content,
                    message.interactive
                )
            except DeliveryError as e:
                logger.error(f"Delivery to {context.conversation_id} failed: {e}")
                e.outcome = outcome
                raise
            outcome.receipts.append(receipt)


def create_flow_executor(
    store: ExecutionStore,
    transport: Transport,
    tag_store: Optional[TagStore] = None,
    scheduler: Optional[ContinuationScheduler] = None,
    webhook_client: Optional[WebhookClient] = None
) -> FlowExecutor:
    """Factory function to create a FlowExecutor"""
    return FlowExecutor(
        store=store,
        transport=transport,
        tag_store=tag_store,
        scheduler=scheduler,
        webhook_client=webhook_client,
    )
