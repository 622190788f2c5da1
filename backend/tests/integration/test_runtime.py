"""
Integration tests for FlowRuntime: triggers, leases, retries and continuations.
"""
import pytest

from chatflow.core.exceptions import (
    ExecutionAlreadyActive,
    ExecutionConflict,
    ExecutionNotFound,
    FlowNotFound,
    InvalidTransition,
)
from chatflow.flow.context import ExecutionStatus
from chatflow.flow.executor import FlowExecutor
from chatflow.models.events import InboundEvent
from chatflow.models.flow import FlowGraph
from chatflow.services.lease import LeaseManager
from chatflow.services.runtime import FlowRuntime, RuntimeStatus
from chatflow.services.scheduler import ContinuationKind
from chatflow.services.store import InMemoryExecutionStore, SaveResult

CONVERSATION = "5511988887777"


def message(event_id, text=None, choice=None, flow_id=None) -> InboundEvent:
    return InboundEvent(
        event_id=event_id,
        conversation_id=CONVERSATION,
        free_text=text,
        interactive_choice_id=choice,
        flow_id=flow_id,
    )


class FlakyStore(InMemoryExecutionStore):
    """Reports a conflict for the first ``failures`` saves."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def save(self, context):
        if self.failures > 0:
            self.failures -= 1
            return SaveResult.CONFLICT
        return await super().save(context)


class TestRouting:
    """Tests for handle_event routing."""

    async def test_keyword_starts_then_reply_continues(self, runtime, transport):
        """A keyword starts the flow; the reply continues the same execution."""
        started = await runtime.handle_event(message("m1", text="I need help"))

        assert started.status == RuntimeStatus.STARTED
        assert started.flow_name == "Support routing"
        assert [m.content for m in started.messages] == ["Hi {{name}}", "How can we help you?"]
        assert started.should_continue_to_ai is False

        replied = await runtime.handle_event(message("m2", choice="sales"))

        assert replied.status == RuntimeStatus.ADVANCED
        assert replied.context.id == started.context.id
        assert replied.context.status == ExecutionStatus.TRANSFERRED_TO_HUMAN
        assert replied.to_dict()["notify_agent"] is True
        assert replied.should_continue_to_ai is False
        assert len(transport.messages_for(CONVERSATION)) == 3

    async def test_ai_handoff_continues_to_ai(self, runtime):
        """Transfers to the AI tell the caller to continue with the agent."""
        await runtime.handle_event(message("m1", text="help"))
        outcome = await runtime.handle_event(message("m2", choice="support"))

        assert outcome.should_continue_to_ai is True
        assert outcome.to_dict()["transfer_target"] == "ai"

    async def test_no_flow(self, runtime):
        """Without execution or trigger the event goes to the AI."""
        outcome = await runtime.handle_event(message("m1", text="good morning"))

        assert outcome.status == RuntimeStatus.NO_FLOW
        assert outcome.should_continue_to_ai is True
        assert outcome.to_dict()["flow_executed"] is False

    async def test_flow_id_restricts_triggers(self, runtime):
        """An event naming a flow only considers that flow."""
        outcome = await runtime.handle_event(message("m1", text="help with plans", flow_id="plans-flow"))
        assert outcome.flow_id == "plans-flow"

    async def test_always_trigger_first_contact_only(self, runtime, flows):
        """Always-on flows start once per conversation."""
        flows.add(FlowGraph.model_validate({
            "id": "welcome",
            "name": "Welcome",
            "triggerType": "always",
            "startBlockId": "hello",
            "blocks": [{"id": "hello", "type": "end", "data": {"messageText": "Welcome!"}}],
        }))

        first = await runtime.handle_event(message("m1", text="hi"))
        second = await runtime.handle_event(message("m2", text="hi again"))

        assert first.status == RuntimeStatus.STARTED
        assert second.status == RuntimeStatus.NO_FLOW

    async def test_duplicate_event(self, runtime, transport):
        """Redelivered events are not applied twice."""
        await runtime.handle_event(message("m1", text="help"))
        outcome = await runtime.handle_event(message("m1", text="help"))

        assert outcome.status == RuntimeStatus.DUPLICATE
        assert len(transport.sent) == 2

    async def test_redelivered_trigger_does_not_restart(self, runtime, transport):
        """A trigger already handled by a finished execution does not start it again."""
        await runtime.handle_event(message("m1", text="help"))
        await runtime.handle_event(message("m2", choice="support"))
        sent = len(transport.sent)

        outcome = await runtime.handle_event(message("m1", text="help"))

        assert outcome.status == RuntimeStatus.DUPLICATE
        assert outcome.context.status == ExecutionStatus.TRANSFERRED_TO_AI
        assert len(transport.sent) == sent

    async def test_missing_flow_pauses_execution(self, runtime, flows, store):
        """An execution whose flow was removed is paused."""
        await runtime.handle_event(message("m1", text="help"))
        flows.remove("support-flow")

        outcome = await runtime.handle_event(message("m2", choice="sales"))

        assert outcome.status == RuntimeStatus.IGNORED
        stored = await store.load("support-flow", CONVERSATION)
        assert stored.status == ExecutionStatus.PAUSED
        assert stored.last_error.startswith("FLOW_NOT_FOUND")


class TestDelay:
    """Tests for delay continuations through the scheduler."""

    async def test_continuation_completes_flow(self, runtime, scheduler, store, transport, after_delay):
        """Only the scheduler's continuation moves past the delay."""
        started = await runtime.handle_event(message("m1", text="please wait"))
        assert started.status == RuntimeStatus.STARTED
        assert started.advance.continuation_token is not None

        early = await runtime.handle_event(message("m2", text="are you there?"))
        assert early.status == RuntimeStatus.IGNORED
        assert (await store.load("delay-flow", CONVERSATION)).current_block_id == "pause"

        fired = await scheduler.process_due(now=after_delay)

        assert fired == 1
        stored = await store.load("delay-flow", CONVERSATION)
        assert stored.status == ExecutionStatus.COMPLETED
        assert [m.content for m in transport.messages_for(CONVERSATION)] == [
            "One moment...", "Thanks for waiting"
        ]

    async def test_cancel_drops_continuation(self, runtime, scheduler):
        """Cancelling a delayed execution cancels its continuation."""
        await runtime.handle_event(message("m1", text="wait"))
        assert len(scheduler.get_pending(CONVERSATION)) == 1

        context = await runtime.cancel("delay-flow", CONVERSATION)

        assert context.status == ExecutionStatus.CANCELLED
        assert scheduler.get_pending(CONVERSATION) == []

    async def test_restore_after_restart(self, runtime, scheduler, store, transport, after_delay):
        """Delays persisted by a previous process are scheduled again."""
        await runtime.handle_event(message("m1", text="wait"))
        scheduler.scheduled.clear()

        assert await runtime.restore_continuations() == 1
        assert await runtime.restore_continuations() == 0

        stored = await store.load("delay-flow", CONVERSATION)
        assert scheduler.is_scheduled(stored.pending_delay_token)

        assert await scheduler.process_due(now=after_delay) == 1
        assert (await store.load("delay-flow", CONVERSATION)).status == ExecutionStatus.COMPLETED
        assert transport.messages_for(CONVERSATION)[-1].content == "Thanks for waiting"


class TestLease:
    """Tests for lease contention."""

    async def test_busy_lease_defers_event(self, runtime, scheduler, store, after_delay):
        """Events that cannot get the lease are re-delivered later."""
        await runtime.handle_event(message("m1", text="help"))

        async with runtime.lease_manager.lease("support-flow", CONVERSATION):
            outcome = await runtime.handle_event(message("m2", choice="support"))

        assert outcome.status == RuntimeStatus.DEFERRED
        pending = scheduler.get_pending(CONVERSATION)
        assert [c.kind for c in pending] == [ContinuationKind.DEFERRED]

        await scheduler.process_due(now=after_delay)

        stored = await store.load("support-flow", CONVERSATION)
        assert stored.status == ExecutionStatus.TRANSFERRED_TO_AI


class TestConflicts:
    """Tests for optimistic concurrency retries."""

    def make_runtime(self, store, flows, transport):
        executor = FlowExecutor(store=store, transport=transport)
        return FlowRuntime(store=store, flows=flows, executor=executor, lease_manager=LeaseManager(timeout=0.05))

    async def test_conflict_is_retried(self, flows, transport):
        """A conflicting save restarts from a fresh load."""
        store = FlakyStore(failures=1)
        runtime = self.make_runtime(store, flows, transport)

        outcome = await runtime.start_flow("age-flow", CONVERSATION, variables={"age": 20})

        assert outcome.status == RuntimeStatus.STARTED
        assert outcome.context.status == ExecutionStatus.COMPLETED
        assert [m.content for m in transport.messages_for(CONVERSATION)] == ["Welcome!"]

    async def test_gives_up_after_retries(self, flows, transport):
        """Persistent conflicts surface as ExecutionConflict."""
        store = FlakyStore(failures=100)
        runtime = self.make_runtime(store, flows, transport)

        with pytest.raises(ExecutionConflict):
            await runtime.start_flow("age-flow", CONVERSATION, variables={"age": 20})
        assert transport.sent == []


class TestExplicitOperations:
    """Tests for start_flow, cancel and get_execution."""

    async def test_manual_start(self, runtime):
        """Manual flows start through start_flow with initial variables."""
        outcome = await runtime.start_flow("age-flow", CONVERSATION, variables={"age": 12})

        assert outcome.flow_started
        assert [m.content for m in outcome.messages] == ["Sorry, adults only."]

    async def test_start_unknown_flow(self, runtime):
        """Unknown flows cannot be started."""
        with pytest.raises(FlowNotFound):
            await runtime.start_flow("nope", CONVERSATION)

    async def test_start_refuses_active(self, runtime):
        """A second start while active is refused."""
        await runtime.start_flow("support-flow", CONVERSATION)
        with pytest.raises(ExecutionAlreadyActive):
            await runtime.start_flow("support-flow", CONVERSATION)

    async def test_start_replaces_finished(self, runtime):
        """Finished executions are replaced by a fresh one."""
        first = await runtime.start_flow("age-flow", CONVERSATION, variables={"age": 12})
        second = await runtime.start_flow("age-flow", CONVERSATION, variables={"age": 30})

        assert second.context.id != first.context.id
        assert second.context.variables["age"] == 30

    async def test_cancel(self, runtime):
        """Cancel is a forced terminal transition."""
        await runtime.start_flow("support-flow", CONVERSATION)

        context = await runtime.cancel("support-flow", CONVERSATION)
        assert context.status == ExecutionStatus.CANCELLED

        with pytest.raises(InvalidTransition):
            await runtime.cancel("support-flow", CONVERSATION)

    async def test_cancel_unknown(self, runtime):
        """Cancelling a missing execution raises ExecutionNotFound."""
        with pytest.raises(ExecutionNotFound):
            await runtime.cancel("support-flow", "nobody")

    async def test_get_execution(self, runtime):
        """The stored record is returned."""
        await runtime.start_flow("support-flow", CONVERSATION)
        context = await runtime.get_execution("support-flow", CONVERSATION)

        assert context.current_block_id == "menu"
        assert context.awaiting_reply is True
        with pytest.raises(ExecutionNotFound):
            await runtime.get_execution("age-flow", CONVERSATION)
