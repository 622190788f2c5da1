"""
Unit tests for FlowExecutor.advance with in-memory collaborators.
"""
import json
import httpx
import pytest
from datetime import timedelta

from chatflow.core.exceptions import DeliveryError, ExecutionConflict, SchedulerError
from chatflow.flow.context import ExecutionStatus
from chatflow.flow.evaluator import UNMATCHED_CHOICE
from chatflow.flow.executor import (
    AdvanceStatus,
    BLOCK_NOT_FOUND,
    STEP_LIMIT_EXCEEDED,
    FlowExecutor,
)
from chatflow.models.events import InboundEvent
from chatflow.models.flow import FlowGraph
from chatflow.services.transport import RecordingTransport
from chatflow.services.webhook_client import WebhookClient

CONVERSATION = "5511999990000"


def inbound(event_id, text=None, choice=None, token=None) -> InboundEvent:
    return InboundEvent(
        event_id=event_id,
        conversation_id=CONVERSATION,
        free_text=text,
        interactive_choice_id=choice,
        triggered_by_scheduler=token,
    )


async def start(store, graph, variables=None):
    return await store.create(graph.id, CONVERSATION, graph.start_block_id, variables=variables)


def contents(outcome):
    return [m.content for m in outcome.messages]


class TestSupportScenario:
    """Greeting, buttons and handoff."""

    async def test_trigger_then_reply(self, executor, store, transport, support_flow):
        """Trigger emits greeting and buttons; replying transfers to the AI."""
        context = await start(store, support_flow, {"name": "Ana"})

        outcome = await executor.advance(support_flow, context, inbound("e1", text="help"))

        assert outcome.status == AdvanceStatus.ADVANCED
        assert contents(outcome) == ["Hi Ana", "How can we help you?"]
        assert outcome.messages[1].interactive.option_ids() == ["sales", "support"]
        assert context.awaiting_reply is True
        assert context.current_block_id == "menu"
        assert [s.block_type for s in context.history] == ["start", "message"]
        assert len(transport.sent) == 2

        context = await store.load(support_flow.id, CONVERSATION)
        outcome = await executor.advance(support_flow, context, inbound("e2", choice="support"))

        assert context.status == ExecutionStatus.TRANSFERRED_TO_AI
        assert [s.block_type for s in context.history] == [
            "start", "message", "interactive_buttons", "ai_handoff"
        ]
        assert context.history[2].interactive_response_id == "support"
        assert context.history[2].next_block_id == "to_ai"
        assert context.history[3].target == "ai"
        assert context.variables["last_interactive_response"] == "support"
        assert contents(outcome) == ["Our assistant will take it from here"]
        assert "Last customer interaction: Support" in outcome.flow_context
        assert outcome.notify_agent is False

    async def test_human_handoff_asks_to_notify_agent(self, executor, store, support_flow):
        """Human handoffs tell the caller to notify an agent."""
        context = await start(store, support_flow)
        await executor.advance(support_flow, context, inbound("e1", text="help"))

        context = await store.load(support_flow.id, CONVERSATION)
        outcome = await executor.advance(support_flow, context, inbound("e2", choice="sales"))
        data = outcome.to_dict()

        assert context.status == ExecutionStatus.TRANSFERRED_TO_HUMAN
        assert outcome.notify_agent is True
        assert data["notify_agent"] is True
        assert data["transfer_target"] == "human"
        assert data["results"][-1]["result_type"] == "transfer"

    async def test_unmatched_choice_pauses_in_place(self, executor, store, support_flow):
        """An unknown option pauses the execution on the same block."""
        context = await start(store, support_flow)
        await executor.advance(support_flow, context, inbound("e1", text="help"))

        context = await store.load(support_flow.id, CONVERSATION)
        outcome = await executor.advance(support_flow, context, inbound("e2", choice="billing"))

        assert outcome.error_code == UNMATCHED_CHOICE
        assert context.status == ExecutionStatus.PAUSED
        assert context.current_block_id == "menu"
        assert UNMATCHED_CHOICE in context.last_error
        assert context.history[-1].block_id == "menu"
        assert UNMATCHED_CHOICE in context.history[-1].note

    async def test_event_without_reply_is_ignored(self, executor, store, support_flow):
        """While awaiting a reply, bare events change nothing."""
        context = await start(store, support_flow)
        await executor.advance(support_flow, context, inbound("e1", text="help"))

        context = await store.load(support_flow.id, CONVERSATION)
        version = context.version
        outcome = await executor.advance(support_flow, context, inbound("e2"))

        assert outcome.status == AdvanceStatus.IGNORED
        assert (await store.load(support_flow.id, CONVERSATION)).version == version


class TestIdempotence:
    """Tests for event-id dedup."""

    async def test_replay_is_duplicate(self, executor, store, transport, support_flow):
        """Replaying a processed event changes nothing."""
        context = await start(store, support_flow)
        await executor.advance(support_flow, context, inbound("e1", text="help"))

        stored = await store.load(support_flow.id, CONVERSATION)
        outcome = await executor.advance(support_flow, stored, inbound("e1", text="help"))

        assert outcome.status == AdvanceStatus.DUPLICATE
        reloaded = await store.load(support_flow.id, CONVERSATION)
        assert reloaded.version == stored.version
        assert len(reloaded.history) == 2
        assert len(transport.sent) == 2

    async def test_terminal_context_is_ignored(self, executor, store, age_flow):
        """Finished executions do not advance."""
        context = await start(store, age_flow, {"age": 30})
        await executor.advance(age_flow, context, inbound("e1"))
        assert context.status == ExecutionStatus.COMPLETED

        outcome = await executor.advance(age_flow, context, inbound("e2", text="again"))
        assert outcome.status == AdvanceStatus.IGNORED


class TestConditionScenario:
    """Age gate."""

    @pytest.mark.parametrize("age,message", [
        (15, "Sorry, adults only."),
        ("not-a-number", "Sorry, adults only."),
        (40, "Welcome!"),
    ])
    async def test_age_routes(self, executor, store, age_flow, fixed_now, age, message):
        """Failed numeric coercion takes the default branch."""
        context = await start(store, age_flow, {"age": age})
        outcome = await executor.advance(age_flow, context, inbound("e1"))

        assert contents(outcome) == [message]
        assert context.status == ExecutionStatus.COMPLETED
        assert context.completed_at == fixed_now


class TestStepBound:
    """Cycles without a reply."""

    async def test_action_cycle_halts(self, executor, store, action_cycle_flow):
        """An action loop stops with an error after the step limit."""
        context = await start(store, action_cycle_flow)
        outcome = await executor.advance(action_cycle_flow, context, inbound("e1"))

        assert outcome.error_code == STEP_LIMIT_EXCEEDED
        assert context.status == ExecutionStatus.PAUSED
        assert context.variables["counter"] == 49
        assert len(outcome.results) == 51

    async def test_missing_block(self, executor, store):
        """A target that does not exist pauses the execution there."""
        graph = FlowGraph.model_validate({
            "id": "broken",
            "triggerType": "manual",
            "startBlockId": "start",
            "blocks": [{"id": "start", "type": "message", "data": {"messageText": "Hi", "nextBlockId": "ghost"}}],
        })
        context = await start(store, graph)
        outcome = await executor.advance(graph, context, inbound("e1"))

        assert outcome.error_code == BLOCK_NOT_FOUND
        assert context.status == ExecutionStatus.PAUSED
        assert context.current_block_id == "ghost"
        assert contents(outcome) == ["Hi"]

    async def test_implicit_end(self, executor, store):
        """A block without a target completes the flow."""
        graph = FlowGraph.model_validate({
            "id": "short",
            "triggerType": "manual",
            "startBlockId": "start",
            "blocks": [{"id": "start", "type": "message", "data": {"messageText": "Bye"}}],
        })
        context = await start(store, graph)
        await executor.advance(graph, context, inbound("e1"))

        assert context.status == ExecutionStatus.COMPLETED
        assert context.history[-1].block_id == "start"


class TestDelayScenario:
    """Delay followed by end."""

    async def test_delay_waits_for_token(self, executor, store, scheduler, delay_flow, fixed_now):
        """Only the scheduler's token resumes a delay."""
        context = await start(store, delay_flow)
        outcome = await executor.advance(delay_flow, context, inbound("e1", text="wait"))

        token = outcome.continuation_token
        assert token is not None
        assert contents(outcome) == ["One moment..."]
        assert context.pending_delay_token == token
        assert context.resume_at == fixed_now + timedelta(seconds=10)
        assert [c.token for c in scheduler.get_pending(CONVERSATION)] == [token]

        context = await store.load(delay_flow.id, CONVERSATION)
        spurious = await executor.advance(delay_flow, context, inbound("e2", text="hello?"))
        assert spurious.status == AdvanceStatus.IGNORED
        stale = await executor.advance(delay_flow, context, inbound("e3", token="other"))
        assert stale.status == AdvanceStatus.IGNORED
        assert context.current_block_id == "pause"

        context = await store.load(delay_flow.id, CONVERSATION)
        resumed = await executor.advance(delay_flow, context, inbound(f"continuation:{token}", token=token))

        assert resumed.status == AdvanceStatus.ADVANCED
        assert contents(resumed) == ["Thanks for waiting"]
        assert context.status == ExecutionStatus.COMPLETED
        assert context.pending_delay_token is None
        assert [s.block_id for s in context.history] == ["start", "pause", "done"]

    async def test_scheduler_failure_surfaces(self, store, transport, delay_flow):
        """Without a scheduler the delay is saved and delivered, then the error raised."""
        executor = FlowExecutor(store=store, transport=transport)
        context = await start(store, delay_flow)

        with pytest.raises(SchedulerError):
            await executor.advance(delay_flow, context, inbound("e1", text="wait"))

        stored = await store.load(delay_flow.id, CONVERSATION)
        assert stored.pending_delay_token is not None
        assert [item["message"].content for item in transport.sent] == ["One moment..."]


class TestSideEffects:
    """Tags, delivery and persistence."""

    async def test_tags_applied(self, executor, store, tag_store, list_flow):
        """Tag actions reach the tag store."""
        context = await start(store, list_flow, {"name": "Ana"})
        await executor.advance(list_flow, context, inbound("e1", text="plans"))

        context = await store.load(list_flow.id, CONVERSATION)
        outcome = await executor.advance(list_flow, context, inbound("e2", choice="pro"))

        assert tag_store.get_tags(CONVERSATION) == {"plan-pro"}
        assert contents(outcome) == ["Great choice!"]
        assert context.status == ExecutionStatus.COMPLETED

    async def test_delivery_failure_raises_after_save(self, store, support_flow):
        """Transport failures surface with the outcome; state is saved."""
        executor = FlowExecutor(store=store, transport=RecordingTransport(fail_with="provider down"))
        context = await start(store, support_flow)

        with pytest.raises(DeliveryError) as exc_info:
            await executor.advance(support_flow, context, inbound("e1", text="help"))

        assert exc_info.value.outcome.context.current_block_id == "menu"
        stored = await store.load(support_flow.id, CONVERSATION)
        assert stored.awaiting_reply is True
        assert stored.version == 2

    async def test_stale_context_conflicts(self, executor, store, support_flow):
        """Saving a stale copy raises ExecutionConflict."""
        await start(store, support_flow)
        first = await store.load(support_flow.id, CONVERSATION)
        second = await store.load(support_flow.id, CONVERSATION)

        await executor.advance(support_flow, first, inbound("e1", text="help"))
        with pytest.raises(ExecutionConflict):
            await executor.advance(support_flow, second, inbound("e2", text="help"))


class TestWebhookBlock:
    """Webhook calls inside a flow."""

    @pytest.fixture
    def webhook_flow(self):
        return FlowGraph.model_validate({
            "id": "crm-flow",
            "triggerType": "manual",
            "startBlockId": "start",
            "blocks": [
                {"id": "start", "type": "start", "data": {"nextBlockId": "hook"}},
                {"id": "hook", "type": "webhook", "data": {
                    "webhookUrl": "https://crm.example.com/leads",
                    "webhookBody": {"name": "{{name}}"},
                    "responseMapping": {"crm_id": "data.id"},
                    "statusVariable": "crm_status",
                    "nextBlockId": "done",
                }},
                {"id": "done", "type": "end", "data": {"messageText": "Saved {{crm_id}}"}},
            ],
        })

    def make_executor(self, store, transport, handler):
        client = WebhookClient(http_transport=httpx.MockTransport(handler))
        return FlowExecutor(store=store, transport=transport, webhook_client=client)

    async def test_response_mapped_into_variables(self, store, transport, webhook_flow):
        """Mapped response values become variables; the call is checkpointed."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"data": {"id": 42}})

        executor = self.make_executor(store, transport, handler)
        context = await start(store, webhook_flow, {"name": "Ana"})
        outcome = await executor.advance(webhook_flow, context, inbound("e1"))

        assert seen[0].method == "POST"
        assert json.loads(seen[0].content) == {"name": "Ana"}
        assert context.variables["crm_id"] == 42
        assert context.variables["crm_status"] == 201
        assert contents(outcome) == ["Saved 42"]
        assert context.version == 3

    async def test_failure_continues(self, store, transport, webhook_flow):
        """A failing webhook is noted and the flow goes on."""
        executor = self.make_executor(store, transport, lambda request: httpx.Response(500, text="oops"))
        context = await start(store, webhook_flow, {"name": "Ana"})
        outcome = await executor.advance(webhook_flow, context, inbound("e1"))

        assert context.status == ExecutionStatus.COMPLETED
        assert context.variables["crm_status"] == 500
        assert "crm_id" not in context.variables
        assert "webhook failed" in context.history[1].note
        assert contents(outcome) == ["Saved {{crm_id}}"]

    async def test_malformed_url_continues(self, store, transport):
        """A rendered URL httpx cannot parse fails the call, not the flow."""
        graph = FlowGraph.model_validate({
            "id": "lookup-flow",
            "triggerType": "manual",
            "startBlockId": "start",
            "blocks": [
                {"id": "start", "type": "start", "data": {"nextBlockId": "hook"}},
                {"id": "hook", "type": "webhook", "data": {
                    "webhookUrl": "https://crm.example.com/lookup?q={{note}}",
                    "webhookMethod": "GET",
                    "nextBlockId": "done",
                }},
                {"id": "done", "type": "end", "data": {"messageText": "Done"}},
            ],
        })
        executor = self.make_executor(store, transport, lambda request: httpx.Response(200, json={}))
        context = await start(store, graph, {"note": "line one\nline two"})

        outcome = await executor.advance(graph, context, inbound("e1"))

        assert context.status == ExecutionStatus.COMPLETED
        assert "webhook failed" in context.history[1].note
        assert contents(outcome) == ["Done"]
