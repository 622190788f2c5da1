"""
Unit tests for ExecutionContext.
"""
import pytest
from datetime import datetime, timezone

from chatflow.core.exceptions import InvalidTransition
from chatflow.flow.context import ExecutionContext, ExecutionStatus, create_context


@pytest.fixture
def context():
    """Create an execution context at the start block."""
    return create_context("flow-1", "5511999990000", "start", client_id="acme", variables={"name": "Ana"})


class TestTransitions:
    """Tests for status transitions."""

    def test_terminal_status_sets_completion(self, context):
        """Moving to a terminal status stamps completed_at and clears waits."""
        context.awaiting_reply = True
        context.pending_delay_token = "abc"
        context.transition(ExecutionStatus.COMPLETED)

        assert context.is_terminal
        assert context.completed_at is not None
        assert context.awaiting_reply is False
        assert context.pending_delay_token is None

    @pytest.mark.parametrize("terminal", [
        ExecutionStatus.COMPLETED,
        ExecutionStatus.TRANSFERRED_TO_AI,
        ExecutionStatus.TRANSFERRED_TO_HUMAN,
        ExecutionStatus.CANCELLED,
    ])
    def test_terminal_is_final(self, context, terminal):
        """No status change is allowed out of a terminal status."""
        context.transition(terminal)
        with pytest.raises(InvalidTransition):
            context.transition(ExecutionStatus.ACTIVE)

    def test_paused_can_only_be_cancelled(self, context):
        """A paused execution cannot resume, only be cancelled."""
        context.set_paused("NO_MATCHING_BRANCH: boom")
        assert context.last_error == "NO_MATCHING_BRANCH: boom"

        with pytest.raises(InvalidTransition):
            context.transition(ExecutionStatus.ACTIVE)

        context.transition(ExecutionStatus.CANCELLED)
        assert context.status == ExecutionStatus.CANCELLED


class TestEventMemory:
    """Tests for processed event ids."""

    def test_remember_and_check(self, context):
        """Remembered event ids are reported as processed."""
        context.remember_event("evt-1")
        assert context.has_processed("evt-1")
        assert not context.has_processed("evt-2")
        assert not context.has_processed(None)

    def test_history_is_bounded(self, context):
        """Only the most recent ids are kept."""
        for index in range(5):
            context.remember_event(f"evt-{index}", limit=3)
        assert context.processed_event_ids == ["evt-2", "evt-3", "evt-4"]


class TestSerialization:
    """Tests for context serialization."""

    def test_round_trip(self, context):
        """to_json/from_json reproduce an equal context."""
        at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        context.record_step("start", "start", at, next_block_id="greet")
        context.move_to_block("menu")
        context.awaiting_reply = True
        context.remember_event("evt-1")
        context.version = 4

        restored = ExecutionContext.from_json(context.to_json())

        assert restored == context
        assert restored.history[0].executed_at == at
        assert restored.status == ExecutionStatus.ACTIVE

    def test_copy_is_independent(self, context):
        """Copies do not share variables with the original."""
        clone = context.copy()
        clone.set_variable("name", "Bia")
        assert context.get_variable("name") == "Ana"
