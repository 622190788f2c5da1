"""
Pytest configuration and shared fixtures for chatflow tests.
"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Dict, Any

from chatflow.flow.executor import FlowExecutor
from chatflow.models.flow import FlowGraph
from chatflow.services.flows import InMemoryFlowRepository
from chatflow.services.lease import LeaseManager
from chatflow.services.runtime import FlowRuntime
from chatflow.services.scheduler import ContinuationScheduler
from chatflow.services.store import InMemoryExecutionStore
from chatflow.services.tags import InMemoryTagStore
from chatflow.services.transport import RecordingTransport


FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def support_flow_config() -> Dict[str, Any]:
    """Greeting, then Sales/Support buttons routed to human and AI handoffs."""
    return {
        "id": "support-flow",
        "name": "Support routing",
        "triggerType": "keyword",
        "triggerKeywords": ["help", "ajuda"],
        "startBlockId": "start",
        "blocks": [
            {"id": "start", "type": "start", "data": {"nextBlockId": "greet"}},
            {"id": "greet", "type": "message", "data": {"messageText": "Hi {{name}}", "nextBlockId": "menu"}},
            {
                "id": "menu",
                "type": "interactive_buttons",
                "data": {
                    "buttonsBody": "How can we help you?",
                    "buttonsFooter": "Pick one option",
                    "buttons": [
                        {"id": "sales", "title": "Sales", "nextBlockId": "to_human"},
                        {"id": "support", "title": "Support", "nextBlockId": "to_ai"},
                    ],
                },
            },
            {
                "id": "to_human",
                "type": "human_handoff",
                "data": {"transitionMessage": "Connecting you to our sales team"},
            },
            {
                "id": "to_ai",
                "type": "ai_handoff",
                "data": {"transitionMessage": "Our assistant will take it from here", "contextFormat": "summary"},
            },
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "greet"},
            {"id": "e2", "source": "greet", "target": "menu"},
            {"id": "e3", "source": "menu", "target": "to_human", "sourceHandle": "sales"},
            {"id": "e4", "source": "menu", "target": "to_ai", "sourceHandle": "support"},
        ],
    }


@pytest.fixture
def age_flow_config() -> Dict[str, Any]:
    """Condition on age with a default branch."""
    return {
        "id": "age-flow",
        "name": "Age gate",
        "triggerType": "manual",
        "startBlockId": "start",
        "blocks": [
            {"id": "start", "type": "start", "data": {"nextBlockId": "check"}},
            {
                "id": "check",
                "type": "condition",
                "data": {
                    "conditions": [{"variable": "age", "operator": ">", "value": 18, "nextBlockId": "adult"}],
                    "defaultNextBlockId": "minor",
                },
            },
            {"id": "adult", "type": "end", "data": {"messageText": "Welcome!"}},
            {"id": "minor", "type": "end", "data": {"messageText": "Sorry, adults only."}},
        ],
        "edges": [],
    }


@pytest.fixture
def delay_flow_config() -> Dict[str, Any]:
    """Ten second delay followed by an end block."""
    return {
        "id": "delay-flow",
        "name": "Delayed goodbye",
        "triggerType": "keyword",
        "triggerKeywords": ["wait"],
        "startBlockId": "start",
        "blocks": [
            {"id": "start", "type": "start", "data": {"messageText": "One moment...", "nextBlockId": "pause"}},
            {"id": "pause", "type": "delay", "data": {"delaySeconds": 10, "nextBlockId": "done"}},
            {"id": "done", "type": "end", "data": {"messageText": "Thanks for waiting"}},
        ],
        "edges": [],
    }


@pytest.fixture
def action_cycle_flow_config() -> Dict[str, Any]:
    """Two action blocks pointing at each other, never waiting."""
    return {
        "id": "cycle-flow",
        "name": "Broken loop",
        "triggerType": "manual",
        "startBlockId": "start",
        "blocks": [
            {"id": "start", "type": "start", "data": {"nextBlockId": "bump"}},
            {
                "id": "bump",
                "type": "action",
                "data": {"actionType": "increment", "actionParams": {"name": "counter"}, "nextBlockId": "again"},
            },
            {
                "id": "again",
                "type": "action",
                "data": {"actionType": "increment", "actionParams": {"name": "counter"}, "nextBlockId": "bump"},
            },
        ],
        "edges": [],
    }


@pytest.fixture
def list_flow_config() -> Dict[str, Any]:
    """Plan picker list that tags the conversation with the chosen plan."""
    return {
        "id": "plans-flow",
        "name": "Plan picker",
        "clientId": "acme",
        "triggerType": "keyword",
        "triggerKeywords": ["plans"],
        "startBlockId": "start",
        "blocks": [
            {"id": "start", "type": "start", "data": {"nextBlockId": "pick"}},
            {
                "id": "pick",
                "type": "interactive_list",
                "data": {
                    "listHeader": "Our plans",
                    "listBody": "Which plan interests you, {{name}}?",
                    "listButtonText": "See plans",
                    "listSections": [
                        {
                            "title": "Monthly",
                            "rows": [
                                {"id": "basic", "title": "Basic", "description": "For starters", "nextBlockId": "save"},
                                {"id": "pro", "title": "Pro", "nextBlockId": "save"},
                            ],
                        }
                    ],
                },
            },
            {
                "id": "save",
                "type": "action",
                "data": {
                    "actionType": "add_tag",
                    "actionParams": {"tag": "plan-{{last_interactive_response}}"},
                    "nextBlockId": "bye",
                },
            },
            {"id": "bye", "type": "end", "data": {"messageText": "Great choice!"}},
        ],
        "edges": [],
    }


@pytest.fixture
def support_flow(support_flow_config) -> FlowGraph:
    return FlowGraph.model_validate(support_flow_config)


@pytest.fixture
def age_flow(age_flow_config) -> FlowGraph:
    return FlowGraph.model_validate(age_flow_config)


@pytest.fixture
def delay_flow(delay_flow_config) -> FlowGraph:
    return FlowGraph.model_validate(delay_flow_config)


@pytest.fixture
def action_cycle_flow(action_cycle_flow_config) -> FlowGraph:
    return FlowGraph.model_validate(action_cycle_flow_config)


@pytest.fixture
def list_flow(list_flow_config) -> FlowGraph:
    return FlowGraph.model_validate(list_flow_config)


# ==================== Collaborators ====================

@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def tag_store():
    return InMemoryTagStore()


@pytest.fixture
def scheduler():
    return ContinuationScheduler(check_interval=0.01, clock=lambda: FIXED_NOW)


@pytest.fixture
def executor(store, transport, tag_store, scheduler):
    return FlowExecutor(
        store=store,
        transport=transport,
        tag_store=tag_store,
        scheduler=scheduler,
        max_steps=50,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def flows(support_flow, age_flow, delay_flow, action_cycle_flow, list_flow):
    return InMemoryFlowRepository([support_flow, age_flow, delay_flow, action_cycle_flow, list_flow])


@pytest.fixture
def runtime(store, flows, executor, scheduler):
    runtime = FlowRuntime(
        store=store,
        flows=flows,
        executor=executor,
        lease_manager=LeaseManager(timeout=0.05),
        scheduler=scheduler,
    )
    scheduler.set_handler(runtime.handle_event)
    return runtime


@pytest.fixture
def fixed_now():
    """Clock value shared by the executor and scheduler fixtures."""
    return FIXED_NOW


@pytest.fixture
def after_delay():
    """Moment past the ten second delay of the delay flow."""
    return FIXED_NOW + timedelta(seconds=11)
