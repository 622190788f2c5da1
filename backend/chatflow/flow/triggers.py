"""
Trigger resolution - decides which flow (if any) a message starts
"""
import logging
from typing import Iterable, Optional

from ..models.flow import FlowGraph, TriggerType
from ..models.events import InboundEvent

logger = logging.getLogger(__name__)


def matches_trigger(
    graph: FlowGraph,
    event: InboundEvent,
    has_prior_execution: bool = False
) -> bool:
    """
    Check whether an inbound event triggers a flow.

    Args:
        graph: Candidate flow
        event: Inbound event
        has_prior_execution: Conversation already ran some flow before

    Returns:
        True if the flow should start
    """
    if not graph.is_active:
        return False

    trigger = graph.trigger_type

    if trigger == TriggerType.MANUAL:
        return False

    if trigger == TriggerType.ALWAYS:
        return not has_prior_execution

    if trigger in (TriggerType.QR_CODE, TriggerType.LINK):
        return bool(graph.trigger_code) and event.trigger_code == graph.trigger_code

    if trigger == TriggerType.KEYWORD:
        text = (event.free_text or "").lower()
        if not text:
            return False
        return any(
            keyword.strip() and keyword.strip().lower() in text
            for keyword in graph.trigger_keywords
        )

    return False


def resolve_trigger(
    flows: Iterable[FlowGraph],
    event: InboundEvent,
    has_prior_execution: bool = False
) -> Optional[FlowGraph]:
    """
    Pick the flow started by an event.

    Flows are checked in the given order and the first match wins.
    """
    for graph in flows:
        if matches_trigger(graph, event, has_prior_execution):
            logger.info(
                f"Flow '{graph.name}' ({graph.id}) triggered by {graph.trigger_type.value} "
                f"[conversation: {event.conversation_id}]"
            )
            return graph
    return None
