from .flow import (
    # Enums
    BlockType,
    TriggerType,
    ConditionOperator,
    ActionType,
    ContextFormat,

    # Graph
    Block,
    BlockBase,
    FlowEdge,
    FlowGraph,
    SINGLE_EXIT_TYPES,
)
from .events import (
    InboundEvent,
    OutboundMessage,
    InteractiveKind,
    InteractiveOption,
    InteractiveSection,
    InteractivePayload,
)

__all__ = [
    # Flow - Enums
    "BlockType", "TriggerType", "ConditionOperator", "ActionType", "ContextFormat",

    # Flow - Graph
    "Block", "BlockBase", "FlowEdge", "FlowGraph", "SINGLE_EXIT_TYPES",

    # Events
    "InboundEvent", "OutboundMessage", "InteractiveKind",
    "InteractiveOption", "InteractiveSection", "InteractivePayload",
]
