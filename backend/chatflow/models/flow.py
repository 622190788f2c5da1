"""
Interactive flow graph models - blocks, edges and triggers
"""
from enum import Enum
from typing import Optional, Any, List, Dict, Union, Literal, Annotated
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, AliasChoices
from pydantic.alias_generators import to_camel


class BlockType(str, Enum):
    """Closed set of block types understood by the engine"""
    START = "start"
    MESSAGE = "message"
    INTERACTIVE_LIST = "interactive_list"
    INTERACTIVE_BUTTONS = "interactive_buttons"
    CONDITION = "condition"
    ACTION = "action"
    AI_HANDOFF = "ai_handoff"
    HUMAN_HANDOFF = "human_handoff"
    DELAY = "delay"
    WEBHOOK = "webhook"
    END = "end"


class TriggerType(str, Enum):
    """How a new execution of a flow gets started"""
    KEYWORD = "keyword"
    ALWAYS = "always"
    MANUAL = "manual"
    QR_CODE = "qr_code"
    LINK = "link"


class ConditionOperator(str, Enum):
    """Canonical operators for CONDITION blocks (aliases accepted by the evaluator)"""
    EQUALS = "=="
    NOT_EQUALS = "!="
    GREATER_THAN = ">"
    LESS_THAN = "<"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"


class ActionType(str, Enum):
    """Action types for ACTION blocks"""
    SET_VARIABLE = "set_variable"
    INCREMENT = "increment"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"


class ContextFormat(str, Enum):
    """How much of the execution is handed to the AI on ai_handoff"""
    SUMMARY = "summary"
    FULL = "full"


# WhatsApp interactive message limits
BUTTONS_MAX_COUNT = 3
BUTTON_TITLE_MAX_LENGTH = 20
INTERACTIVE_BODY_MAX_LENGTH = 1024
INTERACTIVE_FOOTER_MAX_LENGTH = 60
LIST_MAX_SECTIONS = 10
LIST_MAX_ROWS_PER_SECTION = 10
LIST_MAX_TOTAL_ROWS = 100
LIST_HEADER_MAX_LENGTH = 60
LIST_BUTTON_TEXT_MAX_LENGTH = 20
LIST_SECTION_TITLE_MAX_LENGTH = 24
LIST_ROW_TITLE_MAX_LENGTH = 24
LIST_ROW_DESCRIPTION_MAX_LENGTH = 72


class FlowModel(BaseModel):
    """
    Base for graph models.

    Accepts both the editor's camelCase keys and snake_case, and is frozen:
    the engine only ever reads a published graph.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )


# ============ PAYLOAD PIECES ============

class ListRow(FlowModel):
    """One selectable row of an interactive list"""
    id: str
    title: str
    description: Optional[str] = None
    next_block_id: Optional[str] = None


class ListSection(FlowModel):
    """Section of an interactive list"""
    id: Optional[str] = None
    title: str = ""
    rows: List[ListRow] = Field(default_factory=list)


class ReplyButton(FlowModel):
    """Quick reply button"""
    id: str
    title: str
    next_block_id: Optional[str] = None


class Condition(FlowModel):
    """Single comparison of a CONDITION block, evaluated in authored order"""
    variable: str
    operator: str = ConditionOperator.EQUALS.value
    value: Any = None
    next_block_id: str


# ============ BLOCK PAYLOADS ============

class BlockData(FlowModel):
    """Fields shared by every block payload"""
    label: Optional[str] = None


class StartData(BlockData):
    message_text: Optional[str] = None
    next_block_id: Optional[str] = None


class MessageData(BlockData):
    message_text: str = ""
    next_block_id: Optional[str] = None


class InteractiveListData(BlockData):
    list_header: Optional[str] = None
    list_body: str = ""
    list_footer: Optional[str] = None
    list_button_text: str = ""
    list_sections: List[ListSection] = Field(default_factory=list)


class InteractiveButtonsData(BlockData):
    buttons_body: str = ""
    buttons_footer: Optional[str] = None
    buttons: List[ReplyButton] = Field(default_factory=list)


class ConditionData(BlockData):
    conditions: List[Condition] = Field(default_factory=list)
    default_next_block_id: Optional[str] = None


class ActionData(BlockData):
    action_type: Optional[str] = None
    action_params: Dict[str, Any] = Field(default_factory=dict)
    next_block_id: Optional[str] = None


class AIHandoffData(BlockData):
    transition_message: Optional[str] = None
    include_flow_context: bool = True
    context_format: ContextFormat = ContextFormat.SUMMARY


class HumanHandoffData(BlockData):
    transition_message: Optional[str] = None
    notify_agent: bool = True


class DelayData(BlockData):
    delay_seconds: float = 0
    next_block_id: Optional[str] = None


class WebhookData(BlockData):
    webhook_url: str = ""
    webhook_method: str = "POST"
    webhook_headers: Dict[str, str] = Field(default_factory=dict)
    webhook_body: Optional[Dict[str, Any]] = None
    response_mapping: Dict[str, str] = Field(default_factory=dict)  # variable -> dot path in JSON response
    status_variable: Optional[str] = None
    timeout_seconds: Optional[float] = None
    next_block_id: Optional[str] = None


class EndData(BlockData):
    message_text: Optional[str] = None


# ============ BLOCKS ============

class BlockBase(FlowModel):
    id: str
    position: Optional[Dict[str, Any]] = None  # {x, y} for the visual editor


class StartBlock(BlockBase):
    type: Literal["start"] = "start"
    data: StartData = Field(default_factory=StartData)


class MessageBlock(BlockBase):
    type: Literal["message"] = "message"
    data: MessageData = Field(default_factory=MessageData)


class InteractiveListBlock(BlockBase):
    type: Literal["interactive_list"] = "interactive_list"
    data: InteractiveListData = Field(default_factory=InteractiveListData)


class InteractiveButtonsBlock(BlockBase):
    type: Literal["interactive_buttons"] = "interactive_buttons"
    data: InteractiveButtonsData = Field(default_factory=InteractiveButtonsData)


class ConditionBlock(BlockBase):
    type: Literal["condition"] = "condition"
    data: ConditionData = Field(default_factory=ConditionData)


class ActionBlock(BlockBase):
    type: Literal["action"] = "action"
    data: ActionData = Field(default_factory=ActionData)


class AIHandoffBlock(BlockBase):
    type: Literal["ai_handoff"] = "ai_handoff"
    data: AIHandoffData = Field(default_factory=AIHandoffData)


class HumanHandoffBlock(BlockBase):
    type: Literal["human_handoff"] = "human_handoff"
    data: HumanHandoffData = Field(default_factory=HumanHandoffData)


class DelayBlock(BlockBase):
    type: Literal["delay"] = "delay"
    data: DelayData = Field(default_factory=DelayData)


class WebhookBlock(BlockBase):
    type: Literal["webhook"] = "webhook"
    data: WebhookData = Field(default_factory=WebhookData)


class EndBlock(BlockBase):
    type: Literal["end"] = "end"
    data: EndData = Field(default_factory=EndData)


Block = Annotated[
    Union[
        StartBlock,
        MessageBlock,
        InteractiveListBlock,
        InteractiveButtonsBlock,
        ConditionBlock,
        ActionBlock,
        AIHandoffBlock,
        HumanHandoffBlock,
        DelayBlock,
        WebhookBlock,
        EndBlock,
    ],
    Field(discriminator="type"),
]

# Blocks with exactly one exit, resolved from data.next_block_id or the outgoing edge
SINGLE_EXIT_TYPES = {
    BlockType.START.value,
    BlockType.MESSAGE.value,
    BlockType.ACTION.value,
    BlockType.DELAY.value,
    BlockType.WEBHOOK.value,
}


class FlowEdge(FlowModel):
    """Directed connection drawn in the editor"""
    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None
    type: str = "default"  # default, conditional


class FlowGraph(FlowModel):
    """Published flow definition. Read-only for the engine."""

    id: str
    client_id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    is_active: bool = True

    trigger_type: TriggerType = TriggerType.KEYWORD
    trigger_keywords: List[str] = Field(default_factory=list)
    trigger_code: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("triggerCode", "trigger_code", "triggerQrCode", "trigger_qr_code"),
    )

    blocks: List[Block] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)
    start_block_id: str

    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_block(self, block_id: Optional[str]) -> Optional[BlockBase]:
        """Get a block by ID"""
        if not block_id:
            return None
        for block in self.blocks:
            if block.id == block_id:
                return block
        return None

    def get_start_block(self) -> Optional[BlockBase]:
        """Get the starting block"""
        return self.get_block(self.start_block_id)

    @property
    def block_ids(self) -> List[str]:
        return [block.id for block in self.blocks]

    def outgoing_edges(self, block_id: str) -> List[FlowEdge]:
        """Edges leaving a block, in authored order"""
        return [edge for edge in self.edges if edge.source == block_id]

    def handle_target(self, block_id: str, handle: str) -> Optional[str]:
        """Target of the edge leaving block_id through a named handle"""
        for edge in self.edges:
            if edge.source == block_id and edge.source_handle == handle:
                return edge.target
        return None

    def next_block_id(self, block: BlockBase) -> Optional[str]:
        """
        Resolve the single outgoing target of a block.

        The payload's next_block_id wins; otherwise the first edge leaving
        the block is used, the way the editor wires single-exit blocks.
        """
        explicit = getattr(block.data, "next_block_id", None)
        if explicit:
            return explicit
        edges = self.outgoing_edges(block.id)
        return edges[0].target if edges else None

    def branch_targets(self, block: BlockBase) -> List[Optional[str]]:
        """Every target a block can branch to (None for unresolved exits)"""
        data = block.data
        if block.type == BlockType.INTERACTIVE_LIST.value:
            return [
                row.next_block_id or self.handle_target(block.id, row.id)
                for section in data.list_sections
                for row in section.rows
            ]
        if block.type == BlockType.INTERACTIVE_BUTTONS.value:
            return [
                button.next_block_id or self.handle_target(block.id, button.id)
                for button in data.buttons
            ]
        if block.type == BlockType.CONDITION.value:
            targets: List[Optional[str]] = [c.next_block_id for c in data.conditions]
            if data.default_next_block_id:
                targets.append(data.default_next_block_id)
            return targets
        if block.type in SINGLE_EXIT_TYPES:
            return [self.next_block_id(block)]
        return []
