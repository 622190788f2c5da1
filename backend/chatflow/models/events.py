"""
Normalized inbound events and outbound messages exchanged with the transport
"""
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EventModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class InboundEvent(EventModel):
    """
    Provider-independent inbound event.

    Exactly one of free_text / interactive_choice_id / triggered_by_scheduler
    is normally set; a bare event (none of them) is a plain trigger.
    """

    event_id: Optional[str] = None  # Used for dedup of redelivered events
    conversation_id: str
    client_id: Optional[str] = None
    flow_id: Optional[str] = None
    free_text: Optional[str] = None
    interactive_choice_id: Optional[str] = None
    triggered_by_scheduler: Optional[str] = None  # Continuation token of a delay block
    trigger_code: Optional[str] = None  # Scanned QR code / clicked link reference

    @property
    def is_continuation(self) -> bool:
        return self.triggered_by_scheduler is not None

    @property
    def has_reply(self) -> bool:
        return bool(self.interactive_choice_id) or bool(self.free_text and self.free_text.strip())


class InteractiveKind(str, Enum):
    LIST = "list"
    BUTTONS = "buttons"


class InteractiveOption(EventModel):
    """A row or a button as presented to the user"""
    id: str
    title: str
    description: Optional[str] = None


class InteractiveSection(EventModel):
    title: str = ""
    rows: List[InteractiveOption] = Field(default_factory=list)


class InteractivePayload(EventModel):
    """Interactive prompt to be rendered by the transport"""
    kind: InteractiveKind
    body: str
    header: Optional[str] = None
    footer: Optional[str] = None
    button_text: Optional[str] = None
    sections: List[InteractiveSection] = Field(default_factory=list)
    buttons: List[InteractiveOption] = Field(default_factory=list)

    def option_ids(self) -> List[str]:
        if self.kind == InteractiveKind.BUTTONS:
            return [b.id for b in self.buttons]
        return [row.id for section in self.sections for row in section.rows]


class OutboundMessage(EventModel):
    """Message the engine wants delivered to the conversation"""
    content: str
    interactive: Optional[InteractivePayload] = None
    block_id: Optional[str] = None
