"""
Execution Context - Persisted state of one flow execution for one conversation
"""
import logging
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Any, Dict, List
from enum import Enum

from ..core.exceptions import InvalidTransition

logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    """Status of a flow execution"""
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"
    TRANSFERRED_TO_AI = "transferred_to_ai"
    TRANSFERRED_TO_HUMAN = "transferred_to_human"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {
    ExecutionStatus.COMPLETED,
    ExecutionStatus.TRANSFERRED_TO_AI,
    ExecutionStatus.TRANSFERRED_TO_HUMAN,
    ExecutionStatus.CANCELLED,
}

ALLOWED_TRANSITIONS = {
    ExecutionStatus.ACTIVE: {
        ExecutionStatus.ACTIVE,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.PAUSED,
        ExecutionStatus.TRANSFERRED_TO_AI,
        ExecutionStatus.TRANSFERRED_TO_HUMAN,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.PAUSED: {ExecutionStatus.PAUSED, ExecutionStatus.CANCELLED},
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class FlowStep:
    """History entry for a completed block"""
    block_id: str
    block_type: str
    executed_at: datetime
    user_response: Optional[str] = None
    interactive_response_id: Optional[str] = None
    next_block_id: Optional[str] = None
    target: Optional[str] = None  # Transfer target for handoff blocks
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "block_id": self.block_id,
            "block_type": self.block_type,
            "executed_at": _format_datetime(self.executed_at),
            "user_response": self.user_response,
            "interactive_response_id": self.interactive_response_id,
            "next_block_id": self.next_block_id,
            "target": self.target,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowStep":
        return cls(
            block_id=data["block_id"],
            block_type=data["block_type"],
            executed_at=_parse_datetime(data["executed_at"]),
            user_response=data.get("user_response"),
            interactive_response_id=data.get("interactive_response_id"),
            next_block_id=data.get("next_block_id"),
            target=data.get("target"),
            note=data.get("note"),
        )


@dataclass
class ExecutionContext:
    """
    Execution state of a flow for one conversation.

    This class tracks:
    - Current block and whether its prompt was already sent
    - Variables collected along the way
    - Append-only history of completed blocks
    - Pending delay continuation
    - Recently processed event ids (redelivery dedup)
    - Optimistic concurrency version
    """

    # Identifiers
    flow_id: str
    conversation_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    client_id: Optional[str] = None

    # Current state
    current_block_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.ACTIVE
    awaiting_reply: bool = False
    pending_delay_token: Optional[str] = None
    resume_at: Optional[datetime] = None
    last_error: Optional[str] = None

    # Data
    variables: Dict[str, Any] = field(default_factory=dict)
    history: List[FlowStep] = field(default_factory=list)
    processed_event_ids: List[str] = field(default_factory=list)

    # Timing
    started_at: datetime = field(default_factory=utcnow)
    last_step_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == ExecutionStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def awaiting_delay(self) -> bool:
        return self.pending_delay_token is not None

    def transition(self, status: ExecutionStatus, at: Optional[datetime] = None) -> None:
        """
        Change status, refusing any move out of a terminal status.

        Raises:
            InvalidTransition: when the move is not allowed
        """
        allowed = ALLOWED_TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise InvalidTransition(self.status.value, status.value)

        self.status = status
        if status in TERMINAL_STATUSES:
            self.completed_at = at or utcnow()
            self.awaiting_reply = False
            self.pending_delay_token = None
            self.resume_at = None

    def move_to_block(self, block_id: Optional[str]) -> None:
        """Point the execution at a new block (its prompt not yet sent)"""
        self.current_block_id = block_id
        self.awaiting_reply = False
        self.pending_delay_token = None
        self.resume_at = None

    def record_step(
        self,
        block_id: str,
        block_type: str,
        executed_at: datetime,
        user_response: Optional[str] = None,
        interactive_response_id: Optional[str] = None,
        next_block_id: Optional[str] = None,
        target: Optional[str] = None,
        note: Optional[str] = None
    ) -> FlowStep:
        """Append a history entry for a completed block"""
        step = FlowStep(
            block_id=block_id,
            block_type=block_type,
            executed_at=executed_at,
            user_response=user_response,
            interactive_response_id=interactive_response_id,
            next_block_id=next_block_id,
            target=target,
            note=note,
        )
        self.history.append(step)
        self.last_step_at = executed_at
        return step

    def set_variable(self, name: str, value: Any) -> None:
        """Set a flow variable"""
        self.variables[name] = value

    def get_variable(self, name: str, default: Any = None) -> Any:
        """Get a flow variable"""
        return self.variables.get(name, default)

    def update_variables(self, updates: Dict[str, Any]) -> None:
        for name, value in updates.items():
            self.set_variable(name, value)

    def set_paused(self, error: str, at: Optional[datetime] = None) -> None:
        """Halt the execution on an evaluation error"""
        self.transition(ExecutionStatus.PAUSED, at)
        self.last_error = error
        logger.error(
            f"Flow execution paused: {error} "
            f"[flow: {self.flow_id}, conversation: {self.conversation_id}]"
        )

    def has_processed(self, event_id: Optional[str]) -> bool:
        return bool(event_id) and event_id in self.processed_event_ids

    def remember_event(self, event_id: Optional[str], limit: int = 100) -> None:
        """Record a processed event id, keeping only the most recent ones"""
        if not event_id or event_id in self.processed_event_ids:
            return
        self.processed_event_ids.append(event_id)
        if len(self.processed_event_ids) > limit:
            del self.processed_event_ids[:-limit]

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for serialization"""
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "conversation_id": self.conversation_id,
            "client_id": self.client_id,
            "current_block_id": self.current_block_id,
            "status": self.status.value,
            "awaiting_reply": self.awaiting_reply,
            "pending_delay_token": self.pending_delay_token,
            "resume_at": _format_datetime(self.resume_at),
            "last_error": self.last_error,
            "variables": dict(self.variables),
            "history": [step.to_dict() for step in self.history],
            "processed_event_ids": list(self.processed_event_ids),
            "started_at": _format_datetime(self.started_at),
            "last_step_at": _format_datetime(self.last_step_at),
            "completed_at": _format_datetime(self.completed_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionContext":
        """Create context from dictionary"""
        return cls(
            id=data["id"],
            flow_id=data["flow_id"],
            conversation_id=data["conversation_id"],
            client_id=data.get("client_id"),
            current_block_id=data.get("current_block_id"),
            status=ExecutionStatus(data.get("status", "active")),
            awaiting_reply=data.get("awaiting_reply", False),
            pending_delay_token=data.get("pending_delay_token"),
            resume_at=_parse_datetime(data.get("resume_at")),
            last_error=data.get("last_error"),
            variables=dict(data.get("variables") or {}),
            history=[FlowStep.from_dict(step) for step in data.get("history") or []],
            processed_event_ids=list(data.get("processed_event_ids") or []),
            started_at=_parse_datetime(data.get("started_at")) or utcnow(),
            last_step_at=_parse_datetime(data.get("last_step_at")),
            completed_at=_parse_datetime(data.get("completed_at")),
            version=data.get("version", 0),
        )

    def to_json(self) -> str:
        """Serialize context to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "ExecutionContext":
        """Deserialize context from JSON string"""
        return cls.from_dict(json.loads(json_str))

    def copy(self) -> "ExecutionContext":
        return ExecutionContext.from_dict(self.to_dict())

    def __str__(self) -> str:
        return (
            f"ExecutionContext(flow={self.flow_id}, conversation={self.conversation_id}, "
            f"block={self.current_block_id}, status={self.status.value}, v{self.version})"
        )

    def __repr__(self) -> str:
        return self.__str__()


def create_context(
    flow_id: str,
    conversation_id: str,
    start_block_id: Optional[str],
    client_id: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
    started_at: Optional[datetime] = None
) -> ExecutionContext:
    """
    Factory function to create a new ExecutionContext.

    Args:
        flow_id: ID of the flow
        conversation_id: ID of the conversation
        start_block_id: Block the execution begins at
        client_id: Tenant id (optional)
        variables: Initial variables (optional)
        started_at: Start time (optional, defaults to now)

    Returns:
        New ExecutionContext instance
    """
    context = ExecutionContext(
        flow_id=flow_id,
        conversation_id=conversation_id,
        client_id=client_id,
        current_block_id=start_block_id,
        variables=dict(variables or {}),
        started_at=started_at or utcnow(),
    )

    logger.info(
        f"Created flow execution {context.id} for flow {flow_id}, "
        f"conversation {conversation_id}"
    )

    return context
