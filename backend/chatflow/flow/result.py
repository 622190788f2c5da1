"""
Step Result - Outcome of evaluating a single block
"""
from dataclasses import dataclass, field
from typing import Optional, Any, Dict, List
from enum import Enum

from ..models.events import OutboundMessage, InteractivePayload


class ResultType(str, Enum):
    """Type of step result"""
    MESSAGE = "message"
    AWAIT_REPLY = "await_reply"
    SUSPEND = "suspend"
    CONTINUE = "continue"
    ACTION = "action"
    TRANSFER = "transfer"
    END = "end"
    ERROR = "error"


class TransferTarget(str, Enum):
    """Who takes over the conversation after a handoff"""
    AI = "ai"
    HUMAN = "human"


class TagOperationType(str, Enum):
    ADD = "add"
    REMOVE = "remove"


@dataclass
class TagOperation:
    """Tag change handed to the external tag store"""
    operation: TagOperationType
    tag: str

    def to_dict(self) -> Dict[str, Any]:
        return {"operation": self.operation.value, "tag": self.tag}


@dataclass
class WebhookRequest:
    """Rendered HTTP request of a webhook block, performed by the executor"""
    url: str
    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    response_mapping: Dict[str, str] = field(default_factory=dict)
    status_variable: Optional[str] = None
    timeout_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "method": self.method,
            "headers": self.headers,
            "body": self.body,
            "response_mapping": self.response_mapping,
            "status_variable": self.status_variable,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass
class StepResult:
    """
    Result of evaluating one block.

    The evaluator never touches the execution context: everything the engine
    must apply (variables, tags, webhook call, delay, transfer) is described
    here and applied by the executor.
    """

    result_type: ResultType = ResultType.CONTINUE

    # Output
    messages: List[OutboundMessage] = field(default_factory=list)

    # Navigation
    next_block_id: Optional[str] = None

    # Side effects
    variable_updates: Dict[str, Any] = field(default_factory=dict)
    tag_operations: List[TagOperation] = field(default_factory=list)
    webhook_request: Optional[WebhookRequest] = None
    delay_seconds: Optional[float] = None

    # Handoff
    transfer_target: Optional[TransferTarget] = None
    flow_context: Optional[str] = None
    notify_agent: bool = False

    # Reply that resolved an interactive block
    user_response: Optional[str] = None
    interactive_response_id: Optional[str] = None

    # Error handling
    error: Optional[str] = None
    error_code: Optional[str] = None

    # Metadata
    block_id: Optional[str] = None
    block_type: Optional[str] = None

    def is_error(self) -> bool:
        """Check if there was an error"""
        return self.result_type == ResultType.ERROR

    def is_suspension(self) -> bool:
        """Check if the execution stops to wait for a reply or a continuation"""
        return self.result_type in (ResultType.AWAIT_REPLY, ResultType.SUSPEND)

    def is_terminal(self) -> bool:
        """Check if this is a terminal result (flow ends)"""
        return self.result_type in (ResultType.TRANSFER, ResultType.END)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "result_type": self.result_type.value,
            "messages": [m.model_dump(mode="json") for m in self.messages],
            "next_block_id": self.next_block_id,
            "variable_updates": self.variable_updates,
            "tag_operations": [op.to_dict() for op in self.tag_operations],
            "webhook_request": self.webhook_request.to_dict() if self.webhook_request else None,
            "delay_seconds": self.delay_seconds,
            "transfer_target": self.transfer_target.value if self.transfer_target else None,
            "flow_context": self.flow_context,
            "notify_agent": self.notify_agent,
            "user_response": self.user_response,
            "interactive_response_id": self.interactive_response_id,
            "error": self.error,
            "error_code": self.error_code,
            "block_id": self.block_id,
            "block_type": self.block_type,
        }

    def __str__(self) -> str:
        status = "OK" if not self.is_error() else f"ERROR: {self.error}"
        return (
            f"StepResult({self.result_type.value}, "
            f"block={self.block_id}, next={self.next_block_id}, status={status})"
        )


# Factory functions for common results

def _text(message: Optional[str]) -> List[OutboundMessage]:
    return [OutboundMessage(content=message)] if message else []


def message_result(message: str, next_block_id: Optional[str] = None) -> StepResult:
    """Create a message result, auto-advancing when a target exists"""
    return StepResult(
        result_type=ResultType.MESSAGE,
        messages=_text(message),
        next_block_id=next_block_id,
    )


def await_reply_result(body: str, interactive: InteractivePayload) -> StepResult:
    """Create a result that emits an interactive prompt and waits"""
    return StepResult(
        result_type=ResultType.AWAIT_REPLY,
        messages=[OutboundMessage(content=body, interactive=interactive)],
    )


def suspend_result(delay_seconds: float) -> StepResult:
    """Create a result that suspends until the scheduler resumes it"""
    return StepResult(result_type=ResultType.SUSPEND, delay_seconds=delay_seconds)


def continue_result(
    next_block_id: Optional[str],
    user_response: Optional[str] = None,
    interactive_response_id: Optional[str] = None,
    variable_updates: Optional[Dict[str, Any]] = None
) -> StepResult:
    """Create a result that continues to next block without message"""
    return StepResult(
        result_type=ResultType.CONTINUE,
        next_block_id=next_block_id,
        user_response=user_response,
        interactive_response_id=interactive_response_id,
        variable_updates=variable_updates or {},
    )


def action_result(
    next_block_id: Optional[str],
    variable_updates: Optional[Dict[str, Any]] = None,
    tag_operations: Optional[List[TagOperation]] = None,
    webhook_request: Optional[WebhookRequest] = None
) -> StepResult:
    """Create an action result (variables, tags or webhook, then advance)"""
    return StepResult(
        result_type=ResultType.ACTION,
        next_block_id=next_block_id,
        variable_updates=variable_updates or {},
        tag_operations=tag_operations or [],
        webhook_request=webhook_request,
    )


def transfer_result(
    target: TransferTarget,
    message: Optional[str] = None,
    flow_context: Optional[str] = None,
    notify_agent: bool = False
) -> StepResult:
    """Create a handoff result"""
    return StepResult(
        result_type=ResultType.TRANSFER,
        messages=_text(message),
        transfer_target=target,
        flow_context=flow_context,
        notify_agent=notify_agent,
    )


def end_result(message: Optional[str] = None) -> StepResult:
    """Create an end-of-flow result"""
    return StepResult(result_type=ResultType.END, messages=_text(message))


def error_result(error: str, error_code: Optional[str] = None) -> StepResult:
    """Create an error result"""
    return StepResult(result_type=ResultType.ERROR, error=error, error_code=error_code)
