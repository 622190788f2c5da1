"""
Exceptions raised by the flow runtime and its collaborators.

Evaluation problems inside a flow are never raised: they are returned as
error step results. These exceptions cover collaborator failures and
misuse of the entry points.
"""
from typing import Any, Optional


class ChatflowError(Exception):
    """Base class for all chatflow errors"""


class FlowNotFound(ChatflowError):
    """Requested flow does not exist or is inactive"""

    def __init__(self, flow_id: str):
        super().__init__(f"Flow not found or inactive: {flow_id}")
        self.flow_id = flow_id


class ExecutionNotFound(ChatflowError):
    """No execution record for the (flow, conversation) pair"""

    def __init__(self, flow_id: Optional[str], conversation_id: str):
        super().__init__(
            f"No execution for flow {flow_id} and conversation {conversation_id}"
        )
        self.flow_id = flow_id
        self.conversation_id = conversation_id


class ExecutionAlreadyActive(ChatflowError):
    """A conversation already has an active execution on the flow"""

    def __init__(self, execution_id: str, conversation_id: str):
        super().__init__(
            f"Conversation {conversation_id} already has an active flow execution: {execution_id}"
        )
        self.execution_id = execution_id
        self.conversation_id = conversation_id


class ExecutionConflict(ChatflowError):
    """Optimistic version check failed while saving an execution"""

    def __init__(self, execution_id: str, expected_version: int):
        super().__init__(
            f"Execution {execution_id} was modified concurrently (expected version {expected_version})"
        )
        self.execution_id = execution_id
        self.expected_version = expected_version


class InvalidTransition(ChatflowError):
    """Status change not allowed from the current execution status"""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move execution from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class LeaseUnavailable(ChatflowError):
    """Per-conversation lease could not be acquired within the bounded wait"""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Lease {key} not acquired within {timeout:.1f}s")
        self.key = key
        self.timeout = timeout


class DeliveryError(ChatflowError):
    """Transport failed to deliver an outbound message"""

    def __init__(self, message: str, outcome: Any = None):
        super().__init__(message)
        self.outcome = outcome


class SchedulerError(ChatflowError):
    """Continuation could not be scheduled"""
