"""
Flow API routes
Inbound events, manual start/cancel, validation and execution lookup
"""
import logging
from typing import Optional, Any, Dict
from fastapi import APIRouter, HTTPException, Request
from pydantic import Field

from ...core.exceptions import (
    ChatflowError,
    DeliveryError,
    ExecutionAlreadyActive,
    ExecutionConflict,
    ExecutionNotFound,
    FlowNotFound,
    InvalidTransition,
    LeaseUnavailable,
    SchedulerError,
)
from ...flow.validator import validate_flow
from ...models.events import EventModel, InboundEvent
from ...services.runtime import FlowRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/flows", tags=["flows"])


class StartFlowRequest(EventModel):
    conversation_id: str
    client_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class CancelFlowRequest(EventModel):
    conversation_id: str


def get_runtime(request: Request) -> FlowRuntime:
    return request.app.state.runtime


def to_http_error(error: ChatflowError) -> HTTPException:
    """Map engine exceptions to HTTP status codes"""
    if isinstance(error, (FlowNotFound, ExecutionNotFound)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (ExecutionAlreadyActive, ExecutionConflict, InvalidTransition)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, LeaseUnavailable):
        return HTTPException(status_code=423, detail=str(error))
    if isinstance(error, DeliveryError):
        outcome = error.outcome.to_dict() if error.outcome is not None else None
        return HTTPException(status_code=502, detail={"error": str(error), "outcome": outcome})
    if isinstance(error, SchedulerError):
        return HTTPException(status_code=502, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


# ==================== EVENTS ====================

@router.post("/process-message")
async def process_message(event: InboundEvent, request: Request):
    """
    Process an inbound event.

    Continues the conversation's active execution, or starts a flow whose
    trigger matches. ``should_continue_to_ai`` tells the caller to hand the
    message to the AI agent.
    """
    try:
        outcome = await get_runtime(request).handle_event(event)
    except ChatflowError as e:
        logger.error(f"Error processing event for {event.conversation_id}: {e}")
        raise to_http_error(e)
    return outcome.to_dict()


# ==================== VALIDATION ====================

@router.post("/validate")
async def validate(flow: Dict[str, Any]):
    """Validate a flow graph without saving it"""
    is_valid, errors = validate_flow(flow)
    return {
        "is_valid": is_valid,
        "errors": [e.to_dict() for e in errors if e.is_error],
        "warnings": [e.to_dict() for e in errors if not e.is_error],
    }


# ==================== EXECUTIONS ====================

@router.post("/{flow_id}/start")
async def start_flow(flow_id: str, body: StartFlowRequest, request: Request):
    """Start a flow manually for a conversation"""
    event = InboundEvent(
        conversation_id=body.conversation_id,
        client_id=body.client_id,
        flow_id=flow_id,
    )
    try:
        outcome = await get_runtime(request).start_flow(
            flow_id,
            body.conversation_id,
            variables=body.variables,
            event=event,
        )
    except ChatflowError as e:
        raise to_http_error(e)
    return outcome.to_dict()


@router.post("/{flow_id}/cancel")
async def cancel_flow(flow_id: str, body: CancelFlowRequest, request: Request):
    """Cancel the conversation's execution of a flow"""
    try:
        context = await get_runtime(request).cancel(flow_id, body.conversation_id)
    except ChatflowError as e:
        raise to_http_error(e)
    return {"status": "cancelled", "execution": context.to_dict()}


@router.get("/{flow_id}/executions/{conversation_id}")
async def get_execution(flow_id: str, conversation_id: str, request: Request):
    """Get the execution record of a flow for a conversation"""
    try:
        context = await get_runtime(request).get_execution(flow_id, conversation_id)
    except ExecutionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return context.to_dict()
