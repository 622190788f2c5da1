"""
Flow Module - Interactive flow execution

This module provides:
- Block evaluation (conditions, interactive prompts, actions, handoffs, delays, webhooks)
- Validation of authored flow graphs
- Execution context (state, history, variables) with status transitions
- Trigger matching for starting new executions

The executor lives in ``chatflow.flow.executor`` and is imported from there.
"""

from .evaluator import ConditionEvaluator, BlockEvaluator, evaluator, block_evaluator
from .validator import (
    FlowValidator,
    FlowValidationError,
    validate_flow
)
from .context import (
    ExecutionContext,
    ExecutionStatus,
    FlowStep,
    create_context
)
from .result import (
    StepResult,
    ResultType,
    TransferTarget,
    TagOperation,
    WebhookRequest,
    message_result,
    await_reply_result,
    suspend_result,
    continue_result,
    action_result,
    transfer_result,
    end_result,
    error_result
)
from .template import render_template
from .triggers import matches_trigger, resolve_trigger

__all__ = [
    # Evaluator
    "ConditionEvaluator",
    "BlockEvaluator",
    "evaluator",
    "block_evaluator",

    # Validator
    "FlowValidator",
    "FlowValidationError",
    "validate_flow",

    # Context
    "ExecutionContext",
    "ExecutionStatus",
    "FlowStep",
    "create_context",

    # Result
    "StepResult",
    "ResultType",
    "TransferTarget",
    "TagOperation",
    "WebhookRequest",
    "message_result",
    "await_reply_result",
    "suspend_result",
    "continue_result",
    "action_result",
    "transfer_result",
    "end_result",
    "error_result",

    # Templates and triggers
    "render_template",
    "matches_trigger",
    "resolve_trigger",
]
