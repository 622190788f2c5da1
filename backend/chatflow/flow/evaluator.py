"""
Evaluators - Deterministic condition checks and per-block step evaluation.

ConditionEvaluator compares a variable against a value with a fixed operator
table. BlockEvaluator turns (block, graph, context, reply) into a StepResult
without mutating anything: no clock, no I/O, no randomness.
"""
import re
import logging
from typing import Any, Dict, Optional, List, Callable, Tuple

from ..models.flow import (
    BlockBase,
    BlockType,
    ActionType,
    ContextFormat,
    FlowGraph,
)
from ..models.events import (
    InboundEvent,
    InteractiveKind,
    InteractiveOption,
    InteractivePayload,
    InteractiveSection,
)
from .context import ExecutionContext
from .result import (
    StepResult,
    TagOperation,
    TagOperationType,
    TransferTarget,
    WebhookRequest,
    action_result,
    await_reply_result,
    continue_result,
    end_result,
    error_result,
    message_result,
    suspend_result,
    transfer_result,
)
from .template import lookup_variable, render_template, render_value

logger = logging.getLogger(__name__)


# Runtime error codes carried by error results
UNMATCHED_CHOICE = "UNMATCHED_CHOICE"
NO_MATCHING_BRANCH = "NO_MATCHING_BRANCH"
UNKNOWN_ACTION = "UNKNOWN_ACTION"
INVALID_ACTION_PARAMS = "INVALID_ACTION_PARAMS"
UNKNOWN_BLOCK_TYPE = "UNKNOWN_BLOCK_TYPE"

SUMMARY_CONTEXT_MAX_LENGTH = 1000
FULL_CONTEXT_MAX_LENGTH = 2000
TRUNCATION_MARKER = "... [context truncated]"


class ConditionEvaluator:
    """
    Deterministic condition evaluator for CONDITION blocks.

    Numeric operators only match when both sides coerce to numbers; any
    other combination is a non-match for that condition, never an error.
    """

    OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
        "==": lambda actual, expected: ConditionEvaluator._safe_equals(actual, expected),
        "!=": lambda actual, expected: not ConditionEvaluator._safe_equals(actual, expected),
        ">": lambda actual, expected: ConditionEvaluator._safe_compare(actual, expected, lambda a, b: a > b),
        "<": lambda actual, expected: ConditionEvaluator._safe_compare(actual, expected, lambda a, b: a < b),
        "contains": lambda actual, expected: ConditionEvaluator._safe_contains(actual, expected),
        "not_contains": lambda actual, expected: not ConditionEvaluator._safe_contains(actual, expected),
    }

    ALIASES: Dict[str, str] = {
        "equals": "==",
        "equal": "==",
        "eq": "==",
        "not_equals": "!=",
        "not_equal": "!=",
        "neq": "!=",
        "<>": "!=",
        "greater_than": ">",
        "greater": ">",
        "gt": ">",
        "less_than": "<",
        "less": "<",
        "lt": "<",
        "contain": "contains",
        "not_contain": "not_contains",
    }

    @classmethod
    def evaluate(
        cls,
        variable: str,
        operator: str,
        expected: Any,
        variables: Dict[str, Any]
    ) -> bool:
        """
        Evaluate a single condition.

        Args:
            variable: Variable name (dot notation reaches nested values)
            operator: Comparison operator or one of its aliases
            expected: Value to compare against
            variables: Execution variables

        Returns:
            True if condition is met, False otherwise

        Example:
            >>> ConditionEvaluator.evaluate("age", ">", 17, {"age": "25"})
            True
            >>> ConditionEvaluator.evaluate("age", ">", 17, {"age": "n/a"})
            False
        """
        actual = lookup_variable(variables, variable)
        normalized = cls._normalize_operator(operator)
        operator_func = cls.OPERATORS.get(normalized)

        if operator_func is None:
            logger.warning(f"Unknown condition operator: '{operator}'")
            return False

        result = operator_func(actual, expected)
        logger.debug(
            f"Condition evaluated: {variable}={actual!r} {operator} {expected!r} -> {result}"
        )
        return result

    @classmethod
    def is_known_operator(cls, operator: str) -> bool:
        return cls._normalize_operator(operator) in cls.OPERATORS

    @classmethod
    def _normalize_operator(cls, operator: str) -> str:
        if not operator:
            return ""
        normalized = operator.strip().lower().replace(" ", "_").replace("-", "_")
        return cls.ALIASES.get(normalized, normalized)

    @staticmethod
    def _coerce_to_number(value: Any) -> Optional[float]:
        """
        Coerce a value to a number.

        Accepts ints, floats and numeric strings (surrounding whitespace and
        a decimal comma allowed). Booleans and anything else give None.
        """
        if value is None or isinstance(value, bool):
            return None

        if isinstance(value, (int, float)):
            return float(value)

        if isinstance(value, str):
            cleaned = value.strip()
            if re.fullmatch(r"-?\d+,\d+", cleaned):
                cleaned = cleaned.replace(",", ".")
            try:
                return float(cleaned)
            except ValueError:
                return None

        return None

    @staticmethod
    def _as_string(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    @staticmethod
    def _safe_equals(actual: Any, expected: Any) -> bool:
        if actual is None or expected is None:
            return actual is None and expected is None

        actual_num = ConditionEvaluator._coerce_to_number(actual)
        expected_num = ConditionEvaluator._coerce_to_number(expected)
        if actual_num is not None and expected_num is not None:
            return actual_num == expected_num

        return ConditionEvaluator._as_string(actual) == ConditionEvaluator._as_string(expected)

    @staticmethod
    def _safe_compare(
        actual: Any,
        expected: Any,
        comparator: Callable[[float, float], bool]
    ) -> bool:
        actual_num = ConditionEvaluator._coerce_to_number(actual)
        expected_num = ConditionEvaluator._coerce_to_number(expected)

        if actual_num is None or expected_num is None:
            logger.debug(f"Non-numeric comparison: {actual!r} vs {expected!r}")
            return False

        return comparator(actual_num, expected_num)

    @staticmethod
    def _safe_contains(actual: Any, expected: Any) -> bool:
        return ConditionEvaluator._as_string(expected) in ConditionEvaluator._as_string(actual)


# Singleton instance
evaluator = ConditionEvaluator()


def format_flow_context(context: ExecutionContext, context_format: ContextFormat) -> str:
    """
    Describe a finished flow for the AI agent taking over the conversation.

    ``summary`` lists variables and the last interaction; ``full`` adds the
    ordered history. Output is capped at 1000 and 2000 characters.
    """
    if context.variables:
        variables_text = "\n".join(f"- {name}: {value}" for name, value in context.variables.items())
    else:
        variables_text = "No variables collected."

    if context_format == ContextFormat.FULL:
        steps = "\n".join(
            f"{index}. [{step.block_type}] {step.user_response or step.interactive_response_id or '-'}"
            for index, step in enumerate(context.history, start=1)
        )
        text = (
            "[INTERACTIVE FLOW HISTORY]\n\n"
            f"Interactions:\n{steps}\n\n"
            f"Collected variables:\n{variables_text}\n\n"
            "IMPORTANT: use this history to understand the whole conversation."
        )
        limit = FULL_CONTEXT_MAX_LENGTH
    else:
        last_step = context.history[-1] if context.history else None
        last_interaction = "N/A"
        if last_step:
            last_interaction = last_step.user_response or last_step.interactive_response_id or "N/A"
        text = (
            "[INTERACTIVE FLOW CONTEXT]\n"
            "The customer has just gone through an automated interactive flow.\n\n"
            f"Collected data:\n{variables_text}\n\n"
            f"Last customer interaction: {last_interaction}\n\n"
            "IMPORTANT: the customer already provided this information."
        )
        limit = SUMMARY_CONTEXT_MAX_LENGTH

    if len(text) > limit:
        return text[:limit] + TRUNCATION_MARKER
    return text


class BlockEvaluator:
    """
    Pure per-block-type evaluation.

    Each block type has one handler returning a StepResult. The execution
    context is only read (variables, history); the executor applies
    whatever the result describes.
    """

    def __init__(self, condition_evaluator: Optional[ConditionEvaluator] = None):
        self.conditions = condition_evaluator or evaluator
        self._handlers: Dict[str, Callable[..., StepResult]] = {}
        self._register_handlers()

    def _register_handlers(self) -> None:
        """Register handler for each block type"""
        self._handlers = {
            BlockType.START.value: self._evaluate_start,
            BlockType.MESSAGE.value: self._evaluate_message,
            BlockType.INTERACTIVE_LIST.value: self._evaluate_interactive,
            BlockType.INTERACTIVE_BUTTONS.value: self._evaluate_interactive,
            BlockType.CONDITION.value: self._evaluate_condition,
            BlockType.ACTION.value: self._evaluate_action,
            BlockType.AI_HANDOFF.value: self._evaluate_ai_handoff,
            BlockType.HUMAN_HANDOFF.value: self._evaluate_human_handoff,
            BlockType.DELAY.value: self._evaluate_delay,
            BlockType.WEBHOOK.value: self._evaluate_webhook,
            BlockType.END.value: self._evaluate_end,
        }

    def evaluate(
        self,
        block: BlockBase,
        graph: FlowGraph,
        context: ExecutionContext,
        reply: Optional[InboundEvent] = None,
        delay_elapsed: bool = False
    ) -> StepResult:
        """
        Evaluate one block.

        Args:
            block: Block to evaluate
            graph: Flow the block belongs to
            context: Current execution (read only)
            reply: User reply when the block is awaiting one
            delay_elapsed: True when the scheduler resumed a delay block

        Returns:
            StepResult describing what the engine should do next
        """
        handler = self._handlers.get(block.type)
        if handler is None:
            result = error_result(f"Unknown block type: {block.type}", UNKNOWN_BLOCK_TYPE)
        else:
            result = handler(block, graph, context, reply=reply, delay_elapsed=delay_elapsed)

        result.block_id = block.id
        result.block_type = block.type
        return result

    # ============ SIMPLE BLOCKS ============

    def _evaluate_start(self, block, graph, context, **kwargs) -> StepResult:
        target = graph.next_block_id(block)
        if block.data.message_text:
            text = render_template(block.data.message_text, context.variables, block.id)
            return message_result(text, target)
        return continue_result(target)

    def _evaluate_message(self, block, graph, context, **kwargs) -> StepResult:
        text = render_template(block.data.message_text, context.variables, block.id)
        return message_result(text, graph.next_block_id(block))

    def _evaluate_end(self, block, graph, context, **kwargs) -> StepResult:
        text = render_template(block.data.message_text, context.variables, block.id)
        return end_result(text or None)

    # ============ INTERACTIVE BLOCKS ============

    def _interactive_options(self, block, graph) -> List[Tuple[InteractiveOption, Optional[str]]]:
        """Offered options with their resolved targets"""
        if block.type == BlockType.INTERACTIVE_BUTTONS.value:
            items = list(block.data.buttons)
        else:
            items = [row for section in block.data.list_sections for row in section.rows]

        options = []
        for item in items:
            option = InteractiveOption(
                id=item.id,
                title=item.title,
                description=getattr(item, "description", None),
            )
            options.append((option, item.next_block_id or graph.handle_target(block.id, item.id)))
        return options

    def _build_prompt(self, block, context) -> InteractivePayload:
        data = block.data
        variables = context.variables

        if block.type == BlockType.INTERACTIVE_BUTTONS.value:
            return InteractivePayload(
                kind=InteractiveKind.BUTTONS,
                body=render_template(data.buttons_body, variables, block.id),
                footer=render_template(data.buttons_footer, variables, block.id) or None,
                buttons=[InteractiveOption(id=b.id, title=b.title) for b in data.buttons],
            )

        return InteractivePayload(
            kind=InteractiveKind.LIST,
            header=render_template(data.list_header, variables, block.id) or None,
            body=render_template(data.list_body, variables, block.id),
            footer=render_template(data.list_footer, variables, block.id) or None,
            button_text=data.list_button_text,
            sections=[
                InteractiveSection(
                    title=section.title,
                    rows=[
                        InteractiveOption(id=row.id, title=row.title, description=row.description)
                        for row in section.rows
                    ],
                )
                for section in data.list_sections
            ],
        )

    def _evaluate_interactive(self, block, graph, context, reply=None, **kwargs) -> StepResult:
        if reply is None:
            prompt = self._build_prompt(block, context)
            return await_reply_result(prompt.body, prompt)

        options = self._interactive_options(block, graph)
        choice_id = reply.interactive_choice_id
        free_text = (reply.free_text or "").strip()

        matched = None
        if choice_id:
            matched = next((item for item in options if item[0].id == choice_id), None)
        if matched is None and free_text:
            lowered = free_text.lower()
            matched = next(
                (item for item in options if item[0].id == free_text or item[0].title.strip().lower() == lowered),
                None,
            )

        if matched is None:
            logger.info(
                f"Reply {choice_id or free_text!r} did not match any option of block '{block.id}'"
            )
            return error_result(
                "interactive response did not match any offered option",
                UNMATCHED_CHOICE,
            )

        option, target = matched
        updates: Dict[str, Any] = {"last_interactive_response": option.id}
        if free_text:
            updates["last_user_response"] = free_text

        return continue_result(
            target,
            user_response=free_text or option.title,
            interactive_response_id=option.id,
            variable_updates=updates,
        )

    # ============ LOGIC BLOCKS ============

    def _evaluate_condition(self, block, graph, context, **kwargs) -> StepResult:
        for condition in block.data.conditions:
            if self.conditions.evaluate(
                condition.variable,
                condition.operator,
                condition.value,
                context.variables
            ):
                logger.debug(f"Condition matched in block '{block.id}': {condition.variable} {condition.operator} {condition.value!r}")
                return continue_result(condition.next_block_id)

        if block.data.default_next_block_id:
            return continue_result(block.data.default_next_block_id)

        return error_result(
            "condition block had no matching branch and no default",
            NO_MATCHING_BRANCH,
        )

    def _evaluate_action(self, block, graph, context, **kwargs) -> StepResult:
        action_type = block.data.action_type
        params = block.data.action_params or {}
        target = graph.next_block_id(block)
        name = params.get("name") or params.get("variable")

        if action_type == ActionType.SET_VARIABLE.value:
            if not name or "value" not in params:
                return error_result("set_variable requires 'name' and 'value'", INVALID_ACTION_PARAMS)
            value = render_value(params["value"], context.variables, block.id)
            return action_result(target, variable_updates={name: value})

        if action_type == ActionType.INCREMENT.value:
            if not name:
                return error_result("increment requires 'name'", INVALID_ACTION_PARAMS)
            current = ConditionEvaluator._coerce_to_number(context.get_variable(name)) or 0
            step = ConditionEvaluator._coerce_to_number(params.get("by", 1))
            if step is None:
                return error_result("increment 'by' must be numeric", INVALID_ACTION_PARAMS)
            total = current + step
            if float(total).is_integer():
                total = int(total)
            return action_result(target, variable_updates={name: total})

        if action_type in (ActionType.ADD_TAG.value, ActionType.REMOVE_TAG.value):
            tag = params.get("tag")
            if not tag:
                return error_result(f"{action_type} requires 'tag'", INVALID_ACTION_PARAMS)
            operation = TagOperationType.ADD if action_type == ActionType.ADD_TAG.value else TagOperationType.REMOVE
            tag = render_template(str(tag), context.variables, block.id)
            return action_result(target, tag_operations=[TagOperation(operation=operation, tag=tag)])

        return error_result(f"Unknown action type: {action_type}", UNKNOWN_ACTION)

    # ============ HANDOFF BLOCKS ============

    def _evaluate_ai_handoff(self, block, graph, context, **kwargs) -> StepResult:
        data = block.data
        message = render_template(data.transition_message, context.variables, block.id) or None
        flow_context = None
        if data.include_flow_context:
            flow_context = format_flow_context(context, data.context_format)
        return transfer_result(TransferTarget.AI, message, flow_context=flow_context)

    def _evaluate_human_handoff(self, block, graph, context, **kwargs) -> StepResult:
        data = block.data
        message = render_template(data.transition_message, context.variables, block.id) or None
        return transfer_result(TransferTarget.HUMAN, message, notify_agent=data.notify_agent)

    # ============ TIMING AND INTEGRATION ============

    def _evaluate_delay(self, block, graph, context, delay_elapsed=False, **kwargs) -> StepResult:
        target = graph.next_block_id(block)
        if delay_elapsed:
            return continue_result(target)

        seconds = block.data.delay_seconds or 0
        if seconds <= 0:
            logger.warning(f"Delay block '{block.id}' has non-positive duration {seconds}, continuing")
            return continue_result(target)

        return suspend_result(seconds)

    def _evaluate_webhook(self, block, graph, context, **kwargs) -> StepResult:
        data = block.data
        variables = context.variables
        request = WebhookRequest(
            url=render_template(data.webhook_url, variables, block.id),
            method=(data.webhook_method or "POST").upper(),
            headers=render_value(dict(data.webhook_headers), variables, block.id),
            body=render_value(data.webhook_body, variables, block.id),
            response_mapping=dict(data.response_mapping),
            status_variable=data.status_variable,
            timeout_seconds=data.timeout_seconds,
        )
        return action_result(graph.next_block_id(block), webhook_request=request)


# Singleton instance
block_evaluator = BlockEvaluator()
