"""
Flow Validator - Publish-time authoring checks for flow graphs
"""
import logging
from typing import Tuple, List, Dict, Any, Set, Optional, Union
from datetime import datetime

from pydantic import ValidationError

from ..models.flow import (
    FlowGraph,
    BlockBase,
    BlockType,
    TriggerType,
    ActionType,
    SINGLE_EXIT_TYPES,
    BUTTONS_MAX_COUNT,
    BUTTON_TITLE_MAX_LENGTH,
    INTERACTIVE_BODY_MAX_LENGTH,
    INTERACTIVE_FOOTER_MAX_LENGTH,
    LIST_MAX_SECTIONS,
    LIST_MAX_ROWS_PER_SECTION,
    LIST_MAX_TOTAL_ROWS,
    LIST_HEADER_MAX_LENGTH,
    LIST_BUTTON_TEXT_MAX_LENGTH,
    LIST_SECTION_TITLE_MAX_LENGTH,
    LIST_ROW_TITLE_MAX_LENGTH,
    LIST_ROW_DESCRIPTION_MAX_LENGTH,
)
from .evaluator import ConditionEvaluator

logger = logging.getLogger(__name__)

# Blocks that stop an advance until something external happens
SUSPENDING_TYPES = {
    BlockType.INTERACTIVE_LIST.value,
    BlockType.INTERACTIVE_BUTTONS.value,
    BlockType.DELAY.value,
}

WEBHOOK_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


class FlowValidationError:
    """Represents a validation error"""

    def __init__(
        self,
        code: str,
        message: str,
        block_id: Optional[str] = None,
        severity: str = "error"  # error, warning
    ):
        self.code = code
        self.message = message
        self.block_id = block_id
        self.severity = severity
        self.timestamp = datetime.now()

    @property
    def is_error(self) -> bool:
        return self.severity == "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "block_id": self.block_id,
            "severity": self.severity,
            "timestamp": self.timestamp.isoformat()
        }

    def __str__(self) -> str:
        block_info = f" [Block: {self.block_id}]" if self.block_id else ""
        return f"[{self.severity.upper()}] {self.code}: {self.message}{block_info}"


def _too_long(errors: List[FlowValidationError], block_id: str, label: str, text: Optional[str], limit: int) -> None:
    if text and len(text) > limit:
        errors.append(FlowValidationError(
            "TEXT_TOO_LONG",
            f"{label} has {len(text)} characters (max {limit})",
            block_id,
            severity="warning"
        ))


class FlowValidator:
    """
    Validates flow graphs before they are published.

    Features:
    - Start block, duplicate ids and dangling references
    - Reachability from the start block
    - Cycles that never wait for the user
    - WhatsApp interactive limits
    - Required payload fields and trigger configuration
    """

    @classmethod
    def validate(cls, flow: Union[FlowGraph, Dict[str, Any]]) -> Tuple[bool, List[FlowValidationError]]:
        """
        Validate a flow graph.

        Args:
            flow: FlowGraph or its JSON dictionary (editor camelCase accepted)

        Returns:
            Tuple of (is_valid, list of errors). Warnings do not make a
            flow invalid.
        """
        if isinstance(flow, FlowGraph):
            graph = flow
        else:
            try:
                graph = FlowGraph.model_validate(flow)
            except ValidationError as e:
                errors = [
                    FlowValidationError(
                        "MISSING_FIELD",
                        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    )
                    for err in e.errors()
                ]
                cls._log(errors)
                return False, errors

        errors: List[FlowValidationError] = []

        # 1. Basic structure
        errors.extend(cls._validate_structure(graph))

        # 2. Block payloads
        for block in graph.blocks:
            errors.extend(cls._validate_block(block, graph))

        # 3. References
        errors.extend(cls._validate_targets(graph))
        errors.extend(cls._validate_edges(graph))

        # 4. Reachability and cycles
        if graph.get_start_block() is not None:
            errors.extend(cls._detect_unreachable_blocks(graph))
        errors.extend(cls._detect_replyless_cycles(graph))

        # 5. Trigger
        errors.extend(cls._validate_trigger(graph))

        is_valid = not any(e.is_error for e in errors)
        cls._log(errors)
        return is_valid, errors

    @staticmethod
    def _log(errors: List[FlowValidationError]) -> None:
        if not errors:
            return
        logger.warning(f"Flow validation found {len(errors)} issues")
        for error in errors:
            if error.is_error:
                logger.error(str(error))
            else:
                logger.warning(str(error))

    @classmethod
    def _validate_structure(cls, graph: FlowGraph) -> List[FlowValidationError]:
        errors = []

        seen: Set[str] = set()
        for block in graph.blocks:
            if block.id in seen:
                errors.append(FlowValidationError(
                    "DUPLICATE_BLOCK_ID",
                    f"Block id '{block.id}' is used more than once",
                    block.id
                ))
            seen.add(block.id)

        if graph.get_start_block() is None:
            errors.append(FlowValidationError(
                "MISSING_START_BLOCK",
                f"Start block '{graph.start_block_id}' does not exist"
            ))

        return errors

    @classmethod
    def _validate_block(cls, block: BlockBase, graph: FlowGraph) -> List[FlowValidationError]:
        errors: List[FlowValidationError] = []
        data = block.data

        if block.type == BlockType.MESSAGE.value and not (data.message_text or "").strip():
            errors.append(FlowValidationError("MISSING_FIELD", "Message block has no text", block.id))

        elif block.type == BlockType.INTERACTIVE_BUTTONS.value:
            errors.extend(cls._validate_buttons(block))

        elif block.type == BlockType.INTERACTIVE_LIST.value:
            errors.extend(cls._validate_list(block))

        elif block.type == BlockType.CONDITION.value:
            if not data.conditions and not data.default_next_block_id:
                errors.append(FlowValidationError(
                    "MISSING_FIELD",
                    "Condition block has no conditions and no default branch",
                    block.id
                ))
            elif not data.default_next_block_id:
                errors.append(FlowValidationError(
                    "NO_DEFAULT_BRANCH",
                    "Condition block has no default branch",
                    block.id,
                    severity="warning"
                ))
            for condition in data.conditions:
                if not ConditionEvaluator.is_known_operator(condition.operator):
                    errors.append(FlowValidationError(
                        "INVALID_OPERATOR",
                        f"Unknown operator '{condition.operator}'",
                        block.id
                    ))

        elif block.type == BlockType.ACTION.value:
            errors.extend(cls._validate_action(block))

        elif block.type == BlockType.WEBHOOK.value:
            if not data.webhook_url:
                errors.append(FlowValidationError("MISSING_FIELD", "Webhook block has no URL", block.id))
            if (data.webhook_method or "").upper() not in WEBHOOK_METHODS:
                errors.append(FlowValidationError(
                    "INVALID_METHOD",
                    f"Unsupported webhook method '{data.webhook_method}'",
                    block.id
                ))

        if block.type in SINGLE_EXIT_TYPES and graph.next_block_id(block) is None:
            errors.append(FlowValidationError(
                "DEAD_END",
                f"{block.type} block has no outgoing target and ends the flow implicitly",
                block.id,
                severity="warning"
            ))

        return errors

    @classmethod
    def _validate_buttons(cls, block: BlockBase) -> List[FlowValidationError]:
        errors: List[FlowValidationError] = []
        data = block.data

        if not data.buttons:
            errors.append(FlowValidationError("EMPTY_INTERACTIVE", "Buttons block has no buttons", block.id))
        elif len(data.buttons) > BUTTONS_MAX_COUNT:
            errors.append(FlowValidationError(
                "TOO_MANY_BUTTONS",
                f"{len(data.buttons)} buttons (max {BUTTONS_MAX_COUNT})",
                block.id
            ))

        if not (data.buttons_body or "").strip():
            errors.append(FlowValidationError("MISSING_FIELD", "Buttons block has no body", block.id))

        _too_long(errors, block.id, "Body", data.buttons_body, INTERACTIVE_BODY_MAX_LENGTH)
        _too_long(errors, block.id, "Footer", data.buttons_footer, INTERACTIVE_FOOTER_MAX_LENGTH)
        for button in data.buttons:
            _too_long(errors, block.id, f"Button '{button.id}' title", button.title, BUTTON_TITLE_MAX_LENGTH)

        return errors

    @classmethod
    def _validate_list(cls, block: BlockBase) -> List[FlowValidationError]:
        errors: List[FlowValidationError] = []
        data = block.data
        total_rows = sum(len(section.rows) for section in data.list_sections)

        if total_rows == 0:
            errors.append(FlowValidationError("EMPTY_INTERACTIVE", "List block has no rows", block.id))

        if len(data.list_sections) > LIST_MAX_SECTIONS:
            errors.append(FlowValidationError(
                "TOO_MANY_SECTIONS",
                f"{len(data.list_sections)} sections (max {LIST_MAX_SECTIONS})",
                block.id
            ))

        if total_rows > LIST_MAX_TOTAL_ROWS:
            errors.append(FlowValidationError(
                "TOO_MANY_ROWS",
                f"{total_rows} rows in total (max {LIST_MAX_TOTAL_ROWS})",
                block.id
            ))

        for section in data.list_sections:
            if len(section.rows) > LIST_MAX_ROWS_PER_SECTION:
                errors.append(FlowValidationError(
                    "TOO_MANY_ROWS",
                    f"Section '{section.title}' has {len(section.rows)} rows (max {LIST_MAX_ROWS_PER_SECTION})",
                    block.id
                ))
            _too_long(errors, block.id, f"Section '{section.title}' title", section.title, LIST_SECTION_TITLE_MAX_LENGTH)
            for row in section.rows:
                _too_long(errors, block.id, f"Row '{row.id}' title", row.title, LIST_ROW_TITLE_MAX_LENGTH)
                _too_long(errors, block.id, f"Row '{row.id}' description", row.description, LIST_ROW_DESCRIPTION_MAX_LENGTH)

        if not (data.list_body or "").strip():
            errors.append(FlowValidationError("MISSING_FIELD", "List block has no body", block.id))
        if not (data.list_button_text or "").strip():
            errors.append(FlowValidationError("MISSING_FIELD", "List block has no button text", block.id))

        _too_long(errors, block.id, "Header", data.list_header, LIST_HEADER_MAX_LENGTH)
        _too_long(errors, block.id, "Body", data.list_body, INTERACTIVE_BODY_MAX_LENGTH)
        _too_long(errors, block.id, "Footer", data.list_footer, INTERACTIVE_FOOTER_MAX_LENGTH)
        _too_long(errors, block.id, "Button text", data.list_button_text, LIST_BUTTON_TEXT_MAX_LENGTH)

        return errors

    @classmethod
    def _validate_action(cls, block: BlockBase) -> List[FlowValidationError]:
        errors: List[FlowValidationError] = []
        action_type = block.data.action_type
        params = block.data.action_params or {}
        known = {a.value for a in ActionType}

        if action_type not in known:
            errors.append(FlowValidationError(
                "UNKNOWN_ACTION",
                f"Unknown action type '{action_type}'",
                block.id
            ))
            return errors

        if action_type in (ActionType.SET_VARIABLE.value, ActionType.INCREMENT.value):
            if not (params.get("name") or params.get("variable")):
                errors.append(FlowValidationError("MISSING_FIELD", f"{action_type} requires 'name'", block.id))
            if action_type == ActionType.SET_VARIABLE.value and "value" not in params:
                errors.append(FlowValidationError("MISSING_FIELD", "set_variable requires 'value'", block.id))
        elif not params.get("tag"):
            errors.append(FlowValidationError("MISSING_FIELD", f"{action_type} requires 'tag'", block.id))

        return errors

    @classmethod
    def _validate_targets(cls, graph: FlowGraph) -> List[FlowValidationError]:
        """Every branch target must name an existing block"""
        errors = []
        block_ids = set(graph.block_ids)

        for block in graph.blocks:
            branching = block.type not in SINGLE_EXIT_TYPES
            for target in graph.branch_targets(block):
                if target is None:
                    if branching:
                        errors.append(FlowValidationError(
                            "DANGLING_TARGET",
                            "Option has no target block",
                            block.id
                        ))
                elif target not in block_ids:
                    errors.append(FlowValidationError(
                        "DANGLING_TARGET",
                        f"Target '{target}' does not exist",
                        block.id
                    ))

        return errors

    @classmethod
    def _validate_edges(cls, graph: FlowGraph) -> List[FlowValidationError]:
        errors = []
        block_ids = set(graph.block_ids)

        for edge in graph.edges:
            if edge.source not in block_ids:
                errors.append(FlowValidationError(
                    "DANGLING_EDGE",
                    f"Edge '{edge.id}' has invalid source: {edge.source}"
                ))
            if edge.target not in block_ids:
                errors.append(FlowValidationError(
                    "DANGLING_EDGE",
                    f"Edge '{edge.id}' has invalid target: {edge.target}"
                ))

        return errors

    @staticmethod
    def _adjacency(graph: FlowGraph, skip_types: Optional[Set[str]] = None) -> Dict[str, List[str]]:
        block_ids = set(graph.block_ids)
        adjacency: Dict[str, List[str]] = {}
        for block in graph.blocks:
            if skip_types and block.type in skip_types:
                continue
            adjacency[block.id] = [t for t in graph.branch_targets(block) if t and t in block_ids]
        return adjacency

    @classmethod
    def _detect_unreachable_blocks(cls, graph: FlowGraph) -> List[FlowValidationError]:
        """Detect blocks that are not reachable from the start block"""
        adjacency = cls._adjacency(graph)

        reachable: Set[str] = set()
        queue = [graph.start_block_id]

        while queue:
            current = queue.pop(0)
            if current in reachable:
                continue
            reachable.add(current)
            queue.extend(t for t in adjacency.get(current, []) if t not in reachable)

        return [
            FlowValidationError(
                "UNREACHABLE_BLOCK",
                f"Block '{block_id}' is not reachable from the start block",
                block_id
            )
            for block_id in graph.block_ids
            if block_id not in reachable
        ]

    @classmethod
    def _detect_replyless_cycles(cls, graph: FlowGraph) -> List[FlowValidationError]:
        """Detect loops that never stop for a reply or a delay"""
        adjacency = cls._adjacency(graph, skip_types=SUSPENDING_TYPES)

        visited: Set[str] = set()
        rec_stack: Set[str] = set()
        cycles: List[List[str]] = []

        def dfs(block_id: str, path: List[str]) -> None:
            visited.add(block_id)
            rec_stack.add(block_id)
            current_path = path + [block_id]

            for next_id in adjacency.get(block_id, []):
                if next_id not in adjacency:
                    continue
                if next_id in rec_stack:
                    cycles.append(current_path[current_path.index(next_id):])
                elif next_id not in visited:
                    dfs(next_id, current_path)

            rec_stack.remove(block_id)

        for block_id in adjacency:
            if block_id not in visited:
                dfs(block_id, [])

        return [
            FlowValidationError(
                "REPLYLESS_CYCLE",
                f"Loop without a reply or delay: {' -> '.join(cycle + [cycle[0]])}",
                cycle[0]
            )
            for cycle in cycles
        ]

    @classmethod
    def _validate_trigger(cls, graph: FlowGraph) -> List[FlowValidationError]:
        errors = []

        if graph.trigger_type == TriggerType.KEYWORD and not any(k.strip() for k in graph.trigger_keywords):
            errors.append(FlowValidationError(
                "INVALID_TRIGGER",
                "Keyword trigger has no keywords"
            ))
        elif graph.trigger_type in (TriggerType.QR_CODE, TriggerType.LINK) and not graph.trigger_code:
            errors.append(FlowValidationError(
                "INVALID_TRIGGER",
                f"{graph.trigger_type.value} trigger has no code"
            ))

        return errors


def validate_flow(flow: Union[FlowGraph, Dict[str, Any]]) -> Tuple[bool, List[FlowValidationError]]:
    """Convenience function to validate a flow"""
    return FlowValidator.validate(flow)
