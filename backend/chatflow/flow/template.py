"""
Variable substitution for block payloads.

Placeholders use the ``{{name}}`` syntax (whitespace inside the braces is
ignored, dot paths reach into nested values). Unresolved placeholders are
left literal and logged, so broken authored flows stay visible in the
messages they produce.
"""
import logging
import re
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w.\-]*)\s*\}\}")


def lookup_variable(variables: Dict[str, Any], name: str) -> Any:
    """
    Get a variable, falling back to dot notation for nested dicts.

    Example:
        >>> lookup_variable({"user": {"name": "Ana"}}, "user.name")
        'Ana'
    """
    if not variables or not name:
        return None

    if name in variables:
        return variables[name]

    value: Any = variables
    for key in name.split("."):
        if isinstance(value, dict):
            value = value.get(key)
        else:
            return None
        if value is None:
            return None
    return value


def format_value(value: Any) -> str:
    """String form used when a variable is substituted into text"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_template(
    template: Optional[str],
    variables: Dict[str, Any],
    source: Optional[str] = None
) -> str:
    """
    Replace ``{{name}}`` placeholders with variable values.

    Args:
        template: Text with placeholders
        variables: Execution variables
        source: Block id, only used in the warning for unresolved names

    Returns:
        Rendered text
    """
    if not template:
        return ""

    missing = []

    def _replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        value = lookup_variable(variables, name)
        if value is None:
            missing.append(name)
            return match.group(0)
        return format_value(value)

    rendered = PLACEHOLDER_PATTERN.sub(_replace, template)

    if missing:
        logger.warning(
            f"Unresolved template variables {missing}"
            + (f" in block '{source}'" if source else "")
        )

    return rendered


def render_value(value: Any, variables: Dict[str, Any], source: Optional[str] = None) -> Any:
    """Render every string inside a (possibly nested) dict/list structure"""
    if isinstance(value, str):
        return render_template(value, variables, source)
    if isinstance(value, dict):
        return {key: render_value(item, variables, source) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, variables, source) for item in value]
    return value
