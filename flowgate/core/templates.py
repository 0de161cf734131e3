"""Resolution of ``{{path}}`` placeholders against an execution context."""

import json
import os
import re
from typing import Any, List, Mapping

from .logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(.+?)\s*\}\}")

# Marker for a path that does not resolve; distinct from a resolved None
MISSING = object()


def resolve_path(expr: str, context: Mapping[str, Any]) -> Any:
    """
    Look up ``expr`` in ``context``.

    The whole expression is tried as a key first, since node ids may contain
    dots, then it is walked segment by segment. List segments may be indexes.

    Returns:
        The resolved value, or ``MISSING``
    """
    if not isinstance(context, Mapping):
        return MISSING

    if expr in context:
        return context[expr]

    current: Any = context
    for part in expr.split('.'):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and re.fullmatch(r"-?\d+", part):
            index = int(part)
            if not -len(current) <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _literal(alternative: str) -> Any:
    if len(alternative) >= 2 and alternative[0] == alternative[-1] and alternative[0] in ("'", '"'):
        return alternative[1:-1]
    return MISSING


def resolve_expression(expr: str, context: Mapping[str, Any], env_fallback: bool = False) -> Any:
    """Resolve one placeholder body, honouring ``a || b || 'default'`` chains."""
    alternatives = [part.strip() for part in expr.split('||')]
    chained = len(alternatives) > 1

    for alternative in alternatives:
        if not alternative:
            continue
        literal = _literal(alternative)
        if literal is not MISSING:
            return literal
        value = resolve_path(alternative, context)
        if value is MISSING:
            if env_fallback and alternative in os.environ:
                return os.environ[alternative]
            continue
        if chained and value in (None, ""):
            continue
        return value

    return MISSING


def stringify(value: Any) -> str:
    """Render a resolved value for substitution into a string."""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple, bool)) or value is None:
        return json.dumps(value, default=str)
    return str(value)


def resolve_string(template: str, context: Mapping[str, Any], env_fallback: bool = False) -> str:
    """Replace every placeholder in ``template``; unresolved ones stay verbatim."""
    if "{{" not in template:
        return template

    def replace(match: re.Match) -> str:
        value = resolve_expression(match.group(1), context, env_fallback)
        if value is MISSING:
            return match.group(0)
        return stringify(value)

    return PLACEHOLDER_PATTERN.sub(replace, template)


def resolve_template(value: Any, context: Mapping[str, Any], env_fallback: bool = False) -> Any:
    """
    Resolve placeholders throughout ``value``.

    Strings are substituted, lists and dicts are resolved recursively and
    every other leaf passes through unchanged. Resolution never raises.

    Args:
        value: String, list, dict or primitive to resolve
        context: Mapping the placeholders are resolved against
        env_fallback: Resolve names missing from context from the process environment

    Returns:
        An equivalent structure with placeholders replaced
    """
    try:
        if isinstance(value, str):
            return resolve_string(value, context, env_fallback)
        if isinstance(value, list):
            return [resolve_template(item, context, env_fallback) for item in value]
        if isinstance(value, tuple):
            return tuple(resolve_template(item, context, env_fallback) for item in value)
        if isinstance(value, dict):
            return {key: resolve_template(item, context, env_fallback) for key, item in value.items()}
        return value
    except Exception as e:
        # A broken context object must not take down the caller
        logger.warning(f"Template resolution failed, returning value unchanged: {e}")
        return value


def unresolved_placeholders(text: str) -> List[str]:
    """Placeholder bodies still present in ``text``."""
    if not isinstance(text, str):
        return []
    return PLACEHOLDER_PATTERN.findall(text)
