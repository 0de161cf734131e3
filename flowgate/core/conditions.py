"""Boolean conditions for condition nodes and edges.

Expressions are parsed once into a small tree, a comparison or a bare
truthiness test, and the parse is cached per expression string. Operand
templates are resolved at evaluation time, so values coming from the context
can never inject operators.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping, Optional, Union

from ..models.core import ReviewDecision
from ..models.workflow import EdgeCondition, EdgeConditionType, EdgeDefinition
from .logging import get_logger
from .templates import (
    MISSING,
    PLACEHOLDER_PATTERN,
    resolve_expression,
    resolve_string,
    stringify,
    unresolved_placeholders,
)

logger = get_logger(__name__)

# Two-character operators come before their one-character prefixes
COMPARISON_OPERATORS = ("==", "!=", ">=", "<=", ">", "<")
NUMERIC_OPERATORS = frozenset({">=", "<=", ">", "<"})
_CONTAINS_PATTERN = re.compile(r"\s+contains\s+", re.IGNORECASE)
_QUOTED_PATTERN = re.compile(r"'[^']*'|\"[^\"]*\"")

_DECISION_WORDS = {
    "approve": ReviewDecision.APPROVE,
    "approved": ReviewDecision.APPROVE,
    "reject": ReviewDecision.REJECT,
    "rejected": ReviewDecision.REJECT,
}


def _strip_quotes(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    return text


def _to_number(text: str) -> Optional[float]:
    try:
        return float(text)
    except (TypeError, ValueError):
        return None


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, Mapping):
        return stringify(item) in {stringify(key) for key in container}
    if isinstance(container, (list, tuple, set)):
        return item in container or stringify(item) in {stringify(element) for element in container}
    if container is None:
        return False
    return stringify(item) in stringify(container)


@dataclass(frozen=True)
class Comparison:
    operator: str
    left: str
    right: str

    def _operand(self, text: str, context: Mapping[str, Any]) -> Any:
        """Raw value for a lone placeholder, resolved text otherwise."""
        match = PLACEHOLDER_PATTERN.fullmatch(text.strip())
        if match:
            return resolve_expression(match.group(1), context)
        resolved = resolve_string(text, context)
        if unresolved_placeholders(resolved):
            return MISSING
        return _strip_quotes(resolved)

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        left = self._operand(self.left, context)
        right = self._operand(self.right, context)
        if left is MISSING or right is MISSING:
            return False

        if self.operator == "contains":
            return _contains(left, right)

        left_text = stringify(left).strip()
        right_text = stringify(right).strip()
        left_number = _to_number(left_text)
        right_number = _to_number(right_text)

        if self.operator in NUMERIC_OPERATORS:
            if left_number is None or right_number is None:
                return False
            if self.operator == ">":
                return left_number > right_number
            if self.operator == "<":
                return left_number < right_number
            if self.operator == ">=":
                return left_number >= right_number
            return left_number <= right_number

        if left_number is not None and right_number is not None:
            equal = left_number == right_number
        else:
            equal = left_text == right_text
        return equal if self.operator == "==" else not equal


@dataclass(frozen=True)
class Truthiness:
    operand: str

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        resolved = resolve_string(self.operand, context)
        if unresolved_placeholders(resolved):
            return False
        text = _strip_quotes(resolved)
        return bool(text) and text.lower() != "false"


ConditionExpression = Union[Comparison, Truthiness]


@lru_cache(maxsize=1024)
def parse_condition(expression: str) -> ConditionExpression:
    """Parse a condition expression into its tree form.

    Raises:
        ValueError: If the expression is empty or an operand is missing
    """
    text = expression.strip()
    if not text:
        raise ValueError("Condition expression is empty")

    # Blank out placeholder bodies and quoted literals so operators inside them are not split on
    masked = PLACEHOLDER_PATTERN.sub(lambda m: "{" * len(m.group(0)), text)
    masked = _QUOTED_PATTERN.sub(lambda m: "'" * len(m.group(0)), masked)

    for operator in COMPARISON_OPERATORS:
        index = masked.find(operator)
        if index == -1:
            continue
        left = text[:index].strip()
        right = text[index + len(operator):].strip()
        if not left or not right:
            raise ValueError(f"Missing operand for '{operator}' in condition: {expression}")
        return Comparison(operator, left, right)

    match = _CONTAINS_PATTERN.search(masked)
    if match:
        left = text[:match.start()].strip()
        right = text[match.end():].strip()
        if not left or not right:
            raise ValueError(f"Missing operand for 'contains' in condition: {expression}")
        return Comparison("contains", left, right)

    return Truthiness(text)


@dataclass
class EdgeOutcome:
    """What the source node of an edge produced."""
    output: Any = None
    success: bool = True
    decision: Optional[ReviewDecision] = None
    next_path: Optional[str] = None


class ConditionEvaluator:
    """Evaluates condition expressions and edge conditions, failing closed."""

    def evaluate(self, expression: Any, context: Mapping[str, Any]) -> bool:
        """
        Evaluate a condition expression against the context.

        Args:
            expression: Condition text such as ``"{{score}} > 5"``; booleans pass through
            context: Mapping used to resolve placeholders

        Returns:
            The boolean result; any internal error yields False
        """
        try:
            if isinstance(expression, bool):
                return expression
            if expression is None:
                return False
            return parse_condition(str(expression)).evaluate(context)
        except Exception as e:
            logger.warning(f"Condition '{expression}' could not be evaluated, treating as false: {e}")
            return False

    def edge_matches(self, edge: EdgeDefinition, outcome: EdgeOutcome, context: Mapping[str, Any]) -> bool:
        """Decide whether ``edge`` should be followed given its source's outcome."""
        try:
            if outcome.next_path is not None and outcome.next_path not in (edge.target, edge.id):
                return False

            condition = edge.condition
            if condition is None:
                return outcome.success and outcome.decision != ReviewDecision.REJECT

            if isinstance(condition, EdgeCondition):
                return self._declarative_matches(condition, edge, outcome)

            if not outcome.success:
                return False

            word = condition.strip().lower()
            if outcome.decision is not None and word in _DECISION_WORDS:
                return _DECISION_WORDS[word] == outcome.decision

            if not PLACEHOLDER_PATTERN.search(condition):
                # A literal condition names the output value that selects the edge
                return (outcome.output is not None
                        and stringify(outcome.output).strip().lower() == word)

            scope = dict(context)
            scope["output"] = outcome.output
            if outcome.decision is not None:
                scope["decision"] = outcome.decision.value
            return self.evaluate(condition, scope)
        except Exception as e:
            logger.warning(f"Edge {edge.source}->{edge.target} condition failed, not following it: {e}")
            return False

    def _declarative_matches(self, condition: EdgeCondition, edge: EdgeDefinition, outcome: EdgeOutcome) -> bool:
        condition_type = condition.type
        if condition_type == EdgeConditionType.FAILURE:
            return not outcome.success
        if not outcome.success:
            return False
        if condition_type == EdgeConditionType.SUCCESS:
            return outcome.decision != ReviewDecision.REJECT
        if condition_type == EdgeConditionType.OUTPUT_CONTAINS:
            return _contains(outcome.output, condition.value)
        if condition_type == EdgeConditionType.OUTPUT_EQUALS:
            return outcome.output == condition.value or stringify(outcome.output) == stringify(condition.value)
        if condition_type == EdgeConditionType.PATH:
            return outcome.next_path == (condition.value or edge.target)
        if condition_type == EdgeConditionType.DECISION:
            return outcome.decision is not None and ReviewDecision.parse(condition.value) == outcome.decision
        raise ValueError(f"Unsupported edge condition type: {condition_type}")
