"""Evaluation of sequence flow condition expressions.

Only the small expression language used by generated processes is supported:
``${var}``, ``#{var}``, ``var == 'x'``, ``var != 'x'``, dotted paths,
``true``/``false`` literals and ``&&``/``||`` between comparisons.
Comparisons are case-insensitive string comparisons.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping

logger = logging.getLogger(__name__)

_WRAPPED_RE = re.compile(r"^[$#]\{([\s\S]+)\}$")
_COMPARISON_RE = re.compile(
    r"^([\w.-]+)\s*(===|==|!==|!=)\s*(?:'([^']*)'|\"([^\"]*)\"|([\w.-]+))$"
)
_PATH_RE = re.compile(r"^!?[A-Za-z_][\w.-]*$")

_FALSY_STRINGS = frozenset({"", "false", "0", "no", "none", "null"})


def unwrap(expression: str) -> str:
    """Strip ``${...}`` or ``#{...}`` around an expression."""
    text = expression.strip()
    match = _WRAPPED_RE.match(text)
    return match.group(1).strip() if match else text


def resolve_path(path: str, variables: Mapping[str, Any]) -> Any:
    current: Any = variables
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)


def _evaluate_term(term: str, variables: Mapping[str, Any]) -> bool:
    term = term.strip()
    if term.lower() in ("true", "false"):
        return term.lower() == "true"

    comparison = _COMPARISON_RE.match(term)
    if comparison:
        path, operator, single, double, bare = comparison.groups()
        expected = next(v for v in (single, double, bare) if v is not None)
        actual = _as_text(resolve_path(path, variables))
        equal = actual == expected.strip().lower()
        return equal if operator in ("==", "===") else not equal

    if _PATH_RE.match(term):
        if term.startswith("!"):
            return not _truthy(resolve_path(term[1:], variables))
        return _truthy(resolve_path(term, variables))

    logger.warning(f"Unsupported condition expression: {term}")
    return False


def evaluate(expression: str | None, variables: Mapping[str, Any]) -> bool:
    """Evaluate a condition against run variables.

    An empty expression is true. Unsupported syntax evaluates to false.
    """
    if expression is None or not expression.strip():
        return True
    inner = unwrap(expression)
    return any(
        all(_evaluate_term(term, variables) for term in alternative.split("&&"))
        for alternative in inner.split("||")
    )
