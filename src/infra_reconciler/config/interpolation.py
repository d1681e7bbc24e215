"""``${…}`` interpolation for configuration files.

Three kinds of expression are understood:

- ``${var.name}``, optionally indexed (``${var.azs[0]}``, ``${var.cidrs[count.index]}``,
  ``${var.tags["env"]}``), replaced by the variable's value;
- ``${count.index}``, the instance index inside a resource with ``count``;
- resource references (``${aws_vpc.main.id}``), which are kept for the engine
  after any ``count.index`` inside them has been substituted.

An expression that makes up a whole string keeps the type of its value, so
``cidrs: ${var.cidrs}`` yields a list. Variables embedded in a longer string
are rendered as text. References must always be the whole value.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from infra_reconciler.resources.refs import parse_ref

if TYPE_CHECKING:
    from collections.abc import Mapping

_EXPR_RE = re.compile(r"\$\{([^${}]*)\}")
_VAR_RE = re.compile(r"^var\.(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?P<indexes>(?:\[[^\[\]]+\])*)$")
_INDEX_RE = re.compile(r"\[([^\[\]]+)\]")
_COUNT_INDEX = "count.index"


class InterpolationError(ValueError):
    """An expression could not be evaluated."""


@dataclass(frozen=True)
class Scope:
    """Values visible to expressions of one resource instance (or of outputs)."""

    variables: Mapping[str, Any]
    count_index: int | None = None

    def index(self) -> int:
        if self.count_index is None:
            raise InterpolationError("count.index is only available in resources with 'count'")
        return self.count_index


def _index_key(token: str, scope: Scope) -> int | str:
    token = token.strip()
    if token == _COUNT_INDEX:
        return scope.index()
    if token.isdigit():
        return int(token)
    if len(token) >= 2 and token[0] == token[-1] and token[0] in "\"'":
        return token[1:-1]
    raise InterpolationError(f"Unsupported index [{token}]")


def _lookup_variable(expr: str, scope: Scope) -> Any:
    m = _VAR_RE.match(expr)
    if m is None:
        raise InterpolationError(f"Invalid variable expression '${{{expr}}}'")
    name = m.group("name")
    if name not in scope.variables:
        raise InterpolationError(f"Undefined variable '{name}'")
    value = scope.variables[name]
    for token in _INDEX_RE.findall(m.group("indexes")):
        key = _index_key(token, scope)
        try:
            value = value[key]
        except (IndexError, KeyError, TypeError) as e:
            raise InterpolationError(f"'${{{expr}}}': no element [{key}]") from e
    return value


def _is_value_expression(expr: str) -> bool:
    return expr == _COUNT_INDEX or expr.startswith("var.")


def _evaluate(expr: str, scope: Scope) -> Any:
    if expr == _COUNT_INDEX:
        return scope.index()
    return _lookup_variable(expr, scope)


def _reference(expr: str, scope: Scope) -> str:
    """Substitute ``count.index`` inside a resource reference and validate it."""
    text = "${" + _INDEX_RE.sub(lambda m: f"[{_index_key(m.group(1), scope)}]", expr) + "}"
    if parse_ref(text) is None:
        raise InterpolationError(f"Invalid expression '${{{expr}}}'")
    return text


def _interpolate_string(value: str, scope: Scope) -> Any:
    whole = _EXPR_RE.fullmatch(value.strip())
    if whole is not None:
        expr = whole.group(1).strip()
        if _is_value_expression(expr):
            return _evaluate(expr, scope)
        return _reference(expr, scope)

    def render(m: re.Match[str]) -> str:
        expr = m.group(1).strip()
        if not _is_value_expression(expr):
            raise InterpolationError(
                f"Reference '${{{expr}}}' must be the whole value, not part of '{value}'"
            )
        result = _evaluate(expr, scope)
        if isinstance(result, dict | list):
            raise InterpolationError(f"'${{{expr}}}' is not a scalar and cannot be embedded")
        return str(result)

    return _EXPR_RE.sub(render, value)


def interpolate(value: Any, scope: Scope) -> Any:
    """Evaluate expressions in string values, recursively."""
    if isinstance(value, str):
        return _interpolate_string(value, scope)
    if isinstance(value, dict):
        return {k: interpolate(v, scope) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate(v, scope) for v in value]
    return value


def interpolate_address(value: str, scope: Scope) -> str:
    """Substitute ``count.index`` in an address such as ``aws_subnet.public[count.index]``."""
    text = value.strip()
    whole = _EXPR_RE.fullmatch(text)
    if whole is not None:
        text = whole.group(1).strip()
    return _INDEX_RE.sub(lambda m: f"[{_index_key(m.group(1), scope)}]", text)
