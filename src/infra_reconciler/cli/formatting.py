"""Plan and apply output rendering (Terraform-style)."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, NamedTuple

import typer

from infra_reconciler.engine.types import Action
from infra_reconciler.resources.refs import UNKNOWN

if TYPE_CHECKING:
    from collections.abc import Callable

    from infra_reconciler.core.state import ResourceState
    from infra_reconciler.engine.types import ApplyResult, Plan, ResourceChange


class _ActionStyle(NamedTuple):
    color: str
    symbol: str
    progress_verb: str
    done_verb: str


_ACTION_STYLES: dict[str, _ActionStyle] = {
    "create": _ActionStyle("green", "+", "Creating", "Creation complete"),
    "update": _ActionStyle("yellow", "~", "Updating", "Update complete"),
    "replace": _ActionStyle("magenta", "-/+", "Replacing", "Replacement complete"),
    "delete": _ActionStyle("red", "-", "Destroying", "Destroy complete"),
    "no-op": _ActionStyle("bright_black", " ", "", ""),
}

_ACTION_DESC: dict[str, str] = {
    "create": "will be created",
    "update": "will be updated in-place",
    "replace": "must be replaced",
    "delete": "will be destroyed",
    "no-op": "is up-to-date",
}


def styler(color: bool) -> Callable[..., str]:
    """Return ``typer.style`` when *color* is True, otherwise a passthrough."""
    if color:
        return typer.style
    return lambda text, **_kw: text


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def has_actionable_changes(plan: Plan) -> bool:
    """Return True if the plan contains any non-NOOP changes."""
    return plan.has_changes()


def action_style(change: ResourceChange) -> _ActionStyle:
    """Style for *change*; create-before-destroy replaces show ``+/-``."""
    s = _ACTION_STYLES[change.action.value]
    if change.action == Action.REPLACE and change.replace_policy == "create_before_destroy":
        return s._replace(symbol="+/-")
    return s


def _align_values(items: dict[str, str]) -> list[tuple[str, str]]:
    """Right-pad keys so ``=`` signs align."""
    if not items:
        return []
    max_key = max(len(k) for k in items)
    return [(k.ljust(max_key), v) for k, v in items.items()]


def _format_value(value: Any) -> str:
    """Format a value for display in a plan diff block."""
    if value == UNKNOWN:
        return UNKNOWN
    if isinstance(value, str):
        return f'"{value}"'
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


# ---------------------------------------------------------------------------
# Plan rendering
# ---------------------------------------------------------------------------


def _change_attrs(change: ResourceChange) -> dict[str, str]:
    """Extract displayable ``key → formatted value`` pairs from a change."""
    if change.action == Action.CREATE and change.planned:
        return {k: _format_value(v) for k, v in change.planned.items()}
    if change.action in (Action.UPDATE, Action.REPLACE) and change.diff:
        attrs: dict[str, str] = {}
        for k, d in change.diff.items():
            text = f"{_format_value(d['from'])} -> {_format_value(d['to'])}"
            if k in change.replace_reasons:
                text += " # forces replacement"
            attrs[k] = text
        return attrs
    if change.action == Action.DELETE and change.prior_id:
        return {"id": _format_value(change.prior_id)}
    return {}


def format_change(change: ResourceChange, *, color: bool = True) -> str:
    """Render a single ResourceChange as a Terraform-style block."""
    style = styler(color)
    action_val = change.action.value
    s = action_style(change)
    sc = {"fg": s.color}

    subject = f"{change.address} (deposed object)" if change.deposed else change.address
    desc = _ACTION_DESC[action_val]
    if change.action == Action.REPLACE and change.replace_policy == "create_before_destroy":
        desc += " (create before destroy)"
    name = change.address.split(".", 1)[1] if "." in change.address else change.address
    lines = [
        style(f"  # {subject} {desc}", bold=True, **sc),
        style(f'  {s.symbol} resource "{change.resource_type}" "{name}" {{', **sc),
        *[
            style(f"      {s.symbol} {k} = {v}", **sc)
            for k, v in _align_values(_change_attrs(change))
        ],
        style("    }", **sc),
    ]
    return "\n".join(lines)


def format_changes(
    changes: list[ResourceChange] | tuple[ResourceChange, ...], *, color: bool = True
) -> str:
    """Render a list of changes as Terraform-style diff blocks."""
    blocks = [format_change(c, color=color) for c in changes if c.action != Action.NOOP]
    if not blocks:
        return "No changes. Resources are up-to-date."
    return "\n\n".join(blocks)


def format_plan(plan: Plan, *, color: bool = True) -> str:
    """Render the full plan output with per-change diff blocks."""
    return format_changes(plan.changes, color=color)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

_PLAN_VERBS = ("to add", "to change", "to destroy")
_APPLY_VERBS = ("added", "changed", "destroyed")
_SUMMARY_COLORS = ("green", "yellow", "red")


def _format_summary(summary: dict[str, int], verbs: tuple[str, ...], *, color: bool) -> str:
    """Build the ``N verb, N verb, N verb`` part of a summary line.

    A replace counts once as added and once as destroyed.
    """
    style = styler(color)
    replace = summary.get("replace", 0)
    counts = (
        summary.get("create", 0) + replace,
        summary.get("update", 0),
        summary.get("delete", 0) + replace,
    )
    parts = [
        style(f"{n} {verb}", fg=fg) if n and color else f"{n} {verb}"
        for n, verb, fg in zip(counts, verbs, _SUMMARY_COLORS, strict=True)
    ]
    return ", ".join(parts)


def changes_summary(changes: list[ResourceChange]) -> dict[str, int]:
    """Count changes by action type."""
    summary: dict[str, int] = {"create": 0, "update": 0, "replace": 0, "delete": 0}
    for c in changes:
        if c.action != Action.NOOP:
            summary[c.action.value] += 1
    return summary


def format_plan_summary(
    summary: dict[str, int], *, color: bool = True, header: str = "Plan"
) -> str:
    """Render ``Plan: 2 to add, 1 to change, 0 to destroy.``"""
    return f"{header}: {_format_summary(summary, _PLAN_VERBS, color=color)}."


def format_apply_summary(summary: dict[str, int], *, color: bool = True) -> str:
    """Render ``Apply complete! Resources: 2 added, 0 changed, 0 destroyed.``"""
    style = styler(color)
    header = style("Apply complete!", fg="green", bold=True)
    return f"{header} Resources: {_format_summary(summary, _APPLY_VERBS, color=color)}."


def format_partial_result(result: ApplyResult, *, color: bool = True) -> str:
    """Render what an interrupted or failed apply did and did not do."""
    style = styler(color)
    lines = [f"  Partial result: {_format_summary(result.summary(), _APPLY_VERBS, color=False)}."]
    for failed in result.failed:
        lines.append(style(f"  ✗ {failed.change.key}: {failed.error}", fg="red"))
    for change in result.not_attempted:
        lines.append(style(f"  - {change.key}: not attempted", fg="yellow"))
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# State and outputs
# ---------------------------------------------------------------------------


def format_instance(inst: ResourceState, *, deposed: bool = False) -> str:
    """Render one state entry for ``state show``."""
    title = f"# {inst.address}" + (" (deposed object)" if deposed else "")
    attrs = {"id": _format_value(inst.id)} | {
        k: _format_value(v) for k, v in sorted(inst.attributes.items())
    }
    lines = [title, f'resource "{inst.resource_type}" "{inst.name}" {{']
    lines.extend(f"    {k} = {v}" for k, v in _align_values(attrs))
    lines.append("}")
    return "\n".join(lines)


def format_outputs(outputs: dict[str, Any]) -> str:
    """Render ``name = value`` lines."""
    values = {k: _format_value(v) for k, v in sorted(outputs.items())}
    return "\n".join(f"{k} = {v}" for k, v in _align_values(values))
