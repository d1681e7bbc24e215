"""CLI command implementations."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Literal

import typer

from infra_reconciler.cli import app, state_app
from infra_reconciler.cli.errors import handle_error

if TYPE_CHECKING:
    from infra_reconciler.config.schema import Config
    from infra_reconciler.core.state import State
    from infra_reconciler.engine.types import ApplyResult, Plan, ResourceChange

DEFAULT_CONFIG = Path("reconciler.yaml")

ConfigPath = Annotated[
    Path,
    typer.Option("--config", "-c", help="Path to the configuration file."),
]

NoColor = Annotated[
    bool,
    typer.Option("--no-color", help="Disable colored output."),
]

AutoApprove = Annotated[
    bool,
    typer.Option("--auto-approve", help="Skip interactive approval."),
]

NoRefresh = Annotated[
    bool,
    typer.Option("--no-refresh", help="Skip refreshing state from the provider."),
]

Parallelism = Annotated[
    int | None,
    typer.Option("--parallelism", min=1, help="Maximum concurrent provider operations."),
]


def _use_color(no_color: bool) -> bool:
    """Determine whether to use color output."""
    return not (no_color or os.environ.get("NO_COLOR"))


def _apply_with_progress(
    plan_obj: Plan, cfg: Config, *, color: bool, parallelism: int | None
) -> ApplyResult:
    """Apply a plan with a Rich progress bar and per-resource status lines.

    Ctrl-C stops dispatching new operations; in-flight ones finish and are
    recorded before the apply reports as canceled.
    """
    from rich.console import Console
    from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

    from infra_reconciler.cli.formatting import action_style
    from infra_reconciler.config import apply
    from infra_reconciler.engine.types import Action, ResourceChange

    console = Console(no_color=not color)
    actionable = [c for c in plan_obj.changes if c.action != Action.NOOP]
    cancel = threading.Event()

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Applying", total=len(actionable))

        def on_progress(change: ResourceChange, event: Literal["start", "done", "failed"]) -> None:
            s = action_style(change)
            if event == "start":
                progress.update(task, description=f"{change.key}: {s.progress_verb}...")
            elif event == "done":
                progress.console.print(f"  {change.key}: {s.done_verb}")
                progress.advance(task)
            else:
                progress.console.print(f"  {change.key}: [red]failed[/red]")
                progress.advance(task)

        return apply(plan_obj, cfg, progress=on_progress, cancel=cancel, parallelism=parallelism)


def _confirm_and_apply(
    plan_obj: Plan,
    cfg: Config,
    *,
    color: bool,
    auto_approve: bool,
    parallelism: int | None,
    confirm_msg: str,
    empty_msg: str,
) -> None:
    """Shared flow: show plan -> confirm -> apply with progress -> print summary.

    Exits with code 0 if no actionable changes.
    """
    from infra_reconciler.cli.formatting import (
        format_apply_summary,
        format_plan,
        format_plan_summary,
        has_actionable_changes,
    )
    from infra_reconciler.config import apply

    if not has_actionable_changes(plan_obj):
        if plan_obj.outputs:
            # Nothing to change, but outputs may be new.
            try:
                apply(plan_obj, cfg)
            except Exception as exc:
                raise typer.Exit(handle_error(exc, color=color)) from exc
        typer.echo(empty_msg)
        raise typer.Exit(0)

    typer.echo(format_plan(plan_obj, color=color))
    typer.echo()
    typer.echo(format_plan_summary(plan_obj.summary(), color=color))
    typer.echo()

    if not auto_approve:
        try:
            typer.confirm(confirm_msg, abort=True)
        except typer.Abort as e:
            typer.echo("Apply canceled.", err=True)
            raise typer.Exit(1) from e

    try:
        result = _apply_with_progress(plan_obj, cfg, color=color, parallelism=parallelism)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo()
    typer.echo(format_apply_summary(result.summary(), color=color))


@app.command()
def plan(
    config: ConfigPath = DEFAULT_CONFIG,
    out: Annotated[
        Path | None,
        typer.Option("--out", "-o", help="Save plan to file."),
    ] = None,
    detailed_exitcode: Annotated[
        bool,
        typer.Option(
            "--detailed-exitcode",
            help="Exit 0 when there are no changes, 2 when there are changes.",
        ),
    ] = False,
    destroy: Annotated[
        bool,
        typer.Option("--destroy", help="Plan the destruction of all managed resources."),
    ] = False,
    no_color: NoColor = False,
    no_refresh: NoRefresh = False,
) -> None:
    """Show changes required by the current configuration."""
    from infra_reconciler.cli.formatting import (
        format_plan,
        format_plan_summary,
        has_actionable_changes,
    )
    from infra_reconciler.config import load
    from infra_reconciler.config import plan as plan_fn

    color = _use_color(no_color)
    try:
        cfg = load(config)
        plan_obj = plan_fn(cfg, destroy=destroy, refresh=not no_refresh)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo(format_plan(plan_obj, color=color))
    typer.echo()
    typer.echo(format_plan_summary(plan_obj.summary(), color=color))

    if out is not None:
        plan_obj.save(out)
        typer.echo(f"\nPlan saved to {out}")

    if detailed_exitcode and has_actionable_changes(plan_obj):
        raise typer.Exit(2)


@app.command(name="apply")
def apply_cmd(
    plan_file: Annotated[
        Path | None,
        typer.Argument(help="Saved plan file to apply."),
    ] = None,
    config: ConfigPath = DEFAULT_CONFIG,
    auto_approve: AutoApprove = False,
    parallelism: Parallelism = None,
    no_color: NoColor = False,
    no_refresh: NoRefresh = False,
) -> None:
    """Apply the changes required by the current configuration."""
    from infra_reconciler.config import load
    from infra_reconciler.config import plan as plan_fn
    from infra_reconciler.engine.types import Plan

    color = _use_color(no_color)
    try:
        cfg = load(config)
        plan_obj = (
            Plan.load(plan_file) if plan_file is not None else plan_fn(cfg, refresh=not no_refresh)
        )
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    _confirm_and_apply(
        plan_obj,
        cfg,
        color=color,
        # A saved plan was already reviewed when it was written.
        auto_approve=auto_approve or plan_file is not None,
        parallelism=parallelism,
        confirm_msg="Do you want to apply these changes?",
        empty_msg="No changes. Resources are up-to-date.",
    )


@app.command()
def destroy(
    config: ConfigPath = DEFAULT_CONFIG,
    auto_approve: AutoApprove = False,
    parallelism: Parallelism = None,
    no_color: NoColor = False,
) -> None:
    """Destroy all managed resources."""
    from infra_reconciler.config import load
    from infra_reconciler.config import plan as plan_fn

    color = _use_color(no_color)
    try:
        cfg = load(config)
        plan_obj = plan_fn(cfg, destroy=True)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    _confirm_and_apply(
        plan_obj,
        cfg,
        color=color,
        auto_approve=auto_approve,
        parallelism=parallelism,
        confirm_msg="Do you really want to destroy all resources?",
        empty_msg="No resources to destroy.",
    )


@app.command(name="refresh")
def refresh_cmd(
    config: ConfigPath = DEFAULT_CONFIG,
    auto_approve: AutoApprove = False,
    no_color: NoColor = False,
) -> None:
    """Refresh state from live provider state."""
    from infra_reconciler.cli.formatting import changes_summary, format_changes, format_plan_summary
    from infra_reconciler.config import load
    from infra_reconciler.config import refresh as refresh_fn

    color = _use_color(no_color)

    # Runs while the state lock is held, so nothing can commit in between.
    def review(changes: list[ResourceChange], _state: State) -> bool:
        if not changes:
            return False
        typer.echo(format_changes(changes, color=color))
        typer.echo()
        typer.echo(format_plan_summary(changes_summary(changes), color=color, header="Refresh"))
        typer.echo()
        if not auto_approve:
            typer.confirm("Do you want to update the state file?", abort=True)
        return True

    try:
        cfg = load(config)
        changes, state = refresh_fn(cfg, confirm=review)
    except typer.Abort as e:
        typer.echo("Refresh canceled.", err=True)
        raise typer.Exit(1) from e
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if not changes:
        typer.echo("No changes. State is up-to-date with the provider.")
        raise typer.Exit(0)

    count = len(state.resources)
    typer.echo(f"State refreshed. {count} resource{'s' if count != 1 else ''} tracked.")


@app.command()
def drift(
    config: ConfigPath = DEFAULT_CONFIG,
    no_color: NoColor = False,
) -> None:
    """Show drift between state and live provider state."""
    from infra_reconciler.cli.formatting import format_changes
    from infra_reconciler.config import drift as drift_fn
    from infra_reconciler.config import load

    color = _use_color(no_color)
    try:
        cfg = load(config)
        changes = drift_fn(cfg)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if not changes:
        typer.echo("No drift detected. State is up-to-date with the provider.")
        raise typer.Exit(0)

    typer.echo("Drift detected:\n")
    typer.echo(format_changes(changes, color=color))


@app.command()
def reconcile(
    config: ConfigPath = DEFAULT_CONFIG,
    force: Annotated[
        bool,
        typer.Option("--force", help="Drop markers whose outcome cannot be determined."),
    ] = False,
    no_color: NoColor = False,
) -> None:
    """Resolve operations left in an unknown state by an interrupted apply."""
    from infra_reconciler.cli.formatting import styler
    from infra_reconciler.config import load
    from infra_reconciler.config import reconcile as reconcile_fn

    color = _use_color(no_color)
    try:
        cfg = load(config)
        outcomes = reconcile_fn(cfg, force=force)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if not outcomes:
        typer.echo("Nothing to reconcile.")
        return

    style = styler(color)
    unresolved = 0
    for o in outcomes:
        fg = "yellow" if o.resolution == "unresolved" else "green"
        unresolved += o.resolution == "unresolved"
        detail = f" ({o.detail})" if o.detail else ""
        typer.echo(style(f"  {o.key} [{o.action}]: {o.resolution}{detail}", fg=fg))

    if unresolved:
        typer.echo(
            f"\n{unresolved} operation(s) could not be resolved; "
            "inspect them manually or re-run with --force.",
            err=True,
        )
        raise typer.Exit(1)


@app.command()
def validate(
    config: ConfigPath = DEFAULT_CONFIG,
    no_color: NoColor = False,
) -> None:
    """Validate the configuration file."""
    from infra_reconciler.cli.formatting import styler
    from infra_reconciler.config import load
    from infra_reconciler.config import validate as validate_fn

    color = _use_color(no_color)
    try:
        cfg = load(config)
        validate_fn(cfg)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo(styler(color)("Configuration is valid.", fg="green"))


@app.command()
def output(
    name: Annotated[str | None, typer.Argument(help="Print only this output.")] = None,
    config: ConfigPath = DEFAULT_CONFIG,
    no_color: NoColor = False,
) -> None:
    """Show output values from the last apply."""
    from infra_reconciler.cli.formatting import format_outputs
    from infra_reconciler.config import load
    from infra_reconciler.config import outputs as outputs_fn

    color = _use_color(no_color)
    try:
        cfg = load(config)
        values = outputs_fn(cfg)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if name is None:
        if values:
            typer.echo(format_outputs(values))
        return
    if name not in values:
        raise typer.Exit(handle_error(LookupError(f"output '{name}' not found"), color=color))
    value = values[name]
    typer.echo(value if isinstance(value, str) else json.dumps(value, sort_keys=True))


@state_app.command(name="list")
def state_list(
    config: ConfigPath = DEFAULT_CONFIG,
    no_color: NoColor = False,
) -> None:
    """List resources recorded in the state file."""
    from infra_reconciler.config import load
    from infra_reconciler.engine.store import read_state

    color = _use_color(no_color)
    try:
        cfg = load(config)
        state = read_state(cfg.state_path)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    for address in sorted(state.resources):
        typer.echo(f"{address}\t{state.resources[address].id}")
    for address in sorted(state.deposed):
        typer.echo(f"{address} (deposed)\t{state.deposed[address].id}")
    for key in sorted(state.pending):
        typer.echo(f"{key} (pending {state.pending[key].action})")


@state_app.command(name="show")
def state_show(
    address: Annotated[str, typer.Argument(help="Resource address, e.g. aws_vpc.main.")],
    config: ConfigPath = DEFAULT_CONFIG,
    no_color: NoColor = False,
) -> None:
    """Show one resource recorded in the state file."""
    from infra_reconciler.cli.formatting import format_instance
    from infra_reconciler.config import load
    from infra_reconciler.engine.store import read_state

    color = _use_color(no_color)
    try:
        cfg = load(config)
        state = read_state(cfg.state_path)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    blocks: list[str] = []
    if address in state.resources:
        blocks.append(format_instance(state.resources[address]))
    if address in state.deposed:
        blocks.append(format_instance(state.deposed[address], deposed=True))
    if not blocks:
        exc = LookupError(f"no resource '{address}' in state")
        raise typer.Exit(handle_error(exc, color=color))
    typer.echo("\n\n".join(blocks))
