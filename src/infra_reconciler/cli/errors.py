"""Map exceptions to clean stderr messages and exit codes."""

from __future__ import annotations

import typer


def _err(msg: str, *, fg: str | None) -> None:
    """Print a styled message to stderr."""
    typer.echo(typer.style(msg, fg=fg), err=True)


def handle_error(exc: Exception, *, color: bool = True) -> int:
    """Print a clean error message to stderr and return an exit code.

    All errors map to exit code 1.  No tracebacks are printed.
    """
    from infra_reconciler.cli.formatting import format_partial_result
    from infra_reconciler.config.loader import ConfigError
    from infra_reconciler.engine.errors import (
        ApplyCanceled,
        ApplyError,
        CyclicDependencyError,
        ProviderError,
        ReconciliationRequiredError,
        ScheduleDeadlockError,
        StalePlanError,
        StaleStateError,
        StateVersionError,
        StoreLockedError,
        ValidationError,
    )

    fg = typer.colors.RED if color else None

    if isinstance(exc, ConfigError):
        _err(f"Configuration error: {exc}", fg=fg)
    elif isinstance(exc, ValidationError):
        _err("Validation failed:", fg=fg)
        for e in exc.errors:
            _err(f"  - {e}", fg=fg)
    elif isinstance(exc, CyclicDependencyError | ScheduleDeadlockError):
        _err(f"Dependency error: {exc}", fg=fg)
    elif isinstance(exc, StalePlanError):
        _err(f"Plan is stale: {exc}", fg=fg)
    elif isinstance(exc, StoreLockedError):
        _err(f"State locked: {exc}", fg=fg)
    elif isinstance(exc, StaleStateError):
        _err(f"State changed: {exc}", fg=fg)
    elif isinstance(exc, StateVersionError):
        _err(f"Unsupported state file: {exc}", fg=fg)
    elif isinstance(exc, ReconciliationRequiredError):
        _err(f"Reconciliation required: {exc}", fg=fg)
    elif isinstance(exc, ApplyError):
        _err(f"Apply failed: {exc}", fg=fg)
        _err(format_partial_result(exc.result, color=color), fg=None)
    elif isinstance(exc, ApplyCanceled):
        _err("Apply canceled.", fg=fg)
        _err(format_partial_result(exc.result, color=color), fg=None)
    elif isinstance(exc, ProviderError):
        _err(f"Provider error: {exc}", fg=fg)
    else:
        _err(f"Error: {exc}", fg=fg)

    return 1
