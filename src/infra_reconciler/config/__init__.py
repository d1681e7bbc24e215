"""YAML configuration loading and convenience plan/apply API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from infra_reconciler.config.loader import ConfigError, load_config
from infra_reconciler.config.registry import default_registry
from infra_reconciler.config.schema import Config, EngineSettings, ProviderConfig
from infra_reconciler.core.state import State
from infra_reconciler.engine.engine import Reconciler
from infra_reconciler.engine.executor import RetryPolicy
from infra_reconciler.engine.types import Action, ResourceChange
from infra_reconciler.providers.aws import AWSProvider

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable
    from pathlib import Path

    from infra_reconciler.engine.engine import ReconcileOutcome
    from infra_reconciler.engine.executor import ProgressCallback
    from infra_reconciler.engine.registry import ResourceTypeRegistry
    from infra_reconciler.engine.types import ApplyResult, Plan

__all__ = [
    "Config",
    "ConfigError",
    "EngineSettings",
    "ProviderConfig",
    "State",
    "apply",
    "drift",
    "load",
    "load_config",
    "outputs",
    "plan",
    "plan_and_apply",
    "reconcile",
    "refresh",
    "save_state",
    "validate",
]


def load(path: Path | str) -> Config:
    """Load a YAML configuration file."""
    return load_config(path)


def _engine_from_config(
    config: Config, *, registry: ResourceTypeRegistry | None = None
) -> Reconciler:
    """Build a ``Reconciler`` from a ``Config`` instance.

    *registry* replaces the AWS registry, e.g. with in-memory providers in tests.
    """
    if registry is None:
        provider = AWSProvider(**config.provider.model_dump())
        registry = default_registry(provider)
    settings = config.engine
    return Reconciler(
        state_path=config.state_path,
        registry=registry,
        retry=RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
        ),
        parallelism=settings.parallelism,
    )


def validate(config: Config) -> None:
    """Validate resource types, attributes and references without touching state."""
    _engine_from_config(config).validate(config.specs)


def plan(config: Config, *, destroy: bool = False, refresh: bool = True) -> Plan:
    """Plan changes for the given configuration."""
    engine = _engine_from_config(config)
    return engine.plan(
        config.specs, destroy=destroy, refresh=refresh, outputs=config.resolved_outputs
    )


def apply(
    plan_obj: Plan,
    config: Config,
    *,
    progress: ProgressCallback | None = None,
    cancel: threading.Event | None = None,
    parallelism: int | None = None,
) -> ApplyResult:
    """Apply a previously computed plan."""
    engine = _engine_from_config(config)
    return engine.apply(plan_obj, progress=progress, cancel=cancel, parallelism=parallelism)


def plan_and_apply(config: Config, *, destroy: bool = False, refresh: bool = True) -> ApplyResult:
    """Plan and apply in one step."""
    plan_obj = plan(config, destroy=destroy, refresh=refresh)
    return apply(plan_obj, config)


def refresh(
    config: Config,
    *,
    confirm: Callable[[list[ResourceChange], State], bool] | None = None,
) -> tuple[list[ResourceChange], State]:
    """Refresh state from live provider state.

    Returns the list of drift changes and the new state. Without *confirm*
    nothing is persisted; :func:`save_state` writes the returned state later
    (and refuses if the file changed in between). With *confirm*, it is called
    with the drift changes and the new state while the state lock is held, and
    the state is written when it returns true.
    """
    engine = _engine_from_config(config)

    def accept(old_state: State, new_state: State) -> bool:
        changes = _build_drift_changes(old_state, new_state)
        return confirm is not None and confirm(changes, new_state)

    old_state, new_state = engine.refresh(confirm=accept if confirm is not None else None)
    return _build_drift_changes(old_state, new_state), new_state


def save_state(config: Config, state: State) -> None:
    """Persist a state returned by :func:`refresh`.

    Raises:
        StaleStateError: Another invocation wrote the state file since.
    """
    _engine_from_config(config).write_state(state)


def drift(config: Config) -> list[ResourceChange]:
    """Detect drift between state file and live provider state."""
    changes, _ = refresh(config)
    return changes


def reconcile(config: Config, *, force: bool = False) -> list[ReconcileOutcome]:
    """Resolve write-ahead markers left by an interrupted apply."""
    return _engine_from_config(config).reconcile(force=force)


def outputs(config: Config) -> dict[str, object]:
    """Output values recorded by the last successful apply."""
    return _engine_from_config(config).outputs()


def _build_drift_changes(old_state: State, new_state: State) -> list[ResourceChange]:
    """Compare old vs new state and return a list of drift changes."""
    changes: list[ResourceChange] = []
    for deposed, old_bucket, new_bucket in (
        (False, old_state.resources, new_state.resources),
        (True, old_state.deposed, new_state.deposed),
    ):
        for addr in sorted(old_bucket):
            old = old_bucket[addr]
            inst = new_bucket.get(addr)
            if inst is None:
                changes.append(
                    ResourceChange(
                        address=addr,
                        resource_type=old.resource_type,
                        action=Action.DELETE,
                        prior=dict(old.attributes),
                        prior_id=old.id,
                        deposed=deposed,
                    )
                )
                continue
            if old.attributes == inst.attributes:
                continue
            all_keys = sorted(set(old.attributes) | set(inst.attributes))
            diff = {
                k: {"from": old.attributes.get(k), "to": inst.attributes.get(k)}
                for k in all_keys
                if old.attributes.get(k) != inst.attributes.get(k)
            }
            changes.append(
                ResourceChange(
                    address=addr,
                    resource_type=inst.resource_type,
                    action=Action.UPDATE,
                    prior=dict(old.attributes),
                    prior_id=old.id,
                    planned=dict(inst.attributes),
                    diff=diff,
                    deposed=deposed,
                )
            )
    return changes
