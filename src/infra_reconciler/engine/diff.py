"""Diff engine: classify each resource against stored state."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from infra_reconciler.engine.errors import ValidationError
from infra_reconciler.engine.graph import DependencyGraph
from infra_reconciler.engine.types import Action, ResourceChange
from infra_reconciler.resources.refs import UNKNOWN, contains_unknown, resolve_refs

if TYPE_CHECKING:
    from infra_reconciler.core.state import ResourceState, State
    from infra_reconciler.engine.graph import ResourceGraph
    from infra_reconciler.engine.handlers import CompareStrategy, ReplacePolicy, TypeMetadata
    from infra_reconciler.engine.registry import ResourceTypeRegistry
    from infra_reconciler.resources.refs import Ref
    from infra_reconciler.resources.spec import ResourceSpec

logger = logging.getLogger(__name__)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def values_differ(
    desired: Any,
    prior: Any,
    *,
    strategy: CompareStrategy | None = None,
) -> bool:
    """Check whether a desired value differs from the prior (stored) value.

    A desired value that is not known until apply always differs. Otherwise
    comparison semantics depend on *strategy*:

    - ``strategy="set"``:
      - If both values are lists, they are compared as sets (order-insensitive).
      - Other types fall back to strict equality.
    - ``strategy="exact"``:
      - Values are compared with strict equality.
      - For dicts, extra or missing keys are treated as differences.
    - ``strategy=None`` or ``"partial"``:
      - For dict values, only keys present in *desired* are compared.
      - Extra keys present only in *prior* (provider-added defaults) are ignored.
      - Non-dict values use strict equality.
    """
    if contains_unknown(desired):
        return True

    if strategy == "set":
        if isinstance(desired, list) and isinstance(prior, list):
            try:
                return set(desired) != set(prior)
            except TypeError:
                # Unhashable members (dicts): compare canonical forms.
                return sorted(map(_canonical, desired)) != sorted(map(_canonical, prior))
        return desired != prior

    if strategy == "exact":
        return desired != prior

    if isinstance(desired, dict) and isinstance(prior, dict):
        return any(values_differ(v, prior.get(k), strategy="exact") for k, v in desired.items())
    return desired != prior


def replace_policy_for(spec: ResourceSpec, metadata: TypeMetadata) -> ReplacePolicy:
    """Per-resource lifecycle override, else the type's policy."""
    if spec.lifecycle.create_before_destroy is None:
        return metadata.replace_policy
    if spec.lifecycle.create_before_destroy:
        return "create_before_destroy"
    return "destroy_before_create"


class DiffEngine:
    """Compares a desired resource graph against stored state."""

    def __init__(self, registry: ResourceTypeRegistry) -> None:
        self._registry = registry

    def compute_changes(
        self, graph: ResourceGraph, state: State, *, destroy: bool = False
    ) -> list[ResourceChange]:
        """Return one change per desired or stored resource.

        Apply-side changes come first in dependency order, followed by deletes
        in reverse dependency order.
        """
        if destroy:
            self._check_prevent_destroy(graph, set(state.resources))
            return self._plan_deletes(state, set(state.resources), set(state.deposed))

        planned: dict[str, dict[str, Any]] = {}
        pending_ids: set[str] = set()  # created or replaced: computed values unknown
        changes: list[ResourceChange] = []

        for addr in graph.topological_order():
            spec = graph.specs[addr]

            def lookup(ref: Ref) -> Any:
                return self._lookup(ref, graph, state, planned, pending_ids)

            change = self._classify(spec, graph.dependencies(addr), state, lookup)
            planned[addr] = dict(change.planned or {})
            if change.action in (Action.CREATE, Action.REPLACE):
                pending_ids.add(addr)
            changes.append(change)

        replaced = {c.address for c in changes if c.action == Action.REPLACE}
        self._check_prevent_destroy(graph, replaced)

        removed = set(state.resources) - set(graph.specs)
        changes.extend(self._plan_deletes(state, removed, set(state.deposed)))
        return changes

    @staticmethod
    def _lookup(
        ref: Ref,
        graph: ResourceGraph,
        state: State,
        planned: dict[str, dict[str, Any]],
        pending_ids: set[str],
    ) -> Any:
        """Resolve a reference at plan time; unknown values become ``UNKNOWN``."""
        upstream = planned.get(ref.address, {})
        if ref.attribute in upstream:
            return upstream[ref.attribute]
        if ref.address in pending_ids:
            return UNKNOWN
        stored = state.resources.get(ref.address)
        if stored is None:
            return UNKNOWN
        if ref.attribute == "id":
            return stored.id
        return stored.attributes.get(ref.attribute, UNKNOWN)

    def _classify(
        self,
        spec: ResourceSpec,
        deps: list[str],
        state: State,
        lookup: Any,
    ) -> ResourceChange:
        """Classify a single resource as CREATE, UPDATE, REPLACE or NOOP."""
        metadata = self._registry.get(spec.resource_type).metadata
        resolved = resolve_refs(spec.attributes, lookup)

        prior_inst = state.resources.get(spec.address)
        if prior_inst is None:
            logger.debug("Classified %s as create", spec.address)
            return ResourceChange(
                address=spec.address,
                resource_type=spec.resource_type,
                action=Action.CREATE,
                desired=spec,
                planned=resolved,
                dependencies=deps,
            )

        prior = dict(prior_inst.attributes)
        diff = {
            k: {"from": prior.get(k), "to": v}
            for k, v in resolved.items()
            if values_differ(v, prior.get(k), strategy=metadata.compare.get(k))
        }
        reasons = sorted(k for k in diff if k in metadata.immutable)

        if reasons:
            action = Action.REPLACE
        elif diff:
            action = Action.UPDATE
        else:
            action = Action.NOOP
        logger.debug("Classified %s as %s", spec.address, action.value)

        return ResourceChange(
            address=spec.address,
            resource_type=spec.resource_type,
            action=action,
            desired=spec,
            prior=prior,
            prior_id=prior_inst.id,
            planned=resolved,
            diff=diff or None,
            replace_reasons=reasons,
            replace_policy=replace_policy_for(spec, metadata) if reasons else None,
            dependencies=deps,
        )

    def _check_prevent_destroy(self, graph: ResourceGraph, addrs: set[str]) -> None:
        errors = [
            f"Resource '{addr}' has lifecycle.prevent_destroy set but the plan would destroy it"
            for addr in sorted(addrs)
            if addr in graph.specs and graph.specs[addr].lifecycle.prevent_destroy
        ]
        if errors:
            raise ValidationError(errors)

    def _plan_deletes(
        self, state: State, addrs: set[str], deposed: set[str]
    ) -> list[ResourceChange]:
        """Plan delete changes in reverse dependency order."""
        instances: dict[str, tuple[ResourceState, bool]] = {}
        for addr in addrs:
            instances[addr] = (state.resources[addr], False)
        for addr in deposed:
            instances[f"{addr} (deposed)"] = (state.deposed[addr], True)

        dep_map: dict[str, list[str]] = {}
        for key, (inst, _) in instances.items():
            self._registry.get(inst.resource_type)  # fail early if unknown
            dep_map[key] = [d for d in inst.dependencies if d in addrs]

        order = DependencyGraph(instances, dep_map).reverse_topological_order()
        changes: list[ResourceChange] = []
        for key in order:
            inst, is_deposed = instances[key]
            changes.append(
                ResourceChange(
                    address=inst.address,
                    resource_type=inst.resource_type,
                    action=Action.DELETE,
                    prior=dict(inst.attributes),
                    prior_id=inst.id,
                    deposed=is_deposed,
                    dependencies=list(inst.dependencies),
                )
            )
        return changes
