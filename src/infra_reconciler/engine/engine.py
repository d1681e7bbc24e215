"""Plan/apply engine."""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from infra_reconciler import __version__
from infra_reconciler.core.state import (
    ResourceState,
    State,
    compute_attributes_hash,
    compute_state_digest,
)
from infra_reconciler.engine.diff import DiffEngine
from infra_reconciler.engine.errors import (
    ApplyCanceled,
    ApplyError,
    ProviderError,
    ReconciliationRequiredError,
    StalePlanError,
    StaleStateError,
)
from infra_reconciler.engine.executor import ApplyExecutor, RetryPolicy, call_with_retry
from infra_reconciler.engine.graph import build_graph
from infra_reconciler.engine.handlers import EngineContext, SupportsLookup
from infra_reconciler.engine.store import TOMBSTONE, StateStore
from infra_reconciler.engine.types import Plan, PlanMetadata
from infra_reconciler.resources.refs import decode_refs, encode_refs, resolve_refs

if TYPE_CHECKING:
    import threading
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from infra_reconciler.core.state import PendingOperation
    from infra_reconciler.engine.executor import ProgressCallback
    from infra_reconciler.engine.graph import ResourceGraph
    from infra_reconciler.engine.registry import ResourceTypeRegistry
    from infra_reconciler.engine.types import ApplyResult
    from infra_reconciler.resources.refs import Ref
    from infra_reconciler.resources.spec import ResourceSpec

logger = logging.getLogger(__name__)

Resolution = Literal["recorded", "removed", "unchanged", "dropped", "unresolved"]


@dataclass(frozen=True)
class ReconcileOutcome:
    """How one write-ahead marker was resolved."""

    key: str
    action: str
    resolution: Resolution
    detail: str = ""


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def _sha256_hex(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _compute_config_digest(specs: Sequence[ResourceSpec], outputs: Mapping[str, Any]) -> str:
    items = sorted(
        (s.model_dump(mode="json") | {"address": s.address} for s in specs),
        key=lambda x: x["address"],
    )
    return _sha256_hex(_canonical_json({"resources": items, "outputs": encode_refs(dict(outputs))}))


class Reconciler:
    """Terraform-like plan/apply engine over pluggable resource providers."""

    def __init__(
        self,
        *,
        state_path: Path,
        registry: ResourceTypeRegistry,
        retry: RetryPolicy | None = None,
        parallelism: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = StateStore(state_path)
        self._registry = registry
        self._retry = retry or RetryPolicy()
        self._parallelism = parallelism
        self._sleep = sleep

    @property
    def state_path(self) -> Path:
        return self._store.path

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def registry(self) -> ResourceTypeRegistry:
        return self._registry

    def _load_state(self) -> State:
        self._store.load()
        return self._store.snapshot()

    def _read(self, inst: ResourceState) -> dict[str, Any] | None:
        handler = self._registry.get(inst.resource_type).handler
        ctx = EngineContext(address=inst.address, resource_type=inst.resource_type, name=inst.name)
        return call_with_retry(
            f"read {inst.address}",
            lambda: handler.read(ctx, inst.id),
            policy=self._retry,
            sleep=self._sleep,
        )

    def _refresh_state_in_place(self, state: State) -> bool:
        logger.debug("Refreshing state from providers")
        changed = False

        for bucket in (state.resources, state.deposed):
            for address, inst in list(bucket.items()):
                attrs = self._read(inst)
                if attrs is None:
                    logger.info("%s no longer exists; removing it from state", address)
                    del bucket[address]
                    changed = True
                    continue

                new_hash = compute_attributes_hash(attrs)
                if attrs != inst.attributes or new_hash != inst.attributes_hash:
                    inst.attributes = attrs
                    inst.attributes_hash = new_hash
                    inst.updated_at = datetime.now(UTC)
                    changed = True

        logger.debug("State refreshed, changed=%s", changed)
        return changed

    def _require_no_markers(self, state: State) -> None:
        if state.pending:
            raise ReconciliationRequiredError(sorted(state.pending))

    def refresh(
        self, *, confirm: Callable[[State, State], bool] | None = None
    ) -> tuple[State, State]:
        """Refresh state from providers. Returns (pre_refresh, post_refresh).

        Nothing is written unless *confirm* is given: it is called with both
        states while the state lock is still held, and the refreshed state is
        persisted when it returns true.
        """
        with self._store.lock():
            state = self._load_state()
            self._require_no_markers(state)
            snapshot = state.model_copy(deep=True)
            changed = self._refresh_state_in_place(state)
            if changed and confirm is not None and confirm(snapshot, state):
                self._store.write(state)
                state = self._store.snapshot()
            return snapshot, state

    def write_state(self, state: State) -> None:
        """Persist a state read earlier by :meth:`refresh`.

        Raises:
            StaleStateError: The state file was written since *state* was read.
        """
        with self._store.lock():
            if self.state_path.exists():
                current = self._load_state()
                if (current.lineage, current.serial) != (state.lineage, state.serial):
                    raise StaleStateError(
                        f"State changed since it was read (serial {state.serial} -> "
                        f"{current.serial}); refresh again"
                    )
            self._store.write(state)

    def validate(self, specs: Sequence[ResourceSpec]) -> ResourceGraph:
        """Build and validate the resource graph without touching state."""
        return build_graph(specs, self._registry)

    def plan(
        self,
        specs: Sequence[ResourceSpec],
        *,
        destroy: bool = False,
        refresh: bool = True,
        outputs: Mapping[str, Any] | None = None,
    ) -> Plan:
        logger.info("Planning %d resources (destroy=%s, refresh=%s)", len(specs), destroy, refresh)
        outputs = dict(outputs or {})
        graph = build_graph(specs, self._registry)

        # Only lock when refresh may write state.
        lock_cm = self._store.lock() if refresh else contextlib.nullcontext()
        with lock_cm:
            state = self._load_state()
            self._require_no_markers(state)

            if refresh and self._refresh_state_in_place(state):
                self._store.write(state)
                state = self._store.snapshot()

            changes = DiffEngine(self._registry).compute_changes(graph, state, destroy=destroy)

            metadata = PlanMetadata(
                created_at=datetime.now(UTC),
                destroy=destroy,
                refresh=refresh,
                state_lineage=state.lineage,
                state_serial=state.serial,
                state_digest=compute_state_digest(state),
                config_digest=_compute_config_digest(specs, outputs),
                engine_version=__version__,
            )
            return Plan(
                metadata=metadata,
                changes=tuple(changes),
                outputs={} if destroy else encode_refs(outputs),
            )

    def _load_state_for_apply(self, plan: Plan) -> State:
        if self.state_path.exists():
            return self._load_state()
        # No state file yet: start from the lineage the plan was made against.
        self._store.seed(
            State(lineage=plan.metadata.state_lineage, serial=plan.metadata.state_serial)
        )
        return self._store.snapshot()

    def apply(
        self,
        plan: Plan,
        *,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
        parallelism: int | None = None,
    ) -> ApplyResult:
        """Apply *plan*.

        Raises:
            StalePlanError: State changed since the plan was made.
            ReconciliationRequiredError: Unresolved write-ahead markers exist.
            ApplyError: One or more operations failed; carries the partial result.
            ApplyCanceled: Apply was canceled; carries the partial result.
        """
        with self._store.lock():
            state = self._load_state_for_apply(plan)
            self._require_no_markers(state)

            # Stale plan detection
            if state.lineage != plan.metadata.state_lineage:
                raise StalePlanError("State lineage changed; re-run plan")
            if state.serial != plan.metadata.state_serial:
                raise StalePlanError("State serial changed; re-run plan")
            if compute_state_digest(state) != plan.metadata.state_digest:
                raise StalePlanError("State digest changed; re-run plan")

            executor = ApplyExecutor(
                store=self._store, registry=self._registry, retry=self._retry, sleep=self._sleep
            )
            result = executor.apply(
                plan,
                parallelism=parallelism or self._parallelism,
                cancel=cancel,
                progress=progress,
            )

            if result.failed:
                raise ApplyError(result)
            if result.canceled:
                raise ApplyCanceled(result)

            self._store.set_outputs(self._evaluate_outputs(plan.outputs))
            return result

    def _evaluate_outputs(self, outputs: Mapping[str, Any]) -> dict[str, Any]:
        def lookup(ref: Ref) -> Any:
            inst = self._store.get(ref.address)
            if inst is None:
                logger.warning("Output reference %s has no value in state", ref)
                return None
            if ref.attribute == "id":
                return inst.id
            return inst.attributes.get(ref.attribute)

        return resolve_refs(decode_refs(dict(outputs)), lookup)

    def outputs(self) -> dict[str, Any]:
        """Output values recorded by the last successful apply."""
        return dict(self._load_state().outputs)

    # -- reconcile --------------------------------------------------------

    def reconcile(self, *, force: bool = False) -> list[ReconcileOutcome]:
        """Resolve write-ahead markers left behind by an interrupted apply.

        Each marker is checked against live provider state: update and delete
        markers by reading the recorded id, create markers the same way when a
        partial create recorded one and otherwise through the provider's optional
        ``lookup``. Markers whose outcome cannot be determined are kept
        (``unresolved``) unless *force* drops them.
        """
        outcomes: list[ReconcileOutcome] = []
        with self._store.lock():
            self._store.load()
            for marker in self._store.stale_markers():
                try:
                    outcome = self._reconcile_marker(marker)
                except ProviderError as e:
                    if not force:
                        raise
                    outcome = ReconcileOutcome(marker.key, marker.action, "unresolved", str(e))
                if outcome.resolution == "unresolved" and force:
                    self._store.abort(marker.address, deposed=marker.deposed)
                    outcome = ReconcileOutcome(
                        marker.key, marker.action, "dropped", outcome.detail
                    )
                logger.info("Marker %s (%s): %s", marker.key, marker.action, outcome.resolution)
                outcomes.append(outcome)
        return outcomes

    def _reconcile_marker(self, marker: PendingOperation) -> ReconcileOutcome:
        handler = self._registry.get(marker.resource_type).handler
        ctx = EngineContext(
            address=marker.address, resource_type=marker.resource_type, name=marker.name
        )
        current = self._store.get(marker.address, deposed=marker.deposed)

        if marker.action == "create" and marker.resource_id is None:
            if not isinstance(handler, SupportsLookup):
                return ReconcileOutcome(
                    marker.key, "create", "unresolved", "provider cannot look up resources"
                )
            deposed = self._store.get(marker.address, deposed=True)
            known_ids = {i.id for i in (current, deposed) if i is not None}
            found = call_with_retry(
                f"lookup {marker.address}",
                lambda: handler.lookup(ctx, exclude=known_ids),
                policy=self._retry,
                sleep=self._sleep,
            )
            if found is None:
                self._store.abort(marker.address)
                return ReconcileOutcome(
                    marker.key, "create", "unchanged", "resource was not created"
                )
            resource_id, attrs = found
            self._record_created(marker, current, resource_id, attrs)
            return ReconcileOutcome(marker.key, "create", "recorded", f"found {resource_id}")

        resource_id = marker.resource_id or (current.id if current else None)
        if resource_id is None:
            return ReconcileOutcome(marker.key, marker.action, "unresolved", "no resource id")
        target = ResourceState(
            address=marker.address,
            resource_type=marker.resource_type,
            name=marker.name,
            id=resource_id,
        )
        attrs = self._read(target)

        if marker.action == "create":
            # The create got as far as an id before it failed.
            if attrs is None:
                self._store.abort(marker.address)
                return ReconcileOutcome(marker.key, "create", "unchanged", f"{resource_id} is gone")
            self._record_created(marker, current, resource_id, attrs)
            return ReconcileOutcome(
                marker.key, "create", "recorded", f"{resource_id} still exists"
            )

        if attrs is None:
            self._store.commit(marker.address, TOMBSTONE, deposed=marker.deposed)
            return ReconcileOutcome(marker.key, marker.action, "removed", f"{resource_id} is gone")

        if marker.action == "delete":
            self._store.abort(marker.address, deposed=marker.deposed)
            return ReconcileOutcome(
                marker.key, "delete", "unchanged", f"{resource_id} still exists"
            )

        base = current or target
        inst = base.model_copy(
            update={
                "attributes": attrs,
                "attributes_hash": compute_attributes_hash(attrs),
                "updated_at": datetime.now(UTC),
            }
        )
        self._store.commit(marker.address, inst)
        return ReconcileOutcome(marker.key, "update", "recorded", "live attributes recorded")

    def _record_created(
        self,
        marker: PendingOperation,
        current: ResourceState | None,
        resource_id: str,
        attrs: dict[str, Any],
    ) -> None:
        now = datetime.now(UTC)
        inst = ResourceState(
            address=marker.address,
            resource_type=marker.resource_type,
            name=marker.name,
            id=resource_id,
            attributes=attrs,
            attributes_hash=compute_attributes_hash(attrs),
            fingerprint=marker.fingerprint,
            dependencies=list(marker.dependencies),
            created_at=now,
            updated_at=now,
        )
        if current is not None:
            self._store.commit_replacement(marker.address, inst)
        else:
            self._store.commit(marker.address, inst)
