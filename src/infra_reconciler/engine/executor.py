"""Apply executor.

Runs the operations of a plan against providers. Every mutating provider call
follows the same protocol: resolve references against committed state, write
the write-ahead marker, call the provider (retrying transient failures), then
commit the outcome (or clear the marker on a definitive failure). A create
that fails after the resource exists is finished in place or recorded, never
retried from scratch.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal, TypeVar

from infra_reconciler.core.state import PendingOperation, ResourceState, compute_attributes_hash
from infra_reconciler.engine.errors import (
    EngineError,
    PartialCreateError,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from infra_reconciler.engine.handlers import EngineContext, SupportsLookup
from infra_reconciler.engine.scheduler import schedule
from infra_reconciler.engine.store import TOMBSTONE
from infra_reconciler.engine.types import Action, ApplyResult, FailedChange, ResourceChange
from infra_reconciler.resources.refs import resolve_refs

if TYPE_CHECKING:
    import threading

    from infra_reconciler.engine.handlers import ResourceProvider
    from infra_reconciler.engine.registry import ResourceTypeRegistry
    from infra_reconciler.engine.scheduler import Operation, OperationEvent, ScheduleOutcome
    from infra_reconciler.engine.store import StateStore
    from infra_reconciler.engine.types import Plan
    from infra_reconciler.resources.refs import Ref

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[ResourceChange, Literal["start", "done", "failed"]], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient provider failures.

    ``max_attempts`` counts the first call; the delay before retry ``n``
    (0-based) is ``base_delay * 2**n`` capped at ``max_delay``.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, retry: int) -> float:
        return min(self.base_delay * 2**retry, self.max_delay)


def call_with_retry(
    description: str,
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn*, retrying ``TransientProviderError`` with exponential backoff.

    Any other exception propagates immediately.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except TransientProviderError as e:
            if attempt >= policy.max_attempts:
                logger.error("%s failed after %d attempts: %s", description, attempt, e)
                raise
            delay = policy.delay(attempt - 1)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt,
                policy.max_attempts,
                e,
                delay,
            )
            sleep(delay)
            attempt += 1


def _now() -> datetime:
    return datetime.now(UTC)


class ApplyExecutor:
    """Executes plan operations with bounded parallelism."""

    def __init__(
        self,
        *,
        store: StateStore,
        registry: ResourceTypeRegistry,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._registry = registry
        self._retry = retry or RetryPolicy()
        self._sleep = sleep

    def apply(
        self,
        plan: Plan,
        *,
        parallelism: int = 10,
        cancel: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> ApplyResult:
        scheduler = schedule(plan.changes, self._store.snapshot())
        logger.info("Applying %d operations (parallelism=%d)", len(scheduler.order), parallelism)

        ops_by_change: dict[str, list[str]] = {}
        for key in scheduler.order:
            ops_by_change.setdefault(scheduler.operation(key).change.key, []).append(key)
        started: set[str] = set()
        finished: dict[str, int] = {}

        def notify(op: Operation, event: OperationEvent) -> None:
            change_key = op.change.key
            if event == "start":
                if change_key in started:
                    return
                started.add(change_key)
            elif event == "done":
                finished[change_key] = finished.get(change_key, 0) + 1
                if finished[change_key] < len(ops_by_change[change_key]):
                    return
            if progress is not None:
                progress(op.change, event)

        outcome = scheduler.run(
            self.execute, parallelism=parallelism, cancel=cancel, notify=notify
        )
        return self._result(plan, outcome, ops_by_change)

    @staticmethod
    def _result(
        plan: Plan,
        outcome: ScheduleOutcome,
        ops_by_change: dict[str, list[str]],
    ) -> ApplyResult:
        completed_ops = set(outcome.completed)
        result = ApplyResult(canceled=outcome.canceled)
        for change in plan.changes:
            if change.action == Action.NOOP:
                continue
            keys = ops_by_change.get(change.key, [])
            failed = [k for k in keys if k in outcome.failed]
            if failed:
                error = "; ".join(str(outcome.failed[k]) for k in failed)
                if any(k in completed_ops for k in keys):
                    error += " (replacement partially applied)"
                result.failed.append(FailedChange(change=change, error=error))
            elif all(k in completed_ops for k in keys):
                result.completed.append(change)
            else:
                result.not_attempted.append(change)
        logger.info(
            "Apply finished: %d completed, %d failed, %d not attempted",
            len(result.completed),
            len(result.failed),
            len(result.not_attempted),
        )
        return result

    # -- single operation -------------------------------------------------

    def execute(self, op: Operation) -> None:
        """Run one operation; raise if it failed."""
        logger.debug("Executing %s", op.key)
        match op.kind:
            case "create":
                self._create(op)
            case "update":
                self._update(op)
            case "delete":
                self._delete(op)

    def _ctx(self, change: ResourceChange, name: str) -> EngineContext:
        return EngineContext(address=change.address, resource_type=change.resource_type, name=name)

    def _resolve(self, ref: Ref) -> Any:
        inst = self._store.get(ref.address)
        if inst is None:
            raise EngineError(f"Cannot resolve {ref}: {ref.address} has not been applied")
        if ref.attribute == "id":
            return inst.id
        if ref.attribute not in inst.attributes:
            raise EngineError(f"Cannot resolve {ref}: attribute not present in state")
        return inst.attributes[ref.attribute]

    def _call(self, description: str, fn: Callable[[], T]) -> T:
        return call_with_retry(description, fn, policy=self._retry, sleep=self._sleep)

    def _create(self, op: Operation) -> None:
        change = op.change
        spec = change.desired
        if spec is None:
            raise ValueError(f"Missing desired config for create: {change.address}")
        handler = self._registry.get(change.resource_type).handler
        ctx = self._ctx(change, spec.name)
        marker = PendingOperation(
            address=change.address,
            resource_type=change.resource_type,
            name=spec.name,
            action="create",
            fingerprint=spec.fingerprint(),
            attributes=resolve_refs(spec.attributes, self._resolve),
            dependencies=spec.dependency_addresses(),
        )
        known_ids = {
            inst.id
            for inst in (
                self._store.get(change.address),
                self._store.get(change.address, deposed=True),
            )
            if inst is not None
        }
        attempts = 0

        def attempt() -> tuple[str, dict[str, Any]]:
            nonlocal attempts
            attempts += 1
            # A failed call may still have created the resource.
            if attempts > 1 and isinstance(handler, SupportsLookup):
                found = handler.lookup(ctx, exclude=known_ids)
                if found is not None:
                    raise PartialCreateError(
                        found[0], f"create {change.address} was retried", resumable=True
                    )
            return handler.create(ctx, dict(marker.attributes))

        self._store.begin(marker)
        try:
            resource_id, stored = self._call(f"create {change.address}", attempt)
        except PartialCreateError as e:
            resource_id = e.resource_id
            stored = self._finish_create(op, handler, ctx, marker, e)
        except Exception:
            self._store.abort(change.address)
            raise

        self._commit_created(op, marker, resource_id, stored)
        logger.info("Created %s (id=%s)", change.address, resource_id)

    def _commit_created(
        self,
        op: Operation,
        marker: PendingOperation,
        resource_id: str,
        stored: dict[str, Any],
    ) -> None:
        now = _now()
        inst = ResourceState(
            address=marker.address,
            resource_type=marker.resource_type,
            name=marker.name,
            id=resource_id,
            attributes=stored,
            attributes_hash=compute_attributes_hash(stored),
            fingerprint=marker.fingerprint,
            dependencies=list(marker.dependencies),
            created_at=now,
            updated_at=now,
        )
        if op.is_replacement and op.change.replace_policy == "create_before_destroy":
            self._store.commit_replacement(marker.address, inst)
        else:
            self._store.commit(marker.address, inst)

    def _finish_create(
        self,
        op: Operation,
        handler: ResourceProvider,
        ctx: EngineContext,
        marker: PendingOperation,
        err: PartialCreateError,
    ) -> dict[str, Any]:
        """Complete a create that failed after the resource came into existence.

        Resumable failures are finished through ``read`` and ``update``. When
        that is not possible the resource is recorded with its live attributes,
        so the next plan converges it instead of creating another one, and the
        error propagates.
        """
        resource_id = err.resource_id
        if not err.resumable:
            self._record_partial(op, handler, ctx, marker, resource_id)
            raise err

        logger.warning("Finishing create of %s (%s) after: %s", marker.address, resource_id, err)

        def converge() -> dict[str, Any]:
            current = handler.read(ctx, resource_id)
            if current is None:
                raise PermanentProviderError(f"{resource_id} no longer exists")
            return handler.update(ctx, resource_id, dict(marker.attributes), current)

        try:
            return self._call(f"finish create {marker.address}", converge)
        except Exception:
            self._record_partial(op, handler, ctx, marker, resource_id)
            raise

    def _record_partial(
        self,
        op: Operation,
        handler: ResourceProvider,
        ctx: EngineContext,
        marker: PendingOperation,
        resource_id: str,
    ) -> None:
        try:
            live = handler.read(ctx, resource_id)
        except ProviderError as e:
            # Outcome unknown: leave the marker, now carrying the id, for reconcile.
            logger.warning("Cannot read %s (%s): %s", marker.address, resource_id, e)
            self._store.begin(marker.model_copy(update={"resource_id": resource_id}))
            return
        if live is None:
            logger.info("%s (%s) is already gone", marker.address, resource_id)
            self._store.abort(marker.address)
            return
        logger.warning(
            "Recording partially created %s (id=%s); the next plan will converge it",
            marker.address,
            resource_id,
        )
        self._commit_created(op, marker, resource_id, live)

    def _update(self, op: Operation) -> None:
        change = op.change
        spec = change.desired
        if spec is None:
            raise ValueError(f"Missing desired config for update: {change.address}")
        prior = self._store.get(change.address)
        if prior is None:
            raise EngineError(f"Missing state for update: {change.address}")
        handler = self._registry.get(change.resource_type).handler
        ctx = self._ctx(change, spec.name)
        attrs = resolve_refs(spec.attributes, self._resolve)
        deps = spec.dependency_addresses()
        fingerprint = spec.fingerprint()

        self._store.begin(
            PendingOperation(
                address=change.address,
                resource_type=change.resource_type,
                name=spec.name,
                action="update",
                resource_id=prior.id,
                fingerprint=fingerprint,
                attributes=attrs,
                dependencies=deps,
            )
        )
        try:
            stored = self._call(
                f"update {change.address}",
                lambda: handler.update(ctx, prior.id, attrs, dict(prior.attributes)),
            )
        except Exception:
            self._store.abort(change.address)
            raise

        inst = prior.model_copy(
            update={
                "attributes": stored,
                "attributes_hash": compute_attributes_hash(stored),
                "fingerprint": fingerprint,
                "dependencies": deps,
                "updated_at": _now(),
            }
        )
        self._store.commit(change.address, inst)
        logger.info("Updated %s", change.address)

    def _delete(self, op: Operation) -> None:
        change = op.change
        target = self._store.get(change.address, deposed=op.deposed)
        if target is None:
            logger.debug("Nothing to delete for %s", op.key)
            return
        handler = self._registry.get(change.resource_type).handler
        ctx = self._ctx(change, target.name)

        self._store.begin(
            PendingOperation(
                address=change.address,
                resource_type=change.resource_type,
                name=target.name,
                action="delete",
                resource_id=target.id,
                deposed=op.deposed,
                fingerprint=target.fingerprint,
                attributes=dict(target.attributes),
                dependencies=list(target.dependencies),
            )
        )
        try:
            self._call(f"delete {op.key}", lambda: handler.delete(ctx, target.id))
        except Exception:
            self._store.abort(change.address, deposed=op.deposed)
            raise

        self._store.commit(change.address, TOMBSTONE, deposed=op.deposed)
        logger.info("Destroyed %s (id=%s)", op.key, target.id)
