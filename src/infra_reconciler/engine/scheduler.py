"""Plan scheduler.

Terraform runs apply by executing a graph of operations. A plan's changes are
expanded into create / update / delete operations (a replace contributes both
a create and a delete), each listing the operations it must wait for. The
scheduler then dispatches ready operations to a bounded thread pool.
"""

from __future__ import annotations

import heapq
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from infra_reconciler.engine.errors import CyclicDependencyError, ScheduleDeadlockError
from infra_reconciler.engine.graph import DependencyGraph
from infra_reconciler.engine.types import Action

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from infra_reconciler.core.state import State
    from infra_reconciler.engine.types import ResourceChange

logger = logging.getLogger(__name__)

OperationKind = Literal["create", "update", "delete"]
OperationEvent = Literal["start", "done", "failed"]


@dataclass
class Operation:
    """One provider call plus the operations that must complete before it."""

    key: str
    kind: OperationKind
    change: ResourceChange
    deps: set[str] = field(default_factory=set)
    deposed: bool = False

    @property
    def address(self) -> str:
        return self.change.address

    @property
    def is_replacement(self) -> bool:
        return self.change.action == Action.REPLACE


@dataclass
class ScheduleOutcome:
    """What happened to each operation during a run."""

    completed: list[str] = field(default_factory=list)
    failed: dict[str, BaseException] = field(default_factory=dict)
    blocked: list[str] = field(default_factory=list)
    not_started: list[str] = field(default_factory=list)
    canceled: bool = False


def build_operations(changes: Iterable[ResourceChange], state: State) -> dict[str, Operation]:
    """Expand changes into operations and wire their ordering constraints."""
    ops: dict[str, Operation] = {}
    apply_op: dict[str, str] = {}  # address -> create/update op
    delete_op: dict[str, str] = {}  # address -> delete of the live (or replaced) instance
    leftover_deposed: dict[str, str] = {}  # address -> delete of a deposed instance
    prior_deps: dict[str, list[str]] = {}  # op key -> dependencies of the instance it deletes
    desired_deps: dict[str, list[str]] = {}  # address -> dependencies of the desired resource
    old_instance_deletes: set[str] = set()  # pure deletes and create-before-destroy deletes

    def add(op: Operation) -> None:
        if op.key in ops:
            raise ValueError(f"Duplicate operation key in plan: {op.key}")
        ops[op.key] = op

    for c in changes:
        match c.action:
            case Action.NOOP:
                continue
            case Action.CREATE | Action.UPDATE:
                kind: OperationKind = "create" if c.action == Action.CREATE else "update"
                add(Operation(key=f"{kind}:{c.address}", kind=kind, change=c))
                apply_op[c.address] = f"{kind}:{c.address}"
                desired_deps[c.address] = list(c.dependencies)
            case Action.REPLACE:
                cbd = c.replace_policy == "create_before_destroy"
                add(Operation(key=f"create:{c.address}", kind="create", change=c))
                delete_key = f"delete:{c.address} (replaced)"
                add(Operation(key=delete_key, kind="delete", change=c, deposed=cbd))
                apply_op[c.address] = f"create:{c.address}"
                delete_op[c.address] = delete_key
                desired_deps[c.address] = list(c.dependencies)
                prior = state.resources.get(c.address)
                prior_deps[delete_key] = list(prior.dependencies) if prior is not None else []
                if cbd:
                    ops[delete_key].deps.add(f"create:{c.address}")
                    old_instance_deletes.add(delete_key)
                else:
                    ops[f"create:{c.address}"].deps.add(delete_key)
            case Action.DELETE:
                key = f"delete:{c.key}"
                add(Operation(key=key, kind="delete", change=c, deposed=c.deposed))
                prior_deps[key] = list(c.dependencies)
                if c.deposed:
                    leftover_deposed[c.address] = key
                else:
                    delete_op[c.address] = key
                    old_instance_deletes.add(key)
            case _:
                raise ValueError(f"Unknown action: {c.action}")

    delete_keys = {k for k, op in ops.items() if op.kind == "delete"}

    # create/update: dependencies must run before dependents
    for addr, key in apply_op.items():
        ops[key].deps.update(apply_op[d] for d in desired_deps[addr] if d in apply_op)

    # deletes: an instance is destroyed after the instances that depended on it
    for key in delete_keys:
        for dep in prior_deps.get(key, []):
            if dep in delete_op:
                ops[delete_op[dep]].deps.add(key)

    # old instances go only after their former dependents have detached
    for addr, key in apply_op.items():
        prior = state.resources.get(addr)
        for dep in prior.dependencies if prior is not None else []:
            target = delete_op.get(dep)
            if target is not None and target in old_instance_deletes:
                ops[target].deps.add(key)

    # create-before-destroy: dependents of the new instance are attached before
    # the old one is destroyed
    for addr, key in delete_op.items():
        op = ops[key]
        if not (op.is_replacement and op.deposed):
            continue
        for dependent, deps in desired_deps.items():
            if addr in deps and dependent != addr:
                op.deps.add(apply_op[dependent])
                if dependent in delete_op:
                    op.deps.add(delete_op[dependent])

    # a deposed leftover must be gone before a new replacement deposes again
    for addr, key in leftover_deposed.items():
        create_key = apply_op.get(addr)
        if create_key is not None and ops[create_key].is_replacement:
            ops[create_key].deps.add(key)

    for op in ops.values():
        op.deps.discard(op.key)
    return ops


class PlanScheduler:
    """Dependency-aware dispatcher for apply operations.

    Ready operations are handed out in deterministic (lexicographic) order.
    A failed operation blocks every operation that transitively depends on
    it; unrelated operations keep running.
    """

    def __init__(self, operations: dict[str, Operation]) -> None:
        self._ops = operations
        try:
            self._order = DependencyGraph(
                operations, {k: op.deps for k, op in operations.items()}
            ).topological_order()
        except CyclicDependencyError as e:
            raise ScheduleDeadlockError(e.addresses) from e

        self._waiting: dict[str, set[str]] = {k: set(op.deps) for k, op in operations.items()}
        self._dependents: dict[str, set[str]] = {k: set() for k in operations}
        for k, op in operations.items():
            for dep in op.deps:
                self._dependents[dep].add(k)
        self._ready = [k for k, deps in self._waiting.items() if not deps]
        heapq.heapify(self._ready)
        self._started: set[str] = set()
        self._blocked: set[str] = set()

    @property
    def order(self) -> list[str]:
        """A valid sequential execution order."""
        return list(self._order)

    def operation(self, key: str) -> Operation:
        return self._ops[key]

    def take(self, limit: int) -> list[Operation]:
        """Pop up to *limit* ready operations."""
        taken: list[Operation] = []
        while self._ready and len(taken) < limit:
            key = heapq.heappop(self._ready)
            self._started.add(key)
            taken.append(self._ops[key])
        return taken

    def done(self, key: str) -> None:
        for child in sorted(self._dependents[key]):
            waiting = self._waiting[child]
            waiting.discard(key)
            if not waiting and child not in self._blocked:
                heapq.heappush(self._ready, child)

    def fail(self, key: str) -> list[str]:
        """Block every transitive dependent of *key*; return the newly blocked keys."""
        newly: list[str] = []
        stack = sorted(self._dependents[key])
        while stack:
            child = stack.pop()
            if child in self._blocked or child in self._started:
                continue
            self._blocked.add(child)
            newly.append(child)
            stack.extend(self._dependents[child])
        return sorted(newly)

    def unstarted(self) -> list[str]:
        return [k for k in self._order if k not in self._started and k not in self._blocked]

    def blocked(self) -> list[str]:
        return [k for k in self._order if k in self._blocked]

    def run(
        self,
        execute: Callable[[Operation], None],
        *,
        parallelism: int = 10,
        cancel: threading.Event | None = None,
        notify: Callable[[Operation, OperationEvent], None] | None = None,
    ) -> ScheduleOutcome:
        """Execute all operations with at most *parallelism* in flight.

        Setting *cancel* (or Ctrl-C) stops dispatching new operations;
        operations already in flight are allowed to finish.
        """
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        cancel = cancel or threading.Event()
        outcome = ScheduleOutcome()
        in_flight: dict[Future[None], Operation] = {}

        def _notify(op: Operation, event: OperationEvent) -> None:
            if notify is not None:
                notify(op, event)

        with ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="apply") as pool:
            while True:
                if not cancel.is_set():
                    for op in self.take(parallelism - len(in_flight)):
                        logger.debug("Dispatching %s", op.key)
                        _notify(op, "start")
                        in_flight[pool.submit(execute, op)] = op
                if not in_flight:
                    break
                try:
                    finished, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    logger.warning(
                        "Interrupted; waiting for %d in-flight operations", len(in_flight)
                    )
                    cancel.set()
                    continue
                for fut in sorted(finished, key=lambda f: in_flight[f].key):
                    op = in_flight.pop(fut)
                    exc = fut.exception()
                    if exc is None:
                        outcome.completed.append(op.key)
                        self.done(op.key)
                        _notify(op, "done")
                    else:
                        logger.error("Operation %s failed: %s", op.key, exc)
                        outcome.failed[op.key] = exc
                        blocked = self.fail(op.key)
                        if blocked:
                            logger.info(
                                "Not attempting dependents of %s: %s", op.key, ", ".join(blocked)
                            )
                        _notify(op, "failed")

        outcome.canceled = cancel.is_set()
        outcome.blocked = self.blocked()
        outcome.not_started = self.unstarted()
        return outcome


def schedule(changes: Sequence[ResourceChange], state: State) -> PlanScheduler:
    """Build and validate the operation graph for *changes*."""
    return PlanScheduler(build_operations(changes, state))
