"""Shared fixtures for unit tests."""

from __future__ import annotations

import itertools
import os
import threading
from collections.abc import Callable, Collection
from typing import TYPE_CHECKING, Any

import pytest

from infra_reconciler.config import load
from infra_reconciler.engine.engine import Reconciler
from infra_reconciler.engine.executor import RetryPolicy
from infra_reconciler.engine.handlers import EngineContext, TypeMetadata
from infra_reconciler.engine.registry import ResourceTypeRegistry

if TYPE_CHECKING:
    from pathlib import Path

    from infra_reconciler.config.schema import Config


class Crash(BaseException):  # noqa: N818
    """Stands in for the process dying in the middle of a provider call."""


class FakeCloud:
    """In-memory provider backend shared by all fake handlers.

    ``fail(action, address, exc)`` queues an exception for the next matching
    call; ``fail_after`` raises it once the call has taken effect. ``calls``
    records every mutating call as ``(action, address)``.
    """

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.addresses: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], list[BaseException]] = {}
        self._after: dict[tuple[str, str], list[BaseException]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.hooks: list[Callable[[str, str], None]] = []

    def fail(self, action: str, address: str, exc: BaseException, *, times: int = 1) -> None:
        """Raise *exc* before performing the next *times* matching calls."""
        self._failures.setdefault((action, address), []).extend([exc] * times)

    def fail_after(self, action: str, address: str, exc: BaseException) -> None:
        """Perform the next matching call, then raise *exc*."""
        self._after.setdefault((action, address), []).append(exc)

    def crash_after(self, action: str, address: str) -> None:
        """Perform the next matching call, then raise ``Crash``."""
        self.fail_after(action, address, Crash(f"{action} {address}"))

    def _record(self, action: str, address: str) -> None:
        with self._lock:
            self.calls.append((action, address))
            queued = self._failures.get((action, address))
            exc = queued.pop(0) if queued else None
        for hook in self.hooks:
            hook(action, address)
        if exc is not None:
            raise exc

    def _finish(self, action: str, address: str) -> None:
        with self._lock:
            queued = self._after.get((action, address))
            exc = queued.pop(0) if queued else None
        if exc is not None:
            raise exc

    def new_id(self, resource_type: str) -> str:
        return f"{resource_type.split('_')[-1]}-{next(self._ids)}"

    def actions(self, action: str | None = None) -> list[str]:
        return [f"{a}:{addr}" for a, addr in self.calls if action is None or a == action]


class FakeHandler:
    """Provider for one resource type backed by ``FakeCloud``.

    Stored attributes are the requested ones plus ``arn``.
    """

    def __init__(
        self,
        cloud: FakeCloud,
        resource_type: str,
        *,
        immutable: Collection[str] = (),
        replace_policy: str = "destroy_before_create",
        compare: dict[str, str] | None = None,
    ) -> None:
        self.cloud = cloud
        self.metadata = TypeMetadata(
            resource_type=resource_type,
            immutable=frozenset(immutable),
            computed=frozenset({"arn"}),
            compare=compare or {},
            replace_policy=replace_policy,  # type: ignore[arg-type]
        )

    def create(self, ctx: EngineContext, attrs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        self.cloud._record("create", ctx.address)
        resource_id = self.cloud.new_id(ctx.resource_type)
        stored = {**attrs, "arn": f"arn:fake:{resource_id}"}
        self.cloud.objects[resource_id] = dict(stored)
        self.cloud.addresses[resource_id] = ctx.address
        self.cloud._finish("create", ctx.address)
        return resource_id, stored

    def read(self, ctx: EngineContext, resource_id: str) -> dict[str, Any] | None:
        _ = ctx
        obj = self.cloud.objects.get(resource_id)
        return dict(obj) if obj is not None else None

    def update(
        self,
        ctx: EngineContext,
        resource_id: str,
        attrs: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        self.cloud._record("update", ctx.address)
        stored = {**prior, **attrs}
        self.cloud.objects[resource_id] = dict(stored)
        self.cloud._finish("update", ctx.address)
        return stored

    def delete(self, ctx: EngineContext, resource_id: str) -> None:
        self.cloud._record("delete", ctx.address)
        self.cloud.objects.pop(resource_id, None)
        self.cloud.addresses.pop(resource_id, None)
        self.cloud._finish("delete", ctx.address)


class LookupFakeHandler(FakeHandler):
    """``FakeHandler`` that can find resources by address."""

    def lookup(
        self, ctx: EngineContext, *, exclude: Collection[str] = ()
    ) -> tuple[str, dict[str, Any]] | None:
        for resource_id, address in self.cloud.addresses.items():
            if address == ctx.address and resource_id not in exclude:
                return resource_id, dict(self.cloud.objects[resource_id])
        return None


@pytest.fixture(autouse=True)
def _clean_reconciler_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove RECONCILER_* env vars so unit tests don't leak host config."""
    for var in list(os.environ):
        if var.startswith("RECONCILER_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("NO_COLOR", raising=False)


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def registry(cloud: FakeCloud) -> ResourceTypeRegistry:
    """Fake VPC-like types: VPCs, subnets, NAT gateways, route tables and associations."""
    reg = ResourceTypeRegistry()
    reg.register(LookupFakeHandler(cloud, "aws_vpc", immutable={"cidr_block"}))
    reg.register(LookupFakeHandler(cloud, "aws_subnet", immutable={"vpc_id", "cidr_block"}))
    reg.register(
        LookupFakeHandler(
            cloud,
            "aws_nat_gateway",
            immutable={"subnet_id"},
            replace_policy="create_before_destroy",
        )
    )
    reg.register(LookupFakeHandler(cloud, "aws_route_table", immutable={"vpc_id"}))
    reg.register(FakeHandler(cloud, "aws_route_table_association", immutable={"subnet_id"}))
    return reg


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_reconciler(
    tmp_path: Path, registry: ResourceTypeRegistry, sleeps: list[float]
) -> Callable[..., Reconciler]:
    """Factory fixture: a ``Reconciler`` over the fake registry that never really sleeps."""

    def _make(**kwargs: Any) -> Reconciler:
        kwargs.setdefault("retry", RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=1.0))
        return Reconciler(
            state_path=tmp_path / "state.json",
            registry=registry,
            sleep=sleeps.append,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory fixture: write YAML + optional .env, return loaded Config."""

    def _make(yaml_str: str, *, dotenv: str | None = None) -> Config:
        (tmp_path / "config.yaml").write_text(yaml_str)
        if dotenv is not None:
            (tmp_path / ".env").write_text(dotenv)
        return load(tmp_path / "config.yaml")

    return _make
