"""Tests for config convenience API and engine wiring."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from infra_reconciler.config import (
    _build_drift_changes,
    _engine_from_config,
    apply,
    drift,
    outputs,
    plan,
    plan_and_apply,
    reconcile,
    refresh,
    save_state,
    validate,
)
from infra_reconciler.config.registry import default_registry
from infra_reconciler.config.schema import Config, EngineSettings, ProviderConfig
from infra_reconciler.core.state import ResourceState, State
from infra_reconciler.engine.errors import (
    StaleStateError,
    StoreLockedError,
    UnresolvedReferenceError,
)
from infra_reconciler.engine.executor import RetryPolicy
from infra_reconciler.engine.store import read_state
from infra_reconciler.engine.types import Action, ResourceChange
from infra_reconciler.providers.aws import HANDLERS, AWSProvider, VpcHandler

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from infra_reconciler.engine.registry import ResourceTypeRegistry

    from conftest import FakeCloud

_YAML = """\
variables:
  cidr: 10.0.0.0/16

resources:
  - type: aws_vpc
    name: main
    attributes:
      cidr_block: ${var.cidr}
  - type: aws_subnet
    name: public
    count: 2
    attributes:
      vpc_id: ${aws_vpc.main.id}
      cidr_block: 10.0.${count.index}.0/24

outputs:
  vpc_id: ${aws_vpc.main.id}
  subnet_ids:
    - ${aws_subnet.public[0].id}
    - ${aws_subnet.public[1].id}
"""


def _instance(address: str, rid: str, **attrs: object) -> ResourceState:
    resource_type, name = address.split(".")
    return ResourceState(
        address=address, resource_type=resource_type, name=name, id=rid, attributes=attrs
    )


class TestEngineFromConfig:
    def test_builds_aws_registry_from_provider_settings(self) -> None:
        config = Config(provider=ProviderConfig(region="eu-west-1", poll_interval=1.0))
        engine = _engine_from_config(config)

        expected = sorted(h.metadata.resource_type for h in HANDLERS)
        assert engine.registry.resource_types() == expected
        handler = engine.registry.get("aws_vpc").handler
        assert isinstance(handler, VpcHandler)
        assert handler._provider.region == "eu-west-1"
        assert handler._provider.poll_interval == 1.0

    def test_state_path_and_settings(self) -> None:
        config = Config(
            state_path=Path("custom.json"),
            engine=EngineSettings(parallelism=3, max_attempts=2, base_delay=0.1, max_delay=4),
        )
        engine = _engine_from_config(config)

        assert engine.state_path == Path("custom.json")
        assert engine._parallelism == 3
        assert engine._retry == RetryPolicy(max_attempts=2, base_delay=0.1, max_delay=4)

    def test_registry_override(self, registry: ResourceTypeRegistry) -> None:
        engine = _engine_from_config(Config(), registry=registry)
        assert engine.registry is registry


class TestDefaultRegistry:
    def test_registers_every_aws_type(self) -> None:
        registry = default_registry(AWSProvider(region="us-east-1"))
        assert registry.resource_types() == [
            "aws_eip",
            "aws_flow_log",
            "aws_internet_gateway",
            "aws_nat_gateway",
            "aws_network_acl",
            "aws_route_table",
            "aws_route_table_association",
            "aws_subnet",
            "aws_vpc",
        ]

    def test_independent_instances(self) -> None:
        provider = AWSProvider()
        assert default_registry(provider) is not default_registry(provider)


class TestConvenienceApi:
    @pytest.fixture(autouse=True)
    def _fake_registry(self, registry: ResourceTypeRegistry) -> Iterator[None]:
        with patch("infra_reconciler.config.default_registry", return_value=registry):
            yield

    @pytest.fixture
    def config(self, make_config: Callable[..., Config], tmp_path: Path) -> Config:
        config = make_config(_YAML)
        assert config.state_path == tmp_path / ".reconciler-state.json"
        return config

    def test_plan_apply_records_outputs(self, config: Config, cloud: FakeCloud) -> None:
        plan_obj = plan(config)
        assert [c.action for c in plan_obj.changes] == [Action.CREATE] * 3
        assert plan_obj.outputs["vpc_id"] == "${aws_vpc.main.id}"

        result = apply(plan_obj, config)
        assert result.ok

        values = outputs(config)
        vpc_ids = [rid for rid, addr in cloud.addresses.items() if addr == "aws_vpc.main"]
        assert values["vpc_id"] == vpc_ids[0]
        assert len(values["subnet_ids"]) == 2

        assert not plan(config).has_changes()

    def test_plan_and_apply(self, config: Config, cloud: FakeCloud) -> None:
        result = plan_and_apply(config)

        assert [c.address for c in result.completed][0] == "aws_vpc.main"
        assert len(cloud.objects) == 3

    def test_destroy(self, config: Config, cloud: FakeCloud) -> None:
        apply(plan(config), config)
        destroy = plan(config, destroy=True)

        assert {c.action for c in destroy.changes} == {Action.DELETE}
        apply(destroy, config)
        assert cloud.objects == {}

    def test_validate_rejects_bad_reference(self, make_config: Callable[..., Config]) -> None:
        config = make_config(
            """\
resources:
  - type: aws_subnet
    name: a
    attributes:
      vpc_id: ${aws_vpc.missing.id}
"""
        )
        with pytest.raises(UnresolvedReferenceError, match="aws_vpc.missing"):
            validate(config)

    def test_refresh_then_save_state(self, config: Config, cloud: FakeCloud) -> None:
        apply(plan(config), config)
        vpc_id = next(rid for rid, addr in cloud.addresses.items() if addr == "aws_vpc.main")
        cloud.objects[vpc_id]["cidr_block"] = "10.9.0.0/16"

        changes, new_state = refresh(config)
        assert [(c.address, c.action) for c in changes] == [("aws_vpc.main", Action.UPDATE)]
        assert drift(config) == changes
        # Not persisted until save_state.
        assert read_state(config.state_path).resources["aws_vpc.main"].attributes[
            "cidr_block"
        ] == "10.0.0.0/16"

        save_state(config, new_state)
        saved = read_state(config.state_path)
        assert saved.resources["aws_vpc.main"].attributes["cidr_block"] == "10.9.0.0/16"
        assert drift(config) == []

    def test_refresh_confirm_writes_while_locked(self, config: Config, cloud: FakeCloud) -> None:
        apply(plan(config), config)
        vpc_id = next(rid for rid, addr in cloud.addresses.items() if addr == "aws_vpc.main")
        cloud.objects[vpc_id]["tags"] = {"Name": "edited"}
        reviewed: list[list[str]] = []

        def confirm(changes: list[ResourceChange], state: State) -> bool:
            _ = state
            reviewed.append([c.address for c in changes])
            # A concurrent invocation cannot commit until the refresh is written.
            with pytest.raises(StoreLockedError):
                plan(config)
            return True

        changes, new_state = refresh(config, confirm=confirm)

        assert reviewed == [["aws_vpc.main"]]
        assert [c.address for c in changes] == ["aws_vpc.main"]
        saved = read_state(config.state_path)
        assert saved.resources["aws_vpc.main"].attributes["tags"] == {"Name": "edited"}
        assert saved.serial == new_state.serial
        assert drift(config) == []

    def test_refresh_confirm_declined_writes_nothing(
        self, config: Config, cloud: FakeCloud
    ) -> None:
        apply(plan(config), config)
        before = read_state(config.state_path)
        vpc_id = next(rid for rid, addr in cloud.addresses.items() if addr == "aws_vpc.main")
        cloud.objects[vpc_id]["tags"] = {"Name": "edited"}

        refresh(config, confirm=lambda changes, state: False)

        assert read_state(config.state_path).serial == before.serial

    def test_save_state_rejects_state_written_since_refresh(
        self, config: Config, make_config: Callable[..., Config], cloud: FakeCloud
    ) -> None:
        apply(plan(config), config)
        _, stale = refresh(config)

        # Another invocation adds a subnet before the refreshed state is saved.
        grown = make_config(_YAML.replace("count: 2", "count: 3"))
        apply(plan(grown), grown)

        with pytest.raises(StaleStateError, match="refresh again"):
            save_state(config, stale)
        assert "aws_subnet.public[2]" in read_state(config.state_path).resources
        assert len(cloud.objects) == 4

    def test_save_state_without_state_file(self, config: Config) -> None:
        _, fresh = refresh(config)
        save_state(config, fresh)
        assert read_state(config.state_path).lineage == fresh.lineage

    def test_reconcile_without_markers(self, config: Config) -> None:
        assert reconcile(config) == []


class TestBuildDriftChanges:
    def test_no_drift(self) -> None:
        state = State(resources={"aws_vpc.main": _instance("aws_vpc.main", "vpc-1", cidr="a")})
        assert _build_drift_changes(state, state.model_copy(deep=True)) == []

    def test_attribute_drift(self) -> None:
        old = State(resources={"aws_vpc.main": _instance("aws_vpc.main", "vpc-1", a=1, b=2)})
        new = State(resources={"aws_vpc.main": _instance("aws_vpc.main", "vpc-1", a=1, c=3)})

        [change] = _build_drift_changes(old, new)
        assert change.action == Action.UPDATE
        assert change.prior_id == "vpc-1"
        assert change.diff == {"b": {"from": 2, "to": None}, "c": {"from": None, "to": 3}}

    def test_vanished_resources(self) -> None:
        old = State(
            resources={"aws_vpc.main": _instance("aws_vpc.main", "vpc-1")},
            deposed={"aws_nat_gateway.main": _instance("aws_nat_gateway.main", "nat-1")},
        )
        changes = _build_drift_changes(old, State())

        assert [(c.key, c.action) for c in changes] == [
            ("aws_vpc.main", Action.DELETE),
            ("aws_nat_gateway.main (deposed)", Action.DELETE),
        ]
