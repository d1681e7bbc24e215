"""Tests for YAML configuration loading, variables and count expansion."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from infra_reconciler.config.loader import ConfigError, load_config
from infra_reconciler.resources.refs import Ref

if TYPE_CHECKING:
    from collections.abc import Callable

    from infra_reconciler.config.schema import Config

_FULL_YAML = """\
provider:
  region: eu-west-1
  poll_interval: 2

engine:
  parallelism: 4

state_path: state/network.json

variables:
  vpc_cidr: 10.0.0.0/16
  azs: [eu-west-1a, eu-west-1b]
  public_cidrs: [10.0.0.0/24, 10.0.1.0/24]
  env: dev

resources:
  - type: aws_vpc
    name: main
    attributes:
      cidr_block: ${var.vpc_cidr}
      tags:
        Name: ${var.env}-vpc

  - type: aws_subnet
    name: public
    count: 2
    attributes:
      vpc_id: ${aws_vpc.main.id}
      cidr_block: ${var.public_cidrs[count.index]}
      availability_zone: ${var.azs[count.index]}
      tags:
        Name: ${var.env}-public-${count.index}

  - type: aws_route_table_association
    name: public
    count: 2
    depends_on:
      - aws_subnet.public[count.index]
    attributes:
      route_table_id: rtb-123
      subnet_id: ${aws_subnet.public[count.index].id}

outputs:
  vpc_id: ${aws_vpc.main.id}
  subnet_ids:
    - ${aws_subnet.public[0].id}
    - ${aws_subnet.public[1].id}
  environment: ${var.env}
"""


@pytest.fixture
def full_config(make_config: Callable[..., Config]) -> Config:
    return make_config(_FULL_YAML)


class TestLoadConfigFull:
    def test_sections_parsed(self, full_config: Config) -> None:
        assert full_config.provider.region == "eu-west-1"
        assert full_config.provider.poll_interval == 2.0
        assert full_config.engine.parallelism == 4
        assert len(full_config.resources) == 3

    def test_config_dir_set_to_parent(self, full_config: Config, tmp_path: Path) -> None:
        assert full_config.config_dir == tmp_path

    def test_relative_state_path_resolved_against_config_dir(
        self, full_config: Config, tmp_path: Path
    ) -> None:
        assert full_config.state_path == tmp_path / "state" / "network.json"

    def test_default_state_path(self, make_config: Callable[..., Config], tmp_path: Path) -> None:
        config = make_config("resources: []\n")
        assert config.state_path == tmp_path / ".reconciler-state.json"

    def test_absolute_state_path_kept(self, make_config: Callable[..., Config]) -> None:
        config = make_config("state_path: /var/lib/reconciler/state.json\n")
        assert config.state_path == Path("/var/lib/reconciler/state.json")


class TestExpansion:
    def test_count_expands_to_indexed_specs(self, full_config: Config) -> None:
        assert [s.address for s in full_config.specs] == [
            "aws_vpc.main",
            "aws_subnet.public[0]",
            "aws_subnet.public[1]",
            "aws_route_table_association.public[0]",
            "aws_route_table_association.public[1]",
        ]

    def test_variables_substituted(self, full_config: Config) -> None:
        vpc, subnet0, subnet1, *_ = full_config.specs
        assert vpc.attributes == {"cidr_block": "10.0.0.0/16", "tags": {"Name": "dev-vpc"}}
        assert subnet0.attributes["cidr_block"] == "10.0.0.0/24"
        assert subnet1.attributes["availability_zone"] == "eu-west-1b"
        assert subnet1.attributes["tags"] == {"Name": "dev-public-1"}

    def test_references_kept_for_engine(self, full_config: Config) -> None:
        subnet0 = full_config.specs[1]
        assoc1 = full_config.specs[4]
        assert subnet0.attributes["vpc_id"] == Ref("aws_vpc.main", "id")
        assert assoc1.attributes["subnet_id"] == Ref("aws_subnet.public[1]", "id")
        assert assoc1.depends_on == ["aws_subnet.public[1]"]

    def test_whole_value_keeps_type(self, make_config: Callable[..., Config]) -> None:
        config = make_config(
            "variables:\n  cidrs: [10.0.0.0/24]\n  public: true\n"
            "resources:\n  - type: aws_subnet\n    name: a\n    attributes:\n"
            "      ipv4: ${var.cidrs}\n      map_public_ip_on_launch: ${var.public}\n"
        )
        attrs = config.specs[0].attributes
        assert attrs["ipv4"] == ["10.0.0.0/24"]
        assert attrs["map_public_ip_on_launch"] is True

    def test_count_from_variable(self, make_config: Callable[..., Config]) -> None:
        config = make_config(
            "variables:\n  n: 3\nresources:\n"
            "  - type: aws_eip\n    name: nat\n    count: ${var.n}\n"
        )
        assert [s.index for s in config.specs] == [0, 1, 2]

    def test_count_zero_declares_nothing(self, make_config: Callable[..., Config]) -> None:
        config = make_config("resources:\n  - type: aws_eip\n    name: nat\n    count: 0\n")
        assert config.specs == []
        assert len(config.resources) == 1

    def test_outputs_resolved(self, full_config: Config) -> None:
        assert full_config.resolved_outputs == {
            "vpc_id": "${aws_vpc.main.id}",
            "subnet_ids": ["${aws_subnet.public[0].id}", "${aws_subnet.public[1].id}"],
            "environment": "dev",
        }

    def test_lifecycle_passed_through(self, make_config: Callable[..., Config]) -> None:
        config = make_config(
            "resources:\n  - type: aws_vpc\n    name: main\n"
            "    lifecycle:\n      prevent_destroy: true\n"
        )
        assert config.specs[0].lifecycle.prevent_destroy


class TestVariableOverrides:
    _YAML = (
        "variables:\n  env: dev\n  azs: [a]\n"
        "resources:\n  - type: aws_vpc\n    name: main\n    attributes:\n"
        "      tags:\n        env: ${var.env}\n        azs: ${var.azs}\n"
    )

    def test_default_used(self, make_config: Callable[..., Config]) -> None:
        attrs = make_config(self._YAML).specs[0].attributes
        assert attrs["tags"] == {"env": "dev", "azs": ["a"]}

    def test_dotenv_overrides_default(self, make_config: Callable[..., Config]) -> None:
        config = make_config(self._YAML, dotenv="RECONCILER_VAR_env=staging\n")
        assert config.specs[0].attributes["tags"]["env"] == "staging"

    def test_env_overrides_dotenv(
        self, make_config: Callable[..., Config], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("RECONCILER_VAR_env", "prod")
        config = make_config(self._YAML, dotenv="RECONCILER_VAR_env=staging\n")
        assert config.specs[0].attributes["tags"]["env"] == "prod"

    def test_env_values_parsed_as_yaml(
        self, make_config: Callable[..., Config], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("RECONCILER_VAR_azs", "[a, b, c]")
        config = make_config(self._YAML)
        assert config.specs[0].attributes["tags"]["azs"] == ["a", "b", "c"]

    def test_variable_without_value(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="RECONCILER_VAR_region"):
            make_config("variables:\n  region:\n")

    def test_variable_supplied_by_env(
        self, make_config: Callable[..., Config], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("RECONCILER_VAR_region", "us-east-1")
        config = make_config(
            "variables:\n  region:\n"
            "resources:\n  - type: aws_vpc\n    name: main\n    attributes:\n"
            "      tags: {region: '${var.region}'}\n"
        )
        assert config.specs[0].attributes["tags"] == {"region": "us-east-1"}


class TestSettingsPriority:
    def test_env_fills_missing_provider_fields(
        self, make_config: Callable[..., Config], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("RECONCILER_AWS_REGION", "us-west-2")
        monkeypatch.setenv("RECONCILER_PARALLELISM", "3")
        config = make_config("resources: []\n")
        assert config.provider.region == "us-west-2"
        assert config.engine.parallelism == 3

    def test_yaml_beats_env(
        self, make_config: Callable[..., Config], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("RECONCILER_AWS_REGION", "us-west-2")
        config = make_config("provider:\n  region: eu-central-1\n")
        assert config.provider.region == "eu-central-1"

    def test_env_beats_dotenv(
        self, make_config: Callable[..., Config], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("RECONCILER_AWS_REGION", "us-west-2")
        config = make_config(
            "resources: []\n",
            dotenv="RECONCILER_AWS_REGION=ap-south-1\nRECONCILER_AWS_PROFILE=ops\n",
        )
        assert config.provider.region == "us-west-2"
        assert config.provider.profile == "ops"

    def test_invalid_engine_setting(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="Invalid 'engine' settings"):
            make_config("engine:\n  parallelism: 0\n")


class TestConfigErrors:
    def test_non_mapping_yaml(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="top level must be a mapping"):
            make_config("- item1\n- item2\n")

    def test_invalid_yaml(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="Failed to read"):
            make_config("resources: [\n")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Failed to read"):
            load_config(tmp_path / "nonexistent.yaml")

    def test_empty_file(self, make_config: Callable[..., Config]) -> None:
        config = make_config("")
        assert config.specs == []
        assert config.resolved_outputs == {}

    def test_empty_sections(self, make_config: Callable[..., Config]) -> None:
        config = make_config("variables:\nresources:\noutputs:\n")
        assert config.resources == []

    def test_unknown_resource_field(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="Extra inputs are not permitted"):
            make_config("resources:\n  - type: aws_vpc\n    name: main\n    cidr: x\n")

    def test_duplicate_declaration(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="entries 1 and 2"):
            make_config(
                "resources:\n  - type: aws_vpc\n    name: main\n  - type: aws_vpc\n    name: main\n"
            )

    def test_undefined_variable(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match=r"aws_vpc\.main: Undefined variable 'cidr'"):
            make_config(
                "resources:\n  - type: aws_vpc\n    name: main\n"
                "    attributes:\n      cidr_block: ${var.cidr}\n"
            )

    def test_count_index_outside_count(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="count.index is only available"):
            make_config(
                "resources:\n  - type: aws_vpc\n    name: main\n"
                "    attributes:\n      tags: {n: '${count.index}'}\n"
            )

    def test_negative_count(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="non-negative integer"):
            make_config("resources:\n  - type: aws_eip\n    name: a\n    count: -1\n")

    def test_embedded_reference_rejected(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="must be the whole value"):
            make_config(
                "resources:\n  - type: aws_vpc\n    name: main\n"
                "    attributes:\n      tags: {Name: 'vpc-${aws_vpc.other.id}'}\n"
            )

    def test_invalid_depends_on(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="invalid depends_on entry"):
            make_config(
                "resources:\n  - type: aws_vpc\n    name: main\n    depends_on: [not-an-address]\n"
            )

    def test_output_references_undeclared_resource(
        self, make_config: Callable[..., Config]
    ) -> None:
        with pytest.raises(ConfigError, match="undeclared resource"):
            make_config("outputs:\n  vpc_id: ${aws_vpc.main.id}\n")
