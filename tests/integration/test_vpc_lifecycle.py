"""Full plan/apply/destroy cycle of a VPC topology through the CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest
from typer.testing import CliRunner

from infra_reconciler.cli import app

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.integration

runner = CliRunner()

_CONFIG = """\
provider:
  region: us-east-1
  endpoint_url: {endpoint_url}
  poll_interval: 1
  poll_timeout: 120

engine:
  max_attempts: 3
  base_delay: 0.5

variables:
  env: it-{run_id}

resources:
  - type: aws_vpc
    name: main
    attributes:
      cidr_block: 10.42.0.0/16
      tags:
        Name: ${{var.env}}

  - type: aws_internet_gateway
    name: main
    attributes:
      vpc_id: ${{aws_vpc.main.id}}

  - type: aws_subnet
    name: public
    count: 2
    attributes:
      vpc_id: ${{aws_vpc.main.id}}
      cidr_block: 10.42.${{count.index}}.0/24

  - type: aws_route_table
    name: public
    attributes:
      vpc_id: ${{aws_vpc.main.id}}
      routes:
        - destination_cidr_block: 0.0.0.0/0
          gateway_id: ${{aws_internet_gateway.main.id}}

  - type: aws_route_table_association
    name: public
    count: 2
    attributes:
      route_table_id: ${{aws_route_table.public.id}}
      subnet_id: ${{aws_subnet.public[count.index].id}}

outputs:
  vpc_id: ${{aws_vpc.main.id}}
"""


def _invoke(*args: str) -> Any:
    result = runner.invoke(app, [*args, "--no-color"])
    assert result.exit_code in (0, 2), result.output
    return result


def test_vpc_lifecycle(tmp_path: Path, endpoint_url: str, run_id: str, ec2: Any) -> None:
    config = tmp_path / "reconciler.yaml"
    config.write_text(_CONFIG.format(endpoint_url=endpoint_url, run_id=run_id))
    cfg = ["--config", str(config)]

    _invoke("validate", *cfg)
    plan = _invoke("plan", *cfg, "--detailed-exitcode")
    assert plan.exit_code == 2
    assert "Plan: 7 to add, 0 to change, 0 to destroy." in plan.stdout

    applied = _invoke("apply", *cfg, "--auto-approve")
    assert "Apply complete! Resources: 7 added" in applied.stdout

    vpc_id = _invoke("output", "vpc_id", *cfg).stdout.strip()
    vpcs = ec2.describe_vpcs(VpcIds=[vpc_id])["Vpcs"]
    assert {"Key": "Name", "Value": f"it-{run_id}"} in vpcs[0]["Tags"]

    assert _invoke("plan", *cfg, "--detailed-exitcode").exit_code == 0
    assert "No drift detected" in _invoke("drift", *cfg).stdout

    destroyed = _invoke("destroy", *cfg, "--auto-approve")
    assert "7 destroyed" in destroyed.stdout
    assert _invoke("state", "list", *cfg).stdout == ""
