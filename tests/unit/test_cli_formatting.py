from __future__ import annotations

import re

from infra_reconciler.cli.formatting import (
    changes_summary,
    format_apply_summary,
    format_change,
    format_changes,
    format_instance,
    format_outputs,
    format_partial_result,
    format_plan,
    format_plan_summary,
    has_actionable_changes,
)
from infra_reconciler.core.state import ResourceState
from infra_reconciler.engine.types import (
    Action,
    ApplyResult,
    FailedChange,
    Plan,
    PlanMetadata,
    ResourceChange,
)
from infra_reconciler.resources.refs import UNKNOWN

_META = PlanMetadata(
    destroy=False,
    refresh=True,
    state_lineage="lineage-1",
    state_serial=0,
    state_digest="digest",
    config_digest="cdigest",
    engine_version="0.1.0",
)


def _strip_ansi(text: str) -> str:
    return re.sub(r"\x1b\[[0-9;]*m", "", text)


def _replace(policy: str) -> ResourceChange:
    return ResourceChange(
        address="aws_nat_gateway.main",
        resource_type="aws_nat_gateway",
        action=Action.REPLACE,
        diff={"subnet_id": {"from": "subnet-1", "to": UNKNOWN}},
        replace_reasons=["subnet_id"],
        replace_policy=policy,  # type: ignore[arg-type]
    )


class TestFormatPlanSummary:
    def test_all_zeros(self) -> None:
        result = format_plan_summary({"create": 0, "update": 0, "delete": 0}, color=False)
        assert result == "Plan: 0 to add, 0 to change, 0 to destroy."

    def test_with_counts(self) -> None:
        result = format_plan_summary({"create": 2, "update": 1, "delete": 3}, color=False)
        assert result == "Plan: 2 to add, 1 to change, 3 to destroy."

    def test_replace_counts_as_add_and_destroy(self) -> None:
        result = format_plan_summary({"create": 1, "replace": 2}, color=False)
        assert result == "Plan: 3 to add, 0 to change, 2 to destroy."

    def test_custom_header(self) -> None:
        result = format_plan_summary({"update": 1}, color=False, header="Refresh")
        assert result == "Refresh: 0 to add, 1 to change, 0 to destroy."

    def test_color_mode_contains_ansi(self) -> None:
        result = format_plan_summary({"create": 1, "update": 0, "delete": 0}, color=True)
        assert "\x1b[" in result
        assert "1 to add" in _strip_ansi(result)


class TestFormatApplySummary:
    def test_with_counts(self) -> None:
        result = format_apply_summary({"create": 1, "update": 2, "delete": 0}, color=False)
        assert result == "Apply complete! Resources: 1 added, 2 changed, 0 destroyed."

    def test_color_mode_contains_ansi(self) -> None:
        result = format_apply_summary({"create": 1, "update": 0, "delete": 0}, color=True)
        assert "\x1b[" in result


class TestFormatChange:
    def test_create_lists_planned_values(self) -> None:
        change = ResourceChange(
            address="aws_subnet.public[0]",
            resource_type="aws_subnet",
            action=Action.CREATE,
            planned={"cidr_block": "10.0.1.0/24", "vpc_id": UNKNOWN, "map_public_ip": True},
        )
        result = format_change(change, color=False)
        assert "# aws_subnet.public[0] will be created" in result
        assert '+ resource "aws_subnet" "public[0]" {' in result
        assert '+ cidr_block    = "10.0.1.0/24"' in result
        assert "+ vpc_id        = (known after apply)" in result
        assert "+ map_public_ip = true" in result

    def test_update_shows_from_to(self) -> None:
        change = ResourceChange(
            address="aws_vpc.main",
            resource_type="aws_vpc",
            action=Action.UPDATE,
            diff={"tags": {"from": {"Name": "a"}, "to": {"Name": "b"}}},
        )
        result = format_change(change, color=False)
        assert "will be updated in-place" in result
        assert '~ tags = {"Name": "a"} -> {"Name": "b"}' in result

    def test_replace_marks_forcing_attributes(self) -> None:
        result = format_change(_replace("destroy_before_create"), color=False)
        assert "must be replaced" in result
        assert "-/+ resource" in result
        assert "# forces replacement" in result

    def test_create_before_destroy_symbol(self) -> None:
        result = format_change(_replace("create_before_destroy"), color=False)
        assert "must be replaced (create before destroy)" in result
        assert "+/- resource" in result

    def test_delete_of_deposed_object(self) -> None:
        change = ResourceChange(
            address="aws_nat_gateway.main",
            resource_type="aws_nat_gateway",
            action=Action.DELETE,
            prior_id="nat-old",
            deposed=True,
        )
        result = format_change(change, color=False)
        assert "# aws_nat_gateway.main (deposed object) will be destroyed" in result
        assert '- id = "nat-old"' in result

    def test_color_output(self) -> None:
        change = ResourceChange(
            address="aws_vpc.main", resource_type="aws_vpc", action=Action.DELETE
        )
        assert "\x1b[" in format_change(change, color=True)


class TestFormatPlan:
    def test_skips_noop(self) -> None:
        plan = Plan(
            metadata=_META,
            changes=[
                ResourceChange(address="aws_vpc.main", resource_type="aws_vpc", action=Action.NOOP),
                ResourceChange(
                    address="aws_subnet.a", resource_type="aws_subnet", action=Action.CREATE
                ),
            ],
        )
        result = format_plan(plan, color=False)
        assert "aws_vpc.main" not in result
        assert "aws_subnet.a" in result
        assert has_actionable_changes(plan)

    def test_all_noop(self) -> None:
        noop = ResourceChange(address="aws_vpc.main", resource_type="aws_vpc", action=Action.NOOP)
        plan = Plan(metadata=_META, changes=[noop])
        assert format_plan(plan, color=False) == "No changes. Resources are up-to-date."
        assert not has_actionable_changes(plan)
        assert format_changes([], color=False) == "No changes. Resources are up-to-date."


def test_changes_summary() -> None:
    changes = [
        ResourceChange(address="aws_vpc.a", resource_type="aws_vpc", action=Action.UPDATE),
        ResourceChange(address="aws_vpc.b", resource_type="aws_vpc", action=Action.DELETE),
        ResourceChange(address="aws_vpc.c", resource_type="aws_vpc", action=Action.NOOP),
    ]
    assert changes_summary(changes) == {"create": 0, "update": 1, "replace": 0, "delete": 1}


def test_partial_result() -> None:
    done = ResourceChange(address="aws_vpc.main", resource_type="aws_vpc", action=Action.CREATE)
    failed = ResourceChange(
        address="aws_subnet.a", resource_type="aws_subnet", action=Action.CREATE
    )
    skipped = ResourceChange(
        address="aws_route_table_association.a",
        resource_type="aws_route_table_association",
        action=Action.CREATE,
    )
    result = ApplyResult(
        completed=[done],
        failed=[FailedChange(change=failed, error="InvalidSubnet.Conflict")],
        not_attempted=[skipped],
    )

    text = format_partial_result(result, color=False)
    assert "Partial result: 1 added, 0 changed, 0 destroyed." in text
    assert "✗ aws_subnet.a: InvalidSubnet.Conflict" in text
    assert "- aws_route_table_association.a: not attempted" in text


def test_format_instance() -> None:
    inst = ResourceState(
        address="aws_subnet.public[1]",
        resource_type="aws_subnet",
        name="public",
        id="subnet-2",
        attributes={"vpc_id": "vpc-1", "cidr_block": "10.0.2.0/24"},
    )
    assert format_instance(inst).splitlines() == [
        "# aws_subnet.public[1]",
        'resource "aws_subnet" "public" {',
        '    id         = "subnet-2"',
        '    cidr_block = "10.0.2.0/24"',
        '    vpc_id     = "vpc-1"',
        "}",
    ]


def test_format_outputs() -> None:
    assert format_outputs({"vpc_id": "vpc-1", "count": 2}) == 'count  = 2\nvpc_id = "vpc-1"'
