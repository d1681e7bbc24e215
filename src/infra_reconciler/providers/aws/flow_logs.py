"""VPC Flow Log handler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from infra_reconciler.engine.errors import PermanentProviderError
from infra_reconciler.engine.handlers import TypeMetadata
from infra_reconciler.providers.aws.base import TaggedEC2Handler, user_tags
from infra_reconciler.providers.aws.errors import provider_errors

if TYPE_CHECKING:
    from infra_reconciler.engine.handlers import EngineContext

logger = logging.getLogger(__name__)


class FlowLogAttributes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resource_id: str
    resource_type: Literal["VPC", "Subnet"] = "VPC"
    traffic_type: Literal["ACCEPT", "REJECT", "ALL"] = "ALL"
    log_destination_type: Literal["cloud-watch-logs", "s3"] = "cloud-watch-logs"
    log_destination: str | None = None
    log_group_name: str | None = None
    deliver_logs_permission_arn: str | None = None
    max_aggregation_interval: Literal[60, 600] = 600
    tags: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_destination(self) -> Self:
        if self.log_destination_type == "s3":
            if not self.log_destination:
                raise ValueError("An 's3' flow log needs 'log_destination' (a bucket ARN)")
            return self
        if not (self.log_destination or self.log_group_name):
            raise ValueError("A 'cloud-watch-logs' flow log needs 'log_group_name'")
        if not self.deliver_logs_permission_arn:
            raise ValueError(
                "A 'cloud-watch-logs' flow log needs 'deliver_logs_permission_arn'"
            )
        return self


def _unsuccessful(resp: dict[str, Any]) -> str | None:
    errors = [
        f"{item.get('ResourceId', '?')}: {item.get('Error', {}).get('Message', 'unknown error')}"
        for item in resp.get("Unsuccessful", [])
    ]
    return "; ".join(errors) or None


class FlowLogHandler(TaggedEC2Handler):
    """CRUD handler for ``aws_flow_log`` on a VPC or subnet.

    Flow logs cannot be modified, so every attribute but tags forces a replace.
    """

    metadata = TypeMetadata(
        resource_type="aws_flow_log",
        immutable=frozenset(
            {
                "resource_id",
                "resource_type",
                "traffic_type",
                "log_destination_type",
                "log_destination",
                "log_group_name",
                "deliver_logs_permission_arn",
                "max_aggregation_interval",
            }
        ),
        compare={"tags": "exact"},
        model=FlowLogAttributes,
    )
    resource_kind = "vpc-flow-log"

    def _resource_id(self, item: dict[str, Any]) -> str:
        return item["FlowLogId"]

    def _attributes(self, item: dict[str, Any]) -> dict[str, Any]:
        resource_id = item["ResourceId"]
        return {
            "resource_id": resource_id,
            "resource_type": "Subnet" if resource_id.startswith("subnet-") else "VPC",
            "traffic_type": item.get("TrafficType"),
            "log_destination_type": item.get("LogDestinationType", "cloud-watch-logs"),
            "log_destination": item.get("LogDestination"),
            "log_group_name": item.get("LogGroupName"),
            "deliver_logs_permission_arn": item.get("DeliverLogsPermissionArn"),
            "max_aggregation_interval": item.get("MaxAggregationInterval", 600),
            "tags": user_tags(item.get("Tags")),
        }

    def _find_by_address(self, ctx: EngineContext) -> list[dict[str, Any]]:
        with provider_errors(f"find {ctx.address}"):
            return self.ec2.describe_flow_logs(Filter=self.address_filter(ctx)).get(
                "FlowLogs", []
            )

    def create(self, ctx: EngineContext, attrs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        desired = FlowLogAttributes.model_validate(attrs)
        params: dict[str, Any] = {
            "ResourceIds": [desired.resource_id],
            "ResourceType": desired.resource_type,
            "TrafficType": desired.traffic_type,
            "LogDestinationType": desired.log_destination_type,
            "MaxAggregationInterval": desired.max_aggregation_interval,
            "TagSpecifications": self._tag_specifications(ctx, desired.tags),
        }
        optional = {
            "LogDestination": desired.log_destination,
            "LogGroupName": desired.log_group_name,
            "DeliverLogsPermissionArn": desired.deliver_logs_permission_arn,
        }
        params.update({k: v for k, v in optional.items() if v is not None})
        with provider_errors(f"create {ctx.address}"):
            resp = self.ec2.create_flow_logs(**params)
        if not resp.get("FlowLogIds"):
            raise PermanentProviderError(
                f"create {ctx.address} failed: {_unsuccessful(resp) or 'no flow log created'}"
            )
        flow_log_id = resp["FlowLogIds"][0]
        logger.info(
            "Created flow log %s on %s for %s", flow_log_id, desired.resource_id, ctx.address
        )
        with self._finishing_create(ctx, flow_log_id):
            attrs_out = self.read(ctx, flow_log_id)
        if attrs_out is None:
            raise RuntimeError(f"Flow log {flow_log_id} disappeared right after creation")
        return flow_log_id, attrs_out

    def read(self, ctx: EngineContext, resource_id: str) -> dict[str, Any] | None:
        _ = ctx
        resp = self._describe_one(
            f"describe {resource_id}",
            lambda: self.ec2.describe_flow_logs(FlowLogIds=[resource_id]),
        )
        items = resp.get("FlowLogs", []) if resp else []
        return self._attributes(items[0]) if items else None

    def update(
        self,
        ctx: EngineContext,
        resource_id: str,
        attrs: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        desired = FlowLogAttributes.model_validate(attrs)
        if "tags" in attrs:
            self._update_tags(resource_id, desired.tags, prior.get("tags", {}))
        attrs_out = self.read(ctx, resource_id)
        if attrs_out is None:
            raise RuntimeError(f"Flow log {resource_id} disappeared during update")
        return attrs_out

    def delete(self, ctx: EngineContext, resource_id: str) -> None:
        if self.read(ctx, resource_id) is None:
            return
        with provider_errors(f"delete {resource_id}"):
            resp = self.ec2.delete_flow_logs(FlowLogIds=[resource_id])
        failure = _unsuccessful(resp)
        if failure:
            raise PermanentProviderError(f"delete {resource_id} failed: {failure}")
        logger.info("Deleted flow log %s", resource_id)
