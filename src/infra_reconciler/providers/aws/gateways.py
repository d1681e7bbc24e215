"""Internet gateway, Elastic IP and NAT gateway handlers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from infra_reconciler.engine.handlers import TypeMetadata
from infra_reconciler.providers.aws.base import TaggedEC2Handler, user_tags
from infra_reconciler.providers.aws.errors import provider_errors

if TYPE_CHECKING:
    from infra_reconciler.engine.handlers import EngineContext

logger = logging.getLogger(__name__)

_GONE_NAT_STATES = frozenset({"deleting", "deleted", "failed"})


class InternetGatewayAttributes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    vpc_id: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)


class ElasticIpAttributes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    domain: Literal["vpc"] = "vpc"
    tags: dict[str, str] = Field(default_factory=dict)


class NatGatewayAttributes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subnet_id: str
    allocation_id: str | None = None
    connectivity_type: Literal["public", "private"] = "public"
    tags: dict[str, str] = Field(default_factory=dict)


class InternetGatewayHandler(TaggedEC2Handler):
    """CRUD handler for ``aws_internet_gateway``.

    ``vpc_id`` is mutable: changing it detaches from the old VPC and attaches
    to the new one.
    """

    metadata = TypeMetadata(
        resource_type="aws_internet_gateway",
        compare={"tags": "exact"},
        model=InternetGatewayAttributes,
    )
    resource_kind = "internet-gateway"

    def _resource_id(self, item: dict[str, Any]) -> str:
        return item["InternetGatewayId"]

    def _attributes(self, item: dict[str, Any]) -> dict[str, Any]:
        attachments = [a for a in item.get("Attachments", []) if a.get("State") != "detached"]
        return {
            "vpc_id": attachments[0]["VpcId"] if attachments else None,
            "tags": user_tags(item.get("Tags")),
        }

    def _find_by_address(self, ctx: EngineContext) -> list[dict[str, Any]]:
        with provider_errors(f"find {ctx.address}"):
            resp = self.ec2.describe_internet_gateways(Filters=self.address_filter(ctx))
        return resp.get("InternetGateways", [])

    def _attach(self, igw_id: str, vpc_id: str) -> None:
        with provider_errors(f"attach {igw_id} to {vpc_id}"):
            self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        logger.info("Attached %s to %s", igw_id, vpc_id)

    def _detach(self, igw_id: str, vpc_id: str) -> None:
        # Mapped public addresses must be released first.
        with provider_errors(f"detach {igw_id} from {vpc_id}", transient={"DependencyViolation"}):
            self.ec2.detach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        logger.info("Detached %s from %s", igw_id, vpc_id)

    def create(self, ctx: EngineContext, attrs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        desired = InternetGatewayAttributes.model_validate(attrs)
        with provider_errors(f"create {ctx.address}"):
            resp = self.ec2.create_internet_gateway(
                TagSpecifications=self._tag_specifications(ctx, desired.tags)
            )
        igw_id = resp["InternetGateway"]["InternetGatewayId"]
        logger.info("Created internet gateway %s for %s", igw_id, ctx.address)
        with self._finishing_create(ctx, igw_id):
            if desired.vpc_id:
                self._attach(igw_id, desired.vpc_id)
            return igw_id, self._must_read(ctx, igw_id)

    def _must_read(self, ctx: EngineContext, igw_id: str) -> dict[str, Any]:
        attrs = self.read(ctx, igw_id)
        if attrs is None:
            raise RuntimeError(f"Internet gateway {igw_id} disappeared right after it was written")
        return attrs

    def read(self, ctx: EngineContext, resource_id: str) -> dict[str, Any] | None:
        _ = ctx
        resp = self._describe_one(
            f"describe {resource_id}",
            lambda: self.ec2.describe_internet_gateways(InternetGatewayIds=[resource_id]),
        )
        items = resp.get("InternetGateways", []) if resp else []
        return self._attributes(items[0]) if items else None

    def update(
        self,
        ctx: EngineContext,
        resource_id: str,
        attrs: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        desired = InternetGatewayAttributes.model_validate(attrs)
        if "vpc_id" in attrs and desired.vpc_id != prior.get("vpc_id"):
            if prior.get("vpc_id"):
                self._detach(resource_id, prior["vpc_id"])
            if desired.vpc_id:
                self._attach(resource_id, desired.vpc_id)
        if "tags" in attrs:
            self._update_tags(resource_id, desired.tags, prior.get("tags", {}))
        return self._must_read(ctx, resource_id)

    def delete(self, ctx: EngineContext, resource_id: str) -> None:
        current = self.read(ctx, resource_id)
        if current is None:
            return
        if current["vpc_id"]:
            self._detach(resource_id, current["vpc_id"])
        with provider_errors(f"delete {resource_id}", transient={"DependencyViolation"}):
            self.ec2.delete_internet_gateway(InternetGatewayId=resource_id)
        logger.info("Deleted internet gateway %s", resource_id)


class ElasticIpHandler(TaggedEC2Handler):
    """CRUD handler for ``aws_eip`` (VPC Elastic IP allocations)."""

    metadata = TypeMetadata(
        resource_type="aws_eip",
        immutable=frozenset({"domain"}),
        computed=frozenset({"public_ip", "allocation_id"}),
        compare={"tags": "exact"},
        model=ElasticIpAttributes,
    )
    resource_kind = "elastic-ip"

    def _resource_id(self, item: dict[str, Any]) -> str:
        return item["AllocationId"]

    def _attributes(self, item: dict[str, Any]) -> dict[str, Any]:
        return {
            "domain": item.get("Domain", "vpc"),
            "public_ip": item.get("PublicIp"),
            "allocation_id": item["AllocationId"],
            "tags": user_tags(item.get("Tags")),
        }

    def _find_by_address(self, ctx: EngineContext) -> list[dict[str, Any]]:
        with provider_errors(f"find {ctx.address}"):
            response = self.ec2.describe_addresses(Filters=self.address_filter(ctx))
        return response.get("Addresses", [])

    def create(self, ctx: EngineContext, attrs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        desired = ElasticIpAttributes.model_validate(attrs)
        with provider_errors(f"create {ctx.address}"):
            resp = self.ec2.allocate_address(
                Domain=desired.domain,
                TagSpecifications=self._tag_specifications(ctx, desired.tags),
            )
        allocation_id = resp["AllocationId"]
        logger.info("Allocated %s (%s) for %s", allocation_id, resp.get("PublicIp"), ctx.address)
        with self._finishing_create(ctx, allocation_id):
            attrs_out = self.read(ctx, allocation_id)
        if attrs_out is None:
            raise RuntimeError(f"Address {allocation_id} disappeared right after allocation")
        return allocation_id, attrs_out

    def read(self, ctx: EngineContext, resource_id: str) -> dict[str, Any] | None:
        _ = ctx
        resp = self._describe_one(
            f"describe {resource_id}",
            lambda: self.ec2.describe_addresses(AllocationIds=[resource_id]),
        )
        items = resp.get("Addresses", []) if resp else []
        return self._attributes(items[0]) if items else None

    def update(
        self,
        ctx: EngineContext,
        resource_id: str,
        attrs: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        desired = ElasticIpAttributes.model_validate(attrs)
        if "tags" in attrs:
            self._update_tags(resource_id, desired.tags, prior.get("tags", {}))
        attrs_out = self.read(ctx, resource_id)
        if attrs_out is None:
            raise RuntimeError(f"Address {resource_id} disappeared during update")
        return attrs_out

    def delete(self, ctx: EngineContext, resource_id: str) -> None:
        if self.read(ctx, resource_id) is None:
            return
        # Still associated while a NAT gateway using it is being deleted.
        with provider_errors(f"release {resource_id}", transient={"InvalidIPAddress.InUse"}):
            self.ec2.release_address(AllocationId=resource_id)
        logger.info("Released %s", resource_id)


class NatGatewayHandler(TaggedEC2Handler):
    """CRUD handler for ``aws_nat_gateway``.

    Every attribute except tags is fixed at creation, so changes replace the
    gateway; new ones are created before old ones are destroyed so private
    subnets keep egress while routes are moved over.
    """

    metadata = TypeMetadata(
        resource_type="aws_nat_gateway",
        immutable=frozenset({"subnet_id", "allocation_id", "connectivity_type"}),
        computed=frozenset({"public_ip", "private_ip"}),
        compare={"tags": "exact"},
        replace_policy="create_before_destroy",
        model=NatGatewayAttributes,
    )
    resource_kind = "natgateway"

    def _resource_id(self, item: dict[str, Any]) -> str:
        return item["NatGatewayId"]

    def _attributes(self, item: dict[str, Any]) -> dict[str, Any]:
        addresses = item.get("NatGatewayAddresses") or [{}]
        return {
            "subnet_id": item["SubnetId"],
            "allocation_id": addresses[0].get("AllocationId"),
            "connectivity_type": item.get("ConnectivityType", "public"),
            "public_ip": addresses[0].get("PublicIp"),
            "private_ip": addresses[0].get("PrivateIp"),
            "tags": user_tags(item.get("Tags")),
        }

    def _find_by_address(self, ctx: EngineContext) -> list[dict[str, Any]]:
        with provider_errors(f"find {ctx.address}"):
            resp = self.ec2.describe_nat_gateways(Filter=self.address_filter(ctx))
        return [g for g in resp.get("NatGateways", []) if g.get("State") not in _GONE_NAT_STATES]

    def _describe(self, nat_id: str) -> dict[str, Any] | None:
        resp = self._describe_one(
            f"describe {nat_id}", lambda: self.ec2.describe_nat_gateways(NatGatewayIds=[nat_id])
        )
        items = resp.get("NatGateways", []) if resp else []
        return items[0] if items else None

    def _state(self, nat_id: str) -> str | None:
        item = self._describe(nat_id)
        if item is None or item.get("State") == "deleted":
            return None
        return item.get("State")

    def create(self, ctx: EngineContext, attrs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        desired = NatGatewayAttributes.model_validate(attrs)
        params: dict[str, Any] = {
            "SubnetId": desired.subnet_id,
            "ConnectivityType": desired.connectivity_type,
            "TagSpecifications": self._tag_specifications(ctx, desired.tags),
        }
        if desired.allocation_id:
            params["AllocationId"] = desired.allocation_id
        with provider_errors(f"create {ctx.address}"):
            nat_id = self.ec2.create_nat_gateway(**params)["NatGateway"]["NatGatewayId"]
        logger.info("Created NAT gateway %s for %s; waiting until available", nat_id, ctx.address)
        with self._finishing_create(ctx, nat_id):
            self._wait_available(nat_id)
            attrs_out = self.read(ctx, nat_id)
        if attrs_out is None:
            raise RuntimeError(f"NAT gateway {nat_id} disappeared right after creation")
        return nat_id, attrs_out

    def _wait_available(self, nat_id: str) -> None:
        self._wait_for(
            f"NAT gateway {nat_id}",
            lambda: self._state(nat_id),
            ready={"available"},
            failed={"failed"},
        )

    def read(self, ctx: EngineContext, resource_id: str) -> dict[str, Any] | None:
        _ = ctx
        item = self._describe(resource_id)
        if item is None or item.get("State") in _GONE_NAT_STATES:
            return None
        return self._attributes(item)

    def update(
        self,
        ctx: EngineContext,
        resource_id: str,
        attrs: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        desired = NatGatewayAttributes.model_validate(attrs)
        if "tags" in attrs:
            self._update_tags(resource_id, desired.tags, prior.get("tags", {}))
        # Also finishes a create that stopped while the gateway was pending.
        self._wait_available(resource_id)
        attrs_out = self.read(ctx, resource_id)
        if attrs_out is None:
            raise RuntimeError(f"NAT gateway {resource_id} disappeared during update")
        return attrs_out

    def delete(self, ctx: EngineContext, resource_id: str) -> None:
        _ = ctx
        if self._state(resource_id) is None:
            return
        with provider_errors(f"delete {resource_id}"):
            self.ec2.delete_nat_gateway(NatGatewayId=resource_id)
        self._wait_for(
            f"deletion of NAT gateway {resource_id}",
            lambda: self._state(resource_id),
            ready={None},
        )
        logger.info("Deleted NAT gateway %s", resource_id)
