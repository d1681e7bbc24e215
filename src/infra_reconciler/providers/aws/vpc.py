"""VPC and subnet handlers."""

from __future__ import annotations

import ipaddress
import logging
from typing import TYPE_CHECKING, Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from infra_reconciler.engine.handlers import TypeMetadata
from infra_reconciler.providers.aws.base import TaggedEC2Handler, user_tags
from infra_reconciler.providers.aws.errors import provider_errors

if TYPE_CHECKING:
    from infra_reconciler.engine.handlers import EngineContext

logger = logging.getLogger(__name__)


def _cidr(v: str) -> str:
    ipaddress.ip_network(v, strict=True)
    return v


Cidr = Annotated[str, AfterValidator(_cidr)]


class VpcAttributes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cidr_block: Cidr
    enable_dns_support: bool = True
    enable_dns_hostnames: bool = False
    tags: dict[str, str] = Field(default_factory=dict)


class SubnetAttributes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    vpc_id: str
    cidr_block: Cidr
    availability_zone: str | None = None
    map_public_ip_on_launch: bool = False
    tags: dict[str, str] = Field(default_factory=dict)


class VpcHandler(TaggedEC2Handler):
    """CRUD handler for ``aws_vpc``."""

    metadata = TypeMetadata(
        resource_type="aws_vpc",
        immutable=frozenset({"cidr_block"}),
        computed=frozenset({"owner_id", "main_route_table_id"}),
        compare={"tags": "exact"},
        model=VpcAttributes,
    )
    resource_kind = "vpc"

    def _resource_id(self, item: dict[str, Any]) -> str:
        return item["VpcId"]

    def _dns_attribute(self, vpc_id: str, name: str) -> bool:
        key = name[0].upper() + name[1:]
        resp = self.ec2.describe_vpc_attribute(VpcId=vpc_id, Attribute=name)
        return bool(resp[key]["Value"])

    def _main_route_table(self, vpc_id: str) -> str | None:
        resp = self.ec2.describe_route_tables(
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "association.main", "Values": ["true"]},
            ]
        )
        tables = resp.get("RouteTables", [])
        return tables[0]["RouteTableId"] if tables else None

    def _attributes(self, item: dict[str, Any]) -> dict[str, Any]:
        vpc_id = item["VpcId"]
        with provider_errors(f"describe attributes of {vpc_id}"):
            return {
                "cidr_block": item["CidrBlock"],
                "enable_dns_support": self._dns_attribute(vpc_id, "enableDnsSupport"),
                "enable_dns_hostnames": self._dns_attribute(vpc_id, "enableDnsHostnames"),
                "tags": user_tags(item.get("Tags")),
                "owner_id": item.get("OwnerId"),
                "main_route_table_id": self._main_route_table(vpc_id),
            }

    def _find_by_address(self, ctx: EngineContext) -> list[dict[str, Any]]:
        with provider_errors(f"find {ctx.address}"):
            return self.ec2.describe_vpcs(Filters=self.address_filter(ctx)).get("Vpcs", [])

    def _set_dns(self, vpc_id: str, desired: VpcAttributes, prior: dict[str, Any]) -> None:
        # modify_vpc_attribute accepts one attribute per call
        with provider_errors(f"modify {vpc_id}"):
            if prior.get("enable_dns_support") != desired.enable_dns_support:
                self.ec2.modify_vpc_attribute(
                    VpcId=vpc_id, EnableDnsSupport={"Value": desired.enable_dns_support}
                )
            if prior.get("enable_dns_hostnames") != desired.enable_dns_hostnames:
                self.ec2.modify_vpc_attribute(
                    VpcId=vpc_id, EnableDnsHostnames={"Value": desired.enable_dns_hostnames}
                )

    def create(self, ctx: EngineContext, attrs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        desired = VpcAttributes.model_validate(attrs)
        with provider_errors(f"create {ctx.address}"):
            resp = self.ec2.create_vpc(
                CidrBlock=desired.cidr_block,
                TagSpecifications=self._tag_specifications(ctx, desired.tags),
            )
        vpc_id = resp["Vpc"]["VpcId"]
        logger.info("Created VPC %s for %s", vpc_id, ctx.address)
        with self._finishing_create(ctx, vpc_id):
            self._set_dns(
                vpc_id, desired, {"enable_dns_support": True, "enable_dns_hostnames": False}
            )
            return vpc_id, self._read_existing(ctx, vpc_id)

    def _read_existing(self, ctx: EngineContext, vpc_id: str) -> dict[str, Any]:
        attrs = self.read(ctx, vpc_id)
        if attrs is None:
            raise RuntimeError(f"VPC {vpc_id} disappeared right after it was written")
        return attrs

    def read(self, ctx: EngineContext, resource_id: str) -> dict[str, Any] | None:
        _ = ctx
        resp = self._describe_one(
            f"describe {resource_id}", lambda: self.ec2.describe_vpcs(VpcIds=[resource_id])
        )
        vpcs = resp.get("Vpcs", []) if resp else []
        if not vpcs:
            return None
        return self._attributes(vpcs[0])

    def update(
        self,
        ctx: EngineContext,
        resource_id: str,
        attrs: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        desired = VpcAttributes.model_validate(attrs)
        self._set_dns(resource_id, desired, prior)
        if "tags" in attrs:
            self._update_tags(resource_id, desired.tags, prior.get("tags", {}))
        return self._read_existing(ctx, resource_id)

    def delete(self, ctx: EngineContext, resource_id: str) -> None:
        if self.read(ctx, resource_id) is None:
            return
        # Subnets and gateways are torn down asynchronously; EC2 answers
        # DependencyViolation until they are gone.
        with provider_errors(f"delete {resource_id}", transient={"DependencyViolation"}):
            self.ec2.delete_vpc(VpcId=resource_id)
        logger.info("Deleted VPC %s", resource_id)


class SubnetHandler(TaggedEC2Handler):
    """CRUD handler for ``aws_subnet``."""

    metadata = TypeMetadata(
        resource_type="aws_subnet",
        immutable=frozenset({"vpc_id", "cidr_block", "availability_zone"}),
        computed=frozenset({"availability_zone_id"}),
        compare={"tags": "exact"},
        model=SubnetAttributes,
    )
    resource_kind = "subnet"

    def _resource_id(self, item: dict[str, Any]) -> str:
        return item["SubnetId"]

    def _attributes(self, item: dict[str, Any]) -> dict[str, Any]:
        return {
            "vpc_id": item["VpcId"],
            "cidr_block": item["CidrBlock"],
            "availability_zone": item["AvailabilityZone"],
            "availability_zone_id": item.get("AvailabilityZoneId"),
            "map_public_ip_on_launch": bool(item.get("MapPublicIpOnLaunch", False)),
            "tags": user_tags(item.get("Tags")),
        }

    def _find_by_address(self, ctx: EngineContext) -> list[dict[str, Any]]:
        with provider_errors(f"find {ctx.address}"):
            return self.ec2.describe_subnets(Filters=self.address_filter(ctx)).get("Subnets", [])

    def create(self, ctx: EngineContext, attrs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        desired = SubnetAttributes.model_validate(attrs)
        params: dict[str, Any] = {
            "VpcId": desired.vpc_id,
            "CidrBlock": desired.cidr_block,
            "TagSpecifications": self._tag_specifications(ctx, desired.tags),
        }
        if desired.availability_zone:
            params["AvailabilityZone"] = desired.availability_zone
        with provider_errors(f"create {ctx.address}"):
            subnet = self.ec2.create_subnet(**params)["Subnet"]
        subnet_id = subnet["SubnetId"]
        logger.info("Created subnet %s for %s", subnet_id, ctx.address)

        with self._finishing_create(ctx, subnet_id):
            if desired.map_public_ip_on_launch:
                with provider_errors(f"modify {subnet_id}"):
                    self.ec2.modify_subnet_attribute(
                        SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True}
                    )
            attrs_out = self.read(ctx, subnet_id)
        if attrs_out is None:
            raise RuntimeError(f"Subnet {subnet_id} disappeared right after creation")
        return subnet_id, attrs_out

    def read(self, ctx: EngineContext, resource_id: str) -> dict[str, Any] | None:
        _ = ctx
        resp = self._describe_one(
            f"describe {resource_id}", lambda: self.ec2.describe_subnets(SubnetIds=[resource_id])
        )
        subnets = resp.get("Subnets", []) if resp else []
        return self._attributes(subnets[0]) if subnets else None

    def update(
        self,
        ctx: EngineContext,
        resource_id: str,
        attrs: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        desired = SubnetAttributes.model_validate(attrs)
        if prior.get("map_public_ip_on_launch") != desired.map_public_ip_on_launch:
            with provider_errors(f"modify {resource_id}"):
                self.ec2.modify_subnet_attribute(
                    SubnetId=resource_id,
                    MapPublicIpOnLaunch={"Value": desired.map_public_ip_on_launch},
                )
        if "tags" in attrs:
            self._update_tags(resource_id, desired.tags, prior.get("tags", {}))
        attrs_out = self.read(ctx, resource_id)
        if attrs_out is None:
            raise RuntimeError(f"Subnet {resource_id} disappeared during update")
        return attrs_out

    def delete(self, ctx: EngineContext, resource_id: str) -> None:
        if self.read(ctx, resource_id) is None:
            return
        with provider_errors(f"delete {resource_id}", transient={"DependencyViolation"}):
            self.ec2.delete_subnet(SubnetId=resource_id)
        logger.info("Deleted subnet %s", resource_id)
