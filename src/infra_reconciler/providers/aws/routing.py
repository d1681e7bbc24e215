"""Route table and route table association handlers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from infra_reconciler.engine.handlers import TypeMetadata
from infra_reconciler.providers.aws.base import EC2Handler, TaggedEC2Handler, user_tags
from infra_reconciler.providers.aws.errors import provider_errors

if TYPE_CHECKING:
    from infra_reconciler.engine.handlers import EngineContext

logger = logging.getLogger(__name__)

_TARGET_PARAMS = {"gateway_id": "GatewayId", "nat_gateway_id": "NatGatewayId"}


class Route(BaseModel):
    model_config = ConfigDict(extra="forbid")

    destination_cidr_block: str
    gateway_id: str | None = None
    nat_gateway_id: str | None = None

    @model_validator(mode="after")
    def _check_single_target(self) -> Self:
        targets = [t for t in _TARGET_PARAMS if getattr(self, t) is not None]
        if len(targets) != 1:
            msg = "A route needs exactly one of 'gateway_id' or 'nat_gateway_id'"
            raise ValueError(msg)
        return self


class RouteTableAttributes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    vpc_id: str
    routes: list[Route] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)


class RouteTableAssociationAttributes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    route_table_id: str
    subnet_id: str


def _route_params(route: Route) -> dict[str, Any]:
    params: dict[str, Any] = {"DestinationCidrBlock": route.destination_cidr_block}
    for field, param in _TARGET_PARAMS.items():
        value = getattr(route, field)
        if value is not None:
            params[param] = value
    return params


class RouteTableHandler(TaggedEC2Handler):
    """CRUD handler for ``aws_route_table`` with inline IPv4 routes.

    The implicit ``local`` route is not managed. Routes are compared as a set.
    """

    metadata = TypeMetadata(
        resource_type="aws_route_table",
        immutable=frozenset({"vpc_id"}),
        compare={"routes": "set", "tags": "exact"},
        model=RouteTableAttributes,
    )
    resource_kind = "route-table"

    def _resource_id(self, item: dict[str, Any]) -> str:
        return item["RouteTableId"]

    def _attributes(self, item: dict[str, Any]) -> dict[str, Any]:
        routes: list[dict[str, Any]] = []
        for r in item.get("Routes", []):
            if r.get("GatewayId") == "local" or "DestinationCidrBlock" not in r:
                continue
            route: dict[str, Any] = {"destination_cidr_block": r["DestinationCidrBlock"]}
            for field, param in _TARGET_PARAMS.items():
                if r.get(param):
                    route[field] = r[param]
            routes.append(route)
        routes.sort(key=lambda x: x["destination_cidr_block"])
        return {"vpc_id": item["VpcId"], "routes": routes, "tags": user_tags(item.get("Tags"))}

    def _find_by_address(self, ctx: EngineContext) -> list[dict[str, Any]]:
        with provider_errors(f"find {ctx.address}"):
            resp = self.ec2.describe_route_tables(Filters=self.address_filter(ctx))
        return resp.get("RouteTables", [])

    def create(self, ctx: EngineContext, attrs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        desired = RouteTableAttributes.model_validate(attrs)
        with provider_errors(f"create {ctx.address}"):
            resp = self.ec2.create_route_table(
                VpcId=desired.vpc_id,
                TagSpecifications=self._tag_specifications(ctx, desired.tags),
            )
        rtb_id = resp["RouteTable"]["RouteTableId"]
        logger.info("Created route table %s for %s", rtb_id, ctx.address)
        with self._finishing_create(ctx, rtb_id):
            with provider_errors(f"add routes to {rtb_id}"):
                for route in desired.routes:
                    self.ec2.create_route(RouteTableId=rtb_id, **_route_params(route))
            return rtb_id, self._must_read(ctx, rtb_id)

    def _must_read(self, ctx: EngineContext, rtb_id: str) -> dict[str, Any]:
        attrs = self.read(ctx, rtb_id)
        if attrs is None:
            raise RuntimeError(f"Route table {rtb_id} disappeared right after it was written")
        return attrs

    def read(self, ctx: EngineContext, resource_id: str) -> dict[str, Any] | None:
        _ = ctx
        resp = self._describe_one(
            f"describe {resource_id}",
            lambda: self.ec2.describe_route_tables(RouteTableIds=[resource_id]),
        )
        items = resp.get("RouteTables", []) if resp else []
        return self._attributes(items[0]) if items else None

    def update(
        self,
        ctx: EngineContext,
        resource_id: str,
        attrs: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        desired = RouteTableAttributes.model_validate(attrs)
        if "routes" in attrs:
            want = {r.destination_cidr_block: r for r in desired.routes}
            have = {
                r["destination_cidr_block"]: Route.model_validate(r)
                for r in prior.get("routes", [])
            }
            with provider_errors(f"update routes of {resource_id}"):
                for dest in sorted(set(have) - set(want)):
                    self.ec2.delete_route(RouteTableId=resource_id, DestinationCidrBlock=dest)
                for dest, route in sorted(want.items()):
                    if dest not in have:
                        self.ec2.create_route(RouteTableId=resource_id, **_route_params(route))
                    elif have[dest] != route:
                        self.ec2.replace_route(RouteTableId=resource_id, **_route_params(route))
        if "tags" in attrs:
            self._update_tags(resource_id, desired.tags, prior.get("tags", {}))
        return self._must_read(ctx, resource_id)

    def delete(self, ctx: EngineContext, resource_id: str) -> None:
        if self.read(ctx, resource_id) is None:
            return
        with provider_errors(f"delete {resource_id}", transient={"DependencyViolation"}):
            self.ec2.delete_route_table(RouteTableId=resource_id)
        logger.info("Deleted route table %s", resource_id)


class RouteTableAssociationHandler(EC2Handler):
    """CRUD handler for ``aws_route_table_association`` (subnet to route table).

    Associations carry no tags, so an interrupted create cannot be looked up.
    """

    metadata = TypeMetadata(
        resource_type="aws_route_table_association",
        immutable=frozenset({"route_table_id", "subnet_id"}),
        model=RouteTableAssociationAttributes,
    )

    def create(self, ctx: EngineContext, attrs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        desired = RouteTableAssociationAttributes.model_validate(attrs)
        with provider_errors(f"create {ctx.address}"):
            resp = self.ec2.associate_route_table(
                RouteTableId=desired.route_table_id, SubnetId=desired.subnet_id
            )
        assoc_id = resp["AssociationId"]
        logger.info(
            "Associated %s with %s (%s)", desired.subnet_id, desired.route_table_id, assoc_id
        )
        return assoc_id, {"route_table_id": desired.route_table_id, "subnet_id": desired.subnet_id}

    def read(self, ctx: EngineContext, resource_id: str) -> dict[str, Any] | None:
        _ = ctx
        resp = self._describe_one(
            f"describe {resource_id}",
            lambda: self.ec2.describe_route_tables(
                Filters=[
                    {"Name": "association.route-table-association-id", "Values": [resource_id]}
                ]
            ),
        )
        for table in resp.get("RouteTables", []) if resp else []:
            for assoc in table.get("Associations", []):
                if assoc.get("RouteTableAssociationId") == resource_id:
                    return {
                        "route_table_id": assoc["RouteTableId"],
                        "subnet_id": assoc.get("SubnetId"),
                    }
        return None

    def update(
        self,
        ctx: EngineContext,
        resource_id: str,
        attrs: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        # Both attributes are immutable; there is nothing to update in place.
        _ = (ctx, attrs, resource_id)
        return dict(prior)

    def delete(self, ctx: EngineContext, resource_id: str) -> None:
        if self.read(ctx, resource_id) is None:
            return
        with provider_errors(f"disassociate {resource_id}"):
            self.ec2.disassociate_route_table(AssociationId=resource_id)
        logger.info("Removed route table association %s", resource_id)
