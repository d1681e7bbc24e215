"""AWS VPC provider plugin (EC2 network resources via boto3)."""

from __future__ import annotations

from typing import TYPE_CHECKING

from infra_reconciler.providers.aws.acl import NetworkAclHandler
from infra_reconciler.providers.aws.flow_logs import FlowLogHandler
from infra_reconciler.providers.aws.gateways import (
    ElasticIpHandler,
    InternetGatewayHandler,
    NatGatewayHandler,
)
from infra_reconciler.providers.aws.provider import AWSProvider
from infra_reconciler.providers.aws.routing import RouteTableAssociationHandler, RouteTableHandler
from infra_reconciler.providers.aws.vpc import SubnetHandler, VpcHandler

if TYPE_CHECKING:
    from infra_reconciler.engine.registry import ResourceTypeRegistry

HANDLERS = (
    VpcHandler,
    SubnetHandler,
    InternetGatewayHandler,
    ElasticIpHandler,
    NatGatewayHandler,
    RouteTableHandler,
    RouteTableAssociationHandler,
    NetworkAclHandler,
    FlowLogHandler,
)

__all__ = [
    "HANDLERS",
    "AWSProvider",
    "ElasticIpHandler",
    "FlowLogHandler",
    "InternetGatewayHandler",
    "NatGatewayHandler",
    "NetworkAclHandler",
    "RouteTableAssociationHandler",
    "RouteTableHandler",
    "SubnetHandler",
    "VpcHandler",
    "register",
]


def register(registry: ResourceTypeRegistry, provider: AWSProvider) -> None:
    """Register every AWS resource type, sharing one provider connection."""
    for handler_cls in HANDLERS:
        registry.register(handler_cls(provider))
