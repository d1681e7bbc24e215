"""Network ACL handler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from infra_reconciler.engine.errors import PermanentProviderError
from infra_reconciler.engine.handlers import TypeMetadata
from infra_reconciler.providers.aws.base import TaggedEC2Handler, user_tags
from infra_reconciler.providers.aws.errors import provider_errors
from infra_reconciler.providers.aws.vpc import Cidr

if TYPE_CHECKING:
    from collections.abc import Iterable

    from infra_reconciler.engine.handlers import EngineContext

logger = logging.getLogger(__name__)

# Protocol names accepted in rules and the numbers EC2 reports.
_PROTOCOL_NUMBERS = {"-1": "-1", "tcp": "6", "udp": "17"}
_PROTOCOL_NAMES = {v: k for k, v in _PROTOCOL_NUMBERS.items()}

# Catch-all deny rule that EC2 adds to every ACL; it cannot be changed.
_DEFAULT_RULE = 32767


class AclRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rule_number: int = Field(ge=1, le=32766)
    protocol: Literal["-1", "tcp", "udp"]
    action: Literal["allow", "deny"]
    cidr_block: Cidr
    from_port: int | None = Field(default=None, ge=0, le=65535)
    to_port: int | None = Field(default=None, ge=0, le=65535)

    @model_validator(mode="after")
    def _check_ports(self) -> Self:
        if self.protocol == "-1":
            if self.from_port is not None or self.to_port is not None:
                raise ValueError("Ports are only allowed for 'tcp' and 'udp' rules")
            return self
        if self.from_port is None or self.to_port is None:
            raise ValueError(f"A '{self.protocol}' rule needs 'from_port' and 'to_port'")
        if self.from_port > self.to_port:
            raise ValueError("'from_port' must not be greater than 'to_port'")
        return self


def _unique_rule_numbers(rules: list[AclRule]) -> list[AclRule]:
    seen: set[int] = set()
    for rule in rules:
        if rule.rule_number in seen:
            raise ValueError(f"Duplicate rule_number {rule.rule_number}")
        seen.add(rule.rule_number)
    return rules


class NetworkAclAttributes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    vpc_id: str
    subnet_ids: list[str] = Field(default_factory=list)
    ingress: list[AclRule] = Field(default_factory=list)
    egress: list[AclRule] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_rules(self) -> Self:
        _unique_rule_numbers(self.ingress)
        _unique_rule_numbers(self.egress)
        return self


def _entry_params(rule: AclRule) -> dict[str, Any]:
    params: dict[str, Any] = {
        "RuleNumber": rule.rule_number,
        "Protocol": _PROTOCOL_NUMBERS[rule.protocol],
        "RuleAction": rule.action,
        "CidrBlock": rule.cidr_block,
    }
    if rule.from_port is not None:
        params["PortRange"] = {"From": rule.from_port, "To": rule.to_port}
    return params


def _rule(entry: dict[str, Any]) -> dict[str, Any]:
    protocol = _PROTOCOL_NAMES.get(entry["Protocol"], entry["Protocol"])
    rule: dict[str, Any] = {
        "rule_number": entry["RuleNumber"],
        "protocol": protocol,
        "action": entry["RuleAction"],
        "cidr_block": entry["CidrBlock"],
    }
    port_range = entry.get("PortRange")
    if port_range and protocol != "-1":
        rule["from_port"] = port_range["From"]
        rule["to_port"] = port_range["To"]
    return rule


class NetworkAclHandler(TaggedEC2Handler):
    """CRUD handler for ``aws_network_acl`` with inline rules and subnet associations.

    A subnet always belongs to exactly one ACL, so removing a subnet from
    ``subnet_ids`` (or deleting the ACL) hands it back to the VPC's default
    ACL. IPv6 entries and the catch-all deny rule are not managed.
    """

    metadata = TypeMetadata(
        resource_type="aws_network_acl",
        immutable=frozenset({"vpc_id"}),
        compare={"subnet_ids": "set", "ingress": "set", "egress": "set", "tags": "exact"},
        model=NetworkAclAttributes,
    )
    resource_kind = "network-acl"

    def _resource_id(self, item: dict[str, Any]) -> str:
        return item["NetworkAclId"]

    def _attributes(self, item: dict[str, Any]) -> dict[str, Any]:
        rules: dict[bool, list[dict[str, Any]]] = {True: [], False: []}
        for entry in item.get("Entries", []):
            if entry["RuleNumber"] == _DEFAULT_RULE or "CidrBlock" not in entry:
                continue
            rules[bool(entry["Egress"])].append(_rule(entry))
        for direction in rules.values():
            direction.sort(key=lambda r: r["rule_number"])
        return {
            "vpc_id": item["VpcId"],
            "subnet_ids": sorted(a["SubnetId"] for a in item.get("Associations", [])),
            "ingress": rules[False],
            "egress": rules[True],
            "tags": user_tags(item.get("Tags")),
        }

    def _find_by_address(self, ctx: EngineContext) -> list[dict[str, Any]]:
        with provider_errors(f"find {ctx.address}"):
            resp = self.ec2.describe_network_acls(Filters=self.address_filter(ctx))
        return resp.get("NetworkAcls", [])

    def _sync_rules(
        self, acl_id: str, *, egress: bool, want: list[AclRule], have: list[dict[str, Any]]
    ) -> None:
        wanted = {r.rule_number: r for r in want}
        current = {r["rule_number"]: r for r in have}
        direction = "egress" if egress else "ingress"
        with provider_errors(f"update {direction} rules of {acl_id}"):
            for number in sorted(set(current) - set(wanted)):
                self.ec2.delete_network_acl_entry(
                    NetworkAclId=acl_id, RuleNumber=number, Egress=egress
                )
            for number, rule in sorted(wanted.items()):
                if number not in current:
                    self.ec2.create_network_acl_entry(
                        NetworkAclId=acl_id, Egress=egress, **_entry_params(rule)
                    )
                elif current[number] != rule.model_dump(exclude_none=True):
                    self.ec2.replace_network_acl_entry(
                        NetworkAclId=acl_id, Egress=egress, **_entry_params(rule)
                    )

    def _association_of(self, subnet_id: str) -> str:
        with provider_errors(f"find network ACL of {subnet_id}"):
            resp = self.ec2.describe_network_acls(
                Filters=[{"Name": "association.subnet-id", "Values": [subnet_id]}]
            )
        for acl in resp.get("NetworkAcls", []):
            for assoc in acl.get("Associations", []):
                if assoc.get("SubnetId") == subnet_id:
                    return assoc["NetworkAclAssociationId"]
        raise PermanentProviderError(f"Subnet {subnet_id} has no network ACL association")

    def _default_acl(self, vpc_id: str) -> str:
        with provider_errors(f"find default network ACL of {vpc_id}"):
            resp = self.ec2.describe_network_acls(
                Filters=[
                    {"Name": "vpc-id", "Values": [vpc_id]},
                    {"Name": "default", "Values": ["true"]},
                ]
            )
        acls = resp.get("NetworkAcls", [])
        if not acls:
            raise PermanentProviderError(f"VPC {vpc_id} has no default network ACL")
        return acls[0]["NetworkAclId"]

    def _move_subnets(self, subnet_ids: Iterable[str], acl_id: str) -> None:
        for subnet_id in sorted(subnet_ids):
            assoc_id = self._association_of(subnet_id)
            with provider_errors(f"associate {subnet_id} with {acl_id}"):
                self.ec2.replace_network_acl_association(
                    AssociationId=assoc_id, NetworkAclId=acl_id
                )
            logger.info("Associated %s with network ACL %s", subnet_id, acl_id)

    def create(self, ctx: EngineContext, attrs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        desired = NetworkAclAttributes.model_validate(attrs)
        with provider_errors(f"create {ctx.address}"):
            resp = self.ec2.create_network_acl(
                VpcId=desired.vpc_id,
                TagSpecifications=self._tag_specifications(ctx, desired.tags),
            )
        acl_id = resp["NetworkAcl"]["NetworkAclId"]
        logger.info("Created network ACL %s for %s", acl_id, ctx.address)
        with self._finishing_create(ctx, acl_id):
            self._sync_rules(acl_id, egress=False, want=desired.ingress, have=[])
            self._sync_rules(acl_id, egress=True, want=desired.egress, have=[])
            self._move_subnets(desired.subnet_ids, acl_id)
            return acl_id, self._must_read(ctx, acl_id)

    def _must_read(self, ctx: EngineContext, acl_id: str) -> dict[str, Any]:
        attrs = self.read(ctx, acl_id)
        if attrs is None:
            raise RuntimeError(f"Network ACL {acl_id} disappeared right after it was written")
        return attrs

    def read(self, ctx: EngineContext, resource_id: str) -> dict[str, Any] | None:
        _ = ctx
        resp = self._describe_one(
            f"describe {resource_id}",
            lambda: self.ec2.describe_network_acls(NetworkAclIds=[resource_id]),
        )
        items = resp.get("NetworkAcls", []) if resp else []
        return self._attributes(items[0]) if items else None

    def update(
        self,
        ctx: EngineContext,
        resource_id: str,
        attrs: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        desired = NetworkAclAttributes.model_validate(attrs)
        if "ingress" in attrs:
            self._sync_rules(
                resource_id, egress=False, want=desired.ingress, have=prior.get("ingress", [])
            )
        if "egress" in attrs:
            self._sync_rules(
                resource_id, egress=True, want=desired.egress, have=prior.get("egress", [])
            )
        if "subnet_ids" in attrs:
            want = set(desired.subnet_ids)
            have = set(prior.get("subnet_ids", []))
            if have - want:
                self._move_subnets(have - want, self._default_acl(desired.vpc_id))
            self._move_subnets(want - have, resource_id)
        if "tags" in attrs:
            self._update_tags(resource_id, desired.tags, prior.get("tags", {}))
        return self._must_read(ctx, resource_id)

    def delete(self, ctx: EngineContext, resource_id: str) -> None:
        current = self.read(ctx, resource_id)
        if current is None:
            return
        if current["subnet_ids"]:
            self._move_subnets(current["subnet_ids"], self._default_acl(current["vpc_id"]))
        with provider_errors(f"delete {resource_id}", transient={"DependencyViolation"}):
            self.ec2.delete_network_acl(NetworkAclId=resource_id)
        logger.info("Deleted network ACL %s", resource_id)
