"""Desired resource declarations."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from infra_reconciler.resources.refs import Ref, collect_refs, decode_refs, encode_refs


class Lifecycle(BaseModel):
    """Per-resource overrides of the type's lifecycle policy."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    create_before_destroy: bool | None = None
    prevent_destroy: bool = False


class ResourceSpec(BaseModel):
    """A single desired resource.

    Specs are pure data. ``attributes`` values may be plain JSON values or
    ``Ref`` objects pointing at attributes of other resources; the textual
    form ``${type.name.attr}`` is accepted on input and produced on output.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    resource_type: str = Field(pattern=r"^[A-Za-z][A-Za-z0-9_]*$")
    name: str = Field(pattern=r"^[A-Za-z0-9_]+$")
    index: int | None = Field(default=None, ge=0)
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)

    @field_validator("attributes", mode="before")
    @classmethod
    def _decode_refs(cls, v: Any) -> Any:
        return decode_refs(v) if isinstance(v, dict) else v

    @field_serializer("attributes")
    def _encode_refs(self, v: dict[str, Any]) -> dict[str, Any]:
        return encode_refs(v)

    @property
    def address(self) -> str:
        """Unique address for this resource (e.g., 'aws_subnet.public[0]')."""
        base = f"{self.resource_type}.{self.name}"
        return base if self.index is None else f"{base}[{self.index}]"

    def references(self) -> list[Ref]:
        """References declared in attribute values, in document order."""
        return collect_refs(self.attributes)

    def dependency_addresses(self) -> list[str]:
        """Explicit ``depends_on`` plus referenced addresses, de-duplicated."""
        deps = list(self.depends_on)
        for ref in self.references():
            if ref.address not in deps:
                deps.append(ref.address)
        return deps

    def fingerprint(self) -> str:
        """Stable content hash of the declaration that produced a resource."""
        payload = json.dumps(
            {
                "resource_type": self.resource_type,
                "attributes": encode_refs(self.attributes),
                "depends_on": sorted(self.depends_on),
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
