"""Engine-facing provider interfaces.

Providers are looked up by resource type in a ``ResourceTypeRegistry``. Any
object with a ``metadata`` attribute and the four CRUD methods below satisfies
``ResourceProvider``; no base class is required.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Protocol, TypeAlias, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping

    from pydantic import BaseModel

CompareStrategy: TypeAlias = Literal["partial", "exact", "set"]
ReplacePolicy: TypeAlias = Literal["destroy_before_create", "create_before_destroy"]


@dataclass(frozen=True)
class EngineContext:
    """Context passed to providers for a single operation."""

    address: str
    resource_type: str
    name: str


@dataclass(frozen=True)
class TypeMetadata:
    """Static facts about a resource type.

    Attributes:
        resource_type: Type tag, e.g. ``"aws_subnet"``.
        immutable: Attributes whose change forces a replace.
        computed: Attributes assigned by the provider (always includes ``id``).
        compare: Per-attribute comparison strategy:

            - ``"partial"`` (default): for dicts, only keys declared in desired count
            - ``"exact"``: strict equality
            - ``"set"``: order-insensitive list comparison
        replace_policy: Ordering used when a replace is required.
        model: Optional pydantic model used to validate desired attributes.
    """

    resource_type: str
    immutable: frozenset[str] = frozenset()
    computed: frozenset[str] = frozenset()
    compare: Mapping[str, CompareStrategy] = field(default_factory=dict)
    replace_policy: ReplacePolicy = "destroy_before_create"
    model: type[BaseModel] | None = None

    def has_attribute(self, name: str) -> bool:
        """Whether *name* is a known attribute of this type."""
        if name == "id" or name in self.computed or name in self.immutable:
            return True
        return self.model is not None and name in self.model.model_fields


class ResourceProvider(Protocol):
    """Capability interface implemented once per resource type."""

    metadata: TypeMetadata

    def create(self, ctx: EngineContext, attrs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create the resource. Return the provider id and stored attributes."""
        ...

    def read(self, ctx: EngineContext, resource_id: str) -> dict[str, Any] | None:
        """Read the resource. Return ``None`` if it no longer exists."""
        ...

    def update(
        self,
        ctx: EngineContext,
        resource_id: str,
        attrs: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        """Update mutable attributes in place. Return stored attributes."""
        ...

    def delete(self, ctx: EngineContext, resource_id: str) -> None:
        """Delete the resource. Deleting a missing resource is not an error."""
        ...


@runtime_checkable
class SupportsLookup(Protocol):
    """Optional capability: find a resource created by an interrupted apply."""

    def lookup(
        self, ctx: EngineContext, *, exclude: Collection[str] = ()
    ) -> tuple[str, dict[str, Any]] | None:
        """Find the resource created for *ctx*, skipping ids in *exclude*."""
        ...
