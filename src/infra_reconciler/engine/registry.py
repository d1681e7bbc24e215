"""Resource type registry for provider dispatch."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from infra_reconciler.engine.errors import UnknownResourceTypeError

if TYPE_CHECKING:
    from infra_reconciler.engine.handlers import ResourceProvider, TypeMetadata


@dataclass(frozen=True)
class ResourceTypeRegistration:
    resource_type: str
    handler: ResourceProvider

    @property
    def metadata(self) -> TypeMetadata:
        return self.handler.metadata


class ResourceTypeRegistry:
    """Registry mapping resource_type -> provider."""

    def __init__(self) -> None:
        self._registrations: dict[str, ResourceTypeRegistration] = {}

    def register(self, handler: ResourceProvider) -> None:
        metadata = getattr(handler, "metadata", None)
        resource_type = getattr(metadata, "resource_type", None)
        if not isinstance(resource_type, str) or not resource_type:
            raise ValueError("Provider must expose metadata with a non-empty `resource_type`")

        if resource_type in self._registrations:
            raise ValueError(f"Resource type already registered: {resource_type}")

        self._registrations[resource_type] = ResourceTypeRegistration(
            resource_type=resource_type,
            handler=handler,
        )

    def get(self, resource_type: str) -> ResourceTypeRegistration:
        try:
            return self._registrations[resource_type]
        except KeyError as e:
            raise UnknownResourceTypeError(resource_type) from e

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._registrations

    def resource_types(self) -> list[str]:
        return sorted(self._registrations)
