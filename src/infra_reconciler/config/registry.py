"""Default resource type registry factory."""

from __future__ import annotations

from typing import TYPE_CHECKING

from infra_reconciler.engine.registry import ResourceTypeRegistry
from infra_reconciler.providers import aws

if TYPE_CHECKING:
    from infra_reconciler.providers.aws import AWSProvider


def default_registry(provider: AWSProvider) -> ResourceTypeRegistry:
    """Create a fresh registry with all built-in resource types and handlers."""
    registry = ResourceTypeRegistry()
    aws.register(registry, provider)
    return registry
