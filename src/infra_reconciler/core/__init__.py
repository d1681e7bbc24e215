"""State models for infra-reconciler."""

from infra_reconciler.core.state import PendingOperation, ResourceState, State

__all__ = ["PendingOperation", "ResourceState", "State"]
