"""Plan and apply engine."""

from infra_reconciler.engine.engine import ReconcileOutcome, Reconciler
from infra_reconciler.engine.errors import (
    ApplyCanceled,
    ApplyError,
    CyclicDependencyError,
    DuplicateAddressError,
    EngineError,
    PartialCreateError,
    PermanentProviderError,
    ProviderError,
    ReconciliationRequiredError,
    ScheduleDeadlockError,
    StalePlanError,
    StaleStateError,
    StateError,
    StateVersionError,
    StoreLockedError,
    TransientProviderError,
    UnknownResourceTypeError,
    UnresolvedReferenceError,
    ValidationError,
)
from infra_reconciler.engine.executor import RetryPolicy
from infra_reconciler.engine.handlers import (
    EngineContext,
    ResourceProvider,
    SupportsLookup,
    TypeMetadata,
)
from infra_reconciler.engine.registry import ResourceTypeRegistration, ResourceTypeRegistry
from infra_reconciler.engine.types import Action, ApplyResult, Plan, PlanMetadata, ResourceChange

__all__ = [
    "Action",
    "ApplyCanceled",
    "ApplyError",
    "ApplyResult",
    "CyclicDependencyError",
    "DuplicateAddressError",
    "EngineContext",
    "EngineError",
    "PartialCreateError",
    "PermanentProviderError",
    "Plan",
    "PlanMetadata",
    "ProviderError",
    "ReconcileOutcome",
    "Reconciler",
    "ReconciliationRequiredError",
    "ResourceChange",
    "ResourceProvider",
    "ResourceTypeRegistration",
    "ResourceTypeRegistry",
    "RetryPolicy",
    "ScheduleDeadlockError",
    "StalePlanError",
    "StaleStateError",
    "StateError",
    "StateVersionError",
    "StoreLockedError",
    "SupportsLookup",
    "TransientProviderError",
    "TypeMetadata",
    "UnknownResourceTypeError",
    "UnresolvedReferenceError",
    "ValidationError",
]
