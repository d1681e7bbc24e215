"""Engine error types."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from infra_reconciler.engine.types import ApplyResult


class EngineError(Exception):
    """Base exception for engine errors."""


class UnknownResourceTypeError(EngineError):
    """Raised when a resource type has no registration/handler."""

    def __init__(self, resource_type: str) -> None:
        super().__init__(f"Unknown resource type: {resource_type}")
        self.resource_type = resource_type


class DuplicateAddressError(EngineError):
    """Raised when multiple desired resources share the same address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Duplicate resource address: {address}")
        self.address = address


class ValidationError(EngineError):
    """One or more resources failed plan validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        msg = "Validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        super().__init__(msg)


class UnresolvedReferenceError(ValidationError):
    """A reference points at a resource or attribute that does not exist."""

    def __init__(self, address: str, reference: str, reason: str) -> None:
        self.address = address
        self.reference = reference
        super().__init__([f"Resource '{address}' references '{reference}': {reason}"])


class CyclicDependencyError(EngineError):
    """Raised when resource dependencies contain a cycle."""

    def __init__(self, addresses: list[str]) -> None:
        msg = "Dependency cycle detected"
        if addresses:
            msg += f": {' -> '.join(addresses)}"
        super().__init__(msg)
        self.addresses = addresses


class ScheduleDeadlockError(EngineError):
    """Raised when apply operations cannot be ordered."""

    def __init__(self, operations: list[str]) -> None:
        super().__init__(
            "Unsatisfiable operation ordering between: " + ", ".join(operations)
        )
        self.operations = operations


class ProviderError(EngineError):
    """Raised by resource handlers when a provider call fails."""


class TransientProviderError(ProviderError):
    """A provider failure worth retrying (timeouts, throttling, 5xx)."""


class PermanentProviderError(ProviderError):
    """A provider failure that retrying will not fix (validation, permissions, conflicts)."""


class PartialCreateError(ProviderError):
    """A create failed after the resource itself came into existence.

    Raised by providers whose create takes several calls. ``resource_id`` is
    the resource left behind; ``resumable`` is true when the step that failed
    is worth finishing through ``read`` and ``update``.
    """

    def __init__(self, resource_id: str, message: str, *, resumable: bool) -> None:
        super().__init__(f"{message} (created {resource_id})")
        self.resource_id = resource_id
        self.resumable = resumable


class StateError(EngineError):
    """Base class for state file problems."""


class StoreLockedError(StateError):
    """Raised when another invocation holds the state lock."""


class StaleStateError(StateError):
    """Raised when writing back a state that another invocation has since changed."""


class StateVersionError(StateError):
    """Raised when the state file was written by an incompatible format version."""

    def __init__(self, found: int, supported: int) -> None:
        super().__init__(
            f"State file format version {found} is not supported (expected <= {supported})"
        )
        self.found = found
        self.supported = supported


class ReconciliationRequiredError(StateError):
    """Raised when write-ahead markers from an interrupted apply are present."""

    def __init__(self, addresses: list[str]) -> None:
        super().__init__(
            "Operations of unknown outcome found for: "
            + ", ".join(addresses)
            + "; run `reconciler reconcile` before planning"
        )
        self.addresses = addresses


class StalePlanError(EngineError):
    """Raised when applying a plan against a different state than planned."""


class ApplyError(EngineError):
    """Raised when one or more operations failed during apply.

    Carries the partial result so callers can see exactly which changes were
    committed, which failed and which were never attempted.
    """

    def __init__(self, result: ApplyResult) -> None:
        self.result = result
        failed = ", ".join(f.change.address for f in result.failed)
        super().__init__(f"Apply failed on {failed}")


class ApplyCanceled(EngineError):
    """Raised when an apply is canceled (e.g., Ctrl-C)."""

    def __init__(self, result: ApplyResult) -> None:
        self.result = result
        super().__init__("Apply canceled")
