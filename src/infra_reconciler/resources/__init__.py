"""Resource declarations and references."""

from infra_reconciler.resources.refs import UNKNOWN, Ref, parse_ref
from infra_reconciler.resources.spec import Lifecycle, ResourceSpec

__all__ = ["UNKNOWN", "Lifecycle", "Ref", "ResourceSpec", "parse_ref"]
