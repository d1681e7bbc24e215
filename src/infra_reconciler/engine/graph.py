"""Dependency graph utilities and the resource graph builder."""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from pydantic import ValidationError as PydanticValidationError

from infra_reconciler.engine.errors import (
    CyclicDependencyError,
    DuplicateAddressError,
    UnresolvedReferenceError,
    ValidationError,
)
from infra_reconciler.resources.refs import collect_refs, is_address

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from infra_reconciler.engine.handlers import TypeMetadata
    from infra_reconciler.engine.registry import ResourceTypeRegistry
    from infra_reconciler.resources.spec import ResourceSpec

logger = logging.getLogger(__name__)


class DependencyGraph:
    """A directed graph where nodes depend on other nodes."""

    def __init__(self, nodes: Iterable[str], dependencies: Mapping[str, Iterable[str]]) -> None:
        self._nodes = set(nodes)
        # node -> filtered deps within graph
        self._deps: dict[str, set[str]] = {}
        for node in self._nodes:
            deps = set(dependencies.get(node, []))
            self._deps[node] = {d for d in deps if d in self._nodes}

    def dependencies(self, node: str) -> set[str]:
        return set(self._deps.get(node, ()))

    def topological_order(self) -> list[str]:
        """Return deterministic topo order (lexicographic tie-break)."""
        indegree: dict[str, int] = dict.fromkeys(self._nodes, 0)
        dependents: dict[str, set[str]] = {n: set() for n in self._nodes}

        for node, deps in self._deps.items():
            indegree[node] = len(deps)
            for dep in deps:
                dependents[dep].add(node)

        ready = [n for n, deg in indegree.items() if deg == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            node = heapq.heappop(ready)
            order.append(node)
            for child in sorted(dependents[node]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, child)

        if len(order) != len(self._nodes):
            raise CyclicDependencyError(self.find_cycle() or sorted(self._nodes - set(order)))

        return order

    def reverse_topological_order(self) -> list[str]:
        order = self.topological_order()
        order.reverse()
        return order

    def find_cycle(self) -> list[str]:
        """Return one cycle as a closed path (``[a, b, a]``), or ``[]``."""
        white, grey, black = 0, 1, 2
        color = dict.fromkeys(self._nodes, white)
        stack: list[str] = []

        def visit(node: str) -> list[str]:
            color[node] = grey
            stack.append(node)
            for dep in sorted(self._deps[node]):
                if color[dep] == grey:
                    return [*stack[stack.index(dep) :], dep]
                if color[dep] == white and (found := visit(dep)):
                    return found
            stack.pop()
            color[node] = black
            return []

        for node in sorted(self._nodes):
            if color[node] == white and (cycle := visit(node)):
                return cycle
        return []


@dataclass(frozen=True)
class DependencyEdge:
    """``source`` must be applied after ``target`` (and destroyed before it)."""

    source: str
    target: str
    kind: Literal["reference", "explicit"]


@dataclass
class ResourceGraph:
    """Validated desired resources plus their dependency edges."""

    specs: dict[str, ResourceSpec]
    edges: list[DependencyEdge] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._deps: dict[str, list[str]] = {addr: [] for addr in self.specs}
        self._dependents: dict[str, list[str]] = {addr: [] for addr in self.specs}
        for e in self.edges:
            if e.target not in self._deps[e.source]:
                self._deps[e.source].append(e.target)
                self._dependents[e.target].append(e.source)

    def __contains__(self, address: object) -> bool:
        return address in self.specs

    def dependencies(self, address: str) -> list[str]:
        return list(self._deps[address])

    def dependents(self, address: str) -> list[str]:
        return list(self._dependents[address])

    def topological_order(self) -> list[str]:
        return DependencyGraph(self.specs, self._deps).topological_order()

    def reverse_topological_order(self) -> list[str]:
        return DependencyGraph(self.specs, self._deps).reverse_topological_order()


def _validate_attributes(spec: ResourceSpec, metadata: TypeMetadata) -> list[str]:
    """Validate attributes against the type's model; fields holding refs are exempt."""
    if metadata.model is None:
        return []

    ref_fields = {k for k, v in spec.attributes.items() if collect_refs(v)}
    values = {k: v for k, v in spec.attributes.items() if k not in ref_fields}
    try:
        metadata.model.model_validate(values)
    except PydanticValidationError as exc:
        return [
            f"{spec.address}: {'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
            if not err["loc"] or err["loc"][0] not in ref_fields
        ]
    return []


def build_graph(specs: Sequence[ResourceSpec], registry: ResourceTypeRegistry) -> ResourceGraph:
    """Resolve references into dependency edges and validate the result.

    Raises:
        DuplicateAddressError: Two specs share an address.
        UnknownResourceTypeError: A spec's type is not registered.
        UnresolvedReferenceError: A reference or ``depends_on`` entry points
            at a missing resource or attribute.
        ValidationError: Attribute validation failed.
        CyclicDependencyError: The dependency graph has a cycle.
    """
    by_addr: dict[str, ResourceSpec] = {}
    for spec in specs:
        if spec.address in by_addr:
            raise DuplicateAddressError(spec.address)
        registry.get(spec.resource_type)
        by_addr[spec.address] = spec

    edges: list[DependencyEdge] = []
    for addr in sorted(by_addr):
        spec = by_addr[addr]
        for ref in spec.references():
            if ref.address == addr:
                raise UnresolvedReferenceError(addr, str(ref), "a resource cannot reference itself")
            target = by_addr.get(ref.address)
            if target is None:
                raise UnresolvedReferenceError(addr, str(ref), "no such resource")
            metadata = registry.get(target.resource_type).metadata
            if ref.attribute not in target.attributes and not metadata.has_attribute(
                ref.attribute
            ):
                raise UnresolvedReferenceError(
                    addr, str(ref), f"'{target.resource_type}' has no attribute '{ref.attribute}'"
                )
            edges.append(DependencyEdge(source=addr, target=ref.address, kind="reference"))

        for dep in spec.depends_on:
            if not is_address(dep) or dep not in by_addr:
                raise UnresolvedReferenceError(addr, dep, "depends_on names an unknown address")
            if dep == addr:
                raise UnresolvedReferenceError(addr, dep, "a resource cannot depend on itself")
            edges.append(DependencyEdge(source=addr, target=dep, kind="explicit"))

    errors: list[str] = []
    for addr in sorted(by_addr):
        spec = by_addr[addr]
        errors.extend(_validate_attributes(spec, registry.get(spec.resource_type).metadata))
    if errors:
        raise ValidationError(errors)

    graph = ResourceGraph(specs=by_addr, edges=edges)
    graph.topological_order()  # raises on cycles
    logger.debug("Built resource graph: %d resources, %d edges", len(by_addr), len(edges))
    return graph
