"""References between resources.

A reference names an attribute of another resource, e.g. a subnet's ``vpc_id``
pointing at ``aws_vpc.main.id``. In-memory references are ``Ref`` objects; in
config files and saved plans they use the textual form ``${aws_vpc.main.id}``.
A reference always stands for a whole value; it may be nested inside lists
and dicts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

UNKNOWN = "(known after apply)"

ADDRESS_PATTERN = r"[A-Za-z][A-Za-z0-9_]*\.[A-Za-z0-9_]+(?:\[\d+\])?"
_ADDRESS_RE = re.compile(rf"^{ADDRESS_PATTERN}$")
_REF_RE = re.compile(
    rf"^\$\{{(?P<address>{ADDRESS_PATTERN})\.(?P<attribute>[A-Za-z_][A-Za-z0-9_]*)\}}$"
)


@dataclass(frozen=True, slots=True)
class Ref:
    """Reference to ``attribute`` of the resource at ``address``."""

    address: str
    attribute: str

    def __str__(self) -> str:
        return f"${{{self.address}.{self.attribute}}}"


def is_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(value))


def parse_ref(value: Any) -> Ref | None:
    """Parse the textual ``${address.attribute}`` form, or return ``None``."""
    if not isinstance(value, str):
        return None
    m = _REF_RE.match(value.strip())
    if m is None:
        return None
    return Ref(address=m.group("address"), attribute=m.group("attribute"))


def decode_refs(value: Any) -> Any:
    """Turn textual references into ``Ref`` objects, recursively."""
    if isinstance(value, str):
        ref = parse_ref(value)
        return ref if ref is not None else value
    if isinstance(value, dict):
        return {k: decode_refs(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [decode_refs(v) for v in value]
    return value


def encode_refs(value: Any) -> Any:
    """Turn ``Ref`` objects into their textual form, recursively."""
    if isinstance(value, Ref):
        return str(value)
    if isinstance(value, dict):
        return {k: encode_refs(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [encode_refs(v) for v in value]
    return value


def collect_refs(value: Any) -> list[Ref]:
    """Collect every ``Ref`` inside *value* in document order."""
    if isinstance(value, Ref):
        return [value]
    refs: list[Ref] = []
    if isinstance(value, dict):
        for v in value.values():
            refs.extend(collect_refs(v))
    elif isinstance(value, list | tuple):
        for v in value:
            refs.extend(collect_refs(v))
    return refs


def resolve_refs(value: Any, lookup: Callable[[Ref], Any]) -> Any:
    """Replace every ``Ref`` inside *value* with ``lookup(ref)``, recursively."""
    if isinstance(value, Ref):
        return lookup(value)
    if isinstance(value, dict):
        return {k: resolve_refs(v, lookup) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [resolve_refs(v, lookup) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    if isinstance(value, str):
        return value == UNKNOWN
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False
