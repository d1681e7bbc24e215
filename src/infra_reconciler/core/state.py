"""State management for tracking applied resources."""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import tempfile
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def _canonical_json(obj: Any) -> str:
    # Stable encoding for hashes/digests. `default=str` keeps it robust for
    # datetimes/paths/etc while staying deterministic enough for our use.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def _now() -> datetime:
    return datetime.now(UTC)


def compute_attributes_hash(attrs: Mapping[str, Any]) -> str:
    """Compute a stable hash for a resource's stored attributes."""
    payload = _canonical_json(attrs)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ResourceState(BaseModel):
    """The last-applied record of one resource instance.

    Attributes:
        address: Unique resource address (e.g., "aws_subnet.public[0]")
        resource_type: Type of the resource (e.g., "aws_subnet")
        name: Resource name (e.g., "public")
        id: Provider-assigned identifier
        attributes: Concrete attribute values returned by the provider
        attributes_hash: SHA256 hash for change detection
        fingerprint: Content hash of the spec that produced this instance
        dependencies: Addresses of dependencies at apply time
        created_at: When the resource was created
        updated_at: When the resource was last updated
    """

    address: str
    resource_type: str
    name: str
    id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    attributes_hash: str = ""
    fingerprint: str = ""
    dependencies: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class PendingOperation(BaseModel):
    """Write-ahead marker recorded before a mutating provider call.

    A marker that survives into the next invocation means the process died
    between the provider call and the state commit, so the outcome is unknown.
    """

    address: str
    resource_type: str
    name: str
    action: Literal["create", "update", "delete"]
    resource_id: str | None = None
    deposed: bool = False
    fingerprint: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_now)

    @property
    def key(self) -> str:
        return marker_key(self.address, deposed=self.deposed)


def marker_key(address: str, *, deposed: bool = False) -> str:
    return f"{address} (deposed)" if deposed else address


class State(BaseModel):
    """Terraform-style state file.

    Attributes:
        version: State file format version
        serial: Incremented on every write
        lineage: Identity of this state across its history
        resources: Mapping of resource addresses to instances
        deposed: Old instances awaiting destruction after a create-before-destroy replace
        pending: Write-ahead markers of in-flight operations
        outputs: Output values from the configuration
    """

    version: int = STATE_VERSION
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: dict[str, ResourceState] = Field(default_factory=dict)
    deposed: dict[str, ResourceState] = Field(default_factory=dict)
    pending: dict[str, PendingOperation] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)

    def save(self, path: Path) -> None:
        """Save state to a JSON file.

        - Writes atomically (temp file + rename)
        - Writes a `.backup` copy of the previous state when overwriting
        """
        path.parent.mkdir(parents=True, exist_ok=True)

        backup_path = Path(str(path) + ".backup")
        # Avoid TOCTOU race between exists() and read_bytes().
        with contextlib.suppress(FileNotFoundError):
            backup_path.write_bytes(path.read_bytes())

        data = self.model_dump(mode="json")
        content = json.dumps(data, indent=2, sort_keys=True) + "\n"

        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        tmp_file = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_file.unlink()
        logger.debug("State saved: serial=%d path=%s", self.serial, path)


def compute_state_digest(state: State) -> str:
    """Compute a stable digest of state content (excluding timestamps).

    Used for stale-plan detection. Timestamps are left out so they never
    force a re-plan.
    """

    def _entries(instances: Mapping[str, ResourceState]) -> list[dict[str, Any]]:
        return [
            {
                "address": address,
                "resource_type": inst.resource_type,
                "id": inst.id,
                "attributes_hash": inst.attributes_hash,
                "fingerprint": inst.fingerprint,
                "dependencies": sorted(inst.dependencies),
            }
            for address, inst in sorted(instances.items(), key=lambda kv: kv[0])
        ]

    digestable = {
        "version": state.version,
        "lineage": state.lineage,
        "serial": state.serial,
        "resources": _entries(state.resources),
        "deposed": _entries(state.deposed),
        "pending": sorted(state.pending),
    }
    payload = _canonical_json(digestable)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
