"""Engine types (plan, changes, metadata, apply results)."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from infra_reconciler.resources.spec import ResourceSpec


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "no-op"


class PlanMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    destroy: bool
    refresh: bool
    state_lineage: str
    state_serial: int
    state_digest: str
    config_digest: str
    engine_version: str


class ResourceChange(BaseModel):
    """The planned action for one resource, with its attribute-level diff."""

    model_config = ConfigDict(frozen=True)

    address: str
    resource_type: str
    action: Action
    desired: ResourceSpec | None = None
    prior: dict[str, Any] | None = None
    prior_id: str | None = None
    planned: dict[str, Any] | None = None
    diff: dict[str, Any] | None = None
    replace_reasons: list[str] = Field(default_factory=list)
    replace_policy: Literal["destroy_before_create", "create_before_destroy"] | None = None
    deposed: bool = False
    dependencies: list[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.address} (deposed)" if self.deposed else self.address


def _empty_summary() -> dict[str, int]:
    return {a.value: 0 for a in Action}


class Plan(BaseModel):
    """Immutable result of planning; regenerate it when config or state changes."""

    model_config = ConfigDict(frozen=True)

    metadata: PlanMetadata
    changes: tuple[ResourceChange, ...]
    outputs: dict[str, Any] = Field(default_factory=dict)

    def summary(self) -> dict[str, int]:
        counts = _empty_summary()
        for c in self.changes:
            counts[c.action.value] += 1
        return counts

    def has_changes(self) -> bool:
        return any(c.action != Action.NOOP for c in self.changes)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> Plan:
        path = Path(path)
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


class FailedChange(BaseModel):
    change: ResourceChange
    error: str


class ApplyResult(BaseModel):
    """Outcome of an apply; the state store reflects exactly ``completed``."""

    completed: list[ResourceChange] = Field(default_factory=list)
    failed: list[FailedChange] = Field(default_factory=list)
    not_attempted: list[ResourceChange] = Field(default_factory=list)
    canceled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.not_attempted and not self.canceled

    def summary(self) -> dict[str, int]:
        counts = _empty_summary()
        for c in self.completed:
            counts[c.action.value] += 1
        return counts
