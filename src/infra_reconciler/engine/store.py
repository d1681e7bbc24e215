"""State store: the single shared, persisted record of applied resources."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from infra_reconciler.core.state import STATE_VERSION, State, marker_key
from infra_reconciler.engine.errors import StateVersionError
from infra_reconciler.engine.lock import StateLock

if TYPE_CHECKING:
    from infra_reconciler.core.state import PendingOperation, ResourceState

logger = logging.getLogger(__name__)


class _Tombstone:
    def __repr__(self) -> str:
        return "TOMBSTONE"


TOMBSTONE = _Tombstone()
"""Commit value meaning "the resource no longer exists"."""


def read_state(path: Path) -> State:
    """Load a state file, rejecting format versions newer than this engine."""
    if not path.exists():
        logger.debug("Created new state for %s", path)
        return State()
    raw = json.loads(path.read_text(encoding="utf-8"))
    version = raw.get("version", STATE_VERSION) if isinstance(raw, dict) else None
    if not isinstance(version, int) or version > STATE_VERSION:
        raise StateVersionError(version if isinstance(version, int) else -1, STATE_VERSION)
    state = State.model_validate(raw)
    logger.debug(
        "State loaded: serial=%d, %d resources, %d pending",
        state.serial,
        len(state.resources),
        len(state.pending),
    )
    return state


class StateStore:
    """Handle on a state file with a per-resource atomic commit protocol.

    Every mutation rewrites the file atomically and bumps ``serial``. The
    commit that records a provider result also clears that operation's
    write-ahead marker, so after a crash a marker is left behind only when the
    outcome was never recorded. Safe to share between worker threads.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._mutex = threading.Lock()
        self._state: State | None = None

    @property
    def path(self) -> Path:
        return self._path

    def lock(self) -> StateLock:
        """Exclusive inter-process lock for the lifetime of one invocation."""
        return StateLock(self._path)

    def _current(self) -> State:
        if self._state is None:
            self._state = read_state(self._path)
        return self._state

    def _persist(self) -> None:
        state = self._current()
        state.serial += 1
        state.save(self._path)

    def load(self) -> dict[str, ResourceState]:
        """(Re)read the state file and return address -> ResourceState."""
        with self._mutex:
            self._state = read_state(self._path)
            return {a: r.model_copy(deep=True) for a, r in self._state.resources.items()}

    def snapshot(self) -> State:
        """Deep copy of the current in-memory state."""
        with self._mutex:
            return self._current().model_copy(deep=True)

    def get(self, address: str, *, deposed: bool = False) -> ResourceState | None:
        with self._mutex:
            state = self._current()
            inst = (state.deposed if deposed else state.resources).get(address)
            return inst.model_copy(deep=True) if inst is not None else None

    def stale_markers(self) -> list[PendingOperation]:
        with self._mutex:
            return [m.model_copy(deep=True) for _, m in sorted(self._current().pending.items())]

    def begin(self, marker: PendingOperation) -> None:
        """Durably record that a provider call is about to start."""
        with self._mutex:
            self._current().pending[marker.key] = marker.model_copy(deep=True)
            self._persist()
        logger.debug("Write-ahead marker recorded for %s (%s)", marker.key, marker.action)

    def abort(self, address: str, *, deposed: bool = False) -> None:
        """Clear a marker after the provider call failed definitively."""
        with self._mutex:
            if self._current().pending.pop(marker_key(address, deposed=deposed), None) is None:
                return
            self._persist()

    def commit(
        self,
        address: str,
        value: ResourceState | _Tombstone,
        *,
        deposed: bool = False,
    ) -> None:
        """Atomically record a resource's new state (or its removal)."""
        with self._mutex:
            state = self._current()
            bucket = state.deposed if deposed else state.resources
            if isinstance(value, _Tombstone):
                bucket.pop(address, None)
            else:
                bucket[address] = value.model_copy(deep=True)
            state.pending.pop(marker_key(address, deposed=deposed), None)
            self._persist()
        logger.debug(
            "Committed %s%s",
            marker_key(address, deposed=deposed),
            " (removed)" if isinstance(value, _Tombstone) else "",
        )

    def commit_replacement(self, address: str, value: ResourceState) -> None:
        """Store a replacement instance and depose the current one in one write."""
        with self._mutex:
            state = self._current()
            old = state.resources.get(address)
            if old is not None:
                state.deposed[address] = old
            state.resources[address] = value.model_copy(deep=True)
            state.pending.pop(marker_key(address), None)
            self._persist()
        logger.debug("Committed replacement for %s", address)

    def set_outputs(self, outputs: dict[str, Any]) -> None:
        with self._mutex:
            state = self._current()
            if state.outputs == outputs:
                return
            state.outputs = dict(outputs)
            self._persist()

    def seed(self, state: State) -> None:
        """Use *state* as the in-memory state without writing it."""
        with self._mutex:
            self._state = state.model_copy(deep=True)

    def write(self, state: State) -> None:
        """Replace the whole state (used by refresh and reconcile)."""
        with self._mutex:
            self._state = state.model_copy(deep=True)
            self._persist()
