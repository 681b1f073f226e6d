"""Journal of store mutations performed (or planned) by a run.

Workflows never call the mutating store operations directly; they go through a
:class:`MutationJournal`, which records every create/delete in order. In dry
run mode the journal records the action and skips the remote call, so a dry
run and a live run over the same state produce the same journal.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum

from .models import Value
from .store import StateStore

LOGGER = logging.getLogger(__name__)


class ActionKind(str, Enum):
    """Mutating store operations."""

    CREATE_VALUE = "create-value"
    DELETE_VALUE = "delete-value"
    DELETE_SHARD = "delete-shard"


@dataclass(slots=True, frozen=True)
class StoreAction:
    """One mutating call against the store."""

    kind: ActionKind
    shard_id: str
    value_name: str = ""
    value_id: str = ""

    def describe(self) -> str:
        """Return a human readable description of the action."""
        if self.kind is ActionKind.CREATE_VALUE:
            return f"create value {self.value_name} in {self.shard_id}"
        if self.kind is ActionKind.DELETE_VALUE:
            return f"delete value {self.value_name} ({self.value_id}) from {self.shard_id}"
        return f"delete app {self.shard_id}"

    def to_dict(self) -> dict[str, str]:
        """Return a JSON-serialisable representation."""
        payload = {"kind": self.kind.value, "shard_id": self.shard_id}
        if self.value_name:
            payload["value_name"] = self.value_name
        if self.value_id:
            payload["value_id"] = self.value_id
        return payload


@dataclass
class MutationJournal:
    """Route mutating calls to *store* while recording them."""

    store: StateStore
    dry_run: bool = False
    actions: list[StoreAction] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def create_value(self, shard_id: str, value: Value) -> Value:
        """Create *value* in *shard_id* (recorded only during dry runs)."""
        action = StoreAction(ActionKind.CREATE_VALUE, shard_id, value.name)
        if self.dry_run:
            self._record(action)
            return value
        created = self.store.create_value(shard_id, value)
        self._record(action)
        return created

    def delete_value(self, shard_id: str, value: Value) -> None:
        """Delete *value* from *shard_id* (recorded only during dry runs)."""
        action = StoreAction(ActionKind.DELETE_VALUE, shard_id, value.name, value.id)
        if not self.dry_run:
            self.store.delete_value(shard_id, value.id)
        self._record(action)

    def delete_shard(self, shard_id: str) -> None:
        """Delete the shard itself (recorded only during dry runs)."""
        action = StoreAction(ActionKind.DELETE_SHARD, shard_id)
        if not self.dry_run:
            self.store.delete_shard(shard_id)
        self._record(action)

    def snapshot(self) -> list[StoreAction]:
        """Return a copy of the recorded actions."""
        with self._lock:
            return list(self.actions)

    def _record(self, action: StoreAction) -> None:
        if self.dry_run:
            LOGGER.warning("Dry run: would %s", action.describe())
        else:
            LOGGER.info("Done: %s", action.describe())
        with self._lock:
            self.actions.append(action)


__all__ = ["ActionKind", "MutationJournal", "StoreAction"]
