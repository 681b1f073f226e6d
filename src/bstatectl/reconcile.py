"""Merge duplicate ``broker-state`` shards into a single target shard."""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .actions import MutationJournal, StoreAction
from .models import Shard, Value
from .snapshot import Snapshot, capture_snapshot, write_snapshot
from .store import StateStore, StateStoreError, state_shards, value_console_url

LOGGER = logging.getLogger(__name__)

DEFAULT_SHARD_NAME = "broker-state"


class ReconcileError(RuntimeError):
    """Raised when shard reconciliation cannot complete."""


@dataclass(slots=True, frozen=True)
class Collision:
    """Two shards hold a value with the same name."""

    name: str
    shard_id: str
    value_id: str
    existing_shard_id: str
    existing_value_id: str


class ShardCollisionError(ReconcileError):
    """Raised when a value name exists in more than one shard."""

    def __init__(self, collisions: Sequence[Collision], project_id: str) -> None:
        """Build an operator-facing message naming every location."""
        self.collisions = tuple(collisions)
        lines = [
            f"{len(self.collisions)} value name(s) exist in more than one app; "
            "confirm and delete the duplicates by hand:"
        ]
        for item in self.collisions:
            duplicate = value_console_url(project_id, item.shard_id, item.value_id)
            existing = value_console_url(
                project_id, item.existing_shard_id, item.existing_value_id
            )
            lines.append(f"  {item.name}: {duplicate} conflicts with {existing}")
        super().__init__("\n".join(lines))


@dataclass(slots=True)
class ReconcileReport:
    """Outcome of a reconciliation run."""

    shards: list[Shard]
    target: Shard | None = None
    snapshot_path: Path | None = None
    dry_run: bool = False
    actions: list[StoreAction] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return ``True`` when the run had anything to merge."""
        return self.target is not None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "shards": [shard.id for shard in self.shards],
            "target": self.target.id if self.target else None,
            "snapshot": str(self.snapshot_path) if self.snapshot_path else None,
            "dry_run": self.dry_run,
            "actions": [action.to_dict() for action in self.actions],
        }


def select_target(shards: Sequence[Shard], pinned: str | None = None) -> Shard:
    """Return the shard every other shard is merged into.

    An operator-pinned id wins; otherwise the lexicographically smallest id is
    used so that repeated runs agree regardless of listing order.
    """
    if not shards:
        raise ReconcileError("No state apps to choose a target from.")
    if pinned:
        for shard in shards:
            if shard.id == pinned:
                return shard
        known = ", ".join(shard.id for shard in shards)
        raise ReconcileError(f"Requested target {pinned} is not a state app (known: {known}).")
    return min(shards, key=lambda shard: shard.id)


def find_collisions(snapshot: Mapping[str, Mapping[str, Value]], target_id: str) -> list[Collision]:
    """Return every name that would end up twice in the target shard."""
    placed: dict[str, tuple[str, str]] = {
        name: (target_id, value.id) for name, value in snapshot.get(target_id, {}).items()
    }
    collisions: list[Collision] = []
    for shard_id in sorted(snapshot):
        if shard_id == target_id:
            continue
        for name in sorted(snapshot[shard_id]):
            value = snapshot[shard_id][name]
            if name in placed:
                existing_shard, existing_id = placed[name]
                collisions.append(
                    Collision(
                        name=name,
                        shard_id=shard_id,
                        value_id=value.id,
                        existing_shard_id=existing_shard,
                        existing_value_id=existing_id,
                    )
                )
                continue
            placed[name] = (shard_id, value.id)
    return collisions


@dataclass
class ShardReconciler:
    """Consolidate every state shard into one."""

    store: StateStore
    project_id: str
    backup_dir: Path
    shard_name: str = DEFAULT_SHARD_NAME
    dry_run: bool = False

    def run(self, *, target_id: str | None = None) -> ReconcileReport:
        """Merge all state shards, returning what was (or would be) done."""
        shards = state_shards(self.store, self.shard_name)
        LOGGER.info("Found %d state apps", len(shards))
        report = ReconcileReport(shards=shards, dry_run=self.dry_run)
        if len(shards) <= 1:
            LOGGER.info("Nothing to do")
            return report

        target = select_target(shards, target_id)
        report.target = target
        LOGGER.info("Selected %s (%s) as the target state app", target.id, target.client_app_id)

        snapshot = capture_snapshot(self.store, shards)
        if self.dry_run:
            LOGGER.warning(
                "Dry run: would save backup of %d apps to %s", len(shards), self.backup_dir
            )
        else:
            report.snapshot_path = write_snapshot(self.backup_dir, snapshot)

        collisions = find_collisions(snapshot, target.id)
        if collisions:
            raise ShardCollisionError(collisions, self.project_id)

        journal = MutationJournal(self.store, dry_run=self.dry_run)
        try:
            self._merge(journal, snapshot, target)
        except StateStoreError as exc:
            recovery = report.snapshot_path or "the backup snapshot"
            raise ReconcileError(
                f"Merge stopped after {len(journal.actions)} change(s): {exc}. "
                f"Recover remaining values from {recovery}."
            ) from exc
        finally:
            report.actions = journal.snapshot()

        if not self.dry_run:
            LOGGER.info("Successfully merged values into app ID %s", target.id)
        return report

    def _merge(self, journal: MutationJournal, snapshot: Snapshot, target: Shard) -> None:
        for shard_id in sorted(snapshot):
            if shard_id == target.id:
                continue
            LOGGER.info("Copying values from %s to %s", shard_id, target.id)
            values = snapshot[shard_id]
            for name in sorted(values):
                value = values[name]
                copy = Value(name=value.name, payload=value.payload, private=value.private)
                journal.create_value(target.id, copy)
                journal.delete_value(shard_id, value)
            self._ensure_drained(shard_id)
            journal.delete_shard(shard_id)

    def _ensure_drained(self, shard_id: str) -> None:
        if self.dry_run:
            return
        remaining = self.store.list_values(shard_id)
        if remaining:
            names = ", ".join(sorted(summary.name for summary in remaining))
            raise ReconcileError(
                f"App {shard_id} still holds {len(remaining)} value(s) after migration "
                f"({names}); refusing to delete it."
            )


__all__ = [
    "Collision",
    "DEFAULT_SHARD_NAME",
    "ReconcileError",
    "ReconcileReport",
    "ShardCollisionError",
    "ShardReconciler",
    "find_collisions",
    "select_target",
]
