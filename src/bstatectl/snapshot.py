"""Point-in-time backups of every state shard's values."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path

from .models import SchemaError, Shard, Value
from .store import StateStore

LOGGER = logging.getLogger(__name__)

#: ``snapshot[shard_id][value_name]``
Snapshot = dict[str, dict[str, Value]]

SNAPSHOT_PREFIX = "data_backup"


class SnapshotError(RuntimeError):
    """Raised when a snapshot cannot be captured, written or read."""


def capture_snapshot(store: StateStore, shards: Iterable[Shard]) -> Snapshot:
    """Fetch every value of every shard in *shards*."""
    snapshot: Snapshot = {}
    for shard in shards:
        LOGGER.info("Getting values from app %s", shard.id)
        summaries = store.list_values(shard.id)
        LOGGER.info("Got %d values", len(summaries))
        values: dict[str, Value] = {}
        for summary in summaries:
            LOGGER.debug("Fetching value %s", summary.name)
            if summary.name in values:
                raise SnapshotError(
                    f"App {shard.id} holds more than one value named {summary.name} "
                    f"({values[summary.name].id}, {summary.id}); resolve by hand first."
                )
            values[summary.name] = store.get_value(shard.id, summary.id)
        snapshot[shard.id] = values
    return snapshot


def snapshot_to_dict(snapshot: Mapping[str, Mapping[str, Value]]) -> dict[str, object]:
    """Return the JSON document for *snapshot*."""
    return {
        shard_id: {name: value.to_wire() for name, value in values.items()}
        for shard_id, values in snapshot.items()
    }


def snapshot_from_dict(payload: object, *, source: str = "snapshot") -> Snapshot:
    """Parse a snapshot document."""
    if not isinstance(payload, Mapping):
        raise SnapshotError(f"{source} must contain a JSON object at the top level.")
    snapshot: Snapshot = {}
    for shard_id, values in payload.items():
        if not isinstance(values, Mapping):
            raise SnapshotError(f"{source}: entry for app {shard_id} must be an object.")
        parsed: dict[str, Value] = {}
        for name, raw in values.items():
            if not isinstance(raw, Mapping):
                raise SnapshotError(f"{source}: value {name} in app {shard_id} is not an object.")
            try:
                parsed[str(name)] = Value.from_wire(raw)
            except SchemaError as exc:
                raise SnapshotError(f"{source}: value {name} in app {shard_id}: {exc}") from exc
        snapshot[str(shard_id)] = parsed
    return snapshot


def write_snapshot(
    directory: Path,
    snapshot: Mapping[str, Mapping[str, Value]],
    *,
    clock: Callable[[], int] = time.time_ns,
) -> Path:
    """Atomically write *snapshot* to ``data_backup.<ns>.json`` under *directory*."""
    directory = directory.expanduser()
    destination = directory / f"{SNAPSHOT_PREFIX}.{clock()}.json"
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SnapshotError(f"Failed to prepare backup directory {directory}: {exc}") from exc

    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(snapshot_to_dict(snapshot), handle, indent="\t")
            handle.write("\n")
        os.replace(tmp_path, destination)
        os.chmod(destination, 0o640)
    except (OSError, TypeError, ValueError) as exc:
        raise SnapshotError(f"Failed to write backup {destination}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)
    LOGGER.info("Saved backup to %s", destination)
    return destination


def load_snapshot(path: Path) -> Snapshot:
    """Read a snapshot written by :func:`write_snapshot`."""
    path = path.expanduser()
    LOGGER.info("Reading backup data from %s", path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SnapshotError(f"Cannot read backup {path}: {exc}") from exc
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SnapshotError(f"Backup {path} is not valid JSON: {exc}") from exc
    return snapshot_from_dict(payload, source=str(path))


def latest_snapshot(directory: Path) -> Path | None:
    """Return the newest snapshot file in *directory*, if any."""
    directory = directory.expanduser()
    if not directory.is_dir():
        return None
    candidates: list[tuple[int, Path]] = []
    for path in directory.glob(f"{SNAPSHOT_PREFIX}.*.json"):
        stamp = path.name[len(SNAPSHOT_PREFIX) + 1 : -len(".json")]
        if stamp.isdigit():
            candidates.append((int(stamp), path))
    if not candidates:
        return None
    return max(candidates)[1]


__all__ = [
    "Snapshot",
    "SnapshotError",
    "capture_snapshot",
    "latest_snapshot",
    "load_snapshot",
    "snapshot_from_dict",
    "snapshot_to_dict",
    "write_snapshot",
]
