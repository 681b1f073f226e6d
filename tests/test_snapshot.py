"""Tests for backup snapshots."""
from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest
from conftest import FakeStateStore

from bstatectl.models import Value
from bstatectl.snapshot import (
    SnapshotError,
    capture_snapshot,
    latest_snapshot,
    load_snapshot,
    write_snapshot,
)


def _populated(store: FakeStateStore) -> FakeStateStore:
    store.add_shard("a")
    store.add_shard("b")
    store.add_value("a", "x", {"plan_id": "p", "parameters": "abc"})
    store.add_value("a", "y", None)
    store.add_value("b", "z", {"parameters": {"plan": {}}})
    return store


def test_capture_snapshot_fetches_every_value(store: FakeStateStore) -> None:
    """Snapshots hold full payloads keyed by shard id and value name."""
    snapshot = capture_snapshot(_populated(store), store.shards)

    assert set(snapshot) == {"a", "b"}
    assert set(snapshot["a"]) == {"x", "y"}
    assert snapshot["a"]["x"].payload == {"plan_id": "p", "parameters": "abc"}
    assert snapshot["a"]["y"].is_null
    assert store.mutations == []


def test_capture_snapshot_rejects_duplicate_names(store: FakeStateStore) -> None:
    """Two values with one name in a shard cannot be keyed by name."""
    store.add_shard("a")
    store.add_value("a", "x", {})
    store.add_value("a", "x", {})

    with pytest.raises(SnapshotError, match="more than one value named x"):
        capture_snapshot(store, store.shards)


def test_write_snapshot_uses_timestamped_tab_indented_file(
    tmp_path: Path, store: FakeStateStore
) -> None:
    """Snapshots are written atomically with restrictive permissions."""
    snapshot = capture_snapshot(_populated(store), store.shards)

    path = write_snapshot(tmp_path / "backup", snapshot, clock=lambda: 1700000000000000001)

    assert path.name == "data_backup.1700000000000000001.json"
    text = path.read_text(encoding="utf-8")
    assert '\n\t"a": {' in text
    assert json.loads(text)["a"]["x"]["value"] == {"plan_id": "p", "parameters": "abc"}
    assert stat.S_IMODE(path.stat().st_mode) == 0o640
    assert [item.name for item in path.parent.iterdir()] == [path.name]


def test_load_snapshot_restores_written_data(tmp_path: Path, store: FakeStateStore) -> None:
    """A written snapshot loads back into equal values."""
    snapshot = capture_snapshot(_populated(store), store.shards)
    path = write_snapshot(tmp_path, snapshot)

    assert load_snapshot(path) == snapshot


def test_load_snapshot_reports_decode_errors(tmp_path: Path) -> None:
    """Corrupt snapshots raise instead of yielding partial data."""
    broken = tmp_path / "data_backup.1.json"
    broken.write_text("{not json", encoding="utf-8")
    wrong_shape = tmp_path / "data_backup.2.json"
    wrong_shape.write_text(json.dumps({"a": {"x": {"value": 1}}}), encoding="utf-8")

    with pytest.raises(SnapshotError, match="not valid JSON"):
        load_snapshot(broken)
    with pytest.raises(SnapshotError, match="value x in app a"):
        load_snapshot(wrong_shape)
    with pytest.raises(SnapshotError, match="Cannot read"):
        load_snapshot(tmp_path / "missing.json")


def test_latest_snapshot_picks_highest_timestamp(tmp_path: Path) -> None:
    """The newest snapshot is chosen by its embedded timestamp."""
    assert latest_snapshot(tmp_path / "absent") is None
    for stamp in ("5", "40", "300"):
        write_snapshot(
            tmp_path,
            {"a": {"x": Value(name="x")}},
            clock=lambda stamp=stamp: int(stamp),
        )
    (tmp_path / "data_backup.latest.json").write_text("{}", encoding="utf-8")

    assert latest_snapshot(tmp_path) == tmp_path / "data_backup.300.json"
