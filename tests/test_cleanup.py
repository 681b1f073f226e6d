"""Tests for the legacy-format cleanup pass."""
from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path

import pytest
from conftest import FakeStateStore

from bstatectl.cleanup import (
    CleanupError,
    CleanupPass,
    CleanupStatus,
    ValueOutcome,
    load_instance_list,
    partition,
)
from bstatectl.codec import decode_plan, encode_plan
from bstatectl.models import Plan, Project


def _details(parameters: object) -> dict[str, object]:
    return {
        "service_id": "svc",
        "plan_id": "plan",
        "dashboard_url": "https://cloud.example.com/v2/proj-1",
        "parameters": parameters,
    }


def _statuses(outcomes: Sequence[ValueOutcome]) -> dict[str, CleanupStatus]:
    return {outcome.name: outcome.status for outcome in outcomes}


@pytest.mark.parametrize(
    ("count", "workers", "expected"),
    [
        (0, 4, []),
        (10, 3, [range(0, 4), range(4, 8), range(8, 10)]),
        (3, 8, [range(0, 1), range(1, 2), range(2, 3)]),
        (5, 1, [range(0, 5)]),
    ],
)
def test_partition_covers_every_index_once(
    count: int, workers: int, expected: list[range]
) -> None:
    """Ranges are contiguous, disjoint and never exceed the worker count."""
    assert partition(count, workers) == expected


def test_load_instance_list(tmp_path: Path) -> None:
    """The instance list is a JSON array of ids."""
    good = tmp_path / "instances.json"
    good.write_text(json.dumps(["a", "b"]), encoding="utf-8")
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"a": 1}), encoding="utf-8")

    assert load_instance_list(good) == frozenset({"a", "b"})
    with pytest.raises(CleanupError, match="JSON array"):
        load_instance_list(bad)
    with pytest.raises(CleanupError, match="Cannot read"):
        load_instance_list(tmp_path / "missing.json")


def test_cleanup_converts_legacy_and_leaves_canonical(store: FakeStateStore) -> None:
    """Legacy maps become canonical strings; canonical values are untouched."""
    canonical = encode_plan(Plan(name="done"))
    store.add_shard("A")
    store.add_value("A", "new", _details(canonical))
    store.add_value("A", "old", _details({"plan": {"name": "legacy", "project": {"id": "p"}}}))

    report = CleanupPass(store, workers=2).run()

    assert _statuses(report.outcomes) == {
        "new": CleanupStatus.CANONICAL,
        "old": CleanupStatus.CONVERTED,
    }
    converted = store.value("A", "old").payload
    assert converted["plan_id"] == "plan"
    assert decode_plan(converted["parameters"]) == Plan(name="legacy", project=Project(id="p"))
    assert store.value("A", "new").payload["parameters"] == canonical
    assert ("delete_value", "A", "new") not in store.mutations


def test_cleanup_delete_precedes_create_for_conversions(store: FakeStateStore) -> None:
    """The replacement is created after the original is gone."""
    store.add_shard("A")
    store.add_value("A", "old", _details({"name": "legacy"}))

    CleanupPass(store, workers=1).run()

    assert store.mutations == [("delete_value", "A", "old"), ("create_value", "A", "old")]


def test_cleanup_removes_values_missing_from_instance_list(store: FakeStateStore) -> None:
    """Values not in the retain list are deleted without classification."""
    store.add_shard("A")
    store.add_value("A", "live", _details(encode_plan(Plan(name="x"))))
    store.add_value("A", "gone", _details({"name": "legacy"}))

    report = CleanupPass(store, retain=frozenset({"live"}), workers=1).run()

    assert _statuses(report.outcomes)["gone"] is CleanupStatus.STALE_REMOVED
    assert store.names("A") == ["live"]


def test_empty_instance_list_disables_removal(store: FakeStateStore) -> None:
    """An empty retain list removes nothing."""
    store.add_shard("A")
    store.add_value("A", "keep", _details(encode_plan(Plan())))
    cleaner = CleanupPass(store, retain=frozenset(), workers=1)

    report = cleaner.run()

    assert not cleaner.cleanup_enabled
    assert report.totals["canonical"] == 1
    assert store.mutations == []


def test_cleanup_reports_null_and_unrecognized_values(store: FakeStateStore) -> None:
    """Null payloads and odd parameter shapes are reported, not modified."""
    store.add_shard("A")
    store.add_value("A", "empty", None)
    store.add_value("A", "odd", _details(42))
    store.add_value("A", "broken", ["not", "a", "record"])

    report = CleanupPass(store, workers=3).run()

    statuses = _statuses(report.outcomes)
    assert statuses == {
        "empty": CleanupStatus.NULL_VALUE,
        "odd": CleanupStatus.UNRECOGNIZED,
        "broken": CleanupStatus.FAILED,
    }
    assert store.mutations == []
    assert [item.name for item in report.failures] == ["broken"]


def test_create_failure_stops_the_partition(store: FakeStateStore) -> None:
    """After a lost replacement the rest of that partition is left alone."""
    store.add_shard("A")
    store.add_value("A", "first", _details({"name": "one"}))
    store.add_value("A", "second", _details({"name": "two"}))
    store.fail("create_value", "first")

    report = CleanupPass(store, workers=1).run()

    assert [(o.name, o.status) for o in report.outcomes] == [("first", CleanupStatus.ABORTED)]
    assert "second" in store.names("A")
    assert store.value("A", "second").payload["parameters"] == {"name": "two"}


def test_get_failure_is_recorded_and_processing_continues(store: FakeStateStore) -> None:
    """A value that cannot be fetched does not stop the partition."""
    store.add_shard("A")
    store.add_value("A", "flaky", _details({"name": "one"}))
    store.add_value("A", "fine", _details({"name": "two"}))
    store.fail("get_value", "flaky")

    report = CleanupPass(store, workers=1).run()

    assert _statuses(report.outcomes) == {
        "flaky": CleanupStatus.FAILED,
        "fine": CleanupStatus.CONVERTED,
    }


def test_dry_run_journal_matches_live_run(store: FakeStateStore) -> None:
    """Dry runs plan exactly what a live run performs."""
    store.add_shard("A")
    store.add_value("A", "old", _details({"name": "legacy"}))
    store.add_value("A", "stale", _details(encode_plan(Plan())))
    retain = frozenset({"old"})

    dry = CleanupPass(store, retain=retain, workers=1, dry_run=True).run()
    assert store.mutations == []

    live = CleanupPass(store, retain=retain, workers=1).run()

    assert [(a.kind, a.value_name) for a in dry.actions] == [
        (a.kind, a.value_name) for a in live.actions
    ]


def test_multiple_state_shards_must_be_migrated_first(store: FakeStateStore) -> None:
    """Cleanup refuses to run while duplicate shards exist."""
    store.add_shard("A")
    store.add_shard("B")

    with pytest.raises(CleanupError, match="bstatectl migrate"):
        CleanupPass(store).run()


def test_missing_state_shard_is_an_error(store: FakeStateStore) -> None:
    """There must be a state shard to clean."""
    store.add_shard("A", name="other")

    with pytest.raises(CleanupError, match="No app named"):
        CleanupPass(store).run()
