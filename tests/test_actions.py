"""Tests for the mutation journal."""
from __future__ import annotations

import pytest
from conftest import FakeStateStore

from bstatectl.actions import ActionKind, MutationJournal, StoreAction
from bstatectl.models import Value
from bstatectl.store import StateStoreError


def test_live_journal_calls_store_and_records_in_order(store: FakeStateStore) -> None:
    """Live runs perform each call and record it after it succeeds."""
    store.add_shard("a")
    store.add_shard("b")
    original = store.add_value("b", "x", {"k": 1})
    journal = MutationJournal(store)

    created = journal.create_value("a", Value(name="x", payload={"k": 1}))
    journal.delete_value("b", original)
    journal.delete_shard("b")

    assert created.id
    assert store.names("a") == ["x"]
    assert "b" not in store.values
    assert [action.kind for action in journal.snapshot()] == [
        ActionKind.CREATE_VALUE,
        ActionKind.DELETE_VALUE,
        ActionKind.DELETE_SHARD,
    ]


def test_dry_run_journal_never_mutates(store: FakeStateStore) -> None:
    """Dry runs record the same actions without calling the store."""
    store.add_shard("a")
    existing = store.add_value("a", "x", None)
    journal = MutationJournal(store, dry_run=True)

    journal.create_value("a", Value(name="y", payload={}))
    journal.delete_value("a", existing)
    journal.delete_shard("a")

    assert store.mutations == []
    assert journal.snapshot() == [
        StoreAction(ActionKind.CREATE_VALUE, "a", "y"),
        StoreAction(ActionKind.DELETE_VALUE, "a", "x", existing.id),
        StoreAction(ActionKind.DELETE_SHARD, "a"),
    ]


def test_failed_call_is_not_recorded(store: FakeStateStore) -> None:
    """An action that raised is absent from the journal."""
    store.add_shard("a")
    store.fail("create_value", "x")
    journal = MutationJournal(store)

    with pytest.raises(StateStoreError, match="boom"):
        journal.create_value("a", Value(name="x", payload={}))

    assert journal.snapshot() == []


def test_store_action_serialisation() -> None:
    """Actions describe themselves for logs and reports."""
    action = StoreAction(ActionKind.DELETE_VALUE, "a", "x", "id-1")

    assert action.describe() == "delete value x (id-1) from a"
    assert action.to_dict() == {
        "kind": "delete-value",
        "shard_id": "a",
        "value_name": "x",
        "value_id": "id-1",
    }
    assert StoreAction(ActionKind.DELETE_SHARD, "b").to_dict() == {
        "kind": "delete-shard",
        "shard_id": "b",
    }
