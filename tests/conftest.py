"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import copy
import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from bstatectl.models import Shard, Value, ValueSummary
from bstatectl.store import StateStoreError

MUTATING_CALLS = {"create_value", "delete_value", "delete_shard"}

PLAN_TEMPLATE = """\
name: "{{ .plan_name }}"
project:
  name: "{{ .instance_name }}"
cluster:
  name: "{{ .instance_name }}"
  providerSettings:
    providerName: {{ default "AWS" .provider_name }}
    instanceSizeName: "{{ .cluster_tier }}"
apiKey:
  publicKey: {{ keyByAlias .credentials "public" | default "leaked" | quote }}
"""


def write_archive_instance(
    root: Path,
    guid: str,
    *,
    dashboard_url: str,
    name: str = "cluster-0",
    plan_guid: str = "plan-1",
    template: str = PLAN_TEMPLATE,
    cluster_tier: str = "M10",
) -> None:
    """Write the archived instance and plan records for *guid* under *root*."""
    instances = root / "service_instances"
    plans = root / "service_plans"
    instances.mkdir(parents=True, exist_ok=True)
    plans.mkdir(parents=True, exist_ok=True)
    instance = {
        "metadata": {"guid": guid},
        "entity": {
            "name": name,
            "dashboard_url": dashboard_url,
            "service_plan_guid": plan_guid,
        },
    }
    extra = {"template": template, "cluster_tier": cluster_tier}
    plan = {
        "metadata": {"guid": plan_guid},
        "entity": {"name": "basic", "extra": json.dumps(extra)},
    }
    (instances / f"{guid}.json").write_text(json.dumps(instance), encoding="utf-8")
    (plans / f"{plan_guid}.json").write_text(json.dumps(plan), encoding="utf-8")


@dataclass
class FakeStateStore:
    """In-memory state store recording every call it receives."""

    shards: list[Shard] = field(default_factory=list)
    values: dict[str, list[Value]] = field(default_factory=dict)
    calls: list[tuple[str, str, str]] = field(default_factory=list)
    failures: dict[tuple[str, str], str] = field(default_factory=dict)
    _counter: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # -- setup helpers ---------------------------------------------------
    def add_shard(self, shard_id: str, name: str = "broker-state") -> Shard:
        shard = Shard(id=shard_id, name=name, client_app_id=f"{name}-{shard_id}")
        self.shards.append(shard)
        self.values.setdefault(shard_id, [])
        return shard

    def add_value(self, shard_id: str, name: str, payload: Any, *, value_id: str = "") -> Value:
        value = Value(name=name, payload=payload, id=value_id or self._new_id())
        self.values[shard_id].append(value)
        return value

    def fail(self, operation: str, key: str, message: str = "boom") -> None:
        """Make *operation* raise when called for value name or shard id *key*."""
        self.failures[(operation, key)] = message

    def names(self, shard_id: str) -> list[str]:
        return [value.name for value in self.values.get(shard_id, [])]

    def value(self, shard_id: str, name: str) -> Value:
        for value in self.values[shard_id]:
            if value.name == name:
                return value
        raise KeyError(name)

    @property
    def mutations(self) -> list[tuple[str, str, str]]:
        return [call for call in self.calls if call[0] in MUTATING_CALLS]

    # -- StateStore protocol --------------------------------------------
    def list_shards(self) -> list[Shard]:
        self._record("list_shards", "", "")
        return list(self.shards)

    def list_values(self, shard_id: str) -> list[ValueSummary]:
        self._record("list_values", shard_id, "")
        self._check("list_values", shard_id)
        return [value.summary for value in self._shard_values(shard_id)]

    def get_value(self, shard_id: str, value_id: str) -> Value:
        with self._lock:
            for value in self._shard_values(shard_id):
                if value.id == value_id:
                    self.calls.append(("get_value", shard_id, value.name))
                    self._check("get_value", value.name)
                    return copy.deepcopy(value)
        raise StateStoreError(f"value {value_id} not found in {shard_id}")

    def create_value(self, shard_id: str, value: Value) -> Value:
        with self._lock:
            self.calls.append(("create_value", shard_id, value.name))
            self._check("create_value", value.name)
            existing = self._shard_values(shard_id)
            if any(item.name == value.name for item in existing):
                raise StateStoreError(f"value {value.name} already exists in {shard_id}")
            stored = Value(
                name=value.name,
                payload=copy.deepcopy(value.payload),
                id=self._new_id(),
                private=value.private,
            )
            existing.append(stored)
            return copy.deepcopy(stored)

    def delete_value(self, shard_id: str, value_id: str) -> None:
        with self._lock:
            existing = self._shard_values(shard_id)
            for index, value in enumerate(existing):
                if value.id == value_id:
                    self.calls.append(("delete_value", shard_id, value.name))
                    self._check("delete_value", value.name)
                    del existing[index]
                    return
        raise StateStoreError(f"value {value_id} not found in {shard_id}")

    def delete_shard(self, shard_id: str) -> None:
        with self._lock:
            self.calls.append(("delete_shard", shard_id, ""))
            self._check("delete_shard", shard_id)
            self.shards = [shard for shard in self.shards if shard.id != shard_id]
            self.values.pop(shard_id, None)

    # -- internals -------------------------------------------------------
    def _shard_values(self, shard_id: str) -> list[Value]:
        if shard_id not in self.values:
            raise StateStoreError(f"app {shard_id} not found")
        return self.values[shard_id]

    def _check(self, operation: str, key: str) -> None:
        message = self.failures.get((operation, key))
        if message is not None:
            raise StateStoreError(message)

    def _record(self, operation: str, shard_id: str, name: str) -> None:
        with self._lock:
            self.calls.append((operation, shard_id, name))

    def _new_id(self) -> str:
        self._counter += 1
        return f"id-{self._counter:04d}"


@pytest.fixture
def store() -> FakeStateStore:
    """Return an empty in-memory state store."""
    return FakeStateStore()
