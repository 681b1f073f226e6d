"""Convert legacy plan parameters in place and drop stale values.

Values of the single state shard are split into contiguous ranges, one per
worker. Workers share only read-only data (the retain list) and the
thread-safe :class:`~bstatectl.actions.MutationJournal`.
"""
from __future__ import annotations

import concurrent.futures
import json
import logging
import math
import os
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .actions import MutationJournal, StoreAction
from .classifier import Canonical, Legacy, Unrecognized, classify
from .codec import CodecError, decode_legacy, encode_plan
from .models import InstanceDetailsSpec, SchemaError, Shard, Value, ValueSummary
from .reconcile import DEFAULT_SHARD_NAME
from .store import StateStore, StateStoreError, state_shards

LOGGER = logging.getLogger(__name__)


class CleanupError(RuntimeError):
    """Raised when the cleanup pass cannot start."""


class CleanupStatus(str, Enum):
    """Per-value outcome of the cleanup pass."""

    CANONICAL = "canonical"
    CONVERTED = "converted"
    STALE_REMOVED = "stale-removed"
    NULL_VALUE = "null"
    UNRECOGNIZED = "unrecognized"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(slots=True, frozen=True)
class ValueOutcome:
    """What happened to one value."""

    name: str
    status: CleanupStatus
    detail: str = ""


@dataclass(slots=True)
class CleanupReport:
    """Aggregated outcome of a cleanup run."""

    shard: Shard
    dry_run: bool
    partitions: int
    outcomes: list[ValueOutcome] = field(default_factory=list)
    actions: list[StoreAction] = field(default_factory=list)

    @property
    def totals(self) -> dict[str, int]:
        """Return the number of values per status."""
        counts = Counter(outcome.status for outcome in self.outcomes)
        return {status.value: counts.get(status, 0) for status in CleanupStatus}

    @property
    def failures(self) -> list[ValueOutcome]:
        """Return the values that need operator attention."""
        return [
            outcome
            for outcome in self.outcomes
            if outcome.status in (CleanupStatus.FAILED, CleanupStatus.ABORTED)
        ]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "shard": self.shard.id,
            "dry_run": self.dry_run,
            "partitions": self.partitions,
            "totals": self.totals,
            "failures": [
                {"name": item.name, "status": item.status.value, "detail": item.detail}
                for item in self.failures
            ],
            "actions": [action.to_dict() for action in self.actions],
        }


def load_instance_list(path: Path) -> frozenset[str]:
    """Read a JSON array of instance identifiers to retain."""
    path = path.expanduser()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CleanupError(f"Cannot read file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise CleanupError(f"Cannot read instance list from {path}: {exc}") from exc
    if not isinstance(payload, list) or not all(isinstance(item, str) for item in payload):
        raise CleanupError(f"Instance list {path} must be a JSON array of strings.")
    return frozenset(payload)


def partition(count: int, workers: int) -> list[range]:
    """Split ``range(count)`` into at most *workers* contiguous ranges."""
    if count <= 0:
        return []
    size = max(1, math.ceil(count / max(1, workers)))
    return [range(start, min(start + size, count)) for start in range(0, count, size)]


@dataclass
class CleanupPass:
    """Classify every value of the state shard and repair legacy ones."""

    store: StateStore
    shard_name: str = DEFAULT_SHARD_NAME
    retain: frozenset[str] | None = None
    workers: int | None = None
    dry_run: bool = False

    @property
    def cleanup_enabled(self) -> bool:
        """Return ``True`` when values missing from the retain list are removed."""
        return bool(self.retain)

    def run(self) -> CleanupReport:
        """Process every value and return the aggregated report."""
        shard = self._single_shard()
        LOGGER.info("Getting values from app %s", shard.id)
        summaries = self.store.list_values(shard.id)
        LOGGER.info("Got %d values", len(summaries))

        workers = self.workers or os.cpu_count() or 1
        ranges = partition(len(summaries), workers)
        journal = MutationJournal(self.store, dry_run=self.dry_run)
        report = CleanupReport(shard=shard, dry_run=self.dry_run, partitions=len(ranges))
        if not ranges:
            return report

        results: list[list[ValueOutcome]] = [[] for _ in ranges]
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(ranges)) as executor:
            future_to_index: dict[concurrent.futures.Future[list[ValueOutcome]], int] = {}
            for index, span in enumerate(ranges):
                chunk = [summaries[position] for position in span]
                future = executor.submit(self._process_partition, journal, shard, chunk)
                future_to_index[future] = index

            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()

        for chunk_outcomes in results:
            report.outcomes.extend(chunk_outcomes)
        report.actions = journal.snapshot()
        return report

    # ------------------------------------------------------------------
    def _single_shard(self) -> Shard:
        shards = state_shards(self.store, self.shard_name)
        if len(shards) > 1:
            raise CleanupError(
                f"Found {len(shards)} state apps, please run 'bstatectl migrate' first!"
            )
        if not shards:
            raise CleanupError(f"No app named {self.shard_name!r} found.")
        return shards[0]

    def _process_partition(
        self,
        journal: MutationJournal,
        shard: Shard,
        summaries: Sequence[ValueSummary],
    ) -> list[ValueOutcome]:
        outcomes: list[ValueOutcome] = []
        for summary in summaries:
            outcome = self._process_value(journal, shard, summary)
            outcomes.append(outcome)
            if outcome.status is CleanupStatus.ABORTED:
                LOGGER.error(
                    "Stopping partition after %s: the original value is already deleted",
                    summary.name,
                )
                break
        return outcomes

    def _process_value(
        self,
        journal: MutationJournal,
        shard: Shard,
        summary: ValueSummary,
    ) -> ValueOutcome:
        name = summary.name
        LOGGER.info("Fetching value %s (%s)", name, summary.id)
        try:
            value = self.store.get_value(shard.id, summary.id)
        except StateStoreError as exc:
            LOGGER.error("Cannot get value %s: %s", name, exc)
            return ValueOutcome(name, CleanupStatus.FAILED, f"get: {exc}")

        if self.retain and name not in self.retain:
            LOGGER.warning("Value %s not found in instance list - REMOVING", name)
            try:
                journal.delete_value(shard.id, value)
            except StateStoreError as exc:
                LOGGER.error("Cannot delete value %s: %s", name, exc)
                return ValueOutcome(name, CleanupStatus.FAILED, f"delete: {exc}")
            return ValueOutcome(name, CleanupStatus.STALE_REMOVED)

        if value.is_null:
            LOGGER.warning("Value %s is null, run 'bstatectl repair' to rebuild it", name)
            return ValueOutcome(name, CleanupStatus.NULL_VALUE)

        try:
            spec = InstanceDetailsSpec.from_payload(value.payload)
        except SchemaError as exc:
            LOGGER.error("Cannot unmarshal value %s: %s", name, exc)
            return ValueOutcome(name, CleanupStatus.FAILED, f"unmarshal: {exc}")

        kind = classify(spec.parameters)
        if isinstance(kind, Canonical):
            LOGGER.info("Value %s is in new format, skipping...", name)
            return ValueOutcome(name, CleanupStatus.CANONICAL)
        if isinstance(kind, Unrecognized):
            LOGGER.warning(
                "Unexpected parameters format in %s: expected string or map, found %s",
                name,
                kind.type_name,
            )
            return ValueOutcome(name, CleanupStatus.UNRECOGNIZED, kind.type_name)
        return self._convert(journal, shard, value, spec, kind)

    def _convert(
        self,
        journal: MutationJournal,
        shard: Shard,
        value: Value,
        spec: InstanceDetailsSpec,
        kind: Legacy,
    ) -> ValueOutcome:
        name = value.name
        LOGGER.warning("Value %s is in old format, converting...", name)
        try:
            spec.parameters = encode_plan(decode_legacy(kind.parameters))
        except CodecError as exc:
            LOGGER.error("Cannot convert parameters of %s: %s", name, exc)
            return ValueOutcome(name, CleanupStatus.FAILED, f"convert: {exc}")

        fixed = Value(name=name, payload=spec.to_payload(), private=value.private)

        LOGGER.warning("Deleting original value for %s", name)
        try:
            journal.delete_value(shard.id, value)
        except StateStoreError as exc:
            LOGGER.error("Cannot delete value %s: %s", name, exc)
            return ValueOutcome(name, CleanupStatus.FAILED, f"delete: {exc}")

        LOGGER.warning("Creating a copy of %s with fixed data", name)
        try:
            journal.create_value(shard.id, fixed)
        except StateStoreError as exc:
            LOGGER.error(
                "Cannot create value %s: %s; fixed value was %s",
                name,
                exc,
                json.dumps(fixed.to_wire()),
            )
            return ValueOutcome(name, CleanupStatus.ABORTED, f"create: {exc}")
        return ValueOutcome(name, CleanupStatus.CONVERTED)


__all__ = [
    "CleanupError",
    "CleanupPass",
    "CleanupReport",
    "CleanupStatus",
    "ValueOutcome",
    "load_instance_list",
    "partition",
]
