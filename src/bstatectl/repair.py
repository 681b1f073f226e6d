"""Replace ``null`` state values with records rebuilt from archives."""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from .actions import MutationJournal, StoreAction
from .codec import EncodingError, encode_plan
from .models import InstanceData, InstanceDetailsSpec, Shard, Value
from .rebuild import RebuildError, resolve_plan
from .reconcile import DEFAULT_SHARD_NAME
from .store import StateStore, StateStoreError, state_shards
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

# Markers identifying a record restored by this tool rather than provisioned.
RESTORED_PLAN_ID = "aosb-cluster-plan-template-restored-plan"
RESTORED_SERVICE_ID = "aosb-cluster-service-template"


class RepairError(RuntimeError):
    """Raised when a repair run must stop."""


@dataclass(slots=True)
class RepairReport:
    """Outcome of a repair run."""

    dry_run: bool
    canary: bool
    repaired: list[str] = field(default_factory=list)
    not_null: int = 0
    unresolved: dict[str, str] = field(default_factory=dict)
    stopped_early: bool = False
    actions: list[StoreAction] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "dry_run": self.dry_run,
            "canary": self.canary,
            "repaired": list(self.repaired),
            "not_null": self.not_null,
            "unresolved": dict(self.unresolved),
            "stopped_early": self.stopped_early,
            "actions": [action.to_dict() for action in self.actions],
        }


def restored_value(name: str, data: InstanceData, encoded_plan: str) -> Value:
    """Return the value that replaces a null entry named *name*."""
    spec = InstanceDetailsSpec(
        plan_id=RESTORED_PLAN_ID,
        service_id=RESTORED_SERVICE_ID,
        dashboard_url=data.dashboard_url,
        parameters=encoded_plan,
    )
    return Value(name=name, payload=spec.to_payload())


@dataclass
class NullValueRepairer:
    """Walk every state shard and rebuild values whose payload is ``null``."""

    store: StateStore
    instance_data: Mapping[str, InstanceData]
    shard_name: str = DEFAULT_SHARD_NAME
    templates: TemplateEngine = field(default_factory=TemplateEngine)
    dry_run: bool = False
    canary: bool = False

    def run(self) -> RepairReport:
        """Repair null values, stopping after the first one in canary mode."""
        report = RepairReport(dry_run=self.dry_run, canary=self.canary)
        journal = MutationJournal(self.store, dry_run=self.dry_run)
        try:
            for shard in state_shards(self.store, self.shard_name):
                if self._repair_shard(journal, shard, report):
                    report.stopped_early = True
                    LOGGER.info("Canary mode enabled - exiting after first state update!")
                    break
        finally:
            report.actions = journal.snapshot()
        return report

    def _repair_shard(self, journal: MutationJournal, shard: Shard, report: RepairReport) -> bool:
        LOGGER.info("Getting values from app %s", shard.id)
        summaries = self.store.list_values(shard.id)
        LOGGER.info("Got %d values", len(summaries))

        # The store exposes no version field; later listing entries are assumed newer.
        for summary in reversed(summaries):
            value = self.store.get_value(shard.id, summary.id)
            if not value.is_null:
                LOGGER.debug("Value %s is not null, skipping", value.name)
                report.not_null += 1
                continue

            LOGGER.info("Found null value: %s", value.name)
            replacement = self._replacement(value, report)
            if replacement is None:
                continue

            LOGGER.info("Deleting original value for %s", value.name)
            try:
                journal.delete_value(shard.id, value)
            except StateStoreError as exc:
                raise RepairError(f"Cannot delete null value {value.name}: {exc}") from exc

            LOGGER.info("Creating a copy of %s with fixed data", value.name)
            try:
                journal.create_value(shard.id, replacement)
            except StateStoreError as exc:
                raise RepairError(
                    f"Cannot create restored value {value.name} in {shard.id} after deleting "
                    f"the null original: {exc}. Payload: {json.dumps(replacement.to_wire())}"
                ) from exc

            report.repaired.append(value.name)
            if self.canary:
                return True
        return False

    def _replacement(self, value: Value, report: RepairReport) -> Value | None:
        data = self.instance_data.get(value.name)
        if data is None:
            LOGGER.error(
                "Null value %s not found in backup data (maybe it was deleted upstream). "
                "Continuing anyway...",
                value.name,
            )
            report.unresolved[value.name] = "no backup data"
            return None

        LOGGER.info(
            "%s parameters: instance name %r, dashboard %r",
            value.name,
            data.name,
            data.dashboard_url,
        )
        try:
            encoded = encode_plan(resolve_plan(data, self.templates))
        except (RebuildError, EncodingError) as exc:
            LOGGER.error("Cannot rebuild plan for %s: %s", value.name, exc)
            report.unresolved[value.name] = str(exc)
            return None
        return restored_value(value.name, data, encoded)


__all__ = [
    "NullValueRepairer",
    "RESTORED_PLAN_ID",
    "RESTORED_SERVICE_ID",
    "RepairError",
    "RepairReport",
    "restored_value",
]
