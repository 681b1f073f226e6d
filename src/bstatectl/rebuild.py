"""Rebuild instance data for lost values from archived records.

A rebuild replays a backup snapshot against the archived platform inventory:
every value name in the snapshot is an instance id whose service instance and
service plan records are loaded, and whose plan template is rendered into a
:class:`~bstatectl.models.Plan`.

Rebuilds are supervised offline runs, so any unreadable record or template
stops the run; only instances the platform reported as gone are skipped.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .inventory import ArchiveInventory, InventoryError, project_id_from_dashboard
from .models import InstanceData, Plan, Project, SchemaError, Value
from .templates import TemplateEngine, TemplateError

LOGGER = logging.getLogger(__name__)


class RebuildError(RuntimeError):
    """Raised when archived data cannot be turned into instance data."""


@dataclass(slots=True)
class RebuildSummary:
    """Counts reported at the end of a rebuild."""

    built: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "built": len(self.built),
            "missing": sorted(self.missing),
            "skipped": sorted(self.skipped),
        }


def render_plan(templates: TemplateEngine, template: str, context: Mapping[str, str]) -> Plan:
    """Render *template* into a plan bound to the context's project.

    The project id and org id always come from *context*, and any API key the
    template embeds is dropped so credentials are never persisted again.
    """
    try:
        document = templates.render_document(template, context)
        plan = Plan.from_wire(document)
    except (TemplateError, SchemaError) as exc:
        name = context.get("instance_name", "?")
        raise RebuildError(f"Cannot build plan for instance {name}: {exc}") from exc

    if plan.project is None:
        plan.project = Project()
    plan.project.id = context["project_id"]
    plan.project.org_id = context["org_id"]
    plan.api_key = None
    return plan


def resolve_plan(data: InstanceData, templates: TemplateEngine) -> Plan:
    """Return the plan for *data*, rendering its template when needed."""
    if data.plan is not None:
        return data.plan
    if data.template is None:
        raise RebuildError(f"Instance {data.name} has neither a plan nor a template.")
    return render_plan(templates, data.template, data.context)


@dataclass
class BackupRebuilder:
    """Produce :class:`InstanceData` for every instance in a snapshot."""

    inventory: ArchiveInventory
    org_id: str
    templates: TemplateEngine = field(default_factory=TemplateEngine)
    exclude_shards: frozenset[str] = frozenset()
    render: bool = True

    def rebuild(
        self,
        snapshot: Mapping[str, Mapping[str, Value]],
    ) -> tuple[dict[str, InstanceData], RebuildSummary]:
        """Return instance data keyed by value name, plus a summary."""
        LOGGER.info("Rebuilding state from backup data")
        result: dict[str, InstanceData] = {}
        summary = RebuildSummary()
        for instance_id in self._instance_ids(snapshot):
            if instance_id in result:
                continue
            data = self._build(instance_id, summary)
            if data is not None:
                result[instance_id] = data
                summary.built.append(instance_id)

        LOGGER.info(
            "Built data for %d instances in total (%d instances were missing upstream)",
            len(summary.built),
            len(summary.missing),
        )
        return result, summary

    # ------------------------------------------------------------------
    def _instance_ids(self, snapshot: Mapping[str, Mapping[str, Value]]) -> Iterable[str]:
        for shard_id in sorted(snapshot):
            if shard_id in self.exclude_shards:
                LOGGER.info("Skipping excluded app %s", shard_id)
                continue
            yield from sorted(snapshot[shard_id])

    def _build(self, instance_id: str, summary: RebuildSummary) -> InstanceData | None:
        try:
            record = self.inventory.instance(instance_id)
            if record.missing:
                LOGGER.error(
                    "Instance query returned error: %r, skipping %s!",
                    record.error_code,
                    instance_id,
                )
                summary.missing.append(instance_id)
                return None
            if not record.has_entity:
                LOGGER.error(
                    "Cannot find 'entity' in %s, skipping",
                    self.inventory.instance_path(instance_id),
                )
                summary.skipped.append(instance_id)
                return None

            plan_record = self.inventory.plan(record.service_plan_guid)
            context = {
                "instance_name": record.name,
                "plan_name": plan_record.name,
                "project_id": project_id_from_dashboard(record.dashboard_url),
                "org_id": self.org_id,
            }
            for key in ("cluster_tier", "disk_type"):
                value = plan_record.extra.get(key)
                if isinstance(value, str) and value:
                    context[key] = value
        except InventoryError as exc:
            raise RebuildError(f"Cannot rebuild instance {instance_id}: {exc}") from exc

        if not self.render:
            return InstanceData(
                name=record.name,
                dashboard_url=record.dashboard_url,
                template=plan_record.template,
                context=context,
            )

        plan = render_plan(self.templates, plan_record.template, context)
        LOGGER.info("Built data for %s: %s", instance_id, plan)
        return InstanceData(name=record.name, dashboard_url=record.dashboard_url, plan=plan)


__all__ = [
    "BackupRebuilder",
    "RebuildError",
    "RebuildSummary",
    "render_plan",
    "resolve_plan",
]
