"""Read-only access to archived service instance and service plan records.

The archive directory mirrors the platform API dumps taken alongside the
state backup::

    <root>/service_instances/<instance-guid>.json
    <root>/service_plans/<plan-guid>.json
"""
from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import urlparse

INSTANCES_DIR = "service_instances"
PLANS_DIR = "service_plans"


class InventoryError(RuntimeError):
    """Raised when an archived record is unreadable or malformed."""


@dataclass(slots=True, frozen=True)
class InstanceRecord:
    """Archived service instance record."""

    guid: str
    name: str = ""
    dashboard_url: str = ""
    service_plan_guid: str = ""
    error_code: str | None = None
    has_entity: bool = True

    @property
    def missing(self) -> bool:
        """Return ``True`` when the platform reported the instance as gone."""
        return self.error_code is not None


@dataclass(slots=True, frozen=True)
class PlanRecord:
    """Archived service plan record."""

    guid: str
    name: str
    template: str
    extra: Mapping[str, Any] = field(default_factory=dict)


def project_id_from_dashboard(url: str) -> str:
    """Return the project id encoded as the last path segment of *url*.

    ``https://cloud.mongodb.com/v2/<project>#clusters/detail/<cluster>``
    """
    project_id = PurePosixPath(urlparse(url).path).name
    if not project_id:
        raise InventoryError(f"Cannot find a project id in dashboard URL {url!r}.")
    return project_id


@dataclass(slots=True, frozen=True)
class ArchiveInventory:
    """Loader for the archived platform records under *root*."""

    root: Path

    def instance_path(self, guid: str) -> Path:
        """Return the record path for instance *guid*."""
        return self.root.expanduser() / INSTANCES_DIR / f"{guid}.json"

    def plan_path(self, guid: str) -> Path:
        """Return the record path for plan *guid*."""
        return self.root.expanduser() / PLANS_DIR / f"{guid}.json"

    def instance(self, guid: str) -> InstanceRecord:
        """Load the archived record for instance *guid*."""
        path = self.instance_path(guid)
        document = _read_document(path)
        if "error_code" in document:
            return InstanceRecord(guid=guid, error_code=str(document["error_code"]))
        entity = document.get("entity")
        if not isinstance(entity, Mapping):
            return InstanceRecord(guid=guid, has_entity=False)
        return InstanceRecord(
            guid=guid,
            name=_entity_str(entity, "name", path),
            dashboard_url=_entity_str(entity, "dashboard_url", path),
            service_plan_guid=_entity_str(entity, "service_plan_guid", path),
        )

    def plan(self, guid: str) -> PlanRecord:
        """Load the archived record for plan *guid* and its embedded template."""
        path = self.plan_path(guid)
        document = _read_document(path)
        entity = document.get("entity")
        if not isinstance(entity, Mapping):
            raise InventoryError(f"Cannot find 'entity' in {path}.")
        extra_raw = entity.get("extra")
        if not isinstance(extra_raw, str):
            raise InventoryError(f"{path}: entity.extra must be a JSON string.")
        try:
            extra = json.loads(extra_raw)
        except json.JSONDecodeError as exc:
            raise InventoryError(f"{path}: entity.extra is not valid JSON: {exc}") from exc
        if not isinstance(extra, Mapping):
            raise InventoryError(f"{path}: entity.extra must decode to an object.")
        template = extra.get("template")
        if not isinstance(template, str):
            raise InventoryError(f"{path}: entity.extra has no 'template' string.")
        name = entity.get("name")
        return PlanRecord(
            guid=guid,
            name=name if isinstance(name, str) else "",
            template=template,
            extra=dict(extra),
        )


def _read_document(path: Path) -> Mapping[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise InventoryError(f"Cannot read {path}: {exc}") from exc
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InventoryError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(document, Mapping):
        raise InventoryError(f"{path} must contain a JSON object.")
    return document


def _entity_str(entity: Mapping[str, Any], key: str, path: Path) -> str:
    value = entity.get(key)
    if not isinstance(value, str) or not value:
        raise InventoryError(f"{path}: entity.{key} must be a non-empty string.")
    return value


__all__ = [
    "ArchiveInventory",
    "InstanceRecord",
    "InventoryError",
    "PlanRecord",
    "project_id_from_dashboard",
]
