"""Data models shared by the reconciliation and repair workflows.

Every model knows how to translate itself from and to the JSON structures used
on the wire by the state store (``*_wire`` helpers) so the rest of the package
only deals with typed dataclasses.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any


class SchemaError(ValueError):
    """Raised when a wire structure does not match the expected schema."""


# ---------------------------------------------------------------------------
# Store entities
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Shard:
    """Remote application container holding broker state values."""

    id: str
    name: str
    client_app_id: str = ""

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> Shard:
        """Build a shard from an application listing entry."""
        return cls(
            id=_require_str(payload, "_id", "shard"),
            name=_optional_str(payload, "name", "shard") or "",
            client_app_id=_optional_str(payload, "client_app_id", "shard") or "",
        )


@dataclass(slots=True, frozen=True)
class ValueSummary:
    """Listing entry for a value; the payload requires a separate fetch."""

    id: str
    name: str

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> ValueSummary:
        """Build a summary from a value listing entry."""
        return cls(
            id=_require_str(payload, "_id", "value"),
            name=_require_str(payload, "name", "value"),
        )


@dataclass(slots=True)
class Value:
    """A named entry inside a shard.

    ``payload`` holds the decoded JSON document stored under ``value``; a JSON
    ``null`` payload is represented by ``None``.
    """

    name: str
    payload: Any = None
    id: str = ""
    private: bool = False

    @property
    def is_null(self) -> bool:
        """Return ``True`` when the stored document is the literal ``null``."""
        return self.payload is None

    @property
    def summary(self) -> ValueSummary:
        """Return the listing view of this value."""
        return ValueSummary(id=self.id, name=self.name)

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> Value:
        """Build a value from the store (or snapshot) representation."""
        private = payload.get("private", False)
        if not isinstance(private, bool):
            raise SchemaError(f"value.private must be a boolean, got {type(private).__name__}")
        return cls(
            id=_optional_str(payload, "_id", "value") or "",
            name=_require_str(payload, "name", "value"),
            private=private,
            payload=payload.get("value"),
        )

    def to_wire(self) -> dict[str, Any]:
        """Return the store representation (``_id`` omitted for new values)."""
        wire: dict[str, Any] = {}
        if self.id:
            wire["_id"] = self.id
        wire["name"] = self.name
        wire["private"] = self.private
        wire["value"] = self.payload
        return wire


@dataclass(slots=True)
class InstanceDetailsSpec:
    """Broker instance record stored as a value payload.

    ``parameters`` is intentionally untyped: it may hold the canonical encoded
    plan string, a legacy map, or something unexpected. Keys the broker wrote
    that are not modelled here are kept in ``extra`` so rewriting a record
    never drops them.
    """

    plan_id: str = ""
    service_id: str = ""
    dashboard_url: str = ""
    parameters: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = ("plan_id", "service_id", "dashboard_url", "parameters")

    @classmethod
    def from_payload(cls, payload: object) -> InstanceDetailsSpec:
        """Decode a value payload into an instance record."""
        if not isinstance(payload, Mapping):
            raise SchemaError(
                f"instance details must be a JSON object, got {type(payload).__name__}"
            )
        extra = {
            str(key): item for key, item in payload.items() if key not in cls._KNOWN_KEYS
        }
        return cls(
            plan_id=_optional_str(payload, "plan_id", "instance details") or "",
            service_id=_optional_str(payload, "service_id", "instance details") or "",
            dashboard_url=_optional_str(payload, "dashboard_url", "instance details") or "",
            parameters=payload.get("parameters"),
            extra=extra,
        )

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON document stored in the value."""
        payload: dict[str, Any] = {
            "service_id": self.service_id,
            "plan_id": self.plan_id,
            "dashboard_url": self.dashboard_url,
            "parameters": self.parameters,
        }
        for key, item in self.extra.items():
            payload.setdefault(key, item)
        return payload


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Project:
    """Project identity a plan provisions into."""

    id: str | None = None
    org_id: str | None = None
    name: str | None = None

    @classmethod
    def from_wire(cls, payload: object) -> Project:
        """Decode ``plan.project``."""
        mapping = _expect_mapping(payload, "plan.project")
        return cls(
            id=_optional_str(mapping, "id", "plan.project"),
            org_id=_optional_str(mapping, "orgId", "plan.project"),
            name=_optional_str(mapping, "name", "plan.project"),
        )

    def to_wire(self) -> dict[str, Any]:
        """Encode ``plan.project`` omitting unset fields."""
        return _omit_none({"id": self.id, "orgId": self.org_id, "name": self.name})


@dataclass(slots=True)
class APIKey:
    """Programmatic API credentials embedded in a plan."""

    org_id: str | None = None
    public_key: str | None = None
    private_key: str | None = None

    @classmethod
    def from_wire(cls, payload: object) -> APIKey:
        """Decode ``plan.apiKey``."""
        mapping = _expect_mapping(payload, "plan.apiKey")
        return cls(
            org_id=_optional_str(mapping, "orgID", "plan.apiKey"),
            public_key=_optional_str(mapping, "publicKey", "plan.apiKey"),
            private_key=_optional_str(mapping, "privateKey", "plan.apiKey"),
        )

    def to_wire(self) -> dict[str, Any]:
        """Encode ``plan.apiKey`` omitting unset fields."""
        return _omit_none(
            {
                "orgID": self.org_id,
                "publicKey": self.public_key,
                "privateKey": self.private_key,
            }
        )


# Lower-case spellings produced by older YAML plan templates.
_PLAN_KEY_ALIASES = {
    "apikey": "apiKey",
    "databaseusers": "databaseUsers",
    "ipaccesslists": "ipAccessLists",
}


@dataclass(slots=True)
class Plan:
    """Structured configuration for a provisioned cluster instance."""

    version: str | None = None
    name: str | None = None
    description: str | None = None
    free: bool | None = None
    api_key: APIKey | None = None
    project: Project | None = None
    cluster: dict[str, Any] | None = None
    database_users: list[dict[str, Any]] | None = None
    ip_access_lists: list[dict[str, Any]] | None = None
    integrations: list[dict[str, Any]] | None = None
    settings: dict[str, Any] | None = None

    @classmethod
    def from_wire(cls, payload: object) -> Plan:
        """Decode a plan document; unknown keys are ignored."""
        raw = _expect_mapping(payload, "plan")
        mapping = {_PLAN_KEY_ALIASES.get(str(key), str(key)): item for key, item in raw.items()}

        free = mapping.get("free")
        if free is not None and not isinstance(free, bool):
            raise SchemaError(f"plan.free must be a boolean, got {type(free).__name__}")

        api_key = mapping.get("apiKey")
        project = mapping.get("project")
        cluster = mapping.get("cluster")
        settings = mapping.get("settings")
        return cls(
            version=_optional_str(mapping, "version", "plan"),
            name=_optional_str(mapping, "name", "plan"),
            description=_optional_str(mapping, "description", "plan"),
            free=free,
            api_key=APIKey.from_wire(api_key) if api_key is not None else None,
            project=Project.from_wire(project) if project is not None else None,
            cluster=dict(_expect_mapping(cluster, "plan.cluster")) if cluster is not None else None,
            database_users=_mapping_list(mapping.get("databaseUsers"), "plan.databaseUsers"),
            ip_access_lists=_mapping_list(mapping.get("ipAccessLists"), "plan.ipAccessLists"),
            integrations=_mapping_list(mapping.get("integrations"), "plan.integrations"),
            settings=(
                dict(_expect_mapping(settings, "plan.settings")) if settings is not None else None
            ),
        )

    def to_wire(self) -> dict[str, Any]:
        """Encode the plan document omitting unset fields."""
        return _omit_none(
            {
                "version": self.version,
                "name": self.name,
                "description": self.description,
                "free": self.free,
                "apiKey": self.api_key.to_wire() if self.api_key is not None else None,
                "project": self.project.to_wire() if self.project is not None else None,
                "cluster": self.cluster,
                "databaseUsers": self.database_users,
                "ipAccessLists": self.ip_access_lists,
                "integrations": self.integrations,
                "settings": self.settings,
            }
        )


@dataclass(slots=True)
class InstanceData:
    """Archival view of an instance used to rebuild a lost value.

    Either ``plan`` is already rendered, or ``template`` plus ``context`` hold
    everything needed to render it on demand.
    """

    name: str
    dashboard_url: str
    plan: Plan | None = None
    template: str | None = None
    context: dict[str, str] = field(default_factory=dict)

    @property
    def is_rendered(self) -> bool:
        """Return ``True`` when the plan no longer needs rendering."""
        return self.plan is not None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _expect_mapping(value: object, label: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise SchemaError(f"{label} must be an object, got {type(value).__name__}")
    return value


def _mapping_list(value: object, label: str) -> list[dict[str, Any]] | None:
    if value is None:
        return None
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise SchemaError(f"{label} must be a list, got {type(value).__name__}")
    items: list[dict[str, Any]] = []
    for index, item in enumerate(value):
        items.append(dict(_expect_mapping(item, f"{label}[{index}]")))
    return items


def _require_str(payload: Mapping[str, Any], key: str, label: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise SchemaError(f"{label}.{key} must be a non-empty string")
    return value


def _optional_str(payload: Mapping[str, Any], key: str, label: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise SchemaError(f"{label}.{key} must be a string, got {type(value).__name__}")
    return value


def _omit_none(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {key: item for key, item in payload.items() if item is not None}


__all__ = [
    "APIKey",
    "InstanceData",
    "InstanceDetailsSpec",
    "Plan",
    "Project",
    "SchemaError",
    "Shard",
    "Value",
    "ValueSummary",
]
