"""Access to the remote state store (Realm admin API).

The workflows only depend on the :class:`StateStore` protocol; the
``requests``-backed :class:`RealmStateStore` is the production implementation.
Each store instance is scoped to a single project.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .models import SchemaError, Shard, Value, ValueSummary

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://realm.mongodb.com/api/admin/v3.0/"
LOGIN_PATH = "auth/providers/mongodb-cloud/login"
CONSOLE_URL = "https://realm.mongodb.com"


class StateStoreError(RuntimeError):
    """Raised when a state store call fails."""


class StateStoreAuthError(StateStoreError):
    """Raised when the API key pair is rejected."""


class StateStore(Protocol):
    """Operations the reconciliation workflows need from the remote store."""

    def list_shards(self) -> list[Shard]:
        """Return every application in the project."""
        ...

    def list_values(self, shard_id: str) -> list[ValueSummary]:
        """Return the values stored in *shard_id* in store order."""
        ...

    def get_value(self, shard_id: str, value_id: str) -> Value:
        """Return the full value including its payload."""
        ...

    def create_value(self, shard_id: str, value: Value) -> Value:
        """Create *value* in *shard_id* and return the stored copy."""
        ...

    def delete_value(self, shard_id: str, value_id: str) -> None:
        """Delete a value from *shard_id*."""
        ...

    def delete_shard(self, shard_id: str) -> None:
        """Delete the application *shard_id*."""
        ...


def value_console_url(project_id: str, shard_id: str, value_id: str) -> str:
    """Return the admin console link for a value (used in operator messages)."""
    return f"{CONSOLE_URL}/groups/{project_id}/apps/{shard_id}/values/{value_id}"


def build_session(retries: int) -> requests.Session:
    """Return a session retrying transient failures of idempotent calls."""
    session = requests.Session()
    policy = Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        backoff_factor=0.5,
        status_forcelist=(502, 503, 504),
        allowed_methods=frozenset({"GET", "DELETE"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=policy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


@dataclass(slots=True)
class RealmStateStore:
    """State store backed by the Realm admin REST API."""

    project_id: str
    public_key: str
    private_key: str
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30.0
    retries: int = 3
    session: requests.Session | None = None
    _token: str | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        """Normalise the base URL."""
        if not self.base_url.endswith("/"):
            self.base_url = f"{self.base_url}/"

    # ------------------------------------------------------------------
    def login(self) -> None:
        """Exchange the API key pair for a bearer token."""
        url = f"{self.base_url}{LOGIN_PATH}"
        try:
            response = self._http().post(
                url,
                json={"username": self.public_key, "apiKey": self.private_key},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StateStoreAuthError(f"Cannot reach {url}: {exc}") from exc
        if response.status_code in (401, 403):
            raise StateStoreAuthError(
                f"Authentication rejected for public key {self.public_key} "
                f"(HTTP {response.status_code})."
            )
        payload = self._json(response, "login")
        token = payload.get("access_token") if isinstance(payload, Mapping) else None
        if not isinstance(token, str) or not token:
            raise StateStoreAuthError("Login response did not include an access token.")
        self._token = token
        LOGGER.debug("Authorized to %s as %s", self.base_url, self.public_key)

    def list_shards(self) -> list[Shard]:
        """Return every application in the project."""
        payload = self._request("GET", self._apps_path(), operation="list apps")
        try:
            return [Shard.from_wire(item) for item in self._expect_list(payload, "list apps")]
        except SchemaError as exc:
            raise StateStoreError(f"list apps: {exc}") from exc

    def list_values(self, shard_id: str) -> list[ValueSummary]:
        """Return the values stored in *shard_id* in store order."""
        operation = f"list values of {shard_id}"
        payload = self._request("GET", self._values_path(shard_id), operation=operation)
        try:
            return [
                ValueSummary.from_wire(item) for item in self._expect_list(payload, operation)
            ]
        except SchemaError as exc:
            raise StateStoreError(f"{operation}: {exc}") from exc

    def get_value(self, shard_id: str, value_id: str) -> Value:
        """Return the full value including its payload."""
        operation = f"get value {value_id} from {shard_id}"
        payload = self._request(
            "GET",
            f"{self._values_path(shard_id)}/{value_id}",
            operation=operation,
        )
        if not isinstance(payload, Mapping):
            raise StateStoreError(f"{operation}: unexpected response {payload!r}")
        try:
            return Value.from_wire(payload)
        except SchemaError as exc:
            raise StateStoreError(f"{operation}: {exc}") from exc

    def create_value(self, shard_id: str, value: Value) -> Value:
        """Create *value* in *shard_id* and return the stored copy."""
        operation = f"create value {value.name} in {shard_id}"
        body = value.to_wire()
        body.pop("_id", None)
        payload = self._request(
            "POST",
            self._values_path(shard_id),
            operation=operation,
            json_body=body,
        )
        if not isinstance(payload, Mapping):
            return Value(name=value.name, payload=value.payload, private=value.private)
        created_id = payload.get("_id")
        return Value(
            id=created_id if isinstance(created_id, str) else "",
            name=value.name,
            payload=value.payload,
            private=value.private,
        )

    def delete_value(self, shard_id: str, value_id: str) -> None:
        """Delete a value from *shard_id*."""
        self._request(
            "DELETE",
            f"{self._values_path(shard_id)}/{value_id}",
            operation=f"delete value {value_id} from {shard_id}",
        )

    def delete_shard(self, shard_id: str) -> None:
        """Delete the application *shard_id*."""
        self._request(
            "DELETE",
            f"{self._apps_path()}/{shard_id}",
            operation=f"delete app {shard_id}",
        )

    # ------------------------------------------------------------------
    def _http(self) -> requests.Session:
        if self.session is None:
            self.session = build_session(self.retries)
        return self.session

    def _apps_path(self) -> str:
        return f"groups/{self.project_id}/apps"

    def _values_path(self, shard_id: str) -> str:
        return f"{self._apps_path()}/{shard_id}/values"

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: Mapping[str, Any] | None = None,
    ) -> object:
        if self._token is None:
            self.login()
        url = f"{self.base_url}{path}"
        try:
            response = self._http().request(
                method,
                url,
                json=json_body,
                headers={"Authorization": f"Bearer {self._token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StateStoreError(f"{operation} failed: {exc}") from exc
        return self._json(response, operation)

    @staticmethod
    def _json(response: requests.Response, operation: str) -> object:
        if response.status_code >= 400:
            detail = response.text.strip() or response.reason or "no response body"
            raise StateStoreError(
                f"{operation} failed (HTTP {response.status_code}): {detail}"
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise StateStoreError(f"{operation} returned invalid JSON: {exc}") from exc

    @staticmethod
    def _expect_list(payload: object, operation: str) -> list[Mapping[str, Any]]:
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise StateStoreError(f"{operation}: expected a list, got {type(payload).__name__}")
        entries: list[Mapping[str, Any]] = []
        for item in payload:
            if not isinstance(item, Mapping):
                raise StateStoreError(f"{operation}: unexpected entry {item!r}")
            entries.append(item)
        return entries


def state_shards(store: StateStore, shard_name: str) -> list[Shard]:
    """Return the shards named *shard_name* in listing order."""
    shards = store.list_shards()
    LOGGER.info("Found %d apps, filtering for %r", len(shards), shard_name)
    matches = [shard for shard in shards if shard.name == shard_name]
    for shard in matches:
        LOGGER.info("%s (%s)", shard.id, shard.client_app_id)
    return matches


__all__ = [
    "DEFAULT_BASE_URL",
    "RealmStateStore",
    "StateStore",
    "StateStoreAuthError",
    "StateStoreError",
    "build_session",
    "state_shards",
    "value_console_url",
]
