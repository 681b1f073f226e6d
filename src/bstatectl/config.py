"""Configuration loader for bstatectl.

Values are merged from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/bstatectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``BSTATECTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export BSTATECTL_API__PUBLIC_KEY=abcdefgh
    export BSTATECTL_ARCHIVE__EXCLUDE_SHARDS='[5f3ddc7b77e6a4a4473d9a9b]'

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally; identifiers and keys are always kept verbatim.
The resulting configuration is exposed as immutable ``dataclasses`` and is
passed explicitly to every workflow.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml

from .store import DEFAULT_BASE_URL

ENV_PREFIX = "BSTATECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
# Never run through YAML coercion: ids such as "0123" must not become numbers.
VERBATIM_ENV_PATHS = {
    ("org_id",),
    ("project_id",),
    ("shard_name",),
    ("api", "public_key"),
    ("api", "private_key"),
}
REDACTED = "***"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class APIConfig:
    """State store API endpoint and credentials."""

    base_url: str = DEFAULT_BASE_URL
    public_key: str | None = None
    private_key: str | None = None
    timeout: float = 30.0
    retries: int = 3

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (private key redacted)."""
        return {
            "base_url": self.base_url,
            "public_key": self.public_key,
            "private_key": REDACTED if self.private_key else None,
            "timeout": self.timeout,
            "retries": self.retries,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Where shard snapshots are written."""

    root: Path = Path("backup")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root)}


@dataclass(frozen=True)
class ArchiveConfig:
    """Archived inventory used to rebuild lost values."""

    root: Path = Path("backup")
    snapshot: Path | None = None
    exclude_shards: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "snapshot": str(self.snapshot) if self.snapshot is not None else None,
            "exclude_shards": list(self.exclude_shards),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for bstatectl."""

    config_file: Path
    org_id: str | None
    project_id: str | None
    shard_name: str
    logs_dir: Path
    workers: int | None
    api: APIConfig
    backups: BackupConfig
    archive: ArchiveConfig

    def require(self, *names: str) -> None:
        """Raise :class:`ConfigError` unless every dotted setting in *names* is set."""
        missing = [name for name in names if not _lookup(self, name)]
        if missing:
            joined = ", ".join(missing)
            raise ConfigError(
                f"Missing required settings: {joined}. Pass them as options, "
                f"in the config file, or as {ENV_PREFIX}* environment variables."
            )

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "org_id": self.org_id,
            "project_id": self.project_id,
            "shard_name": self.shard_name,
            "logs_dir": str(self.logs_dir),
            "workers": self.workers,
            "api": self.api.to_dict(),
            "backups": self.backups.to_dict(),
            "archive": self.archive.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/bstatectl/config.yml",
    "org_id": None,
    "project_id": None,
    "shard_name": "broker-state",
    "logs_dir": "~/.local/state/bstatectl/logs",
    "workers": None,
    "api": {
        "base_url": DEFAULT_BASE_URL,
        "public_key": None,
        "private_key": None,
        "timeout": 30.0,
        "retries": 3,
    },
    "backups": {
        "root": "backup",
    },
    "archive": {
        "root": "backup",
        "snapshot": None,
        "exclude_shards": [],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS = {
    "api": {"base_url", "public_key", "private_key", "timeout", "retries"},
    "backups": {"root"},
    "archive": {"root", "snapshot", "exclude_shards"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _merge_into(merged, file_values)

    env_values = _env_overrides(resolved_env)
    if env_values:
        _merge_into(merged, env_values)

    if overrides:
        _merge_into(merged, _without_unset(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    path = path.expanduser()
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _section(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _section(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    api_mapping = _section(raw.get("api"), "api")
    retries = _int_setting(api_mapping.get("retries"), "api.retries", default=3)
    if retries < 0:
        raise ConfigError("api.retries must be non-negative.")
    api = APIConfig(
        base_url=_expect_str(api_mapping.get("base_url", DEFAULT_BASE_URL), "api.base_url"),
        public_key=_optional_str(api_mapping.get("public_key"), "api.public_key"),
        private_key=_optional_str(api_mapping.get("private_key"), "api.private_key"),
        timeout=_positive_number(api_mapping.get("timeout"), "api.timeout", default=30.0),
        retries=retries,
    )

    backups_mapping = _section(raw.get("backups"), "backups")
    backups = BackupConfig(root=_to_path(backups_mapping.get("root", "backup")))

    archive_mapping = _section(raw.get("archive"), "archive")
    snapshot_value = archive_mapping.get("snapshot")
    archive = ArchiveConfig(
        root=_to_path(archive_mapping.get("root", "backup")),
        snapshot=_to_path(snapshot_value) if snapshot_value else None,
        exclude_shards=tuple(
            _expect_str(item, "archive.exclude_shards[]")
            for item in _as_sequence(
                archive_mapping.get("exclude_shards") or [], "archive.exclude_shards"
            )
        ),
    )

    workers_value = raw.get("workers")
    workers: int | None = None
    if workers_value is not None:
        workers = _int_setting(workers_value, "workers", default=1)
        if workers <= 0:
            raise ConfigError("workers must be greater than zero when specified.")

    shard_name = _optional_str(raw.get("shard_name"), "shard_name")
    if not shard_name:
        raise ConfigError("shard_name must be a non-empty string.")

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        org_id=_optional_str(raw.get("org_id"), "org_id"),
        project_id=_optional_str(raw.get("project_id"), "project_id"),
        shard_name=shard_name,
        logs_dir=_to_path(raw.get("logs_dir")),
        workers=workers,
        api=api,
        backups=backups,
        archive=archive,
    )


def _env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        path = tuple(part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part)
        if not path:
            continue
        node = overrides
        for segment in path[:-1]:
            child = node.setdefault(segment, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {key} conflicts with a scalar setting.")
            node = child
        node[path[-1]] = value.strip() if path in VERBATIM_ENV_PATHS else _parse_env_value(value)
    return overrides


def _parse_env_value(raw: str) -> object:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw.strip()


def _merge_into(target: dict[str, object], source: Mapping[str, object]) -> None:
    for key, value in source.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge_into(current, value)
        else:
            target[key] = value


def _without_unset(overrides: Mapping[str, object]) -> dict[str, object]:
    """Drop ``None`` leaves so unset CLI flags never mask file or env values."""
    pruned: dict[str, object] = {}
    for key, value in overrides.items():
        if isinstance(value, Mapping):
            value = _without_unset(value) or None
        if value is not None:
            pruned[key] = value
    return pruned


def _lookup(config: AppConfig, dotted: str) -> object:
    current: object = config
    for segment in dotted.split("."):
        current = getattr(current, segment, None)
        if current is None:
            return None
    return current


def _section(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    return {str(key): item for key, item in value.items()}


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _to_path(value: object) -> Path:
    if not isinstance(value, (str, Path)):
        raise ConfigError(f"Cannot convert value {value!r} to Path.")
    return Path(value).expanduser()


def _int_setting(value: object, label: str, *, default: int) -> int:
    if value is None:
        return default
    # bool is an int subclass.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Expected {label} to be an integer. Got {value!r}.")
    return value


def _positive_number(value: object, label: str, *, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    if value <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {value}.")
    return float(value)


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _optional_str(value: object, key: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ConfigError(f"Expected {key} to be a string. Got {value!r}.")
    return str(value).strip() or None
