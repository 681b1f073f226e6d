"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from bstatectl.config import AppConfig, ConfigError, load_config
from bstatectl.store import DEFAULT_BASE_URL


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "absent.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.shard_name == "broker-state"
    assert config.org_id is None
    assert config.project_id is None
    assert config.workers is None
    assert config.api.base_url == DEFAULT_BASE_URL
    assert config.api.timeout == 30.0
    assert config.api.retries == 3
    assert config.backups.root == Path("backup")
    assert config.archive.exclude_shards == ()


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "bstatectl.yml"
    cfg.write_text(
        "org_id: org-1\n"
        "project_id: proj-1\n"
        "workers: 4\n"
        "api:\n"
        "  public_key: pub\n"
        "  timeout: 10\n"
        "backups:\n"
        "  root: {root}\n"
        "archive:\n"
        "  exclude_shards: [a1, a2]\n".format(root=tmp_path / "backups")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.org_id == "org-1"
    assert config.project_id == "proj-1"
    assert config.workers == 4
    assert config.api.public_key == "pub"
    assert config.api.timeout == 10.0
    assert config.backups.root == tmp_path / "backups"
    assert config.archive.exclude_shards == ("a1", "a2")


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "bstatectl.yml"
    cfg.write_text("project_id: from-file\nworkers: 2\n")
    env = {
        "BSTATECTL_PROJECT_ID": "from-env",
        "BSTATECTL_WORKERS": "8",
        "BSTATECTL_API__PRIVATE_KEY": "0123",
        "BSTATECTL_API__RETRIES": "5",
        "BSTATECTL_ARCHIVE__EXCLUDE_SHARDS": "[x, y]",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.project_id == "from-env"
    assert config.workers == 8
    assert config.api.private_key == "0123"
    assert config.api.retries == 5
    assert config.archive.exclude_shards == ("x", "y")


def test_config_file_env_var_is_honoured(tmp_path: Path) -> None:
    """``BSTATECTL_CONFIG_FILE`` selects the file when no path is passed."""
    cfg = tmp_path / "custom.yml"
    cfg.write_text("shard_name: other-state\n")

    config = load_config(env={"BSTATECTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.shard_name == "other-state"


def test_overrides_win_and_none_is_ignored(tmp_path: Path) -> None:
    """Explicit overrides beat env values; ``None`` leaves values unchanged."""
    env = {"BSTATECTL_ORG_ID": "env-org", "BSTATECTL_API__PUBLIC_KEY": "env-pub"}

    config = load_config(
        config_file=tmp_path / "absent.yml",
        env=env,
        overrides={"org_id": "cli-org", "api": {"public_key": None, "private_key": "cli"}},
    )

    assert config.org_id == "cli-org"
    assert config.api.public_key == "env-pub"
    assert config.api.private_key == "cli"


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("unknown: 1\n", "Unknown configuration keys"),
        ("api:\n  user: x\n", "Unknown api configuration keys"),
        ("workers: 0\n", "workers must be greater than zero"),
        ("api:\n  timeout: -1\n", "greater than zero"),
        ("api:\n  retries: -2\n", "non-negative"),
        ("shard_name: ''\n", "shard_name"),
        ("- a\n- b\n", "mapping at the top level"),
        ("archive:\n  exclude_shards: abc\n", "sequence"),
        ("workers: '4'\n", "workers to be an integer"),
        ("api:\n  retries: true\n", "api.retries to be an integer"),
        ("api:\n  timeout: fast\n", "api.timeout to be a number"),
    ],
)
def test_invalid_configuration_is_rejected(tmp_path: Path, content: str, message: str) -> None:
    """Validation errors name the offending setting."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})


def test_require_lists_missing_settings(tmp_path: Path) -> None:
    """``require`` names every unset setting at once."""
    config = load_config(config_file=tmp_path / "absent.yml", env={"BSTATECTL_PROJECT_ID": "p"})

    config.require("project_id")
    with pytest.raises(ConfigError, match="api.public_key, api.private_key"):
        config.require("project_id", "api.public_key", "api.private_key")


def test_to_dict_redacts_private_key(tmp_path: Path) -> None:
    """The private key never appears in rendered configuration."""
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={"BSTATECTL_API__PRIVATE_KEY": "top-secret"},
    )

    rendered = config.to_dict()

    assert rendered["api"]["private_key"] == "***"  # type: ignore[index]
    assert "top-secret" not in repr(rendered)


def test_env_nesting_cannot_replace_scalar_settings(tmp_path: Path) -> None:
    """A nested env key under a scalar env value is rejected."""
    env = {"BSTATECTL_WORKERS": "2", "BSTATECTL_WORKERS__MAX": "3"}

    with pytest.raises(ConfigError, match="BSTATECTL_WORKERS__MAX"):
        load_config(config_file=tmp_path / "absent.yml", env=env)
