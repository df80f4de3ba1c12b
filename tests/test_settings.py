"""Tests for settings loading and credential resolution."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import SecretStr

from slack_mirror.config.settings import (
    Settings,
    deep_merge,
    load_yaml_config,
    validate_config_section,
)
from slack_mirror.domain.exceptions import CredentialsNotFoundError
from slack_mirror.domain.models import AuthMode

REPO_ROOT = Path(__file__).resolve().parents[1]
SCHEMA_DIR = str(REPO_ROOT / "config" / "schemas")


def _write_config(directory: Path, content: dict[str, object], name: str = "main.yaml") -> Path:
    config_dir = directory / "config"
    config_dir.mkdir(exist_ok=True)
    path = config_dir / name
    path.write_text(yaml.safe_dump(content), encoding="utf-8")
    return path


class TestCredentialResolution:
    def test_bot_mode_needs_both_tokens(self) -> None:
        settings = Settings(
            slack_bot_token=SecretStr("xoxb-1"),
            slack_app_token=SecretStr("xapp-1"),
            slack_user_token=SecretStr("xoxp-1"),
        )

        credentials = settings.resolve_credentials()

        assert credentials.mode == AuthMode.BOT
        assert credentials.supports_push is True
        assert credentials.token.get_secret_value() == "xoxb-1"

    def test_bot_token_without_app_token_falls_back_to_user(self) -> None:
        settings = Settings(
            slack_bot_token=SecretStr("xoxb-1"),
            slack_user_token=SecretStr("xoxp-1"),
        )

        credentials = settings.resolve_credentials()

        assert credentials.mode == AuthMode.USER
        assert credentials.supports_push is False

    def test_session_mode_needs_cookie(self) -> None:
        settings = Settings(
            slack_cookie_token=SecretStr("xoxc-1"),
            slack_cookie_d=SecretStr("xoxd-1"),
        )

        credentials = settings.resolve_credentials()

        assert credentials.mode == AuthMode.SESSION
        assert credentials.cookie_d is not None
        assert credentials.cookie_d.get_secret_value() == "xoxd-1"

    def test_incomplete_session_is_rejected(self) -> None:
        settings = Settings(slack_cookie_token=SecretStr("xoxc-1"))

        with pytest.raises(CredentialsNotFoundError):
            settings.resolve_credentials()

    def test_credentials_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SLACK_USER_TOKEN", "xoxp-env")

        credentials = Settings().resolve_credentials()

        assert credentials.mode == AuthMode.USER
        assert credentials.token.get_secret_value() == "xoxp-env"


class TestYamlConfig:
    def test_yaml_values_become_defaults(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _write_config(
            tmp_path,
            {
                "database": {"path": "var/mirror.db"},
                "import": {"concurrency_full": 2, "channels": ["general"]},
                "live": {"poll_interval_seconds": 5},
            },
        )
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.db_path == "var/mirror.db"
        assert settings.import_concurrency_full == 2
        assert settings.import_channels == ["general"]
        assert settings.poll_interval_seconds == 5
        assert settings.import_concurrency_incremental == 8

    def test_environment_wins_over_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _write_config(tmp_path, {"database": {"path": "var/from-yaml.db"}})
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("DB_PATH", "var/from-env.db")

        assert Settings().db_path == "var/from-env.db"

    def test_local_override_is_merged(self, tmp_path: Path) -> None:
        main = _write_config(tmp_path, {"slack": {"page_size": 100, "request_timeout_seconds": 10}})
        _write_config(tmp_path, {"slack": {"page_size": 50}}, name="local.yaml")

        config = load_yaml_config(str(main), schema_dir=SCHEMA_DIR)

        assert config["slack"] == {"page_size": 50, "request_timeout_seconds": 10}

    def test_invalid_config_is_rejected(self, tmp_path: Path) -> None:
        main = _write_config(tmp_path, {"slack": {"page_size": "lots"}})

        with pytest.raises(ValueError, match="Config validation failed"):
            load_yaml_config(str(main), schema_dir=SCHEMA_DIR)

    def test_unknown_section_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            validate_config_section({"telemetry": {}}, "main", schema_dir=SCHEMA_DIR)

    def test_shipped_config_is_valid(self) -> None:
        config = load_yaml_config(str(REPO_ROOT / "config" / "main.yaml"), schema_dir=SCHEMA_DIR)

        assert config["import"]["concurrency_full"] == 3

    def test_missing_config_yields_defaults(self, tmp_path: Path) -> None:
        assert load_yaml_config(str(tmp_path / "absent.yaml"), schema_dir=SCHEMA_DIR) == {}


def test_deep_merge_keeps_unrelated_keys() -> None:
    merged = deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})

    assert merged == {"a": {"x": 1, "y": 3}, "b": 1}


def test_non_positive_concurrency_rejected() -> None:
    with pytest.raises(ValueError):
        Settings(import_concurrency_full=0)
