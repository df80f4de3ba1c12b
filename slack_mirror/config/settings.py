"""Application settings with Pydantic Settings validation.

Secrets (tokens, cookies) are loaded from the environment or a .env file.
Non-sensitive configuration is loaded from config/main.yaml, validated
against config/schemas/main.schema.json, and never overrides values that
came from the environment.
"""

import json
from pathlib import Path
from typing import Any, Final, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from slack_mirror.config.logging_config import get_logger
from slack_mirror.domain.exceptions import CredentialsNotFoundError
from slack_mirror.domain.models import AuthMode, SlackCredentials

DEFAULT_DB_PATH: Final[str] = "data/slack-mirror.db"
DEFAULT_CONFIG_PATH: Final[str] = "config/main.yaml"
DEFAULT_SCHEMA_DIR: Final[str] = "config/schemas"

# Slack tier-3 methods allow roughly 50 requests per minute.
SLACK_RATE_LIMIT_INTERVAL_SECONDS_DEFAULT: Final[float] = 1.2
SLACK_PAGE_SIZE_DEFAULT: Final[int] = 200
SLACK_RETRY_AFTER_FALLBACK_SECONDS: Final[float] = 10.0
SLACK_REQUEST_TIMEOUT_SECONDS_DEFAULT: Final[int] = 30

IMPORT_CONCURRENCY_FULL_DEFAULT: Final[int] = 3
IMPORT_CONCURRENCY_INCREMENTAL_DEFAULT: Final[int] = 8
METADATA_TTL_HOURS_DEFAULT: Final[float] = 24.0

POLL_INTERVAL_SECONDS_DEFAULT: Final[float] = 30.0
CHANNEL_SYNC_INTERVAL_SECONDS_DEFAULT: Final[float] = 600.0
NOTIFICATION_QUEUE_SIZE_DEFAULT: Final[int] = 1000

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge into base (takes precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_schema(schema_name: str, schema_dir: str = DEFAULT_SCHEMA_DIR) -> dict[str, Any]:
    """Load JSON Schema from config/schemas/.

    Args:
        schema_name: Schema name without extension (e.g., "main")
        schema_dir: Directory holding ``*.schema.json`` files

    Returns:
        JSON Schema dictionary or empty dict if not found
    """
    schema_path = Path(schema_dir) / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return cast(dict[str, Any], json.load(f))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(
            "config_schema_load_failed",
            schema=schema_name,
            error=str(e),
        )
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    file_path: str = "",
    schema_dir: str = DEFAULT_SCHEMA_DIR,
) -> None:
    """Validate config section against JSON Schema.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name, schema_dir)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
        logger.debug("config_validation_succeeded", schema=schema_name)
    except JSONSchemaValidationError as e:
        error_msg = f"Config validation failed for {schema_name}"
        if file_path:
            error_msg += f" (file: {file_path})"
        error_msg += f": {e.message}"
        raise ValueError(error_msg) from e


def load_yaml_config(
    config_path: str = DEFAULT_CONFIG_PATH, schema_dir: str = DEFAULT_SCHEMA_DIR
) -> dict[str, Any]:
    """Load config/main.yaml plus an optional config/local.yaml override.

    Returns:
        Merged configuration dictionary (empty when no file exists)
    """
    merged: dict[str, Any] = {}
    main_path = Path(config_path)
    local_path = main_path.with_name("local.yaml")

    for path in (main_path, local_path):
        if not path.exists():
            continue
        try:
            with open(path, encoding="utf-8") as f:
                section = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning("config_file_load_failed", path=str(path), error=str(e))
            continue

        validate_config_section(section, "main", str(path), schema_dir)
        merged = deep_merge(merged, section)
        logger.debug("config_file_loaded", path=str(path))

    return merged


class Settings(BaseSettings):
    """Application settings.

    Secrets come from the environment. Everything else may come from
    config/main.yaml with fallback to defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    slack_bot_token: SecretStr | None = Field(
        default=None, description="Bot token (xoxb-)"
    )
    slack_app_token: SecretStr | None = Field(
        default=None, description="App-level token for Socket Mode (xapp-)"
    )
    slack_user_token: SecretStr | None = Field(
        default=None, description="User OAuth token (xoxp-)"
    )
    slack_cookie_token: SecretStr | None = Field(
        default=None, description="Browser session token (xoxc-)"
    )
    slack_cookie_d: SecretStr | None = Field(
        default=None, description="Browser session cookie d (xoxd-)"
    )

    # === NON-SENSITIVE CONFIG (from config/main.yaml or defaults) ===

    db_path: str = Field(default=DEFAULT_DB_PATH, description="SQLite database path")
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    slack_rate_limit_interval_seconds: float = Field(
        default=SLACK_RATE_LIMIT_INTERVAL_SECONDS_DEFAULT,
        description="Minimum spacing between Slack API requests per credential",
    )
    slack_page_size: int = Field(
        default=SLACK_PAGE_SIZE_DEFAULT,
        description="Messages requested per history/replies page",
    )
    slack_retry_after_fallback_seconds: float = Field(
        default=SLACK_RETRY_AFTER_FALLBACK_SECONDS,
        description="Wait used when a rate-limit response has no Retry-After",
    )
    slack_request_timeout_seconds: int = Field(
        default=SLACK_REQUEST_TIMEOUT_SECONDS_DEFAULT,
        description="Per-request HTTP timeout",
    )

    import_concurrency_full: int = Field(
        default=IMPORT_CONCURRENCY_FULL_DEFAULT,
        description="Parallel workers for channels without an import cursor",
    )
    import_concurrency_incremental: int = Field(
        default=IMPORT_CONCURRENCY_INCREMENTAL_DEFAULT,
        description="Parallel workers for channels with an import cursor",
    )
    import_channels: list[str] = Field(
        default_factory=list,
        description="Channel ids or names to import (empty = all reachable)",
    )
    import_include_dms: bool = Field(
        default=False, description="Also import DMs and group DMs"
    )
    import_join_public: bool = Field(
        default=False,
        description="Join unjoined public channels in user/session mode",
    )
    import_metadata: bool = Field(
        default=True, description="Import pins, bookmarks, emoji, groups, files, stars"
    )
    metadata_ttl_hours: float = Field(
        default=METADATA_TTL_HOURS_DEFAULT,
        description="Minimum age before metadata of one kind is refetched",
    )

    poll_interval_seconds: float = Field(
        default=POLL_INTERVAL_SECONDS_DEFAULT,
        description="Sleep between poll cycles",
    )
    channel_sync_interval_seconds: float = Field(
        default=CHANNEL_SYNC_INTERVAL_SECONDS_DEFAULT,
        description="How often the poller refreshes its channel and user lists",
    )
    notification_queue_size: int = Field(
        default=NOTIFICATION_QUEUE_SIZE_DEFAULT,
        description="Per-subscriber buffer of live notifications",
    )

    @field_validator(
        "slack_page_size",
        "import_concurrency_full",
        "import_concurrency_incremental",
        "notification_queue_size",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @field_validator("slack_rate_limit_interval_seconds", "poll_interval_seconds")
    @classmethod
    def _ensure_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    def __init__(self, **data: Any):
        """Initialize settings with values from config/main.yaml."""
        config = load_yaml_config()

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced defaults without overriding env-provided values."""

        fields_from_env = set(self.model_fields_set)

        def _assign(field_name: str, value: Any) -> None:
            if value is None:
                return
            if field_name in fields_from_env:
                return

            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

        database_config = config.get("database") or {}
        _assign("db_path", database_config.get("path"))

        logging_config = config.get("logging") or {}
        _assign("log_level", logging_config.get("level"))
        _assign("json_logs", logging_config.get("json"))

        slack_config = config.get("slack") or {}
        _assign(
            "slack_rate_limit_interval_seconds",
            slack_config.get("rate_limit_interval_seconds"),
        )
        _assign("slack_page_size", slack_config.get("page_size"))
        _assign(
            "slack_retry_after_fallback_seconds",
            slack_config.get("retry_after_fallback_seconds"),
        )
        _assign(
            "slack_request_timeout_seconds", slack_config.get("request_timeout_seconds")
        )

        import_config = config.get("import") or {}
        _assign("import_concurrency_full", import_config.get("concurrency_full"))
        _assign(
            "import_concurrency_incremental",
            import_config.get("concurrency_incremental"),
        )
        _assign("import_channels", import_config.get("channels"))
        _assign("import_include_dms", import_config.get("include_dms"))
        _assign("import_join_public", import_config.get("join_public"))
        _assign("import_metadata", import_config.get("metadata"))
        _assign("metadata_ttl_hours", import_config.get("metadata_ttl_hours"))

        live_config = config.get("live") or {}
        _assign("poll_interval_seconds", live_config.get("poll_interval_seconds"))
        _assign(
            "channel_sync_interval_seconds",
            live_config.get("channel_sync_interval_seconds"),
        )
        _assign("notification_queue_size", live_config.get("notification_queue_size"))

    def resolve_credentials(self) -> SlackCredentials:
        """Pick the credential mode from what is configured.

        Priority: bot (bot token + app token), user token, browser session.

        Raises:
            CredentialsNotFoundError: If no complete combination is present
        """
        if self.slack_bot_token is not None and self.slack_app_token is not None:
            return SlackCredentials(
                mode=AuthMode.BOT,
                token=self.slack_bot_token,
                app_token=self.slack_app_token,
            )

        if self.slack_user_token is not None:
            return SlackCredentials(mode=AuthMode.USER, token=self.slack_user_token)

        if self.slack_cookie_token is not None and self.slack_cookie_d is not None:
            return SlackCredentials(
                mode=AuthMode.SESSION,
                token=self.slack_cookie_token,
                cookie_d=self.slack_cookie_d,
            )

        raise CredentialsNotFoundError(
            "No Slack credentials found. Configure one of: "
            "SLACK_BOT_TOKEN + SLACK_APP_TOKEN (bot mode), "
            "SLACK_USER_TOKEN (user mode), "
            "SLACK_COOKIE_TOKEN + SLACK_COOKIE_D (session mode)"
        )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
