"""Configuration management for the no-wing permission governance tools."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="WARNING", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class StorageSettings(BaseModel):
    state_dir: str = Field(default="./.no-wing")
    audit_log_path: str = Field(default="./.no-wing/audit.jsonl")
    sqlite_path: str = Field(default="./.no-wing/state.sqlite")
    sqlite_wal: bool = Field(default=True)
    context_path: str = Field(default="./.no-wing/context.json")


class AWSSettings(BaseModel):
    default_region: str | None = Field(default=None)
    sts_region: str = Field(default="us-east-1")
    user_profile: str | None = Field(
        default=None,
        description="AWS profile holding the human developer's credentials.",
    )
    agent_profile: str | None = Field(
        default=None,
        description="AWS profile holding the agent service identity.",
    )
    provider_timeout_seconds: float = Field(default=15.0, ge=0.1, le=300.0)


class GovernanceSettings(BaseModel):
    policy_path: str = Field(default="./.no-wing/policy.yaml")
    capability_level: int = Field(default=1, ge=0, le=100)
    session_duration_seconds: int = Field(default=3600, ge=900, le=43200)
    session_refresh_buffer_seconds: int = Field(default=0, ge=0, le=3600)
    learned_cache_size: int = Field(default=256, ge=1, le=10_000)
    pending_ttl_seconds: int | None = Field(
        default=None,
        description="Age after which pending permission requests expire. None keeps them.",
    )
    max_commits_per_branch: int = Field(default=10, ge=1, le=1000)

    @field_validator("pending_ttl_seconds")
    @classmethod
    def _validate_pending_ttl(cls, value: int | None) -> int | None:
        if value is None:
            return None
        if value < 60:
            raise ValueError("pending_ttl_seconds must be at least 60")
        return value


class CloudTrailSettings(BaseModel):
    window_hours: int = Field(default=24, ge=1, le=24 * 90)
    grace_seconds: int = Field(default=900, ge=0, le=86400)
    max_events: int = Field(default=1000, ge=1, le=10_000)


class Settings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)
    governance: GovernanceSettings = Field(default_factory=GovernanceSettings)
    cloudtrail: CloudTrailSettings = Field(default_factory=CloudTrailSettings)


ENV_KEYS = {
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "state_dir": "NO_WING_STATE_DIR",
    "audit_log_path": "NO_WING_AUDIT_LOG",
    "sqlite_path": "NO_WING_SQLITE_PATH",
    "context_path": "NO_WING_CONTEXT_PATH",
    "policy_path": "NO_WING_POLICY_PATH",
    "aws_region": "AWS_DEFAULT_REGION",
    "user_profile": "NO_WING_USER_PROFILE",
    "agent_profile": "NO_WING_AGENT_PROFILE",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _resolve_path(path: str) -> str:
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = Path.cwd() / candidate
    return str(candidate.resolve())


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_optional_int(key: str, default: int | None) -> int | None:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    if value.strip().lower() in {"none", "never", "off"}:
        return None
    try:
        return int(value)
    except ValueError:
        _config_logger.warning("Invalid integer value for %s: %r, using default", key, value)
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def _storage_path(env_key: str, state_dir: str, filename: str) -> str:
    explicit = os.getenv(env_key)
    if explicit:
        return _resolve_path(explicit)
    return str(Path(state_dir) / filename)


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=Path.cwd() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])
    state_dir = _resolve_path(os.getenv(ENV_KEYS["state_dir"], StorageSettings().state_dir))

    settings_data: dict[str, object] = {
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "storage": {
            "state_dir": state_dir,
            "audit_log_path": _storage_path(ENV_KEYS["audit_log_path"], state_dir, "audit.jsonl"),
            "sqlite_path": _storage_path(ENV_KEYS["sqlite_path"], state_dir, "state.sqlite"),
            "sqlite_wal": _env_bool("SQLITE_WAL", StorageSettings().sqlite_wal),
            "context_path": _storage_path(ENV_KEYS["context_path"], state_dir, "context.json"),
        },
        "aws": {
            "default_region": os.getenv("AWS_REGION") or os.getenv(ENV_KEYS["aws_region"]),
            "sts_region": os.getenv("AWS_STS_REGION", AWSSettings().sts_region),
            "user_profile": os.getenv(ENV_KEYS["user_profile"]) or None,
            "agent_profile": os.getenv(ENV_KEYS["agent_profile"]) or None,
            "provider_timeout_seconds": _env_float(
                "NO_WING_PROVIDER_TIMEOUT_SECONDS",
                AWSSettings().provider_timeout_seconds,
            ),
        },
        "governance": {
            "policy_path": _storage_path(ENV_KEYS["policy_path"], state_dir, "policy.yaml"),
            "capability_level": _env_int(
                "NO_WING_CAPABILITY_LEVEL",
                GovernanceSettings().capability_level,
            ),
            "session_duration_seconds": _env_int(
                "NO_WING_SESSION_DURATION_SECONDS",
                GovernanceSettings().session_duration_seconds,
            ),
            "session_refresh_buffer_seconds": _env_int(
                "NO_WING_SESSION_REFRESH_BUFFER_SECONDS",
                GovernanceSettings().session_refresh_buffer_seconds,
            ),
            "learned_cache_size": _env_int(
                "NO_WING_LEARNED_CACHE_SIZE",
                GovernanceSettings().learned_cache_size,
            ),
            "pending_ttl_seconds": _env_optional_int(
                "NO_WING_PENDING_TTL_SECONDS",
                GovernanceSettings().pending_ttl_seconds,
            ),
            "max_commits_per_branch": _env_int(
                "NO_WING_MAX_COMMITS_PER_BRANCH",
                GovernanceSettings().max_commits_per_branch,
            ),
        },
        "cloudtrail": {
            "window_hours": _env_int(
                "NO_WING_CLOUDTRAIL_WINDOW_HOURS",
                CloudTrailSettings().window_hours,
            ),
            "grace_seconds": _env_int(
                "NO_WING_CLOUDTRAIL_GRACE_SECONDS",
                CloudTrailSettings().grace_seconds,
            ),
            "max_events": _env_int(
                "NO_WING_CLOUDTRAIL_MAX_EVENTS",
                CloudTrailSettings().max_events,
            ),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    return settings
