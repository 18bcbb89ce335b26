"""Application configuration."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class DatabaseSettings(BaseModel):
    """Database configuration."""

    url: str = "sqlite+aiosqlite:///data/callpanion.db"
    echo: bool = False


class FCMSettings(BaseModel):
    """Firebase Cloud Messaging (HTTP v1) configuration."""

    # Service account JSON, inline or as a file path
    service_account_json: str = ""
    service_account_file: str = ""
    # Falls back to the service account's project_id
    project_id: str = ""
    android_channel_id: str = "callpanion_calls"
    token_uri: str = "https://oauth2.googleapis.com/token"


class APNsSettings(BaseModel):
    """Apple Push Notification service configuration."""

    key_id: str = ""
    team_id: str = ""
    # PKCS8 PEM (.p8 contents) or the same, base64 encoded
    private_key: str = ""
    private_key_base64: str = ""
    bundle_id: str = ""
    voip_topic: str = ""  # Defaults to "{bundle_id}.voip"
    production: bool = False


class PushSettings(BaseModel):
    """Push gateway configuration."""

    fcm: FCMSettings = Field(default_factory=FCMSettings)
    apns: APNsSettings = Field(default_factory=APNsSettings)


class ConversationSettings(BaseModel):
    """Conversational-AI provider configuration."""

    provider: str = "elevenlabs"
    api_key: str = ""
    agent_id: str = ""
    base_url: str = "https://api.elevenlabs.io"
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 1800
    timeout: float = 15.0


class Settings(BaseSettings):
    """Application settings.

    Loaded from:
    1. Environment variables (CALLPANION_*)
    2. configs/{environment}.yaml
    3. configs/default.yaml
    """

    model_config = SettingsConfigDict(
        env_prefix="CALLPANION_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    debug: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # JWT Authentication (family accounts)
    jwt_secret_key: str = ""  # MUST be set in production!
    jwt_algorithm: str = "HS256"
    jwt_expiry_minutes: int = 60

    # Security gate
    allowed_origins: Annotated[list[str], NoDecode] = Field(default_factory=list)  # empty = allow all
    rate_limit_per_window: int = 20
    rate_limit_window_seconds: int = 300
    trusted_proxies: Annotated[list[str], NoDecode] = Field(default_factory=list)
    service_api_key: str = ""  # Call scheduler key (X-Service-Key); empty disables

    # Pairing and sessions
    pairing_ttl_seconds: int = 600
    session_timeout_seconds: int = 7200
    scheduled_missed_after_seconds: int = 900
    max_concurrent_calls_per_household: int = 3

    # Reconciliation pass
    reconcile_enabled: bool = True
    reconcile_interval_seconds: int = 60

    # Subsystems
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    push: PushSettings = Field(default_factory=PushSettings)
    conversation: ConversationSettings = Field(default_factory=ConversationSettings)

    @field_validator("allowed_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        """Accept comma-separated strings as well as lists."""
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def is_production(self) -> bool:
        """Whether running in a production-like environment."""
        return self.environment in ("production", "staging", "prod")


def validate_production_settings(settings: Settings) -> list[str]:
    """Validate settings for production deployment.

    Returns:
        List of validation errors (empty if valid)
    """
    errors: list[str] = []

    if not settings.is_production:
        return errors

    if not settings.jwt_secret_key:
        errors.append("CALLPANION_JWT_SECRET_KEY is required in production")
    elif len(settings.jwt_secret_key) < 32:
        errors.append("CALLPANION_JWT_SECRET_KEY must be at least 32 characters")

    if settings.debug:
        errors.append("CALLPANION_DEBUG must be false in production")

    if "sqlite" in settings.database.url:
        errors.append("SQLite is not supported in production, use PostgreSQL")

    conversation = settings.conversation
    if not conversation.api_key or not conversation.agent_id:
        errors.append("Conversation provider api_key and agent_id are required")
    if not conversation.webhook_secret:
        errors.append("CALLPANION_CONVERSATION__WEBHOOK_SECRET is required in production")

    fcm = settings.push.fcm
    apns = settings.push.apns
    if not (fcm.service_account_json or fcm.service_account_file):
        errors.append("FCM service account is not configured")
    if not (apns.key_id and apns.team_id and apns.bundle_id):
        errors.append("APNs key_id, team_id and bundle_id are required")
    if not (apns.private_key or apns.private_key_base64):
        errors.append("APNs private key is not configured")

    return errors


def require_valid_settings(settings: Settings | None = None) -> Settings:
    """Return settings, raising if they are not fit for production."""
    settings = settings or get_settings()
    errors = validate_production_settings(settings)
    if errors:
        raise ValueError(
            "Invalid production configuration:\n- " + "\n- ".join(errors)
        )
    return settings


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings object loaded from config files and environment.
    """
    from dynaconf import Dynaconf

    config_dir = Path("configs")
    env = os.getenv("CALLPANION_ENV", "development")

    settings_files = []
    if (config_dir / "default.yaml").exists():
        settings_files.append(str(config_dir / "default.yaml"))
    if (config_dir / f"{env}.yaml").exists():
        settings_files.append(str(config_dir / f"{env}.yaml"))

    dynaconf = Dynaconf(
        envvar_prefix="CALLPANION",
        settings_files=settings_files,
        load_dotenv=True,
    )

    config_dict: dict[str, Any] = {}
    for key in dynaconf.keys():
        if not key.startswith("_"):
            config_dict[key.lower()] = _to_plain(dynaconf[key])

    config_dict["environment"] = env

    return Settings(**config_dict)


def _to_plain(value: Any) -> Any:
    """Convert dynaconf Box values to plain containers for pydantic."""
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    if isinstance(value, dict):
        return {k.lower(): _to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_plain(v) for v in value]
    return value
