# Copyright (c) Microsoft. All rights reserved.

"""
Configuration Module

Environment-driven settings for the SSO agent. Values are read from the
process environment (a local ``.env`` file is loaded first) and grouped into
small dataclasses so each component only sees the settings it needs.

Usage:
    from sso_agent.config import get_settings

    settings = get_settings()
    settings.configure_logging()
"""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env(*names: str, default: str = "") -> str:
    """Return the first non-empty environment variable out of *names*."""
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logging.getLogger(__name__).warning(
            f"⚠️ Invalid integer for {name}={value!r}, using {default}"
        )
        return default


# =============================================================================
# SETTINGS GROUPS
# =============================================================================

@dataclass
class BotSettings:
    """Bot identity and the OAuth connection used for user SSO."""

    app_id: str = ""
    tenant_id: str = ""
    client_secret: str = ""
    connection_name: str = ""
    auth_handler_name: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        """True when client credentials for the bot are configured."""
        return bool(self.app_id and self.tenant_id and self.client_secret)

    @classmethod
    def from_environment(cls) -> "BotSettings":
        return cls(
            app_id=_env("CONNECTIONS__SERVICE_CONNECTION__SETTINGS__CLIENTID", "MicrosoftAppId", "CLIENT_ID"),
            tenant_id=_env(
                "CONNECTIONS__SERVICE_CONNECTION__SETTINGS__TENANTID", "MicrosoftAppTenantId", "TENANT_ID"
            ),
            client_secret=_env(
                "CONNECTIONS__SERVICE_CONNECTION__SETTINGS__CLIENTSECRET", "MicrosoftAppPassword", "CLIENT_SECRET"
            ),
            connection_name=_env("CONNECTION_NAME", "connectionName"),
            auth_handler_name=_env("AUTH_HANDLER_NAME") or None,
        )


@dataclass
class SchedulerSettings:
    enabled: bool = True
    interval_seconds: int = 60
    task_delay_minutes: int = 5
    proactive_timeout_seconds: int = 60

    @classmethod
    def from_environment(cls) -> "SchedulerSettings":
        return cls(
            enabled=_env_bool("SCHEDULER_ENABLED", True),
            interval_seconds=_env_int("SCHEDULER_INTERVAL_SECONDS", 60),
            task_delay_minutes=_env_int("TASK_DELAY_MINUTES", 5),
            proactive_timeout_seconds=_env_int("PROACTIVE_TIMEOUT_SECONDS", 60),
        )


@dataclass
class StorageSettings:
    """Persistence backend for user contexts and scheduled tasks."""

    backend: str = "memory"
    dsn: str = ""

    @property
    def use_postgres(self) -> bool:
        return self.backend.lower() == "postgres"

    @classmethod
    def from_environment(cls) -> "StorageSettings":
        return cls(
            backend=_env("STORAGE_BACKEND", default="memory"),
            dsn=_env("PG_DSN"),
        )


@dataclass
class ObservabilitySettings:
    """Attach Agent 365 observability baggage to turns and scheduled tasks."""

    enabled: bool = True

    @classmethod
    def from_environment(cls) -> "ObservabilitySettings":
        return cls(enabled=_env_bool("ENABLE_OBSERVABILITY", True))


# =============================================================================
# SETTINGS
# =============================================================================

@dataclass
class Settings:
    """Top-level settings object returned by :func:`get_settings`."""

    bot: BotSettings = field(default_factory=BotSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    observability: ObservabilitySettings = field(default_factory=ObservabilitySettings)

    sign_in_timeout_seconds: int = 300
    batch_limit: int = 50
    port: int = 3978
    log_level: str = "INFO"

    @classmethod
    def from_environment(cls) -> "Settings":
        return cls(
            bot=BotSettings.from_environment(),
            scheduler=SchedulerSettings.from_environment(),
            storage=StorageSettings.from_environment(),
            observability=ObservabilitySettings.from_environment(),
            sign_in_timeout_seconds=_env_int("SIGN_IN_TIMEOUT_SECONDS", 300),
            batch_limit=_env_int("BATCH_TOKEN_LIMIT", 50),
            port=_env_int("PORT", 3978),
            log_level=_env("LOG_LEVEL", default="INFO").upper(),
        )

    def configure_logging(self) -> None:
        """Configure stdlib logging for the agent and quiet noisy SDK loggers."""
        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        ms_agents_logger = logging.getLogger("microsoft_agents")
        ms_agents_logger.setLevel(logging.INFO)

        logging.getLogger("microsoft_agents_a365.observability").setLevel(logging.ERROR)

        # MSAL logs every token cache lookup at INFO
        logging.getLogger("msal").setLevel(logging.WARNING)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings (read from the environment once)."""
    return Settings.from_environment()
