# Copyright (c) Microsoft. All rights reserved.

"""Tests for environment-driven settings."""

from sso_agent.config import Settings


def test_defaults(monkeypatch):
    for name in ("SIGN_IN_TIMEOUT_SECONDS", "BATCH_TOKEN_LIMIT", "TASK_DELAY_MINUTES", "STORAGE_BACKEND"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_environment()

    assert settings.sign_in_timeout_seconds == 300
    assert settings.batch_limit == 50
    assert settings.scheduler.task_delay_minutes == 5
    assert settings.storage.use_postgres is False


def test_service_connection_takes_precedence(monkeypatch):
    monkeypatch.setenv("CONNECTIONS__SERVICE_CONNECTION__SETTINGS__CLIENTID", "svc-app")
    monkeypatch.setenv("MicrosoftAppId", "legacy-app")
    monkeypatch.setenv("connectionName", "GraphConnection")
    monkeypatch.delenv("CONNECTION_NAME", raising=False)

    bot = Settings.from_environment().bot

    assert bot.app_id == "svc-app"
    assert bot.connection_name == "GraphConnection"


def test_invalid_integers_fall_back(monkeypatch):
    monkeypatch.setenv("SCHEDULER_INTERVAL_SECONDS", "soon")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")

    scheduler = Settings.from_environment().scheduler

    assert scheduler.interval_seconds == 60
    assert scheduler.enabled is False


def test_postgres_backend_selection(monkeypatch):
    monkeypatch.setenv("STORAGE_BACKEND", "Postgres")
    monkeypatch.setenv("PG_DSN", "postgresql://localhost/sso")

    storage = Settings.from_environment().storage

    assert storage.use_postgres
    assert storage.dsn == "postgresql://localhost/sso"
