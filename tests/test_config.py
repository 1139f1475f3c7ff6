from __future__ import annotations

import pytest

from crm_access.core.config import Settings, get_settings


def test_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CRM_DATABASE_URL", raising=False)
    settings = Settings()

    assert settings.database_url is None
    assert (settings.database_pool_min_size, settings.database_pool_max_size) == (50, 100)
    assert settings.database_acquire_timeout_seconds is None
    assert settings.query_max_retries == 3
    assert settings.query_retry_base_seconds == 1.0
    assert (settings.page_limit_manager, settings.page_limit_team_leader, settings.page_limit_salesman) == (
        5000,
        1000,
        200,
    )


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CRM_DATABASE_URL", "postgresql://crm:secret@db:5432/crm")
    monkeypatch.setenv("CRM_DATABASE_POOL_MAX_SIZE", "20")
    monkeypatch.setenv("CRM_PAGE_LIMIT_SALESMAN", "100")
    monkeypatch.setenv("DATABASE_URL", "postgresql://ignored")

    settings = Settings()

    assert settings.database_url == "postgresql://crm:secret@db:5432/crm"
    assert settings.database_pool_max_size == 20
    assert settings.page_limit_salesman == 100


def test_get_settings_is_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    get_settings.cache_clear()
    monkeypatch.setenv("CRM_ENVIRONMENT", "staging")
    try:
        first = get_settings()
        monkeypatch.setenv("CRM_ENVIRONMENT", "prod")
        assert get_settings() is first
        assert first.environment == "staging"
    finally:
        get_settings.cache_clear()
