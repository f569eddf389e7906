"""Shared fixtures: clean environment, settings, a started application."""

from __future__ import annotations

from typing import Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.birdnest.app_factory import create_app
from backend.birdnest.core.config import Settings, get_settings

from tests.support import fake_cache, make_settings

ENV_KEYS = (
    "NODE_ENV", "ENVIRONMENT", "COOKIE_SECRET", "SESSION_STORE",
    "DATABASE_URL", "UPLOAD_DIR", "PORT", "BODY_LIMIT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Tests never pick up configuration from the host environment."""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def app(settings) -> FastAPI:
    return create_app(settings, cache=fake_cache())


@pytest.fixture
def client(app) -> Iterator[TestClient]:
    with TestClient(app) as c:
        yield c
