"""
Integration test configuration and fixtures.

The application runs in-process through FastAPI's TestClient with the
in-memory session backend, so no external services are required.
"""
import os
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from config.settings import clear_settings_cache

TEST_ENVIRONMENT = {
    "ENVIRONMENT": "development",
    "SESSION_STORAGE_TYPE": "memory",
    "SESSION_CLEANUP_INTERVAL_SECONDS": "3600",
    "LOG_LEVEL": "WARNING",
}


@pytest.fixture
def app_env():
    """Patch the process environment for the app and reload settings."""
    with patch.dict(os.environ, TEST_ENVIRONMENT):
        clear_settings_cache()
        yield
    clear_settings_cache()


@pytest.fixture
def client(app_env):
    """TestClient with the lifespan running, so the session manager exists."""
    from main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def session_manager(client):
    return client.app.state.session_manager
