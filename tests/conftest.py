"""
Root conftest.py for NeuroData Hub API tests.

This file contains shared fixtures and pytest configuration
that applies to all test modules.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Ensure the project root is in the path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from api.shared.gemini import GeminiClient, set_gemini
from api.shared.settings import get_settings
from api.store_adapter import MemoryBackend, StoreAdapter, set_store

TEST_USER_ID = "11111111-2222-3333-4444-555555555555"
TEST_TOKEN = "test-token"

# Environment variables read by Settings.from_env
SETTINGS_ENV_VARS = [
    "SUPABASE_URL",
    "NEXT_PUBLIC_SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_ANON_KEY",
    "NEXT_PUBLIC_SUPABASE_ANON_KEY",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "GOOGLE_GEMINI_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_GENERATIVE_AI_API_KEY",
    "APP_URL",
    "NEXT_PUBLIC_APP_URL",
    "DEV_MODE",
    "NEXT_PUBLIC_DEV_MODE",
    "DEV_MODE_USER_ID",
    "NEURODATA_ENV",
    "NODE_ENV",
    "NEURODATA_LOG_LEVEL",
    "NEURODATA_PORT",
    "CLOUD_WORKER_ENABLED",
    "CLOUD_WORKER_POLL_SECONDS",
    "CLOUD_WORKER_MAX_JOBS",
    "CREDIT_DISCOUNT_CODES",
    "YOUTUBE_API_KEY",
    "CRON_SECRET",
]


# ============================================================================
# Pytest Hooks
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "websocket: mark test as involving WebSocket communication",
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running",
    )


def pytest_collection_modifyitems(config, items):
    """Mark tests with 'websocket' in their name."""
    for item in items:
        if "websocket" in item.name.lower():
            item.add_marker(pytest.mark.websocket)


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Run every test against a clean, unconfigured environment."""
    for name in SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def memory_store():
    """Fresh in-memory store installed as the process-wide store."""
    store = StoreAdapter(MemoryBackend())
    set_store(store)
    yield store
    set_store(None)


@pytest.fixture(autouse=True)
def reset_gemini():
    """Drop any Gemini client a test installed."""
    yield
    set_gemini(None)


@pytest.fixture
def fake_gemini():
    """A configured Gemini client whose ``generate`` is a mock."""
    gemini = MagicMock(spec=GeminiClient)
    gemini.available = True
    gemini.generate.return_value = "Generated text"
    set_gemini(gemini)
    return gemini


@pytest.fixture
def offline_gemini():
    """A Gemini client without an API key."""
    gemini = GeminiClient(None)
    set_gemini(gemini)
    return gemini


@pytest.fixture
def user_id():
    return TEST_USER_ID


@pytest.fixture
def auth_headers(memory_store):
    """Bearer headers for a registered test user."""
    memory_store.backend.register_user(
        TEST_TOKEN,
        {"id": TEST_USER_ID, "email": "researcher@example.com", "user_metadata": {"full_name": "Ada Tester"}},
    )
    return {"Authorization": f"Bearer {TEST_TOKEN}"}


@pytest.fixture
def set_env(clean_env):
    """Set environment variables and clear the cached settings."""

    def _set(**values):
        for name, value in values.items():
            clean_env.setenv(name, str(value))
        get_settings.cache_clear()

    return _set


@pytest.fixture
def client():
    """TestClient for the FastAPI app (startup events are not run)."""
    from fastapi.testclient import TestClient

    from main import app

    return TestClient(app)
