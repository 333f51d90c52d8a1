"""
Pytest Configuration and Fixtures

Provides shared fixtures for both unit and integration tests.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

import httpx


# ==============================================================================
# Browser Fakes
# ==============================================================================

@pytest.fixture
def fake_page():
    """A Playwright page double with AsyncMock mouse, keyboard and navigation."""
    from tests.mocks.fake_browser import make_fake_page

    return make_fake_page()


@pytest.fixture
def fake_computer(fake_page):
    """A connected-on-demand computer backed by ``fake_page``."""
    from tests.mocks.fake_browser import FakeComputer

    return FakeComputer(page=fake_page, screenshot_ttl=5.0, navigation_guard_wait=0.05)


# ==============================================================================
# Mission State
# ==============================================================================

@pytest.fixture
def memory_store():
    """Fresh mission memory store with a small history ring."""
    from src.agents.mission_cua.session_state import MissionMemoryStore

    return MissionMemoryStore(max_plan_steps=200, history_size=10)


@pytest.fixture
def sqlite_store(tmp_path):
    """SQLite store on a throwaway database file."""
    from src.agents.mission_cua.sqlite_store import SQLiteStore

    return SQLiteStore(db_path=str(tmp_path / "mission.db"))


@pytest.fixture
def mock_auth_store():
    """In-memory auth context store keyed by (tenant, platform)."""
    mock = AsyncMock()
    mock._records = {}

    async def get_auth_context(tenant_id, platform):
        record = mock._records.get((tenant_id, platform.lower()))
        return record if record and record.is_active else None

    async def save_auth_context(record):
        mock._records[(record.tenant_id, record.platform.lower())] = record
        return record

    mock.get_auth_context = AsyncMock(side_effect=get_auth_context)
    mock.save_auth_context = AsyncMock(side_effect=save_auth_context)
    mock.mark_context_used = AsyncMock(return_value=None)
    return mock


# ==============================================================================
# Model Endpoint
# ==============================================================================

@pytest.fixture
def scripted_model():
    """Empty scripted model; tests append turns before running."""
    from tests.mocks.mock_model_server import ScriptedModel

    return ScriptedModel()


@pytest.fixture
def model_client(scripted_model):
    """ResponsesClient wired to the mock model server over ASGI."""
    from src.agents.mission_cua.model_client import ResponsesClient
    from tests.mocks.mock_model_server import MOCK_BASE_URL, create_mock_model_app

    app = create_mock_model_app(scripted_model)
    return ResponsesClient(
        api_key="test-key",
        base_url=MOCK_BASE_URL,
        max_retries=0,
        transport=httpx.ASGITransport(app=app),
    )


@pytest.fixture
def mock_planner():
    """Planner double returning a fixed three-step plan."""
    planner = MagicMock()
    planner.generate_browser_steps = AsyncMock(
        return_value=["Open the site", "Search for the item", "Add it to the cart"]
    )
    return planner
