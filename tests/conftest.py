import os

import pytest
from fastapi.testclient import TestClient

from graph.config import RouterSettings, with_overrides
from graph.models import Conversation
from graph.pipeline import build_components
from graph.tokens import TokenEstimator
from services.store import InMemoryConversationStore
from tests.utils import FakeRoutingModel

# Fixed test API key for consistent auth testing
TEST_API_KEY = "test_secret_key_12345"


@pytest.fixture(scope="session", autouse=True)
def setup_global_env():
    """
    Set baseline environment variables for the entire test session.
    Used to prevent accidental production connectivity.
    """
    os.environ["TOPIC_ROUTER_ENV"] = "test"
    os.environ["TOPIC_ROUTER_API_KEY"] = TEST_API_KEY


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Ensure every test runs with a clean/known environment."""
    monkeypatch.setenv("TOPIC_ROUTER_ENV", "test")
    monkeypatch.setenv("TOPIC_ROUTER_API_KEY", TEST_API_KEY)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("ROUTER_CONFIG", raising=False)
    monkeypatch.delenv("ROUTER_PROFILE", raising=False)
    monkeypatch.setenv("TOKENIZER_ENCODING", "none")
    monkeypatch.setenv("EMBEDDING_ENABLED", "0")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    yield


# ---------- Fixtures ----------
@pytest.fixture
def settings():
    """Built-in defaults, char-ratio token counts; no YAML, env or BPE download involved."""
    return RouterSettings(tokenizer_encoding="")


@pytest.fixture
def small_settings(settings):
    """Char-ratio sized budgets so tests can reason about token counts directly."""
    return with_overrides(
        settings,
        context={
            "max_tokens": 1000,
            "fallback_token_cap": 600,
            "full_inclusion_threshold": 800,
            "recent_tail_target": 500,
            "cross_chat_token_limit": 2000,
        },
    )


@pytest.fixture
def estimator():
    return TokenEstimator(None)


@pytest.fixture
def store():
    s = InMemoryConversationStore()
    s.add_conversation(Conversation(id="conv-1", title="Travel planning", user_id="user-1"))
    return s


@pytest.fixture
def routing_model():
    return FakeRoutingModel()


@pytest.fixture
def components(settings, store, routing_model):
    return build_components(settings, store=store, routing_model=routing_model, build_clients=False)


@pytest.fixture
def client():
    """
    TestClient with the FastAPI app.
    Lazy import ensures app is initialized with test env vars.
    """
    from app.main import app
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Return headers with a valid API key."""
    return {"X-API-Key": TEST_API_KEY}


@pytest.fixture
def wrong_auth_headers():
    """Return headers with an invalid API key."""
    return {"X-API-Key": "invalid-key-attempt"}
