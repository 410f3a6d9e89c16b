"""
Pytest configuration and shared fixtures for LLM Relay tests.
"""
import pytest
from typing import Any, Dict, List, Optional

from fastapi.testclient import TestClient

from llm_relay.app import create_app
from llm_relay.backend_service import BackendRegistry
from llm_relay.config import Settings
from llm_relay.exceptions import BackendError
from llm_relay.models import Delta, FunctionFragment, Message, ToolCallFragment


class FakeBackend:
    """In-memory backend yielding scripted deltas."""

    def __init__(
        self,
        name: str,
        deltas: Optional[List[Delta]] = None,
        fail_before: bool = False,
        fail_after: bool = False
    ):
        self.name = name
        self.deltas = list(deltas or [])
        self.fail_before = fail_before
        self.fail_after = fail_after
        self.calls = 0
        self.received: List[Dict[str, Any]] = []
        self.closed = False

    async def chat(self, messages, tools=None):
        self.calls += 1
        self.received.append({"messages": messages, "tools": tools})
        try:
            if self.fail_before:
                raise BackendError(self.name, "HTTP 401: invalid credentials", status_code=401)
            for delta in self.deltas:
                yield delta
            if self.fail_after:
                raise BackendError(self.name, "Connection reset")
        finally:
            self.closed = True


def text_deltas(*chunks: str) -> List[Delta]:
    return [Delta(content=chunk) for chunk in chunks]


def weather_tool_deltas() -> List[Delta]:
    return [
        Delta(tool_calls=[ToolCallFragment(
            index=0, id="call_abc", type="function",
            function=FunctionFragment(name="get_", arguments="")
        )]),
        Delta(tool_calls=[ToolCallFragment(
            index=0, function=FunctionFragment(name="weather", arguments="{\"c")
        )]),
        Delta(tool_calls=[ToolCallFragment(
            index=0, function=FunctionFragment(arguments="ity\":\"NY\"}")
        )]),
    ]


@pytest.fixture
def make_backend():
    """Factory for FakeBackend instances."""
    def _make(name: str, *chunks: str, **kwargs) -> FakeBackend:
        deltas = kwargs.pop("deltas", None)
        if deltas is None:
            deltas = text_deltas(*chunks)
        return FakeBackend(name, deltas=deltas, **kwargs)
    return _make


@pytest.fixture
def weather_deltas():
    """Deltas spelling out get_weather({"city":"NY"}) in three fragments."""
    return weather_tool_deltas()


@pytest.fixture
def user_messages():
    return [Message(role="user", content="hi")]


@pytest.fixture
def relay_settings():
    """Factory for Settings isolated from the environment and .env."""
    def _make(**overrides) -> Settings:
        values = {
            "groq_api_key": None,
            "cerebras_api_key": None,
            "gemini_api_key": None,
            "openrouter_api_key": None,
            "auth_secret": None,
            "public_dir": "__no_public_dir__",
            "rotation_strategy": "ordered",
            "exhaustion_mode": "placeholder",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
def make_client(relay_settings):
    """Factory for a TestClient over fake backends."""
    def _make(rotation, last_resort=None, **overrides) -> TestClient:
        app = create_app(relay_settings(**overrides), BackendRegistry(rotation, last_resort))
        return TestClient(app)
    return _make


@pytest.fixture
def auth_headers():
    """Valid authentication headers for testing."""
    return {"Authorization": "Bearer test-secret"}


@pytest.fixture
def invalid_auth_headers():
    """Invalid authentication headers for testing."""
    return {"Authorization": "Bearer invalid-key"}
