"""
Tests for configuration functionality.
"""
import os
import pytest
from unittest.mock import patch

from llm_relay.config import BackendConfig, Settings


@pytest.mark.unit
class TestBackendConfig:
    """Test BackendConfig functionality."""

    def test_backend_config_init(self):
        """Test BackendConfig initialization."""
        config = BackendConfig(
            name="Groq",
            backend_type="openai",
            base_url="https://api.groq.com/openai/v1",
            api_key="test-key",
            model="llama-3.3-70b-versatile",
            timeout=30,
            temperature=0.6,
            max_tokens=1024
        )

        assert config.name == "Groq"
        assert config.backend_type == "openai"
        assert config.api_key == "test-key"
        assert config.model == "llama-3.3-70b-versatile"
        assert config.timeout == 30
        assert config.temperature == 0.6
        assert config.max_tokens == 1024

    def test_backend_config_defaults(self):
        """Test BackendConfig default values."""
        config = BackendConfig(name="x", backend_type="gemini", base_url="http://x")

        assert config.api_key is None
        assert config.timeout == 120
        assert config.temperature is None
        assert config.max_tokens is None
        assert config.fallback_models == []
        assert config.extra_headers == {}

    def test_repr(self):
        config = BackendConfig(name="Groq", backend_type="openai", base_url="http://x", model="m")
        assert repr(config) == "BackendConfig(name='Groq', type='openai', model='m')"


@pytest.mark.unit
class TestSettings:
    """Test Settings loading."""

    @patch.dict(os.environ, {}, clear=True)
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.port == 3000
        assert settings.host == "0.0.0.0"
        assert settings.auth_secret is None
        assert settings.rotation_strategy == "ordered"
        assert settings.exhaustion_mode == "placeholder"
        assert settings.get_rotation_configs() == []
        assert settings.get_last_resort_config() is None

    @patch.dict(os.environ, {
        "GROQ_API_KEY": "gk",
        "CEREBRAS_API_KEY": "ck",
        "GEMINI_API_KEY": "mk",
        "OPENROUTER_API_KEY": "ok",
        "AUTH_SECRET": "s3cret",
        "PORT": "8080",
        "EXHAUSTION_MODE": "error",
    }, clear=True)
    def test_environment_variables(self):
        settings = Settings(_env_file=None)

        assert settings.port == 8080
        assert settings.auth_secret == "s3cret"
        assert settings.exhaustion_mode == "error"
        assert [c.name for c in settings.get_rotation_configs()] == ["Groq", "Cerebras", "Gemini"]
        assert settings.get_last_resort_config().api_key == "ok"

    @patch.dict(os.environ, {"GEMINI_API_KEY": "mk", "GROQ_API_KEY": "gk"}, clear=True)
    def test_rotation_order_is_fixed(self):
        configs = Settings(_env_file=None).get_rotation_configs()

        assert [c.name for c in configs] == ["Groq", "Gemini"]
        assert [c.backend_type for c in configs] == ["openai", "gemini"]

    @patch.dict(os.environ, {"CEREBRAS_API_KEY": "ck"}, clear=True)
    def test_cerebras_settings(self):
        config = Settings(_env_file=None).get_rotation_configs()[0]

        assert config.model == "llama3.1-70b"
        assert config.max_tokens == 40960
        assert config.temperature == 0.6

    @patch.dict(os.environ, {"ROTATION_STRATEGY": "sideways"}, clear=True)
    def test_invalid_rotation_strategy(self):
        with pytest.raises(ValueError):
            Settings(_env_file=None)


@pytest.mark.unit
class TestLastResortConfig:
    """Test the OpenRouter last-resort configuration."""

    @patch.dict(os.environ, {"OPENROUTER_API_KEY": "ok"}, clear=True)
    def test_default_free_models(self):
        config = Settings(_env_file=None).get_last_resort_config()

        assert config.name == "OpenRouter"
        assert config.backend_type == "openrouter"
        assert config.model == "meta-llama/llama-3.3-70b-instruct:free"
        assert config.fallback_models == [
            "google/gemini-2.0-flash-exp:free",
            "mistralai/mistral-small-3.1-24b-instruct:free"
        ]
        assert config.extra_headers["X-Title"] == "Multi-IA Proxy"

    @patch.dict(os.environ, {
        "OPENROUTER_API_KEY": "ok",
        "OPENROUTER_MODELS": " a/one , ,b/two "
    }, clear=True)
    def test_custom_model_list(self):
        settings = Settings(_env_file=None)

        assert settings.get_openrouter_models() == ["a/one", "b/two"]
        config = settings.get_last_resort_config()
        assert config.model == "a/one"
        assert config.fallback_models == ["b/two"]
