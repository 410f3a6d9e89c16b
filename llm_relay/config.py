# LLM Relay - OpenAI API compatible failover proxy for multiple LLM backends
# Copyright (C) 2025
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Configuration management for the LLM relay.
"""
from typing import Optional, Literal, List, Dict
from pydantic import Field
from pydantic_settings import BaseSettings

BackendType = Literal["openai", "gemini", "openrouter"]
RotationStrategy = Literal["ordered", "round_robin"]
ExhaustionMode = Literal["placeholder", "error"]


class BackendConfig:
    """Configuration for a single LLM backend."""

    def __init__(
        self,
        name: str,
        backend_type: BackendType,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = "",
        timeout: float = 120,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        fallback_models: Optional[List[str]] = None,
        extra_headers: Optional[Dict[str, str]] = None
    ):
        self.name = name
        self.backend_type = backend_type
        self.base_url = base_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.fallback_models = list(fallback_models or [])
        self.extra_headers = dict(extra_headers or {})

    def __repr__(self) -> str:
        return f"BackendConfig(name='{self.name}', type='{self.backend_type}', model='{self.model}')"


class Settings(BaseSettings):
    """Application settings."""

    # Groq
    groq_api_key: Optional[str] = Field(None, description="Groq API key")
    groq_base_url: str = Field(
        "https://api.groq.com/openai/v1",
        description="Groq API base URL"
    )
    groq_model: str = Field("llama-3.3-70b-versatile", description="Groq model")

    # Cerebras
    cerebras_api_key: Optional[str] = Field(None, description="Cerebras API key")
    cerebras_base_url: str = Field(
        "https://api.cerebras.ai/v1",
        description="Cerebras API base URL"
    )
    cerebras_model: str = Field("llama3.1-70b", description="Cerebras model")
    cerebras_max_completion_tokens: int = Field(
        40960, description="Cerebras max_completion_tokens"
    )

    # Gemini
    gemini_api_key: Optional[str] = Field(None, description="Gemini API key")
    gemini_base_url: str = Field(
        "https://generativelanguage.googleapis.com/v1beta",
        description="Gemini API base URL"
    )
    gemini_model: str = Field("gemini-3-flash", description="Gemini model")

    # OpenRouter (last resort)
    openrouter_api_key: Optional[str] = Field(None, description="OpenRouter API key")
    openrouter_base_url: str = Field(
        "https://openrouter.ai/api/v1",
        description="OpenRouter API base URL"
    )
    openrouter_models: str = Field(
        "meta-llama/llama-3.3-70b-instruct:free,"
        "google/gemini-2.0-flash-exp:free,"
        "mistralai/mistral-small-3.1-24b-instruct:free",
        description="Comma separated OpenRouter models, tried in order"
    )
    openrouter_referer: str = Field(
        "http://localhost:3000", description="HTTP-Referer sent to OpenRouter"
    )
    openrouter_title: str = Field("Multi-IA Proxy", description="X-Title sent to OpenRouter")

    temperature: float = Field(0.6, description="Sampling temperature sent to backends")

    # Server configuration
    host: str = Field("0.0.0.0", description="Host to bind the server to")
    port: int = Field(3000, description="Port to bind the server to")
    public_dir: str = Field("public", description="Directory served as static files")

    # API configuration
    api_title: str = Field("LLM Relay", description="API title")
    api_description: str = Field(
        "OpenAI compatible proxy that fails over across multiple LLM backends",
        description="API description"
    )
    api_version: str = Field("1.0.0", description="API version")
    public_model_id: str = Field(
        "multi-ia-proxy", description="Model id advertised by /v1/models"
    )

    # Transport timeout for backend calls, in seconds
    request_timeout: float = Field(120, description="Backend request timeout in seconds")

    # Dispatch behaviour
    rotation_strategy: RotationStrategy = Field(
        "ordered", description="ordered: same order for every request; round_robin: rotate start"
    )
    exhaustion_mode: ExhaustionMode = Field(
        "placeholder",
        description="placeholder: 200 with apology message; error: HTTP 503"
    )

    # Authentication configuration
    auth_secret: Optional[str] = Field(None, description="Shared secret for API access")

    def get_rotation_configs(self) -> List[BackendConfig]:
        """
        Get the rotation backends in fixed priority order.

        Returns:
            BackendConfig objects for Groq, Cerebras and Gemini, each one only
            when its API key is present
        """
        configs = []

        if self.groq_api_key:
            configs.append(BackendConfig(
                name="Groq",
                backend_type="openai",
                base_url=self.groq_base_url,
                api_key=self.groq_api_key,
                model=self.groq_model,
                timeout=self.request_timeout,
                temperature=self.temperature
            ))

        if self.cerebras_api_key:
            configs.append(BackendConfig(
                name="Cerebras",
                backend_type="openai",
                base_url=self.cerebras_base_url,
                api_key=self.cerebras_api_key,
                model=self.cerebras_model,
                timeout=self.request_timeout,
                temperature=self.temperature,
                max_tokens=self.cerebras_max_completion_tokens
            ))

        if self.gemini_api_key:
            configs.append(BackendConfig(
                name="Gemini",
                backend_type="gemini",
                base_url=self.gemini_base_url,
                api_key=self.gemini_api_key,
                model=self.gemini_model,
                timeout=self.request_timeout
            ))

        return configs

    def get_last_resort_config(self) -> Optional[BackendConfig]:
        """Get the last-resort backend, or None when OpenRouter is not configured."""
        if not self.openrouter_api_key:
            return None

        models = self.get_openrouter_models()
        return BackendConfig(
            name="OpenRouter",
            backend_type="openrouter",
            base_url=self.openrouter_base_url,
            api_key=self.openrouter_api_key,
            model=models[0] if models else "",
            timeout=self.request_timeout,
            fallback_models=models[1:],
            extra_headers={
                "HTTP-Referer": self.openrouter_referer,
                "X-Title": self.openrouter_title
            }
        )

    def get_openrouter_models(self) -> List[str]:
        """Parse the comma separated OpenRouter model list."""
        return [model.strip() for model in self.openrouter_models.split(",") if model.strip()]

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }


# Global settings instance
settings = Settings()
