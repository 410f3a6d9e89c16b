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
Backends that stream chat completions from LLM providers.

Every backend exposes ``chat(messages, tools)``, an async generator of
``Delta`` objects. A failure may surface before the first delta (bad
credentials, HTTP error) or in the middle of the stream; both raise
``BackendError`` and the dispatcher treats them the same way.
"""
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from .config import BackendConfig, Settings
from .exceptions import BackendError
from .models import Delta, FunctionFragment, Message, ToolCallFragment

logger = logging.getLogger(__name__)


def _error_detail(body: bytes) -> str:
    """Pull a readable message out of an error response body."""
    if not body:
        return "Unknown error"
    try:
        data = json.loads(body.decode())
    except (ValueError, UnicodeDecodeError):
        return body.decode(errors="replace")[:500]

    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if data.get("message"):
            return str(data["message"])
    return json.dumps(data)[:500]


class BackendService:
    """Base class for a streaming LLM backend."""

    def __init__(
        self,
        config: BackendConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the backend.

        Args:
            config: Backend configuration
            transport: Optional httpx transport, used by tests
        """
        if not config.api_key:
            raise ValueError(f"{config.name} backend requires an API key")

        self.config = config
        self.name = config.name
        self.base_url = config.base_url.rstrip('/')
        self.timeout = config.timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Return the shared HTTP client, creating it on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport
            )
        return self._client

    def _get_endpoint_url(self, endpoint: str) -> str:
        endpoint = endpoint.lstrip('/')
        return f"{self.base_url}/{endpoint}"

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": f"LLM-Relay/1.0.0 ({self.name})"
        }

    async def _stream_events(
        self,
        url: str,
        payload: Dict[str, Any],
        params: Optional[Dict[str, str]] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        POST a streaming request and yield each SSE ``data:`` payload as JSON.

        Stops at ``data: [DONE]`` or when the server closes the stream.
        """
        client = self._get_client()
        try:
            async with client.stream(
                "POST",
                url,
                json=payload,
                params=params,
                headers=self._get_headers()
            ) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise BackendError(
                        self.name,
                        f"HTTP {response.status_code}: {_error_detail(body)}",
                        status_code=response.status_code
                    )

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue

                    data = line[5:].strip()
                    if data == "[DONE]":
                        break

                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug(f"[{self.name}] Skipping malformed chunk: {data[:200]}")
                        continue

                    if isinstance(event, dict) and event.get("error"):
                        raise BackendError(self.name, _error_detail(data.encode()))
                    if isinstance(event, dict):
                        yield event

        except httpx.TimeoutException as e:
            raise BackendError(self.name, "Request timed out") from e
        except httpx.RequestError as e:
            raise BackendError(self.name, f"Connection error: {str(e)}") from e

    def chat(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[Delta]:
        """Stream the model's answer to ``messages`` as deltas."""
        raise NotImplementedError

    async def aclose(self) -> None:
        """Close the shared HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OpenAICompatibleBackend(BackendService):
    """Backend for providers exposing the OpenAI chat completions API (Groq, Cerebras)."""

    def _get_headers(self) -> Dict[str, str]:
        headers = super()._get_headers()
        headers["Authorization"] = f"Bearer {self.config.api_key}"
        headers.update(self.config.extra_headers)
        return headers

    def _build_payload(
        self,
        model: str,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]]
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [message.to_wire() for message in messages],
            "stream": True
        }
        if self.config.temperature is not None:
            payload["temperature"] = self.config.temperature
        if self.config.max_tokens:
            payload["max_completion_tokens"] = self.config.max_tokens
        if tools:
            payload["tools"] = tools
        return payload

    @staticmethod
    def _parse_chunk(chunk: Dict[str, Any]) -> Optional[Delta]:
        """Turn one ``chat.completion.chunk`` into a Delta."""
        choices = chunk.get("choices") or []
        if not choices:
            return None

        delta_data = choices[0].get("delta") or {}
        # Some APIs return 'text' instead of 'delta'
        if not delta_data and "text" in choices[0]:
            delta_data = {"content": choices[0].get("text")}

        fragments = None
        if delta_data.get("tool_calls"):
            fragments = [
                ToolCallFragment.model_validate(fragment)
                for fragment in delta_data["tool_calls"]
                if isinstance(fragment, dict)
            ]

        return Delta(content=delta_data.get("content") or None, tool_calls=fragments or None)

    async def _stream_model(
        self,
        model: str,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]]
    ) -> AsyncIterator[Delta]:
        url = self._get_endpoint_url("chat/completions")
        payload = self._build_payload(model, messages, tools)

        async for chunk in self._stream_events(url, payload):
            delta = self._parse_chunk(chunk)
            if delta is not None and not delta.is_empty:
                yield delta

    async def chat(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[Delta]:
        async for delta in self._stream_model(self.config.model, messages, tools):
            yield delta


class OpenRouterBackend(OpenAICompatibleBackend):
    """
    Last-resort backend.

    OpenRouter hosts several free models; they are tried one by one until a
    model starts answering. Once a model has produced output it is never
    swapped for another.
    """

    @property
    def models(self) -> List[str]:
        return [model for model in [self.config.model] + self.config.fallback_models if model]

    async def chat(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[Delta]:
        last_error: Optional[BackendError] = None

        for model in self.models:
            logger.info(f"[OpenRouter] Trying model: {model}")
            stream = self._stream_model(model, messages, tools)
            try:
                try:
                    first = await stream.__anext__()
                except StopAsyncIteration:
                    logger.warning(f"[OpenRouter] Model {model} returned an empty response")
                    last_error = BackendError(self.name, f"Empty response from {model}")
                    continue
                except BackendError as e:
                    logger.warning(f"[OpenRouter] Model {model} failed: {e}")
                    last_error = e
                    continue

                yield first
                async for delta in stream:
                    yield delta
                return
            finally:
                await stream.aclose()

        raise last_error or BackendError(self.name, "No OpenRouter models configured")


class GeminiBackend(BackendService):
    """Backend for the Gemini ``streamGenerateContent`` API."""

    def _get_headers(self) -> Dict[str, str]:
        headers = super()._get_headers()
        headers["x-goog-api-key"] = self.config.api_key
        return headers

    @staticmethod
    def _function_call_parts(tool_calls: Sequence[Any]) -> List[Dict[str, Any]]:
        parts = []
        for call in tool_calls:
            if not isinstance(call, dict):
                continue
            function = call.get("function") or {}
            arguments = function.get("arguments") or "{}"
            try:
                args = json.loads(arguments) if isinstance(arguments, str) else arguments
            except json.JSONDecodeError:
                args = {"arguments": arguments}
            parts.append({"functionCall": {"name": function.get("name", ""), "args": args}})
        return parts

    def _build_payload(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]]
    ) -> Dict[str, Any]:
        contents = []
        system_parts = []
        call_names: Dict[str, str] = {}

        for message in messages:
            if message.role == "system":
                system_parts.append({"text": message.content})
                continue

            if message.role == "tool":
                parts = [{
                    "functionResponse": {
                        "name": (
                            message.name
                            or call_names.get(message.tool_call_id or "")
                            or "tool"
                        ),
                        "response": {"content": message.content}
                    }
                }]
            else:
                parts = [{"text": message.content}] if message.content else []
                if message.role == "assistant" and message.tool_calls:
                    parts.extend(self._function_call_parts(message.tool_calls))
                    for call in message.tool_calls:
                        if isinstance(call, dict) and call.get("id"):
                            name = (call.get("function") or {}).get("name")
                            if name:
                                call_names[call["id"]] = name

            if parts:
                contents.append({
                    "role": "model" if message.role == "assistant" else "user",
                    "parts": parts
                })

        payload: Dict[str, Any] = {"contents": contents}
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        if tools:
            payload["tools"] = [{
                "functionDeclarations": [
                    {
                        "name": tool["function"]["name"],
                        "description": tool["function"].get("description", ""),
                        "parameters": tool["function"].get("parameters")
                    }
                    for tool in tools
                ]
            }]
        return payload

    async def chat(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[Delta]:
        url = self._get_endpoint_url(f"models/{self.config.model}:streamGenerateContent")
        payload = self._build_payload(messages, tools)
        tool_index = 0

        async for event in self._stream_events(url, payload, params={"alt": "sse"}):
            candidates = event.get("candidates") or []
            if not candidates:
                continue

            text = ""
            fragments = []
            for part in (candidates[0].get("content") or {}).get("parts") or []:
                if isinstance(part.get("text"), str):
                    text += part["text"]
                elif isinstance(part.get("functionCall"), dict):
                    call = part["functionCall"]
                    fragments.append(ToolCallFragment(
                        index=tool_index,
                        id=f"call_{uuid.uuid4().hex[:24]}",
                        type="function",
                        function=FunctionFragment(
                            name=call.get("name", ""),
                            arguments=json.dumps(call.get("args") or {})
                        )
                    ))
                    tool_index += 1

            delta = Delta(content=text or None, tool_calls=fragments or None)
            if not delta.is_empty:
                yield delta


BACKEND_CLASSES = {
    "openai": OpenAICompatibleBackend,
    "gemini": GeminiBackend,
    "openrouter": OpenRouterBackend,
}


def create_backend(
    config: BackendConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> BackendService:
    """Instantiate the backend class matching ``config.backend_type``."""
    try:
        backend_class = BACKEND_CLASSES[config.backend_type]
    except KeyError:
        raise ValueError(f"Unknown backend type: {config.backend_type}")
    return backend_class(config, transport=transport)


class BackendRegistry:
    """
    The process-wide, immutable list of backends.

    Built once at startup from the configured credentials and shared by all
    requests. Backends keep one HTTP client each, created lazily.
    """

    def __init__(self, rotation: Sequence[Any], last_resort: Optional[Any] = None):
        self.rotation = tuple(rotation)
        self.last_resort = last_resort

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackendRegistry":
        rotation = [create_backend(config) for config in settings.get_rotation_configs()]

        last_resort = None
        last_resort_config = settings.get_last_resort_config()
        if last_resort_config is not None:
            last_resort = create_backend(last_resort_config)

        if not rotation and last_resort is None:
            logger.warning("No backend API keys configured; every request will fail")

        registry = cls(rotation, last_resort)
        logger.info(f"Initialized backends: {registry.names()}")
        return registry

    def names(self) -> List[str]:
        """Backend names in the order they are tried."""
        names = [backend.name for backend in self.rotation]
        if self.last_resort is not None:
            names.append(f"{self.last_resort.name} (last resort)")
        return names

    def __len__(self) -> int:
        return len(self.rotation) + (1 if self.last_resort is not None else 0)

    async def aclose(self) -> None:
        """Close every backend's HTTP client."""
        backends = list(self.rotation)
        if self.last_resort is not None:
            backends.append(self.last_resort)

        for backend in backends:
            close = getattr(backend, "aclose", None)
            if close is not None:
                await close()

    def __repr__(self) -> str:
        return f"BackendRegistry(backends={self.names()})"
