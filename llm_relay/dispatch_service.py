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
Dispatch service that tries backends in order until one of them answers.
"""
import logging
import threading
import time
from typing import Any, AsyncIterator, Dict, List, Optional

from .backend_service import BackendRegistry
from .exceptions import AllBackendsFailed, BackendError
from .models import AggregatedResult, Delta, Message
from .response_composer import ToolCallAccumulator

logger = logging.getLogger(__name__)


class RotationCursor:
    """Thread-safe counter used to rotate the starting backend across requests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._position = 0

    def next_offset(self, size: int) -> int:
        if size <= 0:
            return 0
        with self._lock:
            offset = self._position % size
            self._position = (self._position + 1) % size
        return offset


async def _close_stream(stream: Any) -> None:
    close = getattr(stream, "aclose", None)
    if close is not None:
        await close()


class StreamSession:
    """
    A live relay of deltas from the one backend that was committed to.

    Iterating yields the backend's deltas. If the backend fails after it has
    started answering, iteration stops and ``failed`` is set: output already
    relayed stands, and no other backend is tried.
    """

    def __init__(
        self,
        served_by: str,
        first_delta: Delta,
        stream: AsyncIterator[Delta],
        started_at: float
    ):
        self.served_by = served_by
        self.failed = False
        self.error: Optional[Exception] = None
        self._first_delta = first_delta
        self._stream = stream
        self._started_at = started_at
        self._closed = False

    def __aiter__(self) -> AsyncIterator[Delta]:
        return self._relay()

    async def _relay(self) -> AsyncIterator[Delta]:
        try:
            yield self._first_delta
            async for delta in self._stream:
                if not delta.is_empty:
                    yield delta
        except Exception as e:
            self.failed = True
            self.error = e
            logger.error(f"❌ Backend '{self.served_by}' failed mid-stream, terminating relay: {str(e)}")
        else:
            duration_ms = int((time.time() - self._started_at) * 1000)
            logger.info(f"[SUCCESS] Model: {self.served_by} | Time: {duration_ms}ms")
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Close the backend stream, releasing its connection."""
        if not self._closed:
            self._closed = True
            await _close_stream(self._stream)


class DispatchService:
    """Tries backends in order with automatic failover."""

    def __init__(self, registry: BackendRegistry, cursor: Optional[RotationCursor] = None):
        """
        Initialize the dispatcher.

        Args:
            registry: The process-wide backend list
            cursor: When given, the start of the rotation list advances on
                every request (round robin); otherwise every request tries the
                backends in declaration order
        """
        self.registry = registry
        self.cursor = cursor

    def candidates(self) -> List[Any]:
        """Backends to try for one request, in order."""
        rotation = list(self.registry.rotation)
        if self.cursor is not None and rotation:
            offset = self.cursor.next_offset(len(rotation))
            rotation = rotation[offset:] + rotation[:offset]

        if self.registry.last_resort is not None:
            rotation.append(self.registry.last_resort)
        return rotation

    async def _drain(
        self,
        backend: Any,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]]
    ) -> AggregatedResult:
        """Consume a backend's whole stream into an AggregatedResult."""
        text_parts: List[str] = []
        tool_calls = ToolCallAccumulator()

        stream = backend.chat(messages, tools)
        if stream is None:
            raise BackendError(backend.name, "Backend returned no stream")

        try:
            async for delta in stream:
                if delta.content:
                    text_parts.append(delta.content)
                if delta.tool_calls:
                    tool_calls.extend(delta.tool_calls)
        finally:
            await _close_stream(stream)

        return AggregatedResult(
            full_text="".join(text_parts),
            tool_calls=tool_calls.result(),
            served_by=backend.name
        )

    async def complete(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None
    ) -> AggregatedResult:
        """
        Run a non-streaming request.

        Each backend is drained fully. An error or an empty result (no text and
        no tool calls) moves on to the next backend; partial output of a failed
        backend is discarded.

        Raises:
            AllBackendsFailed: when no backend produced output
        """
        start_time = time.time()
        candidates = self.candidates()
        attempted = []

        for attempt, backend in enumerate(candidates, start=1):
            attempted.append(backend.name)
            logger.info(f"Attempting completion with backend '{backend.name}' (attempt {attempt}/{len(candidates)})")

            try:
                result = await self._drain(backend, messages, tools or None)
            except Exception as e:
                logger.warning(f"❌ Backend '{backend.name}' failed: {str(e)}")
                if attempt < len(candidates):
                    logger.info("🔄 Failing over to next backend...")
                continue

            if result.is_empty:
                logger.warning(f"❌ Backend '{backend.name}' returned an empty response")
                if attempt < len(candidates):
                    logger.info("🔄 Failing over to next backend...")
                continue

            duration_ms = int((time.time() - start_time) * 1000)
            logger.info(f"[SUCCESS] Model: {backend.name} | Time: {duration_ms}ms")
            return result

        duration_ms = int((time.time() - start_time) * 1000)
        logger.error(f"🚨 No backend could respond | Total Time: {duration_ms}ms")
        raise AllBackendsFailed(attempted)

    async def open_stream(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None
    ) -> StreamSession:
        """
        Start a streaming request.

        Backends are tried in order until one yields a non-empty delta; that
        backend is committed to and returned as a StreamSession. A failure or an
        empty stream before the first delta moves on to the next backend.

        Raises:
            AllBackendsFailed: when no backend started answering
        """
        start_time = time.time()
        candidates = self.candidates()
        attempted = []

        for attempt, backend in enumerate(candidates, start=1):
            attempted.append(backend.name)
            logger.info(f"Attempting stream with backend '{backend.name}' (attempt {attempt}/{len(candidates)})")

            stream = None
            try:
                stream = backend.chat(messages, tools or None)
                if stream is None:
                    raise BackendError(backend.name, "Backend returned no stream")

                first_delta = None
                async for delta in stream:
                    if not delta.is_empty:
                        first_delta = delta
                        break
            except Exception as e:
                logger.warning(f"❌ Backend '{backend.name}' failed: {str(e)}")
                if stream is not None:
                    await _close_stream(stream)
                continue

            if first_delta is None:
                logger.warning(f"❌ Backend '{backend.name}' returned an empty stream")
                await _close_stream(stream)
                continue

            logger.info(f"✅ Streaming from backend '{backend.name}'")
            return StreamSession(backend.name, first_delta, stream, start_time)

        duration_ms = int((time.time() - start_time) * 1000)
        logger.error(f"🚨 No backend could respond | Total Time: {duration_ms}ms")
        raise AllBackendsFailed(attempted)

    def __repr__(self) -> str:
        mode = "round_robin" if self.cursor is not None else "ordered"
        return f"DispatchService(backends={len(self.registry)}, mode={mode})"
