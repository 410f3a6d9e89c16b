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
Wire formatting for dispatch results.

Two flavors are supported: the classic chat completion shape (``choices``)
and the agent oriented responses shape (``output`` / ``required_action``).
Each has a non-streaming builder and a streaming SSE generator. Usage
numbers are estimates, not real token counts.
"""
import json
import math
import time
import uuid
from typing import Any, AsyncIterator, Dict, Iterable, List, Literal

from .models import AggregatedResult, Delta, FunctionCall, ToolCall, ToolCallFragment, Usage

ApiFlavor = Literal["chat", "responses"]

TOOL_CALL_COMPLETION_TOKENS = 50
PLACEHOLDER_MESSAGE = (
    "Sorry, I could not get a response from any model right now. "
    "Please try again in a moment."
)


def estimate_usage(message_count: int, text: str, has_tool_calls: bool = False) -> Usage:
    """
    Estimate token usage.

    prompt = max(1, messages * 10); completion = ceil(chars / 4), or a flat 50
    for tool calls; total is always their exact sum.
    """
    prompt_tokens = max(1, message_count * 10)
    if has_tool_calls:
        completion_tokens = TOOL_CALL_COMPLETION_TOKENS
    else:
        completion_tokens = math.ceil(len(text) / 4)
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens
    )


class ToolCallAccumulator:
    """Reassemble streamed tool call fragments into complete tool calls."""

    def __init__(self):
        self._calls: Dict[int, Dict[str, Any]] = {}

    def add(self, fragment: ToolCallFragment) -> None:
        call = self._calls.get(fragment.index)
        if call is None:
            # dicts keep insertion order, i.e. first-seen index order
            call = {"id": None, "name": "", "arguments": ""}
            self._calls[fragment.index] = call

        if call["id"] is None and fragment.id:
            call["id"] = fragment.id
        if fragment.function is not None:
            if fragment.function.name:
                call["name"] += fragment.function.name
            if fragment.function.arguments:
                call["arguments"] += fragment.function.arguments

    def extend(self, fragments: Iterable[ToolCallFragment]) -> None:
        for fragment in fragments:
            self.add(fragment)

    def __bool__(self) -> bool:
        return bool(self._calls)

    def result(self) -> List[ToolCall]:
        return [
            ToolCall(
                id=call["id"] or f"call_{uuid.uuid4().hex[:24]}",
                function=FunctionCall(name=call["name"], arguments=call["arguments"])
            )
            for call in self._calls.values()
        ]


def placeholder_result() -> AggregatedResult:
    """Result returned to callers when every backend failed."""
    return AggregatedResult(full_text=PLACEHOLDER_MESSAGE, served_by="none")


def _tool_calls_wire(result: AggregatedResult) -> List[Dict[str, Any]]:
    return [call.model_dump() for call in result.tool_calls]


def compose_chat_completion(
    result: AggregatedResult,
    model: str,
    message_count: int
) -> Dict[str, Any]:
    """Build a non-streaming ``chat.completion`` object."""
    has_tool_calls = bool(result.tool_calls)

    message: Dict[str, Any] = {"role": "assistant", "content": result.full_text}
    if has_tool_calls:
        message["tool_calls"] = _tool_calls_wire(result)

    usage = estimate_usage(message_count, result.full_text, has_tool_calls)
    return {
        "id": f"chatcmpl-{uuid.uuid4().hex}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": "tool_calls" if has_tool_calls else "stop"
            }
        ],
        "usage": usage.model_dump()
    }


def compose_response(
    result: AggregatedResult,
    model: str,
    message_count: int
) -> Dict[str, Any]:
    """Build a non-streaming ``response`` object (responses/agent flavor)."""
    has_tool_calls = bool(result.tool_calls)
    content = [{"type": "text", "text": result.full_text}] if result.full_text else []

    usage = estimate_usage(message_count, result.full_text, has_tool_calls)
    response: Dict[str, Any] = {
        "id": f"resp_{uuid.uuid4().hex}",
        "object": "response",
        "created_at": int(time.time()),
        "model": model,
        "status": "requires_action" if has_tool_calls else "completed",
        "output": [
            {
                "type": "message",
                "id": f"msg_{uuid.uuid4().hex}",
                "status": "completed",
                "role": "assistant",
                "content": content
            }
        ],
        "usage": usage.model_dump()
    }
    if has_tool_calls:
        response["required_action"] = {
            "type": "submit_tool_outputs",
            "submit_tool_outputs": {"tool_calls": _tool_calls_wire(result)}
        }
    return response


def compose(
    result: AggregatedResult,
    model: str,
    message_count: int,
    flavor: ApiFlavor = "chat"
) -> Dict[str, Any]:
    """Build the non-streaming body for ``flavor``."""
    if flavor == "responses":
        return compose_response(result, model, message_count)
    return compose_chat_completion(result, model, message_count)


def sse_frame(data: Any) -> str:
    """Format one Server-Sent-Events frame."""
    if isinstance(data, str):
        return f"data: {data}\n\n"
    return f"data: {json.dumps(data)}\n\n"


def _delta_wire(delta: Delta) -> Dict[str, Any]:
    return delta.model_dump(exclude_none=True)


async def stream_chat_chunks(
    deltas: AsyncIterator[Delta],
    model: str,
    message_count: int
) -> AsyncIterator[str]:
    """Relay deltas as ``chat.completion.chunk`` SSE frames."""
    completion_id = f"chatcmpl-{uuid.uuid4().hex}"
    created = int(time.time())
    text_parts: List[str] = []
    saw_tool_calls = False
    first = True

    async for delta in deltas:
        if delta.content:
            text_parts.append(delta.content)
        if delta.tool_calls:
            saw_tool_calls = True

        wire_delta = _delta_wire(delta)
        if first:
            wire_delta = {"role": "assistant", **wire_delta}
            first = False

        yield sse_frame({
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [{"index": 0, "delta": wire_delta, "finish_reason": None}]
        })

    usage = estimate_usage(message_count, "".join(text_parts), saw_tool_calls)
    yield sse_frame({
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": {},
                "finish_reason": "tool_calls" if saw_tool_calls else "stop"
            }
        ],
        "usage": usage.model_dump()
    })
    yield sse_frame("[DONE]")


async def stream_response_chunks(
    deltas: AsyncIterator[Delta],
    model: str,
    message_count: int
) -> AsyncIterator[str]:
    """Relay deltas as responses-flavor SSE frames."""
    response_id = f"resp_{uuid.uuid4().hex}"
    created = int(time.time())
    text_parts: List[str] = []
    saw_tool_calls = False

    async for delta in deltas:
        if delta.content:
            text_parts.append(delta.content)
        if delta.tool_calls:
            saw_tool_calls = True

        yield sse_frame({
            "id": response_id,
            "object": "response.chunk",
            "type": "response.delta",
            "created_at": created,
            "model": model,
            "delta": _delta_wire(delta)
        })

    usage = estimate_usage(message_count, "".join(text_parts), saw_tool_calls)
    yield sse_frame({
        "id": response_id,
        "object": "response",
        "type": "response.completed",
        "created_at": created,
        "model": model,
        "status": "requires_action" if saw_tool_calls else "completed",
        "usage": usage.model_dump()
    })
    yield sse_frame("[DONE]")


def stream_chunks(
    deltas: AsyncIterator[Delta],
    model: str,
    message_count: int,
    flavor: ApiFlavor = "chat"
) -> AsyncIterator[str]:
    """Pick the SSE generator for ``flavor``."""
    if flavor == "responses":
        return stream_response_chunks(deltas, model, message_count)
    return stream_chat_chunks(deltas, model, message_count)


async def single_delta(text: str) -> AsyncIterator[Delta]:
    """A one-element delta stream, used to stream the placeholder message."""
    yield Delta(content=text)


def stream_placeholder(model: str, message_count: int, flavor: ApiFlavor = "chat") -> AsyncIterator[str]:
    return stream_chunks(single_delta(PLACEHOLDER_MESSAGE), model, message_count, flavor)
