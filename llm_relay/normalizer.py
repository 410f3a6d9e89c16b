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
Canonicalization of caller supplied conversations and tool definitions.

Callers send messages and tools in many shapes (LangChain style ``type``
fields, content part arrays, flat tool definitions...). Everything here
degrades to empty or absent values instead of raising, so a malformed
payload yields an empty conversation rather than a failed request.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from .models import Message

logger = logging.getLogger(__name__)

ROLE_ALIASES = {
    "human": "user",
    "user": "user",
    "ai": "assistant",
    "assistant": "assistant",
    "model": "assistant",
    "chat": "assistant",
    "system": "system",
    "tool": "tool",
}

DEFAULT_PARAMETERS = {"type": "object", "properties": {}}


def normalize_role(raw_role: Any) -> str:
    """Map any role spelling to one of user, assistant, system or tool."""
    if not isinstance(raw_role, str):
        return "user"
    return ROLE_ALIASES.get(raw_role.strip().lower(), "user")


def _part_text(part: Any) -> str:
    if not isinstance(part, dict):
        return ""
    text = part.get("text")
    if isinstance(text, str):
        return text
    if isinstance(text, dict) and isinstance(text.get("content"), str):
        return text["content"]
    return ""


def extract_content(raw: Dict[str, Any]) -> str:
    """
    Flatten the content of a raw message into a string.

    String content is used as-is; a list of parts is joined on their text with
    single spaces; missing content falls back to a ``text`` field.
    """
    content = raw.get("content")

    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(_part_text(part) for part in content)
    if content is None:
        text = raw.get("text")
        if isinstance(text, str):
            return text
        if isinstance(text, dict) and isinstance(text.get("content"), str):
            return text["content"]
        return ""
    if isinstance(content, dict):
        if isinstance(content.get("text"), str):
            return content["text"]
        return json.dumps(content)
    return str(content)


def normalize_message(raw: Any) -> Optional[Message]:
    """Normalize one raw message, returning None when it should be dropped."""
    if not isinstance(raw, dict):
        return None

    role = normalize_role(raw.get("role") or raw.get("type"))
    content = extract_content(raw)
    tool_calls = raw.get("tool_calls")
    if not isinstance(tool_calls, list):
        tool_calls = None

    if not content.strip() and not tool_calls and role != "tool":
        return None

    tool_call_id = raw.get("tool_call_id")
    name = raw.get("name")
    return Message(
        role=role,
        content=content,
        tool_calls=tool_calls,
        tool_call_id=str(tool_call_id) if tool_call_id is not None else None,
        name=str(name) if name is not None else None
    )


def normalize_messages(raw_messages: Any) -> List[Message]:
    """
    Canonicalize an arbitrary conversation payload.

    Args:
        raw_messages: Anything; only lists are interpreted

    Returns:
        Ordered canonical messages; empty when the payload is not a list
    """
    if not isinstance(raw_messages, list):
        if raw_messages is not None:
            logger.warning(f"Ignoring non-list messages payload of type {type(raw_messages).__name__}")
        return []

    messages = []
    for raw in raw_messages:
        message = normalize_message(raw)
        if message is not None:
            messages.append(message)
    return messages


def extract_conversation(body: Dict[str, Any]) -> List[Message]:
    """
    Pull the conversation out of a request body.

    Looks at ``messages``, then ``input``, then ``prompt``. A bare string is
    treated as a single user message.
    """
    raw = body.get("messages")
    if raw is None:
        raw = body.get("input")
    if raw is None:
        raw = body.get("prompt")

    if isinstance(raw, str):
        raw = [{"role": "user", "content": raw}]
    return normalize_messages(raw)


def _is_canonical_tool(tool: Dict[str, Any]) -> bool:
    function = tool.get("function")
    return (
        tool.get("type") == "function"
        and isinstance(function, dict)
        and isinstance(function.get("name"), str)
        and bool(function["name"])
    )


def normalize_tool(raw: Any) -> Optional[Dict[str, Any]]:
    """Normalize one tool definition, returning None when it has no name."""
    if not isinstance(raw, dict):
        return None
    if _is_canonical_tool(raw):
        return raw

    function = raw.get("function") if isinstance(raw.get("function"), dict) else {}

    name = raw.get("name") or function.get("name")
    if not isinstance(name, str) or not name:
        return None

    description = raw.get("description") or function.get("description") or ""
    parameters = raw.get("parameters")
    if parameters is None:
        parameters = function.get("parameters")
    if parameters is None:
        parameters = dict(DEFAULT_PARAMETERS, properties={})

    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": parameters,
        },
    }


def normalize_tools(raw_tools: Any) -> Optional[List[Dict[str, Any]]]:
    """
    Canonicalize tool definitions.

    Returns:
        None when no tools were requested (missing, not a list, or empty);
        otherwise the valid tools, which may be an empty list
    """
    if not isinstance(raw_tools, list) or not raw_tools:
        return None

    tools = []
    for raw in raw_tools:
        tool = normalize_tool(raw)
        if tool is None:
            logger.debug(f"Discarding tool without a name: {raw!r}")
            continue
        tools.append(tool)
    return tools
