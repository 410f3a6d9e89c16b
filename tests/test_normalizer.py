"""
Tests for message and tool normalization.
"""
import pytest

from llm_relay.models import Message
from llm_relay.normalizer import (
    extract_content,
    extract_conversation,
    normalize_messages,
    normalize_role,
    normalize_tools,
)


@pytest.mark.unit
class TestRoleMapping:
    """Test role spelling normalization."""

    @pytest.mark.parametrize("raw, expected", [
        ("human", "user"),
        ("user", "user"),
        ("ai", "assistant"),
        ("assistant", "assistant"),
        ("model", "assistant"),
        ("chat", "assistant"),
        ("system", "system"),
        ("tool", "tool"),
        ("HUMAN", "user"),
        ("Model", "assistant"),
        ("developer", "user"),
        ("", "user"),
    ])
    def test_role_aliases(self, raw, expected):
        """Test every supported spelling maps to a canonical role."""
        assert normalize_role(raw) == expected

    def test_non_string_role_defaults_to_user(self):
        assert normalize_role(None) == "user"
        assert normalize_role(3) == "user"

    def test_type_field_used_when_role_missing(self):
        """Test LangChain style messages that carry the role in 'type'."""
        messages = normalize_messages([
            {"type": "human", "content": "hello"},
            {"type": "ai", "content": "hi there"},
        ])

        assert [m.role for m in messages] == ["user", "assistant"]


@pytest.mark.unit
class TestContentExtraction:
    """Test flattening of content shapes."""

    def test_string_content(self):
        assert extract_content({"content": "plain"}) == "plain"

    def test_array_content_joined_with_spaces(self):
        content = [
            {"type": "text", "text": "first"},
            {"type": "image_url", "image_url": {"url": "http://x"}},
            {"type": "text", "text": {"content": "nested"}},
        ]
        assert extract_content({"content": content}) == "first  nested"

    def test_text_field_fallback(self):
        assert extract_content({"text": "from text"}) == "from text"
        assert extract_content({"text": {"content": "from object"}}) == "from object"

    def test_null_content_falls_back_to_text(self):
        assert extract_content({"content": None, "text": "fallback"}) == "fallback"

    def test_missing_everything_is_empty(self):
        assert extract_content({}) == ""

    def test_object_content_with_text(self):
        assert extract_content({"content": {"text": "inside"}}) == "inside"

    def test_object_content_is_stringified(self):
        assert extract_content({"content": {"a": 1}}) == '{"a": 1}'

    def test_scalar_content_is_stringified(self):
        assert extract_content({"content": 42}) == "42"


@pytest.mark.unit
class TestNormalizeMessages:
    """Test conversation normalization."""

    @pytest.mark.parametrize("payload", [None, "hello", 42, {"role": "user"}])
    def test_non_list_payload_yields_empty(self, payload):
        assert normalize_messages(payload) == []

    def test_non_dict_entries_are_skipped(self):
        messages = normalize_messages(["junk", 3, None, {"role": "user", "content": "ok"}])
        assert messages == [Message(role="user", content="ok")]

    @pytest.mark.parametrize("content", ["", "   ", "\n\t", None])
    def test_blank_messages_are_dropped(self, content):
        assert normalize_messages([{"role": "user", "content": content}]) == []

    def test_blank_tool_message_is_kept(self):
        messages = normalize_messages([{"role": "tool", "content": "", "tool_call_id": "call_1"}])

        assert len(messages) == 1
        assert messages[0].role == "tool"
        assert messages[0].tool_call_id == "call_1"

    def test_blank_message_with_tool_calls_is_kept(self):
        tool_calls = [{"id": "call_1", "type": "function",
                       "function": {"name": "lookup", "arguments": "{}"}}]
        messages = normalize_messages([{"role": "assistant", "content": None, "tool_calls": tool_calls}])

        assert len(messages) == 1
        assert messages[0].content == ""
        assert messages[0].tool_calls == tool_calls

    def test_optional_fields_preserved(self):
        messages = normalize_messages([
            {"role": "tool", "content": "72F", "tool_call_id": "call_9", "name": "weather"}
        ])

        assert messages[0].tool_call_id == "call_9"
        assert messages[0].name == "weather"

    def test_wire_output_omits_absent_fields(self):
        messages = normalize_messages([{"role": "user", "content": "hi"}])
        assert messages[0].to_wire() == {"role": "user", "content": "hi"}

    def test_idempotent_on_canonical_input(self):
        """Normalizing an already canonical conversation changes nothing."""
        raw = [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "weather?"},
            {"role": "assistant", "content": "", "tool_calls": [
                {"id": "call_1", "type": "function", "function": {"name": "w", "arguments": "{}"}}
            ]},
            {"role": "tool", "content": "sunny", "tool_call_id": "call_1"},
        ]
        first = normalize_messages(raw)
        second = normalize_messages([m.to_wire() for m in first])

        assert first == second
        assert [m.to_wire() for m in first] == raw


@pytest.mark.unit
class TestExtractConversation:
    """Test picking the conversation from a request body."""

    def test_messages_field(self):
        messages = extract_conversation({"messages": [{"role": "user", "content": "a"}]})
        assert messages[0].content == "a"

    def test_input_string(self):
        messages = extract_conversation({"input": "from input"})
        assert messages == [Message(role="user", content="from input")]

    def test_input_items(self):
        messages = extract_conversation({"input": [
            {"type": "message", "role": "user", "content": [{"type": "input_text", "text": "hey"}]}
        ]})
        assert messages == [Message(role="user", content="hey")]

    def test_prompt_string(self):
        messages = extract_conversation({"prompt": "from prompt"})
        assert messages == [Message(role="user", content="from prompt")]

    def test_messages_take_priority(self):
        messages = extract_conversation({
            "messages": [{"role": "user", "content": "m"}],
            "prompt": "p"
        })
        assert [m.content for m in messages] == ["m"]

    def test_nothing_usable(self):
        assert extract_conversation({}) == []


@pytest.mark.unit
class TestNormalizeTools:
    """Test tool definition normalization."""

    @pytest.mark.parametrize("payload", [None, [], "tools", {"name": "foo"}])
    def test_absent_when_no_tools_requested(self, payload):
        assert normalize_tools(payload) is None

    def test_canonical_tool_passes_through_unchanged(self):
        tool = {
            "type": "function",
            "function": {"name": "lookup", "description": "d", "parameters": {"type": "object"}},
            "strict": True
        }
        tools = normalize_tools([tool])

        assert tools == [tool]
        assert tools[0] is tool

    def test_flat_tool_is_rewrapped(self):
        parameters = {"type": "object", "properties": {"city": {"type": "string"}}}
        tools = normalize_tools([{"name": "foo", "parameters": parameters}])

        assert tools == [{
            "type": "function",
            "function": {"name": "foo", "description": "", "parameters": parameters}
        }]

    def test_nested_function_without_type(self):
        tools = normalize_tools([{"function": {"name": "bar", "description": "does bar"}}])

        assert tools == [{
            "type": "function",
            "function": {
                "name": "bar",
                "description": "does bar",
                "parameters": {"type": "object", "properties": {}}
            }
        }]

    def test_nameless_tools_are_discarded(self):
        tools = normalize_tools([
            {"description": "no name"},
            {"type": "function", "function": {"name": ""}},
            "not a tool",
            {"name": "keep"},
        ])

        assert [t["function"]["name"] for t in tools] == ["keep"]

    def test_all_invalid_yields_empty_list(self):
        """Tools were requested but none were valid: empty, not absent."""
        assert normalize_tools([{"description": "nameless"}]) == []

    def test_empty_parameters_are_kept(self):
        tools = normalize_tools([{"name": "ping", "parameters": {}}])

        assert tools[0]["function"]["parameters"] == {}

    def test_default_parameters_are_independent(self):
        first = normalize_tools([{"name": "a"}])[0]
        second = normalize_tools([{"name": "b"}])[0]

        first["function"]["parameters"]["properties"]["x"] = {}
        assert second["function"]["parameters"]["properties"] == {}
