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
Pydantic models shared by the normalizers, backends, dispatcher and composer.
"""
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant", "tool"]


class Message(BaseModel):
    """A canonical message in a conversation."""
    role: Role = Field(..., description="The role of the message author")
    content: str = Field("", description="The flattened text content of the message")
    tool_calls: Optional[List[Any]] = Field(
        None, description="Tool calls requested by the assistant, kept verbatim"
    )
    tool_call_id: Optional[str] = Field(
        None, description="Tool call this message answers"
    )
    name: Optional[str] = Field(None, description="The name of the message author")

    def to_wire(self) -> Dict[str, Any]:
        """Serialize for an OpenAI-compatible backend."""
        return self.model_dump(exclude_none=True)


class FunctionFragment(BaseModel):
    """Partial function name and arguments carried by one delta."""
    name: Optional[str] = None
    arguments: Optional[str] = None


class ToolCallFragment(BaseModel):
    """A piece of a tool call, to be merged with others sharing its index."""
    index: int = Field(0, description="Position in the eventual tool call array")
    id: Optional[str] = None
    type: Optional[str] = None
    function: Optional[FunctionFragment] = None


class Delta(BaseModel):
    """One incremental unit of model output."""
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCallFragment]] = None

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.tool_calls


class FunctionCall(BaseModel):
    """A complete function invocation."""
    name: str = ""
    arguments: str = ""


class ToolCall(BaseModel):
    """A complete tool call reassembled from fragments."""
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class AggregatedResult(BaseModel):
    """Everything one backend produced for a request."""
    full_text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    served_by: str = "none"

    @property
    def is_empty(self) -> bool:
        return not self.full_text and not self.tool_calls


class Usage(BaseModel):
    """Estimated usage statistics for a completion."""
    prompt_tokens: int = Field(..., description="Estimated tokens in the prompt")
    completion_tokens: int = Field(..., description="Estimated tokens in the completion")
    total_tokens: int = Field(..., description="Sum of prompt and completion tokens")


class ModelInfo(BaseModel):
    """Model information."""
    id: str = Field(..., description="The model identifier")
    object: Literal["model"] = Field("model", description="The object type")
    created: int = Field(..., description="The Unix timestamp of when the model was created")
    owned_by: str = Field(..., description="The organization that owns the model")


class ModelListResponse(BaseModel):
    """Response model for listing models."""
    object: Literal["list"] = Field("list", description="The object type")
    data: List[ModelInfo] = Field(..., description="The list of models")
