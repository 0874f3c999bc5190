# app/chat/entity/chat.py
"""
Domain models for conversations, messages and usage records.

Message content is a closed set of part types discriminated on ``type``.
Only ``TextPart`` is ever counted as model input/output text.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class Visibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


class ToolState(str, Enum):
    INPUT_AVAILABLE = "input-available"
    APPROVAL_REQUESTED = "approval-requested"
    APPROVAL_RESPONDED = "approval-responded"
    OUTPUT_AVAILABLE = "output-available"
    OUTPUT_DENIED = "output-denied"
    OUTPUT_ERROR = "output-error"


# ────────────────────────────────────────────────
# Content parts
# ────────────────────────────────────────────────

class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ReasoningPart(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    text: str


class ToolApproval(BaseModel):
    id: str
    approved: Optional[bool] = None
    reason: Optional[str] = None


class ToolCallPart(BaseModel):
    """A tool invocation and its lifecycle state."""
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: dict = Field(default_factory=dict)
    state: ToolState = ToolState.INPUT_AVAILABLE
    output: Optional[Any] = None
    error_text: Optional[str] = None
    approval: Optional[ToolApproval] = None


class ToolResultPart(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any = None


class FilePart(BaseModel):
    type: Literal["file"] = "file"
    url: str
    media_type: str
    name: Optional[str] = None


ContentPart = Annotated[
    Union[TextPart, ReasoningPart, ToolCallPart, ToolResultPart, FilePart],
    Field(discriminator="type"),
]


class Message(BaseModel):
    """A single message in a conversation."""
    id: str
    role: MessageRole
    parts: List[ContentPart] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))


class Conversation(BaseModel):
    """A durable, ordered sequence of messages owned by one principal."""
    id: str
    user_id: str
    title: str
    visibility: Visibility = Visibility.PRIVATE
    created_at: datetime = Field(default_factory=utcnow)


class StreamSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    stream_id: str
    conversation_id: str
    created_at: datetime = Field(default_factory=utcnow)


class RequestHints(BaseModel):
    """Where the request came from; folded into the system prompt."""
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    locale: Optional[str] = None


# ────────────────────────────────────────────────
# Usage
# ────────────────────────────────────────────────

class ChatUsageRecord(BaseModel):
    usage_type: Literal["chat"] = "chat"
    conversation_id: str
    user_id: str
    model_id: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    created_at: datetime = Field(default_factory=utcnow)


class TranscriptionUsageRecord(BaseModel):
    """Written by the transcription endpoint, never by the chat orchestrator."""
    usage_type: Literal["transcription"] = "transcription"
    conversation_id: str
    user_id: str
    model_id: str = "whisper-1"
    audio_seconds: float
    created_at: datetime = Field(default_factory=utcnow)


UsageRecord = Union[ChatUsageRecord, TranscriptionUsageRecord]
