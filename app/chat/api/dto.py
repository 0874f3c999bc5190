from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import List, Optional

from app.chat.entity.chat import FilePart, Message, MessageRole, TextPart, Visibility
from app.core.config import settings

MAX_TEXT_PART_LENGTH = 2000
ALLOWED_FILE_MEDIA_TYPES = {"image/jpeg", "image/png"}


class ChatRequest(BaseModel):
    """
    Body of ``POST /api/chat``.

    ``message`` carries one new user message; ``messages`` carries the whole
    visible conversation when the client continues after a tool approval.
    Exactly one of the two must be present.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    message: Optional[Message] = None
    messages: Optional[List[Message]] = None
    selected_chat_model: str = Field(default=settings.DEFAULT_CHAT_MODEL, alias="selectedChatModel", min_length=1)
    selected_visibility_type: Visibility = Field(default=Visibility.PRIVATE, alias="selectedVisibilityType")

    @model_validator(mode="after")
    def _check_message_shape(self) -> "ChatRequest":
        if (self.message is None) == (self.messages is None):
            raise ValueError("exactly one of 'message' or 'messages' is required")
        if self.messages is not None:
            # Resubmitted conversations contain earlier assistant output, only ids are checked
            if not self.messages:
                raise ValueError("'messages' must not be empty")
            if any(not msg.id for msg in self.messages):
                raise ValueError("message ids must not be empty")
            return self

        if self.message.role != MessageRole.USER:
            raise ValueError("'message' must be a user message")
        if not self.message.id:
            raise ValueError("message ids must not be empty")
        for part in self.message.parts:
            if isinstance(part, TextPart) and len(part.text) > MAX_TEXT_PART_LENGTH:
                raise ValueError(f"text parts are limited to {MAX_TEXT_PART_LENGTH} characters")
            if isinstance(part, FilePart) and part.media_type not in ALLOWED_FILE_MEDIA_TYPES:
                raise ValueError(f"unsupported file type {part.media_type!r}")
        return self


class DeleteResponse(BaseModel):
    success: bool
    message: str
    conversation_id: str
