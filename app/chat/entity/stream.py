# app/chat/entity/stream.py
"""Outward stream events and their Server-Sent Events framing."""

import json
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict

DONE_MARKER = "data: [DONE]\n\n"

GENERIC_STREAM_ERROR = "Oops, an error occurred!"


class StreamEvent(BaseModel):
    """
    One event of the outward chat stream.

    ``type`` names the event (``text-delta``, ``tool-approval-request``,
    ``data-chat-title``, ``finish``, ``error`` ...). Event specific fields are
    carried as extra attributes and serialized alongside ``type``.
    """
    model_config = ConfigDict(extra="allow")

    type: str

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.payload(), ensure_ascii=False)}\n\n"


def text_delta(text_id: str, delta: str) -> StreamEvent:
    return StreamEvent(type="text-delta", id=text_id, delta=delta)


def error_event(error_text: str = GENERIC_STREAM_ERROR) -> StreamEvent:
    return StreamEvent(type="error", errorText=error_text)


def title_event(title: str) -> StreamEvent:
    return StreamEvent(type="data-chat-title", data=title)
