"""Shared pytest fixtures: in-memory repository, scripted provider and Redis stand-in."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional

import pytest

from app.auth.entity.entity import Principal, UserTier
from app.chat.entity.chat import (
    Conversation, Message, MessageRole, StreamSession, TextPart, UsageRecord, Visibility,
)
from app.chat.service import token_counter
from app.chat.service.service import IChatRepository
from app.llm.service.provider.base_provider import (
    BaseProvider, InvokeOptions, ModelEvent, PendingToolCall, ProviderUsage, StepResult,
)
from app.llm.tools.base import ToolSet


class FakeRepository(IChatRepository):
    def __init__(self):
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.streams: Dict[str, StreamSession] = {}
        self.usage_records: List[UsageRecord] = []
        self.recent_message_count = 0
        self.fail_usage_write = False
        self.calls: List[str] = []

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations.get(conversation_id)

    async def create_conversation(self, conversation_id: str, user_id: str, title: str,
                                  visibility: Visibility) -> Conversation:
        self.calls.append("create_conversation")
        conversation = Conversation(id=conversation_id, user_id=user_id, title=title, visibility=visibility)
        self.conversations.setdefault(conversation_id, conversation)
        self.messages.setdefault(conversation_id, [])
        return self.conversations[conversation_id]

    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        conversation = self.conversations[conversation_id]
        self.conversations[conversation_id] = conversation.model_copy(update={"title": title})

    async def delete_conversation(self, conversation_id: str) -> Optional[Conversation]:
        self.messages.pop(conversation_id, None)
        for stream_id in [s for s, session in self.streams.items() if session.conversation_id == conversation_id]:
            del self.streams[stream_id]
        return self.conversations.pop(conversation_id, None)

    async def get_messages(self, conversation_id: str) -> List[Message]:
        return list(self.messages.get(conversation_id, []))

    async def append_messages(self, conversation_id: str, messages: List[Message]) -> None:
        self.calls.append("append_messages")
        stored = self.messages.setdefault(conversation_id, [])
        known = {message.id for message in stored}
        stored.extend(message for message in messages if message.id not in known)

    async def update_message(self, message_id: str, parts) -> None:
        self.calls.append("update_message")
        for stored in self.messages.values():
            for index, message in enumerate(stored):
                if message.id == message_id:
                    stored[index] = message.model_copy(update={"parts": list(parts)})

    async def count_recent_messages(self, user_id: str, since: datetime) -> int:
        return self.recent_message_count

    async def write_usage_record(self, record: UsageRecord) -> None:
        self.calls.append("write_usage_record")
        if self.fail_usage_write:
            raise RuntimeError("usage table unavailable")
        self.usage_records.append(record)

    async def create_stream_id(self, stream_id: str, conversation_id: str) -> None:
        self.calls.append("create_stream_id")
        self.streams.setdefault(stream_id, StreamSession(stream_id=stream_id, conversation_id=conversation_id))

    async def get_stream(self, stream_id: str) -> Optional[StreamSession]:
        return self.streams.get(stream_id)

    async def get_stream_ids_by_conversation(self, conversation_id: str) -> List[str]:
        sessions = [s for s in self.streams.values() if s.conversation_id == conversation_id]
        return [s.stream_id for s in sorted(sessions, key=lambda s: s.created_at)]


@dataclass
class ScriptedStep:
    """One model step: the text/reasoning it streams, the tools it calls, the usage it reports."""
    events: List[ModelEvent] = field(default_factory=list)
    tool_calls: List[PendingToolCall] = field(default_factory=list)
    usage: Optional[ProviderUsage] = None
    error: Optional[Exception] = None


class ScriptedProvider(BaseProvider):
    def __init__(self, steps: List[ScriptedStep], name: str = "openai", enabled: bool = True, title: str = "A title"):
        self.name = name
        self.steps = list(steps)
        self.enabled = enabled
        self.title = title
        self.invocations: List[Dict[str, Any]] = []
        self.tool_rounds: List[Dict[str, Any]] = []
        self.step_calls: List[Dict[str, Any]] = []

    def is_enabled(self) -> bool:
        return self.enabled

    def _convert_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        self.invocations.append({"messages": messages})
        return [{"role": m.role.value, "content": m.text()} for m in messages]

    async def _stream_step(
        self,
        model: str,
        system_prompt: str,
        wire_messages: List[Dict[str, Any]],
        tools: ToolSet,
        options: InvokeOptions,
        result: StepResult,
    ) -> AsyncGenerator[ModelEvent, None]:
        self.step_calls.append({"model": model, "system_prompt": system_prompt, "tools": sorted(tools), "options": options})
        step = self.steps.pop(0) if self.steps else ScriptedStep()
        for event in step.events:
            if event.type == "text-delta":
                result.text += event.text or ""
            yield event
        if step.error is not None:
            raise step.error
        result.tool_calls.extend(step.tool_calls)
        result.usage = step.usage

    def _append_tool_round(self, wire_messages: List[Dict[str, Any]], step: StepResult, outputs: Dict[str, Any]) -> None:
        self.tool_rounds.append(outputs)

    async def generate_text(self, model: str, system_prompt: str, prompt: str) -> str:
        return self.title


class FakeRedis:
    """The slice of ``RedisClient`` that ``StreamContext`` uses, kept in memory."""

    def __init__(self):
        self.values: Dict[str, Any] = {}
        self.streams: Dict[str, List[tuple]] = {}
        self.fail_stream_add = False
        self.closed = False
        self._changed = asyncio.Event()

    async def ping(self) -> bool:
        return True

    async def async_get_value(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    async def async_set_value(self, key: str, value: Any, expiry=None) -> bool:
        self.values[key] = value
        return True

    async def stream_add(self, key: str, fields: Dict[str, str], ttl: Optional[int] = None) -> str:
        if self.fail_stream_add:
            raise ConnectionError("redis went away")
        entries = self.streams.setdefault(key, [])
        entry_id = f"{len(entries) + 1}-0"
        entries.append((entry_id, dict(fields)))
        self._changed.set()
        return entry_id

    async def stream_read(self, key: str, last_id: str = "0", block_ms: Optional[int] = None,
                          count: Optional[int] = None) -> List[tuple]:
        def newer():
            entries = self.streams.get(key, [])
            if last_id == "0":
                return list(entries)
            index = next((i for i, (entry_id, _) in enumerate(entries) if entry_id == last_id), len(entries) - 1)
            return entries[index + 1:]

        pending = newer()
        if pending or not block_ms:
            return pending
        self._changed.clear()
        try:
            await asyncio.wait_for(self._changed.wait(), timeout=block_ms / 1000)
        except asyncio.TimeoutError:
            return []
        return newer()

    async def async_delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            removed += int(self.values.pop(key, None) is not None) + int(self.streams.pop(key, None) is not None)
        return removed

    async def async_close(self) -> None:
        self.closed = True


class WhitespaceEncoder:
    """Deterministic stand-in for a tiktoken encoding: one token per word."""

    def encode(self, text: str) -> List[str]:
        return text.split()


def text_message(message_id: str, text: str, role: MessageRole = MessageRole.USER) -> Message:
    return Message(id=message_id, role=role, parts=[TextPart(text=text)])


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def principal() -> Principal:
    return Principal(id="user-1", email="u1@example.com", tier=UserTier.REGULAR)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def word_tokens(monkeypatch):
    """Count tokens as whitespace-separated words so estimates do not depend on tiktoken data files."""
    monkeypatch.setattr(token_counter, "_encoder", lambda encoding_model: WhitespaceEncoder())
