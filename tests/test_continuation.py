"""Tests for conversation continuation and post-turn persistence."""

import pytest

from app.chat.api.dto import ChatRequest
from app.chat.entity.chat import (
    Conversation, MessageRole, TextPart, ToolApproval, ToolCallPart, ToolState, Visibility,
)
from app.chat.service.continuation import ContinuationResolver, ConversationFlow, classify
from app.core.errors import ForbiddenError

from conftest import text_message


class StubTitles:
    def __init__(self, title="Weather in SF"):
        self.title = title
        self.seen = []

    async def generate_title(self, message):
        self.seen.append(message.id)
        return self.title


def _new_message_request(chat_id="chat-1", text="Hello"):
    return ChatRequest(id=chat_id, message=text_message("m1", text))


@pytest.mark.asyncio
async def test_new_conversation_is_created_and_user_message_persisted(repository, principal):
    titles = StubTitles()
    resolver = ContinuationResolver(repository, titles)

    turn = await resolver.prepare(_new_message_request(), principal)

    assert turn.flow == ConversationFlow.NEW_MESSAGE
    assert turn.is_new_conversation
    assert [m.id for m in turn.effective_messages] == ["m1"]
    assert repository.conversations["chat-1"].user_id == principal.id
    assert [m.id for m in repository.messages["chat-1"]] == ["m1"]

    assert await turn.title_task == "Weather in SF"
    assert repository.conversations["chat-1"].title == "Weather in SF"
    assert titles.seen == ["m1"]


@pytest.mark.asyncio
async def test_existing_conversation_loads_history(repository, principal):
    repository.conversations["chat-1"] = Conversation(id="chat-1", user_id=principal.id, title="Old")
    repository.messages["chat-1"] = [
        text_message("m0", "earlier"),
        text_message("a0", "reply", role=MessageRole.ASSISTANT),
    ]
    resolver = ContinuationResolver(repository, StubTitles())

    turn = await resolver.prepare(_new_message_request(), principal)

    assert not turn.is_new_conversation
    assert turn.title_task is None
    assert [m.id for m in turn.effective_messages] == ["m0", "a0", "m1"]
    assert "create_conversation" not in repository.calls


@pytest.mark.asyncio
async def test_foreign_conversation_is_forbidden(repository, principal):
    repository.conversations["chat-1"] = Conversation(
        id="chat-1", user_id="someone-else", title="Theirs", visibility=Visibility.PUBLIC
    )
    resolver = ContinuationResolver(repository)

    with pytest.raises(ForbiddenError) as exc:
        await resolver.prepare(_new_message_request(), principal)

    assert exc.value.code == "forbidden:chat"
    assert repository.messages.get("chat-1") is None


def _approval_messages():
    assistant = text_message("m2", "Let me check.", role=MessageRole.ASSISTANT)
    assistant.parts.append(ToolCallPart(
        tool_call_id="call-1",
        tool_name="getWeather",
        input={"city": "SF"},
        state=ToolState.APPROVAL_RESPONDED,
        approval=ToolApproval(id="approval-call-1", approved=True),
    ))
    return [text_message("m1", "weather in SF?"), assistant]


@pytest.mark.asyncio
async def test_tool_approval_flow_uses_client_messages_verbatim(repository, principal):
    repository.conversations["chat-1"] = Conversation(id="chat-1", user_id=principal.id, title="t")
    repository.messages["chat-1"] = [text_message("stale", "not used")]
    request = ChatRequest(id="chat-1", messages=_approval_messages())
    resolver = ContinuationResolver(repository)

    turn = await resolver.prepare(request, principal)

    assert classify(request) == ConversationFlow.TOOL_APPROVAL
    assert [m.id for m in turn.effective_messages] == ["m1", "m2"]
    assert turn.input_ids == {"m1", "m2"}
    assert "append_messages" not in repository.calls


@pytest.mark.asyncio
async def test_reconcile_updates_known_ids_and_appends_new_ones(repository, principal):
    repository.conversations["chat-1"] = Conversation(id="chat-1", user_id=principal.id, title="t")
    messages = _approval_messages()
    repository.messages["chat-1"] = [m.model_copy(deep=True) for m in messages]
    resolver = ContinuationResolver(repository)
    turn = await resolver.prepare(ChatRequest(id="chat-1", messages=messages), principal)

    finished_assistant = messages[1].model_copy(deep=True)
    finished_assistant.parts.append(TextPart(text="It is sunny."))
    extra = text_message("m3", "follow-up", role=MessageRole.ASSISTANT)
    await resolver.reconcile(turn, [messages[0], finished_assistant, extra])

    stored = {m.id: m for m in repository.messages["chat-1"]}
    assert stored["m2"].text() == "Let me check.It is sunny."
    assert "m3" in stored
    assert repository.calls.count("update_message") == 2
    assert repository.calls.count("append_messages") == 1


@pytest.mark.asyncio
async def test_reconcile_failures_do_not_propagate(repository, principal, monkeypatch):
    resolver = ContinuationResolver(repository)
    turn = await resolver.prepare(_new_message_request(), principal)

    async def broken(*_args, **_kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(repository, "append_messages", broken)

    await resolver.reconcile(turn, [text_message("a1", "answer", role=MessageRole.ASSISTANT)])
