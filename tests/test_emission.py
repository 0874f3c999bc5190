"""Tests for the SSE emission pipeline."""

import asyncio
import json

import pytest

from app.chat.entity.chat import MessageRole, TextPart, ToolCallPart, ToolState
from app.chat.entity.stream import DONE_MARKER
from app.chat.service.emission import EmissionPipeline, smooth_words
from app.llm.service.provider.base_provider import ModelEvent

from conftest import text_message


async def _events(*events, fail_with=None):
    for event in events:
        yield event
    if fail_with is not None:
        raise fail_with


def _decode(chunks):
    assert chunks[-1] == DONE_MARKER
    return [json.loads(chunk[len("data: "):]) for chunk in chunks[:-1]]


class Recorder:
    def __init__(self):
        self.outcomes = []

    async def __call__(self, outcome):
        self.outcomes.append(outcome)


@pytest.mark.asyncio
async def test_text_stream_is_framed_and_finished():
    recorder = Recorder()
    pipeline = EmissionPipeline(
        "chat-1",
        _events(
            ModelEvent(type="start-step"),
            ModelEvent(type="text-delta", text="Hello "),
            ModelEvent(type="text-delta", text="there"),
            ModelEvent(type="finish-step"),
        ),
        [text_message("m1", "Hi")],
        recorder,
        smooth=False,
    )

    events = _decode([chunk async for chunk in pipeline.start()])

    types = [e["type"] for e in events]
    assert types == [
        "start", "start-step", "text-start", "text-delta", "text-delta", "text-end", "finish-step", "finish",
    ]
    assert events[0]["messageId"] == pipeline.response.id
    assert "".join(e["delta"] for e in events if e["type"] == "text-delta") == "Hello there"

    outcome = recorder.outcomes[0]
    assert outcome.response_message.text() == "Hello there"
    assert outcome.finished_messages == [outcome.response_message]
    assert outcome.error is None


@pytest.mark.asyncio
async def test_model_failure_becomes_error_event_without_finish():
    recorder = Recorder()
    pipeline = EmissionPipeline(
        "chat-1",
        _events(ModelEvent(type="text-delta", text="partial"), fail_with=RuntimeError("upstream reset")),
        [text_message("m1", "Hi")],
        recorder,
        smooth=False,
    )

    events = _decode([chunk async for chunk in pipeline.start()])

    assert [e["type"] for e in events] == ["start", "text-start", "text-delta", "text-end", "error"]
    assert events[-1]["errorText"] == "Oops, an error occurred!"
    # Partial output is still handed to persistence
    assert recorder.outcomes[0].error == "upstream reset"
    assert recorder.outcomes[0].response_message.text() == "partial"


@pytest.mark.asyncio
async def test_generation_continues_after_client_disconnects():
    recorder = Recorder()
    release = asyncio.Event()

    async def slow():
        yield ModelEvent(type="text-delta", text="first")
        await release.wait()
        yield ModelEvent(type="text-delta", text=" second")

    pipeline = EmissionPipeline("chat-1", slow(), [text_message("m1", "Hi")], recorder, smooth=False)
    stream = pipeline.start()
    await stream.__anext__()
    await stream.aclose()

    release.set()
    await pipeline.drain_task

    assert recorder.outcomes[0].response_message.text() == "first second"


@pytest.mark.asyncio
async def test_title_is_emitted_once_before_finish():
    async def title():
        return "Weather in SF"

    title_task = asyncio.ensure_future(title())
    pipeline = EmissionPipeline(
        "chat-1",
        _events(ModelEvent(type="text-delta", text="Sunny.")),
        [text_message("m1", "Hi")],
        Recorder(),
        title_task=title_task,
        smooth=False,
    )

    events = _decode([chunk async for chunk in pipeline.start()])

    titles = [e for e in events if e["type"] == "data-chat-title"]
    assert titles == [{"type": "data-chat-title", "data": "Weather in SF"}]
    assert events.index(titles[0]) < [e["type"] for e in events].index("finish")


@pytest.mark.asyncio
async def test_failed_title_is_not_emitted():
    async def title():
        raise RuntimeError("title model down")

    pipeline = EmissionPipeline(
        "chat-1",
        _events(ModelEvent(type="text-delta", text="ok")),
        [text_message("m1", "Hi")],
        Recorder(),
        title_task=asyncio.ensure_future(title()),
        smooth=False,
    )

    events = _decode([chunk async for chunk in pipeline.start()])

    assert "data-chat-title" not in [e["type"] for e in events]
    assert events[-1]["type"] == "finish"


@pytest.mark.asyncio
async def test_finish_handler_failure_still_closes_stream():
    async def broken(_outcome):
        raise RuntimeError("db down")

    pipeline = EmissionPipeline(
        "chat-1", _events(ModelEvent(type="text-delta", text="ok")), [text_message("m1", "Hi")], broken, smooth=False
    )

    events = _decode([chunk async for chunk in pipeline.start()])

    assert events[-1]["type"] == "finish"


@pytest.mark.asyncio
async def test_tool_flow_continues_last_assistant_message():
    assistant = text_message("m2", "Checking.", role=MessageRole.ASSISTANT)
    assistant.parts.append(ToolCallPart(
        tool_call_id="call-1", tool_name="getWeather", input={"city": "SF"}, state=ToolState.APPROVAL_RESPONDED
    ))
    originals = [text_message("m1", "weather?"), assistant]
    recorder = Recorder()
    pipeline = EmissionPipeline(
        "chat-1",
        _events(
            ModelEvent(type="tool-result", tool_call_id="call-1", tool_name="getWeather", output={"temp": 20}),
            ModelEvent(type="text-delta", text="It is 20C."),
        ),
        originals,
        recorder,
        continue_last_assistant=True,
        smooth=False,
    )

    events = _decode([chunk async for chunk in pipeline.start()])

    assert events[0]["messageId"] == "m2"
    assert {"type": "tool-output-available", "toolCallId": "call-1", "output": {"temp": 20}} in events
    finished = recorder.outcomes[0].finished_messages
    assert [m.id for m in finished] == ["m1", "m2"]
    tool_part = next(p for p in finished[1].parts if isinstance(p, ToolCallPart))
    assert tool_part.state == ToolState.OUTPUT_AVAILABLE
    assert finished[1].parts[-1] == TextPart(text="It is 20C.")
    # The caller's copy is untouched
    assert originals[1].parts[1].state == ToolState.APPROVAL_RESPONDED


@pytest.mark.asyncio
async def test_approval_request_event():
    recorder = Recorder()
    pipeline = EmissionPipeline(
        "chat-1",
        _events(
            ModelEvent(type="tool-call", tool_call_id="call-1", tool_name="getWeather", input={"city": "SF"}),
            ModelEvent(type="tool-approval-request", tool_call_id="call-1", tool_name="getWeather",
                       approval_id="approval-call-1"),
        ),
        [text_message("m1", "weather?")],
        recorder,
        smooth=False,
    )

    events = _decode([chunk async for chunk in pipeline.start()])

    assert {"type": "tool-input-available", "toolCallId": "call-1", "toolName": "getWeather",
            "input": {"city": "SF"}} in events
    assert {"type": "tool-approval-request", "approvalId": "approval-call-1", "toolCallId": "call-1"} in events
    part = recorder.outcomes[0].response_message.parts[0]
    assert part.state == ToolState.APPROVAL_REQUESTED
    assert part.approval.id == "approval-call-1"


@pytest.mark.asyncio
async def test_smoothing_rechunks_at_word_boundaries():
    source = _events(
        ModelEvent(type="text-delta", text="Hel"),
        ModelEvent(type="text-delta", text="lo wor"),
        ModelEvent(type="text-delta", text="ld again"),
        ModelEvent(type="finish-step"),
    )

    out = [event async for event in smooth_words(source)]

    assert [(e.type, e.text) for e in out] == [
        ("text-delta", "Hello "),
        ("text-delta", "world "),
        ("text-delta", "again"),
        ("finish-step", None),
    ]
