# app/chat/service/emission.py
"""
Turns a model invocation into the outward SSE stream of one chat turn.

A drain task owns the model stream: it reads it to the end whether or not
anyone is still listening, builds the response message, runs the finish
callback and only then closes the stream. Outward events (model output and
side-channel events such as the generated title) go through one queue and
reach the caller in arrival order.
"""

import asyncio
import re
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from app.chat.entity.chat import (
    Message, MessageRole, ReasoningPart, TextPart, ToolApproval, ToolCallPart, ToolState,
)
from app.chat.entity.stream import DONE_MARKER, StreamEvent, error_event, text_delta, title_event
from app.core.logger import get_logger
from app.core.tasks import spawn
from app.llm.service.provider.base_provider import ModelEvent

logger = get_logger("EmissionPipeline")

_END = object()
_WORD_CHUNK = re.compile(r"\s*\S+\s+")


@dataclass
class TurnOutcome:
    """What the finish callback receives once the model stream is exhausted."""
    response_message: Message
    finished_messages: List[Message]
    error: Optional[str] = None
    # The response message restricted to the parts produced by this turn
    generated_message: Optional[Message] = None


OnFinish = Callable[[TurnOutcome], Awaitable[None]]


async def smooth_words(events: AsyncIterator[ModelEvent], delay_ms: int = 0) -> AsyncIterator[ModelEvent]:
    """Re-chunk text deltas at word boundaries, pausing ``delay_ms`` between words."""
    buffer = ""
    async for event in events:
        if event.type != "text-delta":
            if buffer:
                yield ModelEvent(type="text-delta", text=buffer)
                buffer = ""
            yield event
            continue
        buffer += event.text or ""
        while True:
            match = _WORD_CHUNK.match(buffer)
            if match is None:
                break
            chunk = match.group(0)
            buffer = buffer[len(chunk):]
            yield ModelEvent(type="text-delta", text=chunk)
            if delay_ms:
                await asyncio.sleep(delay_ms / 1000)
    if buffer:
        yield ModelEvent(type="text-delta", text=buffer)


class EmissionPipeline:
    def __init__(
        self,
        conversation_id: str,
        events: AsyncIterator[ModelEvent],
        original_messages: List[Message],
        on_finish: OnFinish,
        continue_last_assistant: bool = False,
        title_task: Optional["asyncio.Task[Optional[str]]"] = None,
        smooth: bool = True,
        smooth_delay_ms: int = 0,
    ):
        self.conversation_id = conversation_id
        self.events = smooth_words(events, smooth_delay_ms) if smooth else events
        self.original_messages = original_messages
        self.on_finish = on_finish
        self.continue_last_assistant = continue_last_assistant
        self.title_task = title_task

        self.response = self._response_message()
        self._inherited_parts = len(self.response.parts)
        self.error: Optional[str] = None

        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._open_text: Optional[TextPart] = None
        self._open_text_id: Optional[str] = None
        self._open_reasoning: Optional[ReasoningPart] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._title_watcher: Optional[asyncio.Task] = None

    # ────────────────────────────────────────────────
    # Response message
    # ────────────────────────────────────────────────

    def _response_message(self) -> Message:
        if self.continue_last_assistant and self.original_messages:
            last = self.original_messages[-1]
            if last.role == MessageRole.ASSISTANT:
                return last.model_copy(deep=True)
        return Message(id=str(uuid.uuid4()), role=MessageRole.ASSISTANT, parts=[])

    def finished_messages(self) -> List[Message]:
        if not self.continue_last_assistant:
            return [self.response]
        finished = list(self.original_messages)
        for index, message in enumerate(finished):
            if message.id == self.response.id:
                finished[index] = self.response
                return finished
        finished.append(self.response)
        return finished

    def _tool_part(self, tool_call_id: str, tool_name: Optional[str] = None) -> ToolCallPart:
        for part in self.response.parts:
            if isinstance(part, ToolCallPart) and part.tool_call_id == tool_call_id:
                return part
        part = ToolCallPart(tool_call_id=tool_call_id, tool_name=tool_name or "unknown")
        self.response.parts.append(part)
        return part

    # ────────────────────────────────────────────────
    # Streaming
    # ────────────────────────────────────────────────

    def start(self) -> AsyncIterator[str]:
        """Start draining the model stream and return the caller's SSE iterator."""
        self._push(StreamEvent(type="start", messageId=self.response.id))
        if self.title_task is not None:
            self._title_watcher = spawn(self._watch_title(), name=f"title-watch-{self.conversation_id}")
        self._drain_task = spawn(self._drain(), name=f"drain-{self.conversation_id}")
        return self._read()

    @property
    def drain_task(self) -> Optional[asyncio.Task]:
        return self._drain_task

    def _push(self, event: StreamEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    async def _read(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _END:
                break
            yield item.to_sse()
        yield DONE_MARKER

    async def _watch_title(self) -> None:
        try:
            title = await self.title_task
        except Exception as e:
            logger.warning(f"[Chat {self.conversation_id}] title task failed: {e}")
            return
        if title:
            self._push(title_event(title))

    async def _drain(self) -> None:
        try:
            async for event in self.events:
                self._handle(event)
            self._close_blocks()
        except Exception as e:
            logger.error(f"[Chat {self.conversation_id}] model stream failed: {e}", exc_info=True)
            self.error = str(e)
            self._close_blocks()
            self._push(error_event())
            self._closed = True

        outcome = TurnOutcome(
            response_message=self.response,
            finished_messages=self.finished_messages(),
            error=self.error,
            generated_message=self.response.model_copy(update={"parts": self.response.parts[self._inherited_parts:]}),
        )
        try:
            await self.on_finish(outcome)
        except Exception as e:
            logger.error(f"[Chat {self.conversation_id}] finish handler failed: {e}", exc_info=True)

        if self._title_watcher is not None:
            await self._title_watcher
        if not self._closed:
            self._push(StreamEvent(type="finish"))
            self._closed = True
        self._queue.put_nowait(_END)

    # ────────────────────────────────────────────────
    # Model event handling
    # ────────────────────────────────────────────────

    def _close_blocks(self) -> None:
        if self._open_text is not None:
            self._push(StreamEvent(type="text-end", id=self._open_text_id))
            self._open_text = None
            self._open_text_id = None
        self._open_reasoning = None

    def _handle(self, event: ModelEvent) -> None:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug(f"[Chat {self.conversation_id}] ignoring model event {event.type}")
            return
        handler(self, event)

    def _on_text(self, event: ModelEvent) -> None:
        if not event.text:
            return
        if self._open_text is None:
            self._open_text_id = str(uuid.uuid4())
            self._open_text = TextPart(text="")
            self.response.parts.append(self._open_text)
            self._push(StreamEvent(type="text-start", id=self._open_text_id))
        self._open_text.text += event.text
        self._push(text_delta(self._open_text_id, event.text))

    def _on_reasoning(self, event: ModelEvent) -> None:
        if not event.text:
            return
        if self._open_reasoning is None:
            self._open_reasoning = ReasoningPart(text="")
            self.response.parts.append(self._open_reasoning)
        self._open_reasoning.text += event.text
        self._push(StreamEvent(type="reasoning-delta", delta=event.text))

    def _on_start_step(self, event: ModelEvent) -> None:
        self._push(StreamEvent(type="start-step"))

    def _on_finish_step(self, event: ModelEvent) -> None:
        self._close_blocks()
        self._push(StreamEvent(type="finish-step"))

    def _on_tool_call(self, event: ModelEvent) -> None:
        self._close_blocks()
        part = self._tool_part(event.tool_call_id, event.tool_name)
        part.tool_name = event.tool_name or part.tool_name
        part.input = event.input or {}
        part.state = ToolState.INPUT_AVAILABLE
        self._push(StreamEvent(
            type="tool-input-available", toolCallId=event.tool_call_id, toolName=part.tool_name, input=part.input
        ))

    def _on_approval_request(self, event: ModelEvent) -> None:
        part = self._tool_part(event.tool_call_id, event.tool_name)
        part.state = ToolState.APPROVAL_REQUESTED
        part.approval = ToolApproval(id=event.approval_id)
        self._push(StreamEvent(type="tool-approval-request", approvalId=event.approval_id, toolCallId=event.tool_call_id))

    def _on_tool_result(self, event: ModelEvent) -> None:
        part = self._tool_part(event.tool_call_id, event.tool_name)
        part.state = ToolState.OUTPUT_AVAILABLE
        part.output = event.output
        self._push(StreamEvent(type="tool-output-available", toolCallId=event.tool_call_id, output=event.output))

    def _on_tool_error(self, event: ModelEvent) -> None:
        part = self._tool_part(event.tool_call_id, event.tool_name)
        part.state = ToolState.OUTPUT_ERROR
        part.error_text = event.error
        self._push(StreamEvent(type="tool-output-error", toolCallId=event.tool_call_id, errorText=event.error))

    def _on_tool_denied(self, event: ModelEvent) -> None:
        part = self._tool_part(event.tool_call_id, event.tool_name)
        part.state = ToolState.OUTPUT_DENIED
        self._push(StreamEvent(type="tool-output-denied", toolCallId=event.tool_call_id))

    _handlers: Dict[str, Callable[["EmissionPipeline", ModelEvent], None]] = {
        "text-delta": _on_text,
        "reasoning-delta": _on_reasoning,
        "start-step": _on_start_step,
        "finish-step": _on_finish_step,
        "tool-call": _on_tool_call,
        "tool-approval-request": _on_approval_request,
        "tool-result": _on_tool_result,
        "tool-error": _on_tool_error,
        "tool-output-denied": _on_tool_denied,
    }
