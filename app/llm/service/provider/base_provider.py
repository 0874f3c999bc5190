# app/llm/service/provider/base_provider.py
"""
Provider contract shared by every model backend.

``invoke`` returns a ``ModelInvocation``: an async stream of ``ModelEvent``
objects and a usage future that resolves once, after generation ends, with the
provider's token counts (or ``None`` when the provider reports nothing).

The multi-step tool loop lives here; subclasses only implement one streamed
model step (``_stream_step``) and the message conversion for their wire format.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional

from app.chat.entity.chat import Message, ToolCallPart, ToolState
from app.core.logger import get_logger
from app.llm.tools.base import Tool, ToolSet

logger = get_logger("ModelProvider")


@dataclass
class ModelEvent:
    """
    One event emitted by a model call.

    Types: text-delta, reasoning-delta, start-step, finish-step, tool-call,
    tool-result, tool-error, tool-approval-request, tool-output-denied.
    """
    type: str
    text: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    input: Optional[dict] = None
    output: Any = None
    error: Optional[str] = None
    approval_id: Optional[str] = None


@dataclass
class ProviderUsage:
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    def add(self, other: "ProviderUsage") -> "ProviderUsage":
        def _sum(a: Optional[int], b: Optional[int]) -> Optional[int]:
            if a is None and b is None:
                return None
            return (a or 0) + (b or 0)

        return ProviderUsage(
            input_tokens=_sum(self.input_tokens, other.input_tokens),
            output_tokens=_sum(self.output_tokens, other.output_tokens),
            total_tokens=_sum(self.total_tokens, other.total_tokens),
        )


@dataclass
class InvokeOptions:
    max_steps: int = 5
    reasoning: bool = False
    thinking_budget_tokens: int = 10_000
    max_output_tokens: int = 4096
    temperature: Optional[float] = None


@dataclass
class ModelInvocation:
    events: AsyncIterator[ModelEvent]
    usage: "asyncio.Future[Optional[ProviderUsage]]"


@dataclass
class PendingToolCall:
    tool_call_id: str
    tool_name: str
    input: dict


@dataclass
class StepResult:
    """Filled in by ``_stream_step`` while it streams one model step."""
    text: str = ""
    tool_calls: List[PendingToolCall] = field(default_factory=list)
    usage: Optional[ProviderUsage] = None
    assistant_payload: Any = None


class ProviderRejectedError(Exception):
    """The provider refused the request before producing any output."""

    def __init__(self, message: str, billing: bool = False):
        super().__init__(message)
        self.billing = billing


_BILLING_MARKERS = ("credit card", "billing", "payment required", "insufficient_quota")

# Events that show the first model request was accepted
_FIRST_OUTPUT = {"text-delta", "reasoning-delta", "tool-call", "finish-step"}


def is_billing_rejection(status_code: Optional[int], message: str) -> bool:
    if status_code == 402:
        return True
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _BILLING_MARKERS)


async def _chain(primed: List[ModelEvent], rest: AsyncIterator[ModelEvent],
                 failure: Optional[Exception]) -> AsyncGenerator[ModelEvent, None]:
    for event in primed:
        yield event
    if failure is not None:
        raise failure
    async for event in rest:
        yield event


class BaseProvider(ABC):
    """Abstract base provider for all LLM integrations."""

    name: str = "base"

    def is_enabled(self) -> bool:
        """Whether this provider is enabled/usable (e.g., API key present)."""
        return True

    @abstractmethod
    def _convert_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        """Convert domain messages to the provider's wire format."""

    @abstractmethod
    async def _stream_step(
        self,
        model: str,
        system_prompt: str,
        wire_messages: List[Dict[str, Any]],
        tools: ToolSet,
        options: InvokeOptions,
        result: StepResult,
    ) -> AsyncGenerator[ModelEvent, None]:
        """Stream one model step, filling ``result`` as it goes."""
        yield ModelEvent(type="noop")  # pragma: no cover

    @abstractmethod
    def _append_tool_round(
        self,
        wire_messages: List[Dict[str, Any]],
        step: StepResult,
        outputs: Dict[str, Any],
    ) -> None:
        """Append the assistant tool-call turn and tool outputs for the next step."""

    @abstractmethod
    async def generate_text(self, model: str, system_prompt: str, prompt: str) -> str:
        """Single non-streaming completion (used for titles)."""

    def _rejection(self, error: Exception) -> Optional[ProviderRejectedError]:
        """Translate an SDK error that refuses the request, or ``None`` for any other failure."""
        return None

    def invoke(
        self,
        model: str,
        system_prompt: str,
        messages: List[Message],
        tools: ToolSet,
        options: Optional[InvokeOptions] = None,
    ) -> ModelInvocation:
        if not self.is_enabled():
            raise ProviderRejectedError(f"{self.name} provider disabled: missing API key")

        options = options or InvokeOptions()
        loop = asyncio.get_running_loop()
        usage_future: asyncio.Future = loop.create_future()
        return ModelInvocation(
            events=self._run(model, system_prompt, messages, tools, options, usage_future),
            usage=usage_future,
        )

    async def open(
        self,
        model: str,
        system_prompt: str,
        messages: List[Message],
        tools: ToolSet,
        options: Optional[InvokeOptions] = None,
    ) -> ModelInvocation:
        """
        ``invoke`` and wait for the first model response.

        A ``ProviderRejectedError`` from that first request is raised here, so
        callers can turn it into an HTTP error before streaming. Any other
        failure is held back and re-raised from the event stream.
        """
        invocation = self.invoke(model, system_prompt, messages, tools, options)
        primed: List[ModelEvent] = []
        failure: Optional[Exception] = None
        try:
            async for event in invocation.events:
                primed.append(event)
                if event.type in _FIRST_OUTPUT:
                    break
        except ProviderRejectedError:
            raise
        except Exception as e:
            failure = e
        return ModelInvocation(events=_chain(primed, invocation.events, failure), usage=invocation.usage)

    async def _run(
        self,
        model: str,
        system_prompt: str,
        messages: List[Message],
        tools: ToolSet,
        options: InvokeOptions,
        usage_future: asyncio.Future,
    ) -> AsyncGenerator[ModelEvent, None]:
        total_usage: Optional[ProviderUsage] = None
        # Approval outcomes are written onto copies, never onto the caller's messages
        messages = [message.model_copy(deep=True) for message in messages]
        try:
            # Approval decisions carried by a resubmitted conversation run first
            async for event in self._resolve_approvals(messages, tools):
                yield event

            wire_messages = self._convert_messages(messages)
            for step_index in range(options.max_steps):
                step = StepResult()
                yield ModelEvent(type="start-step")
                try:
                    async for event in self._stream_step(model, system_prompt, wire_messages, tools, options, step):
                        yield event
                except ProviderRejectedError:
                    raise
                except Exception as e:
                    rejection = self._rejection(e)
                    if rejection is None:
                        raise
                    raise rejection from e
                if step.usage is not None:
                    total_usage = step.usage if total_usage is None else total_usage.add(step.usage)
                yield ModelEvent(type="finish-step")

                if not step.tool_calls:
                    break

                outputs: Dict[str, Any] = {}
                needs_approval = False
                for call in step.tool_calls:
                    yield ModelEvent(
                        type="tool-call",
                        tool_call_id=call.tool_call_id,
                        tool_name=call.tool_name,
                        input=call.input,
                    )
                    tool = tools.get(call.tool_name)
                    if tool is not None and tool.needs_approval:
                        needs_approval = True
                        yield ModelEvent(
                            type="tool-approval-request",
                            tool_call_id=call.tool_call_id,
                            tool_name=call.tool_name,
                            approval_id=f"approval-{call.tool_call_id}",
                        )
                        continue
                    event = await self._execute_tool(tool, call)
                    outputs[call.tool_call_id] = event.output if event.type == "tool-result" else {"error": event.error}
                    yield event

                # Generation pauses until the client answers the approval request
                if needs_approval:
                    break
                self._append_tool_round(wire_messages, step, outputs)
                logger.debug(f"[{self.name}] step {step_index + 1} executed {len(outputs)} tool call(s)")
        finally:
            if not usage_future.done():
                usage_future.set_result(total_usage)

    async def _resolve_approvals(self, messages: List[Message], tools: ToolSet) -> AsyncGenerator[ModelEvent, None]:
        """Execute approved tool calls (or mark them denied) and record the outcome on the part."""
        if not messages:
            return
        last = messages[-1]
        for part in last.parts:
            if not isinstance(part, ToolCallPart) or part.state != ToolState.APPROVAL_RESPONDED:
                continue
            approved = bool(part.approval and part.approval.approved)
            if not approved:
                part.state = ToolState.OUTPUT_DENIED
                yield ModelEvent(type="tool-output-denied", tool_call_id=part.tool_call_id, tool_name=part.tool_name)
                continue
            event = await self._execute_tool(
                tools.get(part.tool_name),
                PendingToolCall(tool_call_id=part.tool_call_id, tool_name=part.tool_name, input=part.input),
            )
            if event.type == "tool-result":
                part.state = ToolState.OUTPUT_AVAILABLE
                part.output = event.output
            else:
                part.state = ToolState.OUTPUT_ERROR
                part.error_text = event.error
            yield event

    async def _execute_tool(self, tool: Optional[Tool], call: PendingToolCall) -> ModelEvent:
        if tool is None:
            return ModelEvent(
                type="tool-error",
                tool_call_id=call.tool_call_id,
                tool_name=call.tool_name,
                error=f"Unknown tool: {call.tool_name}",
            )
        try:
            output = await tool.execute(call.input)
            return ModelEvent(type="tool-result", tool_call_id=call.tool_call_id, tool_name=call.tool_name, output=output)
        except Exception as e:
            logger.warning(f"[{self.name}] tool {call.tool_name} failed: {e}")
            return ModelEvent(type="tool-error", tool_call_id=call.tool_call_id, tool_name=call.tool_name, error=str(e))

    @staticmethod
    def _parse_tool_input(raw: str) -> dict:
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
            return parsed if isinstance(parsed, dict) else {"value": parsed}
        except json.JSONDecodeError:
            return {"raw": raw}
