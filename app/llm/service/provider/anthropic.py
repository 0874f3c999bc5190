# app/llm/service/provider/anthropic.py
import json
from typing import Any, AsyncGenerator, Dict, List, Optional

from anthropic import APIStatusError, AsyncAnthropic

from app.chat.entity.chat import (
    FilePart, Message, MessageRole, TextPart, ToolCallPart, ToolResultPart, ToolState,
)
from app.core.config import settings
from app.llm.service.provider.base_provider import (
    BaseProvider, InvokeOptions, ModelEvent, PendingToolCall, ProviderRejectedError, ProviderUsage, StepResult,
    is_billing_rejection,
)
from app.llm.tools.base import ToolSet

_ANSWERED_STATES = {ToolState.OUTPUT_AVAILABLE, ToolState.OUTPUT_DENIED, ToolState.OUTPUT_ERROR}


def _strip_prefix(model: str) -> str:
    return model.split("/", 1)[1] if "/" in model else model


class AnthropicProvider(BaseProvider):
    """Handles Claude (Anthropic) models."""

    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncAnthropic] = None):
        self.name = "anthropic"
        self.api_key = api_key if api_key is not None else settings.ANTHROPIC_API_KEY
        if client is not None:
            self.client = client
        else:
            self.client = AsyncAnthropic(api_key=self.api_key) if self.api_key else None
        self._enabled = self.client is not None

    def is_enabled(self) -> bool:
        return self._enabled

    def _rejection(self, error: Exception) -> Optional[ProviderRejectedError]:
        # 4xx answers mean the request itself was refused (auth, billing, quota)
        if isinstance(error, APIStatusError) and 400 <= error.status_code < 500:
            return ProviderRejectedError(
                f"{self.name} rejected the request: {error.message}",
                billing=is_billing_rejection(error.status_code, error.message),
            )
        return None

    def _convert_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        # System messages travel in the top-level ``system`` parameter instead
        wire: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == MessageRole.USER:
                content: List[Dict[str, Any]] = []
                for part in msg.parts:
                    if isinstance(part, TextPart):
                        content.append({"type": "text", "text": part.text})
                    elif isinstance(part, FilePart) and part.media_type.startswith("image/"):
                        content.append({"type": "image", "source": {"type": "url", "url": part.url}})
                if content:
                    wire.append({"role": "user", "content": content})
            elif msg.role == MessageRole.ASSISTANT:
                content = []
                results: List[Dict[str, Any]] = []
                for part in msg.parts:
                    if isinstance(part, TextPart) and part.text:
                        content.append({"type": "text", "text": part.text})
                    elif isinstance(part, ToolCallPart) and part.state in _ANSWERED_STATES:
                        content.append({"type": "tool_use", "id": part.tool_call_id, "name": part.tool_name, "input": part.input})
                        results.append(self._tool_result_block(part))
                if content:
                    wire.append({"role": "assistant", "content": content})
                if results:
                    wire.append({"role": "user", "content": results})
            elif msg.role == MessageRole.TOOL:
                results = [
                    {"type": "tool_result", "tool_use_id": p.tool_call_id, "content": json.dumps(p.output, default=str)}
                    for p in msg.parts
                    if isinstance(p, ToolResultPart)
                ]
                if results:
                    wire.append({"role": "user", "content": results})
        return wire

    @staticmethod
    def _tool_result_block(part: ToolCallPart) -> Dict[str, Any]:
        if part.state == ToolState.OUTPUT_DENIED:
            return {"type": "tool_result", "tool_use_id": part.tool_call_id,
                    "content": "The user denied this tool call.", "is_error": True}
        if part.state == ToolState.OUTPUT_ERROR:
            return {"type": "tool_result", "tool_use_id": part.tool_call_id,
                    "content": part.error_text or "Tool execution failed.", "is_error": True}
        return {"type": "tool_result", "tool_use_id": part.tool_call_id, "content": json.dumps(part.output, default=str)}

    async def _stream_step(
        self,
        model: str,
        system_prompt: str,
        wire_messages: List[Dict[str, Any]],
        tools: ToolSet,
        options: InvokeOptions,
        result: StepResult,
    ) -> AsyncGenerator[ModelEvent, None]:
        kwargs: Dict[str, Any] = {
            "model": _strip_prefix(model),
            "max_tokens": options.max_output_tokens,
            "system": system_prompt,
            "messages": wire_messages,
        }
        if tools:
            kwargs["tools"] = [tool.anthropic_schema() for tool in tools.values()]
        if options.reasoning:
            # max_tokens has to leave room above the thinking budget
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": options.thinking_budget_tokens}
            kwargs["max_tokens"] = options.thinking_budget_tokens + options.max_output_tokens
        elif options.temperature is not None:
            kwargs["temperature"] = options.temperature

        async with self.client.messages.stream(**kwargs) as s:
            async for event in s:
                if getattr(event, "type", None) != "content_block_delta":
                    continue
                delta = event.delta
                delta_type = getattr(delta, "type", None)
                if delta_type == "text_delta" and delta.text:
                    result.text += delta.text
                    yield ModelEvent(type="text-delta", text=delta.text)
                elif delta_type == "thinking_delta" and delta.thinking:
                    yield ModelEvent(type="reasoning-delta", text=delta.thinking)
            final = await s.get_final_message()

        for block in final.content:
            if block.type == "tool_use":
                result.tool_calls.append(
                    PendingToolCall(tool_call_id=block.id, tool_name=block.name, input=dict(block.input or {}))
                )
        if final.usage is not None:
            result.usage = ProviderUsage(
                input_tokens=final.usage.input_tokens,
                output_tokens=final.usage.output_tokens,
                total_tokens=(final.usage.input_tokens or 0) + (final.usage.output_tokens or 0),
            )
        # Thinking blocks carry signatures and must be sent back unchanged
        result.assistant_payload = [block.model_dump(exclude_none=True) for block in final.content]

    def _append_tool_round(self, wire_messages: List[Dict[str, Any]], step: StepResult, outputs: Dict[str, Any]) -> None:
        wire_messages.append({"role": "assistant", "content": step.assistant_payload})
        wire_messages.append({
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": call.tool_call_id,
                    "content": json.dumps(outputs.get(call.tool_call_id), default=str),
                }
                for call in step.tool_calls
            ],
        })

    async def generate_text(self, model: str, system_prompt: str, prompt: str) -> str:
        if not self._enabled:
            raise RuntimeError("Anthropic provider disabled: missing ANTHROPIC_API_KEY")
        msg = await self.client.messages.create(
            model=_strip_prefix(model),
            max_tokens=1024,
            system=system_prompt,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(block.text for block in msg.content if getattr(block, "type", None) == "text")
