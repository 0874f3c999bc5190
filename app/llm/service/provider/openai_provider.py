# app/llm/service/provider/openai_provider.py
import json
from typing import Any, AsyncGenerator, Dict, List, Optional

from openai import APIStatusError, AsyncOpenAI

from app.chat.entity.chat import (
    FilePart, Message, MessageRole, TextPart, ToolCallPart, ToolResultPart, ToolState,
)
from app.core.config import settings
from app.llm.service.provider.base_provider import (
    BaseProvider, InvokeOptions, ModelEvent, PendingToolCall, ProviderRejectedError, ProviderUsage, StepResult,
    is_billing_rejection,
)
from app.llm.tools.base import ToolSet

# Tool-call states that carry an outcome the model must see
_ANSWERED_STATES = {ToolState.OUTPUT_AVAILABLE, ToolState.OUTPUT_DENIED, ToolState.OUTPUT_ERROR}


def _tool_outcome(part: ToolCallPart) -> str:
    if part.state == ToolState.OUTPUT_DENIED:
        return json.dumps({"error": "The user denied this tool call."})
    if part.state == ToolState.OUTPUT_ERROR:
        return json.dumps({"error": part.error_text or "Tool execution failed."})
    return json.dumps(part.output, default=str)


class OpenAIProvider(BaseProvider):
    """OpenAI chat completions, also used for OpenAI-compatible endpoints (xAI, Gemini)."""

    def __init__(self, name: str = "openai", api_key: Optional[str] = None, base_url: Optional[str] = None,
                 client: Optional[AsyncOpenAI] = None):
        self.name = name
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        if client is not None:
            self.client = client
        else:
            self.client = AsyncOpenAI(api_key=self.api_key, base_url=base_url) if self.api_key else None
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
        wire: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == MessageRole.USER:
                files = [p for p in msg.parts if isinstance(p, FilePart) and p.media_type.startswith("image/")]
                if files:
                    content: Any = [{"type": "text", "text": p.text} for p in msg.parts if isinstance(p, TextPart)]
                    content += [{"type": "image_url", "image_url": {"url": p.url}} for p in files]
                else:
                    content = msg.text()
                wire.append({"role": "user", "content": content})
            elif msg.role == MessageRole.SYSTEM:
                wire.append({"role": "system", "content": msg.text()})
            elif msg.role == MessageRole.ASSISTANT:
                answered = [p for p in msg.parts if isinstance(p, ToolCallPart) and p.state in _ANSWERED_STATES]
                entry: Dict[str, Any] = {"role": "assistant", "content": msg.text() or None}
                if answered:
                    entry["tool_calls"] = [
                        {
                            "id": p.tool_call_id,
                            "type": "function",
                            "function": {"name": p.tool_name, "arguments": json.dumps(p.input)},
                        }
                        for p in answered
                    ]
                if entry["content"] is None and not answered:
                    continue
                wire.append(entry)
                for p in answered:
                    wire.append({"role": "tool", "tool_call_id": p.tool_call_id, "content": _tool_outcome(p)})
            elif msg.role == MessageRole.TOOL:
                for p in msg.parts:
                    if isinstance(p, ToolResultPart):
                        wire.append({
                            "role": "tool",
                            "tool_call_id": p.tool_call_id,
                            "content": json.dumps(p.output, default=str),
                        })
        return wire

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
            "model": model,
            "messages": [{"role": "system", "content": system_prompt}, *wire_messages],
            "stream": True,
            "stream_options": {"include_usage": True},
            "max_tokens": options.max_output_tokens,
        }
        if tools:
            kwargs["tools"] = [tool.openai_schema() for tool in tools.values()]
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature

        response_stream = await self.client.chat.completions.create(**kwargs)
        calls: Dict[int, Dict[str, str]] = {}
        async for chunk in response_stream:
            usage = getattr(chunk, "usage", None)
            if usage:
                result.usage = ProviderUsage(
                    input_tokens=usage.prompt_tokens,
                    output_tokens=usage.completion_tokens,
                    total_tokens=usage.total_tokens,
                )
            if not getattr(chunk, "choices", None):
                continue
            delta = chunk.choices[0].delta
            content = getattr(delta, "content", None)
            if content:
                result.text += content
                yield ModelEvent(type="text-delta", text=content)
            for tool_delta in getattr(delta, "tool_calls", None) or []:
                slot = calls.setdefault(tool_delta.index, {"id": "", "name": "", "arguments": ""})
                if tool_delta.id:
                    slot["id"] = tool_delta.id
                function = getattr(tool_delta, "function", None)
                if function is not None:
                    if function.name:
                        slot["name"] += function.name
                    if function.arguments:
                        slot["arguments"] += function.arguments

        for index in sorted(calls):
            slot = calls[index]
            result.tool_calls.append(
                PendingToolCall(tool_call_id=slot["id"], tool_name=slot["name"], input=self._parse_tool_input(slot["arguments"]))
            )

    def _append_tool_round(self, wire_messages: List[Dict[str, Any]], step: StepResult, outputs: Dict[str, Any]) -> None:
        wire_messages.append({
            "role": "assistant",
            "content": step.text or None,
            "tool_calls": [
                {
                    "id": call.tool_call_id,
                    "type": "function",
                    "function": {"name": call.tool_name, "arguments": json.dumps(call.input)},
                }
                for call in step.tool_calls
            ],
        })
        for call in step.tool_calls:
            wire_messages.append({
                "role": "tool",
                "tool_call_id": call.tool_call_id,
                "content": json.dumps(outputs.get(call.tool_call_id), default=str),
            })

    async def generate_text(self, model: str, system_prompt: str, prompt: str) -> str:
        if not self.is_enabled():
            raise RuntimeError(f"{self.name} disabled: missing API key")
        resp = await self.client.chat.completions.create(
            model=model,
            messages=[{"role": "system", "content": system_prompt}, {"role": "user", "content": prompt}],
            stream=False,
        )
        return resp.choices[0].message.content or ""
