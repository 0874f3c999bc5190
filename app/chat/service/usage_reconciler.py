# app/chat/service/usage_reconciler.py
"""
Exactly-once usage accounting for a chat request.

The provider's usage report arrives on a future that may resolve late, resolve
with zeros, or never resolve with anything useful. The reconciler listens for
it in the background and, when the stream finishes, writes one usage record:
the provider's numbers when they are non-zero, otherwise a local estimate.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Generic, List, Optional, TypeVar

from app.chat.entity.chat import ChatUsageRecord, Message, MessageRole, TextPart
from app.chat.service.service import IChatRepository
from app.chat.service.token_counter import InputEstimate, estimate
from app.core.config import settings
from app.core.logger import get_logger
from app.core.tasks import spawn
from app.llm.service.provider.base_provider import ProviderUsage

logger = get_logger("UsageReconciler")

T = TypeVar("T")


class ResultCell(Generic[T]):
    """A value that can be assigned once. Later assignments are ignored."""

    def __init__(self):
        self._value: Optional[T] = None
        self._filled = False

    def set(self, value: T) -> bool:
        if self._filled:
            return False
        self._value = value
        self._filled = True
        return True

    @property
    def filled(self) -> bool:
        return self._filled

    @property
    def value(self) -> Optional[T]:
        return self._value


class UsageState(str, Enum):
    PENDING = "pending"
    PROVIDER_REPORTED = "provider_reported"
    PROVIDER_SILENT = "provider_silent"
    RESOLVED = "resolved"


class UsageReconciler:
    def __init__(
        self,
        conversation_id: str,
        user_id: str,
        model_id: str,
        repository: IChatRepository,
        grace_seconds: float = settings.USAGE_SIGNAL_GRACE_SECONDS,
    ):
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.model_id = model_id
        self.repository = repository
        self.grace_seconds = grace_seconds

        self._estimate: Optional[InputEstimate] = None
        self._cell: ResultCell[ChatUsageRecord] = ResultCell()
        self._listener: Optional[asyncio.Task] = None
        self._state = UsageState.PENDING
        self._committed = False

    @property
    def state(self) -> UsageState:
        return self._state

    @property
    def record(self) -> Optional[ChatUsageRecord]:
        return self._cell.value

    def hold_estimate(self, input_estimate: InputEstimate) -> None:
        self._estimate = input_estimate

    def attach(self, usage_signal: Awaitable[Optional[ProviderUsage]]) -> None:
        """Listen for the provider's usage report without blocking the stream."""
        self._listener = spawn(self._listen(usage_signal), name=f"usage-{self.conversation_id}")

    async def _listen(self, usage_signal: Awaitable[Optional[ProviderUsage]]) -> None:
        try:
            usage = await usage_signal
        except Exception as e:
            logger.warning(f"[Chat {self.conversation_id}] provider usage signal failed: {e}")
            self._mark_silent()
            return

        total = self._total(usage)
        if total <= 0:
            # Zero is indistinguishable from "not reported"
            self._mark_silent()
            return

        record = ChatUsageRecord(
            conversation_id=self.conversation_id,
            user_id=self.user_id,
            model_id=self.model_id,
            prompt_tokens=usage.input_tokens or 0,
            completion_tokens=usage.output_tokens or 0,
            total_tokens=total,
        )
        if self._cell.set(record) and self._state == UsageState.PENDING:
            self._state = UsageState.PROVIDER_REPORTED

    def _mark_silent(self) -> None:
        if self._state == UsageState.PENDING:
            self._state = UsageState.PROVIDER_SILENT

    @staticmethod
    def _total(usage: Optional[ProviderUsage]) -> int:
        if usage is None:
            return 0
        if usage.total_tokens:
            return usage.total_tokens
        return (usage.input_tokens or 0) + (usage.output_tokens or 0)

    async def commit(self, turn_messages: List[Message]) -> Optional[ChatUsageRecord]:
        """Write the usage record for this request. Only the first call writes."""
        if self._committed:
            return None
        self._committed = True

        if self._listener is not None and not self._listener.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._listener), timeout=self.grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"[Chat {self.conversation_id}] provider usage not reported within {self.grace_seconds}s")

        if not self._cell.filled:
            self._cell.set(self._fallback_record(turn_messages))
        self._state = UsageState.RESOLVED

        record = self._cell.value
        try:
            await self.repository.write_usage_record(record)
            logger.info(
                f"[Chat {self.conversation_id}] usage recorded: prompt={record.prompt_tokens} "
                f"completion={record.completion_tokens} total={record.total_tokens}"
            )
        except Exception as e:
            logger.error(f"[Chat {self.conversation_id}] failed to record token usage: {e}", exc_info=True)
        return record

    def _fallback_record(self, turn_messages: List[Message]) -> ChatUsageRecord:
        completion_text = "".join(
            part.text
            for message in turn_messages
            if message.role == MessageRole.ASSISTANT
            for part in message.parts
            if isinstance(part, TextPart)
        )
        prompt_tokens = self._estimate.input_tokens if self._estimate else 0
        completion_tokens = estimate(completion_text, self.model_id)
        return ChatUsageRecord(
            conversation_id=self.conversation_id,
            user_id=self.user_id,
            model_id=self.model_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
