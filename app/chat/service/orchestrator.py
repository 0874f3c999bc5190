# app/chat/service/orchestrator.py
from datetime import timedelta
from typing import AsyncIterator, Optional

from app.auth.entity.entity import Principal
from app.chat.api.dto import ChatRequest
from app.chat.entity.chat import Conversation, RequestHints, Visibility, utcnow
from app.chat.service.continuation import ContinuationResolver, ConversationFlow
from app.chat.service.emission import EmissionPipeline, TurnOutcome
from app.chat.service.prompts import is_reasoning_model, system_prompt
from app.chat.service.service import IChatRepository
from app.chat.service.stream_registry import StreamSessionRegistry
from app.chat.service.title_service import TitleGenerator
from app.chat.service.token_counter import estimate_conversation
from app.chat.service.usage_reconciler import UsageReconciler
from app.core.config import settings
from app.core.errors import (
    ChatError, ForbiddenError, NotFoundError, ProviderUnavailableError, RateLimitedError, UnauthorizedError,
)
from app.core.logger import get_logger
from app.llm.service.provider.base_provider import InvokeOptions, ProviderRejectedError
from app.llm.service.router_service import ModelRouter
from app.llm.tools.base import ToolSet
from app.llm.tools.weather import weather_tool

logger = get_logger("ChatOrchestrator")


def default_tools() -> ToolSet:
    return ToolSet.of([weather_tool])


class ChatOrchestrator:
    """
    Entry points of the chat API: start a turn, resume a stream, delete a chat.

    Everything that can reject a request (auth, rate limit, ownership,
    provider setup) happens before the first byte is streamed and raises a
    ``ChatError``. Once streaming starts, failures only show up in the
    stream or in the logs.
    """

    def __init__(
        self,
        repository: IChatRepository,
        router: ModelRouter,
        registry: StreamSessionRegistry,
        title_generator: Optional[TitleGenerator] = None,
        tools: Optional[ToolSet] = None,
        max_tool_steps: int = settings.MAX_TOOL_STEPS,
        smooth_delay_ms: int = settings.SMOOTH_STREAM_DELAY_MS,
        usage_grace_seconds: float = settings.USAGE_SIGNAL_GRACE_SECONDS,
    ):
        self.repository = repository
        self.router = router
        self.registry = registry
        self.resolver = ContinuationResolver(repository, title_generator)
        self.tools = tools if tools is not None else default_tools()
        self.max_tool_steps = max_tool_steps
        self.smooth_delay_ms = smooth_delay_ms
        self.usage_grace_seconds = usage_grace_seconds

    async def _check_rate_limit(self, principal: Principal) -> None:
        since = utcnow() - timedelta(hours=settings.RATE_LIMIT_WINDOW_HOURS)
        message_count = await self.repository.count_recent_messages(principal.id, since)
        limit = settings.max_messages_per_day(principal.tier.value)
        if message_count > limit:
            logger.info(f"[User {principal.id}] rate limited: {message_count} messages, limit {limit}")
            raise RateLimitedError(cause=f"{message_count} messages in the last {settings.RATE_LIMIT_WINDOW_HOURS}h")

    async def orchestrate(
        self,
        request: ChatRequest,
        principal: Optional[Principal],
        hints: Optional[RequestHints] = None,
    ) -> AsyncIterator[str]:
        """Run one chat turn and return its SSE stream."""
        if principal is None:
            raise UnauthorizedError()
        try:
            return await self._orchestrate(request, principal, hints or RequestHints())
        except ChatError:
            raise
        except Exception as e:
            # Internal details stay in the logs
            logger.error(f"[Chat {request.id}] failed before streaming: {e}", exc_info=True)
            raise ProviderUnavailableError()

    async def _orchestrate(self, request: ChatRequest, principal: Principal, hints: RequestHints) -> AsyncIterator[str]:
        await self._check_rate_limit(principal)

        model_id = request.selected_chat_model
        reasoning = is_reasoning_model(model_id)
        try:
            provider, model = self.router.resolve(model_id)
        except ProviderRejectedError as e:
            raise ProviderUnavailableError(cause=str(e), billing=e.billing)
        if not provider.is_enabled():
            raise ProviderUnavailableError(cause=f"provider {provider.name} is not configured")

        turn = await self.resolver.prepare(request, principal)
        conversation_id = turn.conversation.id

        stream_id = self.registry.new_stream_id()
        await self.registry.register(stream_id, conversation_id)

        prompt = system_prompt(model_id, hints)
        reconciler = UsageReconciler(
            conversation_id, principal.id, model_id, self.repository, grace_seconds=self.usage_grace_seconds
        )
        reconciler.hold_estimate(estimate_conversation(turn.effective_messages, prompt, model_id))

        options = InvokeOptions(max_steps=self.max_tool_steps, reasoning=reasoning)
        tools = ToolSet() if reasoning else self.tools
        try:
            invocation = await provider.open(model, prompt, turn.effective_messages, tools, options)
        except ProviderRejectedError as e:
            logger.error(f"[Chat {conversation_id}] provider {provider.name} rejected the request: {e}")
            raise ProviderUnavailableError(cause=str(e), billing=e.billing)
        reconciler.attach(invocation.usage)

        logger.info(f"[Chat {conversation_id}] streaming {model_id} as stream {stream_id} ({turn.flow.value})")

        async def on_finish(outcome: TurnOutcome) -> None:
            # Usage is committed only after the turn's messages were written
            await self.resolver.reconcile(turn, outcome.finished_messages)
            await reconciler.commit([outcome.generated_message or outcome.response_message])

        def make_stream() -> AsyncIterator[str]:
            pipeline = EmissionPipeline(
                conversation_id,
                invocation.events,
                turn.effective_messages,
                on_finish,
                continue_last_assistant=turn.flow == ConversationFlow.TOOL_APPROVAL,
                title_task=turn.title_task,
                smooth=not reasoning,
                smooth_delay_ms=self.smooth_delay_ms,
            )
            return pipeline.start()

        return await self.registry.make_resumable(stream_id, make_stream)

    async def _readable_conversation(self, conversation_id: str, principal: Principal) -> Conversation:
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("chat")
        if conversation.visibility == Visibility.PRIVATE and conversation.user_id != principal.id:
            raise ForbiddenError()
        return conversation

    async def resume(self, stream_id: str, principal: Optional[Principal]) -> AsyncIterator[str]:
        """Replay a buffered stream. Raises ``NotFoundError`` when nothing can be resumed."""
        if principal is None:
            raise UnauthorizedError()
        session = await self.repository.get_stream(stream_id)
        if session is None:
            raise NotFoundError("stream")
        await self._readable_conversation(session.conversation_id, principal)
        stream = await self.registry.resume_if_available(stream_id)
        if stream is None:
            raise NotFoundError("stream")
        return stream

    async def resume_latest(self, conversation_id: str, principal: Optional[Principal]) -> Optional[AsyncIterator[str]]:
        """Replay the most recent stream of a conversation, or ``None`` if it has nothing buffered."""
        if principal is None:
            raise UnauthorizedError()
        await self._readable_conversation(conversation_id, principal)
        stream_ids = await self.repository.get_stream_ids_by_conversation(conversation_id)
        if not stream_ids:
            return None
        return await self.registry.resume_if_available(stream_ids[-1])

    async def delete_conversation(self, conversation_id: str, principal: Optional[Principal]) -> Conversation:
        if principal is None:
            raise UnauthorizedError()
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("chat")
        if conversation.user_id != principal.id:
            raise ForbiddenError()
        stream_ids = await self.repository.get_stream_ids_by_conversation(conversation_id)
        await self.repository.delete_conversation(conversation_id)
        await self.registry.discard(stream_ids)
        logger.info(f"[Chat {conversation_id}] deleted by {principal.id}")
        return conversation
