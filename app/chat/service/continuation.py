# app/chat/service/continuation.py
"""
Decides how a chat request continues its conversation and how the finished
turn is written back.

A request carrying one ``message`` appends to the stored history. A request
carrying the full ``messages`` list is a continuation after a tool approval:
the client's list is used as-is, and messages whose ids it already contained
are updated in place when the turn completes.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set

from app.auth.entity.entity import Principal
from app.chat.api.dto import ChatRequest
from app.chat.entity.chat import Conversation, Message, MessageRole
from app.chat.service.service import IChatRepository
from app.chat.service.title_service import TitleGenerator
from app.core.errors import ForbiddenError
from app.core.logger import get_logger
from app.core.tasks import spawn

logger = get_logger("ContinuationResolver")

PLACEHOLDER_TITLE = "New chat"


class ConversationFlow(str, Enum):
    NEW_MESSAGE = "new_message"
    TOOL_APPROVAL = "tool_approval"


@dataclass
class PreparedTurn:
    flow: ConversationFlow
    conversation: Conversation
    effective_messages: List[Message]
    is_new_conversation: bool = False
    title_task: Optional["asyncio.Task[Optional[str]]"] = None
    input_ids: Set[str] = field(init=False)

    def __post_init__(self):
        self.input_ids = {message.id for message in self.effective_messages}


def classify(request: ChatRequest) -> ConversationFlow:
    if request.messages is not None:
        return ConversationFlow.TOOL_APPROVAL
    return ConversationFlow.NEW_MESSAGE


def _first_user_message(request: ChatRequest) -> Optional[Message]:
    if request.message is not None:
        return request.message if request.message.role == MessageRole.USER else None
    for message in request.messages or []:
        if message.role == MessageRole.USER:
            return message
    return None


class ContinuationResolver:
    def __init__(self, repository: IChatRepository, title_generator: Optional[TitleGenerator] = None):
        self.repository = repository
        self.title_generator = title_generator

    async def prepare(self, request: ChatRequest, principal: Principal) -> PreparedTurn:
        """Check ownership, create the conversation if needed and assemble the model input."""
        flow = classify(request)
        conversation = await self.repository.get_conversation(request.id)
        if conversation is not None and conversation.user_id != principal.id:
            raise ForbiddenError(cause=f"conversation {request.id} is owned by another user")

        is_new = conversation is None
        title_task = None
        if is_new:
            conversation = await self.repository.create_conversation(
                request.id, principal.id, PLACEHOLDER_TITLE, request.selected_visibility_type
            )
            first_user = _first_user_message(request)
            if first_user is not None and self.title_generator is not None:
                title_task = spawn(self._generate_title(request.id, first_user), name=f"title-{request.id}")

        if flow == ConversationFlow.NEW_MESSAGE:
            history = [] if is_new else await self.repository.get_messages(request.id)
            effective = [*history, request.message]
            # The triggering user message is durable before the model is called
            await self.repository.append_messages(request.id, [request.message])
        else:
            effective = list(request.messages)

        logger.info(
            f"[Chat {request.id}] prepared {flow.value} turn with {len(effective)} message(s)"
            f"{' (new conversation)' if is_new else ''}"
        )
        return PreparedTurn(
            flow=flow,
            conversation=conversation,
            effective_messages=effective,
            is_new_conversation=is_new,
            title_task=title_task,
        )

    async def _generate_title(self, conversation_id: str, message: Message) -> Optional[str]:
        title = await self.title_generator.generate_title(message)
        try:
            await self.repository.update_conversation_title(conversation_id, title)
        except Exception as e:
            logger.error(f"[Chat {conversation_id}] failed to save title: {e}", exc_info=True)
        return title

    async def reconcile(self, turn: PreparedTurn, finished_messages: List[Message]) -> None:
        """Persist the finished turn. Every write is independent; failures are logged."""
        conversation_id = turn.conversation.id
        if turn.flow == ConversationFlow.NEW_MESSAGE:
            try:
                await self.repository.append_messages(conversation_id, finished_messages)
            except Exception as e:
                logger.error(f"[Chat {conversation_id}] failed to save messages: {e}", exc_info=True)
            return

        for message in finished_messages:
            try:
                if message.id in turn.input_ids:
                    await self.repository.update_message(message.id, message.parts)
                else:
                    await self.repository.append_messages(conversation_id, [message])
            except Exception as e:
                logger.error(f"[Chat {conversation_id}] failed to save message {message.id}: {e}", exc_info=True)
