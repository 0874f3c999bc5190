# app/chat/repository/chat_repository.py

from typing import Optional, List
from datetime import datetime
from sqlalchemy.future import select
from sqlalchemy import delete, func, update
from sqlalchemy.dialects.postgresql import insert

from app.chat.entity.chat import (
    ChatUsageRecord, ContentPart, Conversation, Message, MessageRole, StreamSession, UsageRecord, Visibility,
)
from app.chat.repository.sql_schema.conversation import ConversationModel, MessageModel, StreamModel, TokenUsageModel
from app.chat.service.service import IChatRepository
from app.core.logger import get_logger
from pkg.db_util.postgres_conn import PostgresConnection

logger = get_logger("ChatRepository")


def _to_conversation(row: ConversationModel) -> Conversation:
    return Conversation(
        id=row.id,
        user_id=row.user_id,
        title=row.title,
        visibility=Visibility(row.visibility),
        created_at=row.created_at,
    )


def _dump_parts(parts: List[ContentPart]) -> list:
    return [part.model_dump(mode="json") for part in parts]


class ChatRepository(IChatRepository):
    """Handles all database interactions for conversations, messages, streams and usage."""

    def __init__(self, postgres: PostgresConnection):
        self.postgres = postgres
        self.logger = logger

    # ────────────────────────────────────────────────
    # Conversations
    # ────────────────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self.postgres.get_session() as session:
            result = await session.execute(
                select(ConversationModel).where(ConversationModel.id == conversation_id)
            )
            row = result.scalar_one_or_none()
            return _to_conversation(row) if row else None

    async def create_conversation(self, conversation_id: str, user_id: str, title: str,
                                  visibility: Visibility) -> Conversation:
        async with self.postgres.get_session() as session:
            row = ConversationModel(
                id=conversation_id,
                user_id=user_id,
                title=title,
                visibility=visibility.value,
            )
            session.add(row)
            await session.flush()
            await session.refresh(row)
            await session.commit()
            self.logger.info(f"Conversation saved: {row.id}")
            return _to_conversation(row)

    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        async with self.postgres.get_session() as session:
            await session.execute(
                update(ConversationModel).where(ConversationModel.id == conversation_id).values(title=title)
            )

    async def delete_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self.postgres.get_session() as session:
            result = await session.execute(
                select(ConversationModel).where(ConversationModel.id == conversation_id)
            )
            row = result.scalar_one_or_none()
            if not row:
                return None
            deleted = _to_conversation(row)
            await session.execute(delete(MessageModel).where(MessageModel.conversation_id == conversation_id))
            await session.execute(delete(StreamModel).where(StreamModel.conversation_id == conversation_id))
            await session.execute(delete(ConversationModel).where(ConversationModel.id == conversation_id))
            self.logger.info(f"Conversation deleted: {conversation_id}")
            return deleted

    # ────────────────────────────────────────────────
    # Messages
    # ────────────────────────────────────────────────

    async def get_messages(self, conversation_id: str) -> List[Message]:
        async with self.postgres.get_session() as session:
            result = await session.execute(
                select(MessageModel)
                .where(MessageModel.conversation_id == conversation_id)
                .order_by(MessageModel.created_at.asc())
            )
            return [
                Message.model_validate({"id": m.id, "role": m.role, "parts": m.parts, "created_at": m.created_at})
                for m in result.scalars().all()
            ]

    async def append_messages(self, conversation_id: str, messages: List[Message]) -> None:
        if not messages:
            return
        async with self.postgres.get_session() as session:
            stmt = insert(MessageModel).values([
                {
                    "id": m.id,
                    "conversation_id": conversation_id,
                    "role": m.role.value,
                    "parts": _dump_parts(m.parts),
                    "created_at": m.created_at,
                }
                for m in messages
            ])
            # Existing messages are never overwritten by an insert
            await session.execute(stmt.on_conflict_do_nothing(index_elements=[MessageModel.id]))

    async def update_message(self, message_id: str, parts: List[ContentPart]) -> None:
        async with self.postgres.get_session() as session:
            await session.execute(
                update(MessageModel).where(MessageModel.id == message_id).values(parts=_dump_parts(parts))
            )

    async def count_recent_messages(self, user_id: str, since: datetime) -> int:
        async with self.postgres.get_session() as session:
            result = await session.execute(
                select(func.count(MessageModel.id))
                .join(ConversationModel, MessageModel.conversation_id == ConversationModel.id)
                .where(
                    ConversationModel.user_id == user_id,
                    MessageModel.role == MessageRole.USER.value,
                    MessageModel.created_at >= since,
                )
            )
            return int(result.scalar_one() or 0)

    # ────────────────────────────────────────────────
    # Usage
    # ────────────────────────────────────────────────

    async def write_usage_record(self, record: UsageRecord) -> None:
        async with self.postgres.get_session() as session:
            if isinstance(record, ChatUsageRecord):
                row = TokenUsageModel(
                    usage_type=record.usage_type,
                    conversation_id=record.conversation_id,
                    user_id=record.user_id,
                    model_id=record.model_id,
                    prompt_tokens=record.prompt_tokens,
                    completion_tokens=record.completion_tokens,
                    total_tokens=record.total_tokens,
                    created_at=record.created_at,
                )
            else:
                row = TokenUsageModel(
                    usage_type=record.usage_type,
                    conversation_id=record.conversation_id,
                    user_id=record.user_id,
                    model_id=record.model_id,
                    audio_seconds=record.audio_seconds,
                    created_at=record.created_at,
                )
            session.add(row)
            await session.commit()

    # ────────────────────────────────────────────────
    # Streams
    # ────────────────────────────────────────────────

    async def create_stream_id(self, stream_id: str, conversation_id: str) -> None:
        async with self.postgres.get_session() as session:
            stmt = insert(StreamModel).values(id=stream_id, conversation_id=conversation_id)
            await session.execute(stmt.on_conflict_do_nothing(index_elements=[StreamModel.id]))

    async def get_stream(self, stream_id: str) -> Optional[StreamSession]:
        async with self.postgres.get_session() as session:
            result = await session.execute(select(StreamModel).where(StreamModel.id == stream_id))
            row = result.scalar_one_or_none()
            if not row:
                return None
            return StreamSession(stream_id=row.id, conversation_id=row.conversation_id, created_at=row.created_at)

    async def get_stream_ids_by_conversation(self, conversation_id: str) -> List[str]:
        async with self.postgres.get_session() as session:
            result = await session.execute(
                select(StreamModel.id)
                .where(StreamModel.conversation_id == conversation_id)
                .order_by(StreamModel.created_at.asc())
            )
            return list(result.scalars().all())
