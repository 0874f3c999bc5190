from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from app.chat.entity.chat import ContentPart, Conversation, Message, StreamSession, UsageRecord, Visibility


class IChatRepository(ABC):
    """Persistence collaborator of the chat orchestrator."""

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def create_conversation(self, conversation_id: str, user_id: str, title: str,
                                  visibility: Visibility) -> Conversation:
        pass

    @abstractmethod
    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def get_messages(self, conversation_id: str) -> List[Message]:
        """Messages of a conversation in creation order."""

    @abstractmethod
    async def append_messages(self, conversation_id: str, messages: List[Message]) -> None:
        pass

    @abstractmethod
    async def update_message(self, message_id: str, parts: List[ContentPart]) -> None:
        pass

    @abstractmethod
    async def count_recent_messages(self, user_id: str, since: datetime) -> int:
        """User-authored messages created after ``since``."""

    @abstractmethod
    async def write_usage_record(self, record: UsageRecord) -> None:
        pass

    @abstractmethod
    async def create_stream_id(self, stream_id: str, conversation_id: str) -> None:
        """Idempotent: registering an existing stream id changes nothing."""

    @abstractmethod
    async def get_stream(self, stream_id: str) -> Optional[StreamSession]:
        pass

    @abstractmethod
    async def get_stream_ids_by_conversation(self, conversation_id: str) -> List[str]:
        """Stream ids of a conversation, oldest first."""
