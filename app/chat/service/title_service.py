# app/chat/service/title_service.py
from typing import Optional

from app.chat.entity.chat import Message
from app.chat.service.prompts import TITLE_PROMPT
from app.core.config import settings
from app.core.logger import get_logger
from app.llm.service.router_service import ModelRouter

logger = get_logger("TitleGenerator")

TITLE_FALLBACK_LENGTH = 50
TITLE_MAX_LENGTH = 80


def fallback_title(text: str) -> str:
    """First 50 characters of the user's text, with an ellipsis when cut."""
    text = text.strip()
    if not text:
        return "New chat"
    title = text[:TITLE_FALLBACK_LENGTH]
    if len(text) > TITLE_FALLBACK_LENGTH:
        title += "..."
    return title


class TitleGenerator:
    """Best-effort, one-shot title for a new conversation."""

    def __init__(self, router: ModelRouter, model_id: Optional[str] = None):
        self.router = router
        self.model_id = model_id or settings.TITLE_MODEL

    async def generate_title(self, message: Message) -> str:
        text = message.text()
        try:
            title = await self.router.generate_text(self.model_id, TITLE_PROMPT, text)
            title = title.strip().strip('"').replace(":", "")[:TITLE_MAX_LENGTH].strip()
            if title:
                return title
            logger.warning("[TitleGeneration] model returned an empty title, using fallback")
        except Exception as e:
            logger.warning(f"[TitleGeneration] Title generation failed: {e}", exc_info=True)
        return fallback_title(text)
