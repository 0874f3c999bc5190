# app/chat/service/token_counter.py
"""
Token estimates used when a provider does not report usage.

Counts are made with ``tiktoken``. Only two encodings are distinguished: ids
containing ``gpt-3.5`` use the gpt-3.5-turbo table and every other model
(including non-OpenAI families) is counted with the gpt-4 table. Any encoder
failure falls back to one token per four characters.
"""

import math
from dataclasses import dataclass
from functools import lru_cache
from typing import List

import tiktoken

from app.chat.entity.chat import Message, TextPart
from app.core.logger import get_logger

logger = get_logger("TokenCounter")

TOKENS_PER_MESSAGE = 4
TOKENS_PER_CONVERSATION = 3


@dataclass(frozen=True)
class InputEstimate:
    input_tokens: int


def encoding_model_for(model_id: str) -> str:
    if "gpt-4" in model_id:
        return "gpt-4"
    if "gpt-3.5" in model_id:
        return "gpt-3.5-turbo"
    return "gpt-4"


@lru_cache(maxsize=None)
def _encoder(encoding_model: str) -> "tiktoken.Encoding":
    return tiktoken.encoding_for_model(encoding_model)


def _char_estimate(chars: int) -> int:
    return math.ceil(chars / 4)


def _text_parts(message: Message) -> List[str]:
    return [part.text for part in message.parts if isinstance(part, TextPart)]


def estimate(text: str, model_id: str) -> int:
    """Number of tokens in ``text`` for ``model_id``."""
    if not text:
        return 0
    try:
        return len(_encoder(encoding_model_for(model_id)).encode(text))
    except Exception as e:
        logger.warning(f"Token encoding failed for {model_id}, using character estimate: {e}")
        return _char_estimate(len(text))


def estimate_conversation(messages: List[Message], system_prompt: str, model_id: str) -> InputEstimate:
    """Prompt-side estimate: system prompt, every text part and the per-message overheads."""
    try:
        encoder = _encoder(encoding_model_for(model_id))
        total = len(encoder.encode(system_prompt)) if system_prompt else 0
        for message in messages:
            for text in _text_parts(message):
                total += len(encoder.encode(text))
            total += TOKENS_PER_MESSAGE
        total += TOKENS_PER_CONVERSATION
        return InputEstimate(input_tokens=total)
    except Exception as e:
        logger.warning(f"Conversation encoding failed for {model_id}, using character estimate: {e}")
        chars = len(system_prompt or "")
        for message in messages:
            chars += sum(len(text) for text in _text_parts(message))
        return InputEstimate(input_tokens=_char_estimate(chars))
