# app/chat/service/prompts.py
from app.chat.entity.chat import RequestHints


ARTIFACTS_PROMPT = """Artifacts is a special user interface mode that helps users with writing, editing, and other content creation tasks. When artifact is open, it is on the right side of the screen, while the conversation is on the left side.

When asked to write code, always use artifacts and specify the language in the backticks, e.g. ```python`code here````. Do not update a document right after creating it; wait for user feedback or a request to update it."""

REGULAR_PROMPT = "You are a friendly assistant! Keep your responses concise and helpful."

TITLE_PROMPT = """You will generate a short title based on the first message a user begins a conversation with.
- ensure it is not more than 80 characters long
- the title should be a summary of the user's message
- do not use quotes or colons"""


def is_reasoning_model(model_id: str) -> bool:
    return "reasoning" in model_id or "thinking" in model_id


def request_prompt(hints: RequestHints) -> str:
    return f"""About the origin of user's request:
- lat: {hints.latitude}
- lon: {hints.longitude}
- city: {hints.city}
- country: {hints.country}"""


def system_prompt(model_id: str, hints: RequestHints) -> str:
    """Prompt for one chat turn. Reasoning models get no artifacts instructions."""
    base = f"{REGULAR_PROMPT}\n\n{request_prompt(hints)}"
    if hints.locale:
        base += f"\n\nPrefer replying in the user's language ({hints.locale}) unless asked otherwise."
    if is_reasoning_model(model_id):
        return base
    return f"{base}\n\n{ARTIFACTS_PROMPT}"
