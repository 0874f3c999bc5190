from typing import AsyncIterator, Optional
from urllib.parse import unquote

from fastapi import Request

from app.auth.entity.entity import Principal
from app.chat.api.dto import ChatRequest
from app.chat.entity.chat import RequestHints
from app.chat.service.orchestrator import ChatOrchestrator
from app.core.logger import get_logger

logger = get_logger("ChatHandler")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # for Nginx
}


def _header(request: Request, *names: str) -> Optional[str]:
    for name in names:
        value = request.headers.get(name)
        if value:
            return unquote(value)
    return None


def request_hints(request: Request) -> RequestHints:
    """Geo and locale hints from edge/proxy headers."""
    accept_language = request.headers.get("accept-language") or ""
    locale = accept_language.split(",")[0].split(";")[0].strip() or None
    return RequestHints(
        latitude=_header(request, "x-vercel-ip-latitude", "x-geo-latitude"),
        longitude=_header(request, "x-vercel-ip-longitude", "x-geo-longitude"),
        city=_header(request, "x-vercel-ip-city", "x-geo-city"),
        country=_header(request, "x-vercel-ip-country", "cf-ipcountry", "x-geo-country"),
        locale=locale,
    )


async def handle_chat_stream(
    body: ChatRequest,
    principal: Principal,
    hints: RequestHints,
    orchestrator: ChatOrchestrator,
) -> AsyncIterator[str]:
    """Validate and start the turn; errors raised here happen before any byte is sent."""
    logger.info(
        f"[Chat {body.id}] request from {principal.id} model={body.selected_chat_model} "
        f"flow={'messages' if body.messages is not None else 'message'}"
    )
    return await orchestrator.orchestrate(body, principal, hints)
