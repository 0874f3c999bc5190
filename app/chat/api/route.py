from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import StreamingResponse

from app.auth.api.dependencies import get_current_principal
from app.auth.entity.entity import Principal
from app.chat.api.dto import ChatRequest, DeleteResponse
from app.chat.api.handler import SSE_HEADERS, handle_chat_stream, request_hints
from app.chat.service.orchestrator import ChatOrchestrator
from app.core.logger import get_logger

chat_router = APIRouter(prefix="/api/chat", tags=["Chat"])
logger = get_logger("ChatRouter")


def get_orchestrator(request: Request) -> ChatOrchestrator:
    """Dependency to get the chat orchestrator from app.state."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Chat service not initialized")
    return orchestrator


@chat_router.post("")
async def chat_stream_api(
    body: ChatRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """
    Streaming chat endpoint (Server-Sent Events).
    Each event is a ``data: {json}`` frame; the stream ends with ``data: [DONE]``.
    """
    stream = await handle_chat_stream(body, principal, request_hints(request), orchestrator)
    return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)


@chat_router.get("/stream/{stream_id}")
async def resume_stream_api(
    stream_id: str,
    principal: Principal = Depends(get_current_principal),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Replay a stream from its first event and follow it until it ends."""
    stream = await orchestrator.resume(stream_id, principal)
    return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)


@chat_router.get("/{conversation_id}/stream")
async def resume_conversation_stream_api(
    conversation_id: str,
    principal: Principal = Depends(get_current_principal),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Resume the latest stream of a conversation; 204 when there is nothing to resume."""
    stream = await orchestrator.resume_latest(conversation_id, principal)
    if stream is None:
        return Response(status_code=204)
    return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)


@chat_router.delete("", response_model=DeleteResponse)
async def delete_conversation_api(
    conversation_id: str = Query(..., alias="id", min_length=1),
    principal: Principal = Depends(get_current_principal),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Delete a conversation with its messages and streams. Owner only."""
    await orchestrator.delete_conversation(conversation_id, principal)
    return DeleteResponse(success=True, message="Conversation deleted successfully", conversation_id=conversation_id)
