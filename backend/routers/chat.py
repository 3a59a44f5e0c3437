"""
Forkline Chat Router

POST /v1/chat           streaming turn (Server-Sent Events)
POST /v1/chat/complete  non-streaming turn
"""

import logging
from contextlib import aclosing
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from routers.chat_orchestration import ChatOrchestrator, TurnRequest
from routers.chat_streaming import SSE_HEADERS, sse_stream
from services.messages import ChatMessage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["chat"])


class ChatRequest(BaseModel):
    """Inbound turn. Either ``message`` or plain ``content`` is required."""

    message: Optional[ChatMessage] = None
    content: str = ""
    model: str = ""
    backend: Optional[str] = Field(default=None, description="Pin a backend; disables thinking policy")
    session_id: Optional[str] = None
    thinking: Optional[bool] = None
    parent_message_id: Optional[int] = Field(default=None, description="Fork point when session_id is empty")

    def to_turn(self) -> TurnRequest:
        return TurnRequest(
            message=self.message if self.message is not None else ChatMessage.user(self.content),
            model=self.model,
            backend=self.backend or None,
            session_id=self.session_id or None,
            thinking=self.thinking,
            parent_message_id=self.parent_message_id,
        )


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


@router.post("/chat")
async def chat_stream(body: ChatRequest, request: Request):
    """Stream one turn as Server-Sent Events."""
    orchestrator = get_orchestrator(request)
    turn = body.to_turn()

    async def generate():
        async with aclosing(orchestrator.chat_stream(turn)) as events:
            async for frame in sse_stream(events):
                yield frame

    return StreamingResponse(generate(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/chat/complete")
async def chat_complete(body: ChatRequest, request: Request):
    """Run one non-streaming turn. Errors map to HTTP statuses via the exception handler."""
    result = await get_orchestrator(request).chat(body.to_turn())
    return result.to_dict()
