"""
Forkline Chat Streaming - Server-Sent Events encoding

Maps TurnEvents onto the SSE wire format:

    event: info        {"tree_id", "session", "is_new"}
    event: reasoning   JSON string delta
    event: content     JSON string delta
    event: image|audio|video|multimodal   one JSON part per event
    event: error       {"error", "message"}
    event: done        [DONE]
"""

import json
import logging
from typing import AsyncIterator, List

from routers.chat_orchestration.events import (
    ContentEvent,
    EndEvent,
    ErrorEvent,
    PartsEvent,
    ReasoningEvent,
    StartEvent,
    TurnEvent,
)
from services.messages import MessagePart, PartType

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}

PART_EVENT_NAMES = {
    PartType.IMAGE_URL: "image",
    PartType.AUDIO_URL: "audio",
    PartType.VIDEO_URL: "video",
}


def format_sse(event: str, data: str) -> str:
    """One SSE frame. Multi-line data is split across data: lines."""
    lines = "".join(f"data: {line}\n" for line in data.split("\n"))
    return f"event: {event}\n{lines}\n"


def _part_frames(parts: List[MessagePart]) -> List[str]:
    frames = []
    for part in parts:
        if part.type == PartType.TEXT:
            continue
        name = PART_EVENT_NAMES.get(part.type, "multimodal")
        frames.append(format_sse(name, part.model_dump_json(exclude_defaults=True)))
    return frames


def encode_event(event: TurnEvent) -> List[str]:
    """SSE frames for one turn event."""
    if isinstance(event, StartEvent):
        payload = {"tree_id": event.tree_id, "session": event.session_id, "is_new": event.is_new}
        return [format_sse("info", json.dumps(payload))]
    if isinstance(event, ReasoningEvent):
        return [format_sse("reasoning", json.dumps(event.text, ensure_ascii=False))]
    if isinstance(event, ContentEvent):
        return [format_sse("content", json.dumps(event.text, ensure_ascii=False))]
    if isinstance(event, PartsEvent):
        return _part_frames(event.parts)
    if isinstance(event, ErrorEvent):
        return [format_sse("error", json.dumps(event.payload, ensure_ascii=False))]
    if isinstance(event, EndEvent):
        return [format_sse("done", "[DONE]")]

    logger.warning(f"Unknown turn event {type(event).__name__}, not sent")
    return []


async def sse_stream(events: AsyncIterator[TurnEvent]) -> AsyncIterator[str]:
    """Encode a turn's event sequence as SSE text."""
    async for event in events:
        for frame in encode_event(event):
            yield frame
