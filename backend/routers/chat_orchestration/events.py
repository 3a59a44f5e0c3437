"""
Forkline Turn Events - the ordered output of a streaming turn

A streaming turn yields, in order:
    StartEvent                      exactly once, before any backend call
    ReasoningEvent / ContentEvent / PartsEvent   zero or more
    EndEvent | ErrorEvent           exactly one terminal event

An ErrorEvent may arrive before the StartEvent when the request is invalid
or names an unknown session.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union

from errors import format_error_for_stream
from services.messages import MessagePart


@dataclass
class StartEvent:
    tree_id: str
    session_id: str
    is_new: bool
    kind: str = field(default="start", init=False)


@dataclass
class ReasoningEvent:
    text: str
    kind: str = field(default="reasoning", init=False)


@dataclass
class ContentEvent:
    text: str
    kind: str = field(default="content", init=False)


@dataclass
class PartsEvent:
    parts: List[MessagePart]
    kind: str = field(default="parts", init=False)


@dataclass
class EndEvent:
    message_id: int
    model: str
    backend: str
    kind: str = field(default="end", init=False)


@dataclass
class ErrorEvent:
    """Terminal failure. ``payload`` is what the transport sends."""

    error: Exception
    kind: str = field(default="error", init=False)

    @property
    def payload(self) -> dict:
        return format_error_for_stream(self.error)

    @property
    def message(self) -> Optional[str]:
        return self.payload.get("message")


TurnEvent = Union[StartEvent, ReasoningEvent, ContentEvent, PartsEvent, EndEvent, ErrorEvent]
