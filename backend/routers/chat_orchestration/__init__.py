"""
Forkline Chat Orchestration - turn handling components

Components:
- ChatOrchestrator: Turn state machine (resolve session -> build context ->
  dispatch -> generate/stream -> persist)
- TurnRequest / TurnResult / TurnAccumulator: Per-turn state
- TurnEvent types: Ordered output of a streaming turn
- receive_stream / simulate_stream: Blocking-stream bridge and fallback streaming
"""

from .events import (
    ContentEvent,
    EndEvent,
    ErrorEvent,
    PartsEvent,
    ReasoningEvent,
    StartEvent,
    TurnEvent,
)
from .orchestrator import ChatOrchestrator
from .streaming import receive_stream, simulate_stream
from .turn import TurnAccumulator, TurnRequest, TurnResult

__all__ = [
    "ChatOrchestrator",
    "TurnRequest",
    "TurnResult",
    "TurnAccumulator",
    "TurnEvent",
    "StartEvent",
    "ReasoningEvent",
    "ContentEvent",
    "PartsEvent",
    "EndEvent",
    "ErrorEvent",
    "receive_stream",
    "simulate_stream",
]
