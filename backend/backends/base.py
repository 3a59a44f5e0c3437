"""
Chat Backend - abstract base class for all AI backends.

Backends wrap different provider SDKs behind a uniform two-operation
contract so the orchestrator never sees provider wire formats:

    complete(history, thinking)            -> one finished ChatMessage
    stream_incremental(history, thinking)  -> IncrementalStream of partial chunks

Both operations block; the orchestrator runs them on a worker thread.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Iterator, List, Optional

from config import BackendSettings
from services.messages import ChatMessage, MessagePart

logger = logging.getLogger(__name__)


class IncrementalStream:
    """Finite, ordered, single-pass iterator of partial ChatMessage chunks.

    close() is idempotent and may be called from any thread; it stops
    iteration and runs the backend's close hook (typically closing the HTTP
    response so a blocked read returns).
    """

    def __init__(self, chunks: Iterable[ChatMessage], on_close: Optional[Callable[[], None]] = None):
        self._chunks: Iterator[ChatMessage] = iter(chunks)
        self._on_close = on_close
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> "IncrementalStream":
        return self

    def __next__(self) -> ChatMessage:
        if self._closed:
            raise StopIteration
        return next(self._chunks)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> "IncrementalStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ChatBackend(ABC):
    """Abstract chat backend bound to one backend name and model."""

    def __init__(self, backend_name: str, model: str, settings: BackendSettings, apply_policy: bool = True):
        self.backend_name = backend_name
        self.model = model
        self.settings = settings
        # False when the caller pinned the backend: never inject thinking params
        self.apply_policy = apply_policy

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Human-readable provider name (e.g. 'OpenAI Chat', 'Anthropic')."""
        ...

    @abstractmethod
    def complete(self, history: List[ChatMessage], thinking: Optional[bool] = None) -> ChatMessage:
        """Generate one complete assistant message.

        Args:
            history: Conversation so far, oldest first.
            thinking: Tri-state reasoning preference; None leaves it to the provider.

        Returns:
            The assistant message.
        """
        ...

    @abstractmethod
    def stream_incremental(self, history: List[ChatMessage], thinking: Optional[bool] = None) -> IncrementalStream:
        """Open an incremental stream of partial assistant messages."""
        ...

    def thinking_params(self, thinking: Optional[bool]) -> dict:
        """Provider request parameters for the thinking preference.

        Empty unless the backend overrides it and policy applies.
        """
        return {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(backend={self.backend_name!r}, model={self.model!r})"


def part_url(part: MessagePart) -> str:
    """URL for a media part, building a data URL from inline base64 when needed."""
    if part.url:
        return part.url
    if part.base64_data:
        mime = part.mime_type or "application/octet-stream"
        return f"data:{mime};base64,{part.base64_data}"
    return ""


def split_system(history: List[ChatMessage]) -> tuple[str, List[ChatMessage]]:
    """Pull system messages out of history for providers that take them separately."""
    system = "\n\n".join(m.content for m in history if m.role.value == "system" and m.content)
    rest = [m for m in history if m.role.value != "system"]
    return system, rest
