"""
Forkline Chat Orchestrator - the turn state machine

ResolvingSession -> BuildingContext -> Dispatching -> Generating | Streaming
-> Persisting -> Done, with Error reachable from every state.

Handles:
- Session resolution (continue, start new, or fork from a message)
- Context building from the branch's resolved history
- Backend dispatch with capability-based content filtering
- Non-streaming and streaming generation (real or simulated)
- Persisting the assistant answer exactly once

The streaming path prepends the system prompt; the non-streaming path sends
history as stored.

Backend calls carry no timeout of their own; a streaming turn relies on the
caller's cancellation to stop a stalled backend.
"""

import asyncio
import logging
import time
from contextlib import aclosing
from typing import AsyncIterator, List, Optional, Tuple

from backends import ChatBackend
from config import RuntimeConfig
from errors import BackendError, ForklineError, NotFoundError, log_error
from logging_config import log_llm, log_message_in, log_message_out, log_stream, log_thinking
from services.backend_router import BackendRouter
from services.capabilities import CapabilityRegistry, ModelCapabilities, filter_multimodal_content
from services.messages import ChatMessage
from services.tree_store import SessionInfo, StoredMessage, TreeStore, TreeSummary

from .events import ContentEvent, EndEvent, ErrorEvent, PartsEvent, ReasoningEvent, StartEvent, TurnEvent
from .streaming import receive_stream, simulate_stream
from .turn import TurnAccumulator, TurnRequest, TurnResult

logger = logging.getLogger(__name__)


def chunk_events(chunk: ChatMessage) -> List[TurnEvent]:
    """Caller-facing events for one non-empty chunk."""
    events: List[TurnEvent] = []
    if chunk.reasoning_content:
        events.append(ReasoningEvent(chunk.reasoning_content))
    if chunk.content:
        events.append(ContentEvent(chunk.content))
    if chunk.assistant_gen_multi_content:
        events.append(PartsEvent(list(chunk.assistant_gen_multi_content)))
    return events


class ChatOrchestrator:
    """Runs chat turns against a TreeStore and routed backends.

    Args:
        store: Conversation store
        capabilities: Capability registry built at startup
        router: Backend router
        config: RuntimeConfig for default model and system prompt
    """

    def __init__(
        self,
        store: TreeStore,
        capabilities: CapabilityRegistry,
        router: BackendRouter,
        config: RuntimeConfig,
    ):
        self.store = store
        self.capabilities = capabilities
        self.router = router
        self.config = config

    # ------------------------------------------------------------------
    # turn stages
    # ------------------------------------------------------------------

    def _resolve_session(self, request: TurnRequest) -> Tuple[str, str, bool]:
        """Returns (tree_id, session_id, is_new)."""
        if request.session_id:
            return self.store.tree_of(request.session_id), request.session_id, False

        if request.parent_message_id is not None:
            session_id = self.store.fork(request.parent_message_id)
            return self.store.tree_of(session_id), session_id, True

        tree_id, session_id = self.store.new_conversation()
        return tree_id, session_id, True

    def _build_context(self, session_id: str, with_system_prompt: bool) -> List[ChatMessage]:
        history = [stored.message for stored in self.store.resolve(session_id)]
        if with_system_prompt and self.config.system_prompt:
            history.insert(0, ChatMessage.system(self.config.system_prompt))
        return history

    def _dispatch(
        self, request: TurnRequest, model: str, history: List[ChatMessage]
    ) -> Tuple[ChatBackend, ModelCapabilities, List[ChatMessage]]:
        backend_name = self.router.resolve_backend(model, request.backend)
        # A pinned backend gets the caller's raw intent
        apply_policy = not request.backend
        backend = self.router.create_adapter(backend_name, model, apply_policy=apply_policy)

        capabilities = self.capabilities.lookup(model, backend_name)
        return backend, capabilities, filter_multimodal_content(history, capabilities)

    async def _complete(
        self, backend: ChatBackend, history: List[ChatMessage], thinking: Optional[bool]
    ) -> ChatMessage:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, backend.complete, history, thinking)
        except ForklineError:
            raise
        except Exception as e:
            raise BackendError(
                f"{backend.backend_name} request failed", str(e), backend=backend.backend_name, model=backend.model
            ) from e

    def _persist_answer(self, session_id: str, message: ChatMessage, model: str) -> int:
        message_id = self.store.append(session_id, message, model=model)
        log_message_out(logger, message_id, model=model, chars=len(message.content))
        return message_id

    # ------------------------------------------------------------------
    # turns
    # ------------------------------------------------------------------

    async def chat(self, request: TurnRequest) -> TurnResult:
        """Run one non-streaming turn.

        Raises:
            ValidationError, NotFoundError, BackendError, PersistenceError
        """
        request.validate()
        model = request.model or self.config.default_model

        tree_id, session_id, is_new = self._resolve_session(request)
        log_message_in(logger, request.message.title_text(), session=session_id, model=model, stream=False)

        self.store.append(session_id, request.message)
        history = self._build_context(session_id, with_system_prompt=False)
        backend, _, history = self._dispatch(request, model, history)

        log_llm(logger, "start", model=model)
        start = time.time()
        answer = await self._complete(backend, history, request.thinking)
        log_llm(logger, "end", model=model, duration=time.time() - start)

        message_id = self._persist_answer(session_id, answer, model)
        return TurnResult(
            message=answer,
            model=model,
            backend=backend.backend_name,
            tree_id=tree_id,
            session_id=session_id,
            message_id=message_id,
            is_new=is_new,
        )

    async def chat_stream(
        self, request: TurnRequest, cancel: Optional[asyncio.Event] = None
    ) -> AsyncIterator[TurnEvent]:
        """Run one streaming turn as an ordered sequence of TurnEvents.

        Failures become a terminal ErrorEvent. Setting ``cancel`` (or closing
        the generator) force-closes the backend stream; a cancelled turn
        persists nothing and emits no terminal event.
        """
        try:
            request.validate()
            tree_id, session_id, is_new = self._resolve_session(request)
        except ForklineError as e:
            log_error(logger, e, context="chat_stream", include_traceback=False)
            yield ErrorEvent(e)
            return

        yield StartEvent(tree_id=tree_id, session_id=session_id, is_new=is_new)

        model = request.model or self.config.default_model
        log_message_in(
            logger, request.message.title_text(), session=session_id, model=model, thinking=request.thinking
        )

        try:
            self.store.append(session_id, request.message)
            history = self._build_context(session_id, with_system_prompt=True)
            backend, capabilities, history = self._dispatch(request, model, history)

            accumulator = TurnAccumulator()
            loop = asyncio.get_running_loop()
            log_llm(logger, "start", model=model)
            start = time.time()

            if capabilities.requires_non_streaming:
                log_stream(logger, "fallback", model=model)
                answer = await self._complete(backend, history, request.thinking)
                for chunk in simulate_stream(answer):
                    accumulator.add(chunk)
                    for event in chunk_events(chunk):
                        yield event
            else:
                stream = await loop.run_in_executor(None, backend.stream_incremental, history, request.thinking)
                log_stream(logger, "start", backend=backend.backend_name, model=model)
                async with aclosing(receive_stream(stream, cancel, backend_name=backend.backend_name)) as chunks:
                    async for chunk in chunks:
                        if not chunk.has_payload():
                            continue
                        accumulator.add(chunk)
                        for event in chunk_events(chunk):
                            yield event

            if cancel is not None and cancel.is_set():
                log_stream(logger, "cancelled", session=session_id, chunks=accumulator.chunks)
                return

            log_llm(logger, "end", model=model, duration=time.time() - start)
            if accumulator.reasoning:
                log_thinking(logger, "end", chars=accumulator.reasoning_chars)

            message_id = self._persist_answer(session_id, accumulator.message(), model)
            log_stream(logger, "end", session=session_id, chunks=accumulator.chunks)
            yield EndEvent(message_id=message_id, model=model, backend=backend.backend_name)

        except Exception as e:
            log_error(logger, e, context="chat_stream", include_traceback=not isinstance(e, ForklineError))
            yield ErrorEvent(e)

    # ------------------------------------------------------------------
    # session queries
    # ------------------------------------------------------------------

    def list_sessions(self) -> List[TreeSummary]:
        return self.store.list_trees()

    def get_session(self, session_id: str) -> List[StoredMessage]:
        """Ancestors plus branch messages; NotFoundError for unknown sessions."""
        if not self.store.exists(session_id):
            raise NotFoundError("session not found", resource_type="session", resource_id=session_id)
        return self.store.resolve(session_id)

    def get_tree(self, tree_id: str) -> TreeSummary:
        return self.store.get_tree(tree_id)

    def list_branches(self, tree_id: str) -> List[SessionInfo]:
        return self.store.list_sessions(tree_id)

    def fork(self, parent_message_id: int, message: Optional[ChatMessage] = None) -> Tuple[str, str, Optional[int]]:
        """Open a branch at parent_message_id, optionally seeded with its first message.

        Returns (tree_id, session_id, message_id); message_id is None without a message.
        """
        if message is None:
            session_id = self.store.fork(parent_message_id)
            message_id = None
        else:
            session_id, message_id = self.store.fork_with_message(parent_message_id, message)
        return self.store.tree_of(session_id), session_id, message_id

    def delete_tree(self, tree_id: str) -> None:
        if not self.store.delete_tree(tree_id):
            raise NotFoundError("tree not found", resource_type="tree", resource_id=tree_id)
