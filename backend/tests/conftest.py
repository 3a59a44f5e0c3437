"""
Shared pytest fixtures: a temporary conversation store, scripted in-process
backends and an orchestrator wired to them.
"""

import asyncio
import threading
from typing import List, Optional

import pytest

from backends import ChatBackend, IncrementalStream
from config import BackendSettings, RuntimeConfig
from routers.chat_orchestration import ChatOrchestrator
from services.backend_router import BackendRouter
from services.capabilities import CapabilityRegistry
from services.messages import ChatMessage
from services.tree_store import TreeStore

SYSTEM_PROMPT = "You are a test assistant."


class ScriptedBackend(ChatBackend):
    """Backend that replays a fixed script instead of calling a provider.

    Args:
        chunks: Chunks stream_incremental yields, in order
        answer: What complete() returns
        fail_after: Raise ``error`` after this many chunks
        block_after: Block after this many chunks until the stream is closed
    """

    def __init__(
        self,
        chunks: Optional[List[ChatMessage]] = None,
        answer: Optional[ChatMessage] = None,
        fail_after: Optional[int] = None,
        block_after: Optional[int] = None,
        error: Optional[Exception] = None,
    ):
        super().__init__("scripted", "scripted-model", BackendSettings(name="scripted"))
        self.chunks = chunks or []
        self.answer = answer or ChatMessage.assistant(content="".join(c.content for c in self.chunks))
        self.fail_after = fail_after
        self.block_after = block_after
        self.error = error or RuntimeError("backend dropped the connection")
        self.calls: List[dict] = []
        self.closed = threading.Event()

    @property
    def provider_name(self) -> str:
        return "Scripted"

    def complete(self, history, thinking=None):
        self.calls.append({"op": "complete", "history": list(history), "thinking": thinking})
        return self.answer

    def stream_incremental(self, history, thinking=None):
        self.calls.append({"op": "stream", "history": list(history), "thinking": thinking})
        return IncrementalStream(self._generate(), on_close=self.closed.set)

    def _generate(self):
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise self.error
            if self.block_after is not None and index == self.block_after:
                self.closed.wait(timeout=5)
                return
            yield chunk
        if self.fail_after is not None and self.fail_after >= len(self.chunks):
            raise self.error
        if self.block_after is not None and self.block_after >= len(self.chunks):
            self.closed.wait(timeout=5)


class ScriptedRouter(BackendRouter):
    """BackendRouter whose adapters are the scripted backend."""

    def __init__(self, settings, default_backend="openai"):
        super().__init__(settings, default_backend=default_backend)
        self.backend = ScriptedBackend(chunks=[ChatMessage.assistant(content="ok")])
        self.created: List[dict] = []

    def create_adapter(self, backend_name, model_name, apply_policy=True):
        self.created.append({"backend": backend_name, "model": model_name, "apply_policy": apply_policy})
        self.backend.backend_name = backend_name
        self.backend.model = model_name
        self.backend.apply_policy = apply_policy
        return self.backend


@pytest.fixture
def store(tmp_path):
    """Empty conversation store in a temporary directory."""
    return TreeStore(tmp_path / "sessions.db")


@pytest.fixture
def backend_settings():
    return {
        "openai": BackendSettings(name="openai", api_key="sk-openai"),
        "claude": BackendSettings(name="claude", api_key="sk-claude"),
        "deepseek": BackendSettings(name="deepseek", api_key="sk-deepseek"),
        "gemini": BackendSettings(name="gemini", api_key="gm-key"),
    }


@pytest.fixture
def config(tmp_path):
    return RuntimeConfig(
        database_path=str(tmp_path / "sessions.db"),
        default_model="gpt-4o-mini",
        default_backend="openai",
        system_prompt=SYSTEM_PROMPT,
    )


@pytest.fixture
def registry():
    return CapabilityRegistry()


@pytest.fixture
def router(backend_settings):
    return ScriptedRouter(backend_settings)


@pytest.fixture
def orchestrator(store, registry, router, config):
    return ChatOrchestrator(store, registry, router, config)


@pytest.fixture
def make_backend():
    """Factory for ScriptedBackend instances."""
    return ScriptedBackend


@pytest.fixture
def run_turn():
    """Collect every event of a streaming turn."""

    def _run(orchestrator, request, cancel_on=None):
        async def _collect():
            cancel = asyncio.Event()
            events = []
            async for event in orchestrator.chat_stream(request, cancel=cancel):
                events.append(event)
                if cancel_on is not None and cancel_on(event):
                    cancel.set()
            return events

        return asyncio.run(_collect())

    return _run
