"""
OpenAI Responses Backend - the Responses API for o-series and gpt-5+ models.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional

import httpx
import openai

from backends.base import ChatBackend, IncrementalStream, part_url, split_system
from backends.openai_compat import wrap_openai_error
from errors import BackendError, StreamProtocolError
from services.messages import ChatMessage, PartType, Role

logger = logging.getLogger(__name__)

RESPONSES_PREFIXES = ("o1", "o3", "o4", "gpt-5", "gpt-6", "gpt-7")


def should_use_responses_api(model: str) -> bool:
    return model.lower().startswith(RESPONSES_PREFIXES)


def supports_responses_reasoning(model: str) -> bool:
    """Responses API models that accept the reasoning block (o1/o3/o4 and gpt-5 onwards)."""
    m = model.lower()
    if m.startswith(("o1", "o3", "o4")):
        return True
    return any(tag in m for tag in ("gpt-5", "gpt-6", "gpt-7"))


def to_responses_input(history: List[ChatMessage]) -> List[Dict[str, Any]]:
    """Translate non-system history into Responses API input items."""
    items = []
    for msg in history:
        if msg.role == Role.ASSISTANT:
            items.append({"role": "assistant", "content": [{"type": "output_text", "text": msg.content}]})
            continue
        if msg.role == Role.TOOL:
            items.append({"type": "function_call_output", "call_id": msg.tool_call_id, "output": msg.content})
            continue

        content: List[Dict[str, Any]] = []
        if msg.content:
            content.append({"type": "input_text", "text": msg.content})
        for part in msg.user_input_multi_content:
            if part.type == PartType.TEXT:
                content.append({"type": "input_text", "text": part.text})
            elif part.type == PartType.IMAGE_URL:
                content.append({"type": "input_image", "image_url": part_url(part)})
            elif part.type == PartType.FILE_URL and part.url:
                content.append({"type": "input_file", "file_url": part.url})
            else:
                content.append({"type": "input_text", "text": f"[{part.type.value}]"})
        items.append({"role": "user", "content": content})
    return items


class OpenAIResponsesBackend(ChatBackend):
    """Backend for the OpenAI Responses API."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client = openai.OpenAI(
            api_key=self.settings.api_key or "not-needed",
            base_url=self.settings.base_url or None,
        )

    @property
    def provider_name(self) -> str:
        return "OpenAI Responses"

    def thinking_params(self, thinking: Optional[bool]) -> dict:
        if not self.apply_policy or thinking is None or not supports_responses_reasoning(self.model):
            return {}
        if thinking:
            return {"reasoning": {"effort": "high", "summary": "detailed"}}
        return {"reasoning": {"effort": "low"}}

    def _request(self, history: List[ChatMessage], thinking: Optional[bool]) -> Dict[str, Any]:
        instructions, rest = split_system(history)
        request: Dict[str, Any] = {"model": self.model, "input": to_responses_input(rest)}
        if instructions:
            request["instructions"] = instructions
        request.update(self.thinking_params(thinking))
        return request

    def complete(self, history: List[ChatMessage], thinking: Optional[bool] = None) -> ChatMessage:
        try:
            response = self._client.responses.create(**self._request(history, thinking))
        except (openai.OpenAIError, httpx.HTTPError) as e:
            raise wrap_openai_error(e, self.backend_name, self.model) from e

        reasoning = []
        for item in response.output or []:
            if getattr(item, "type", "") == "reasoning":
                reasoning.extend(s.text for s in (item.summary or []) if getattr(s, "text", ""))

        return ChatMessage.assistant(content=response.output_text or "", reasoning_content="\n\n".join(reasoning))

    def stream_incremental(self, history: List[ChatMessage], thinking: Optional[bool] = None) -> IncrementalStream:
        try:
            stream = self._client.responses.create(stream=True, **self._request(history, thinking))
        except (openai.OpenAIError, httpx.HTTPError) as e:
            raise wrap_openai_error(e, self.backend_name, self.model) from e

        return IncrementalStream(self._chunks(stream), on_close=stream.close)

    def _chunks(self, stream) -> Iterator[ChatMessage]:
        try:
            for event in stream:
                kind = getattr(event, "type", None)
                if kind is None:
                    raise StreamProtocolError("Responses event without a type", backend=self.backend_name)

                if kind == "response.output_text.delta":
                    yield ChatMessage.assistant(content=self._delta(event))
                elif kind in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
                    yield ChatMessage.assistant(reasoning_content=self._delta(event))
                elif kind == "response.reasoning_summary_part.done":
                    yield ChatMessage.assistant(reasoning_content="\n\n")
                elif kind == "error":
                    raise BackendError(
                        "Responses stream error",
                        getattr(event, "message", ""),
                        backend=self.backend_name,
                        model=self.model,
                    )
                elif kind == "response.failed":
                    error = getattr(event.response, "error", None)
                    raise BackendError(
                        "Response failed",
                        getattr(error, "message", "") if error else "",
                        backend=self.backend_name,
                        model=self.model,
                    )
        except (openai.OpenAIError, httpx.HTTPError) as e:
            raise wrap_openai_error(e, self.backend_name, self.model) from e

    def _delta(self, event) -> str:
        delta = getattr(event, "delta", None)
        if not isinstance(delta, str):
            raise StreamProtocolError(f"{event.type} event without text delta", backend=self.backend_name)
        return delta
