"""
Anthropic Backend - wraps the Anthropic SDK.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional

import anthropic
import httpx

from backends.base import ChatBackend, IncrementalStream, split_system
from errors import BackendError
from services.messages import ChatMessage, PartType, Role

logger = logging.getLogger(__name__)

# Must exceed the thinking budget
MAX_TOKENS = 40000
THINKING_BUDGET = 32000


def _image_block(url: str, b64: str, mime: str) -> Dict[str, Any]:
    if b64:
        return {"type": "image", "source": {"type": "base64", "media_type": mime or "image/png", "data": b64}}
    return {"type": "image", "source": {"type": "url", "url": url}}


def to_anthropic_messages(history: List[ChatMessage]) -> List[Dict[str, Any]]:
    """Translate non-system history into Messages API turns."""
    messages = []
    for msg in history:
        if msg.role == Role.TOOL:
            messages.append(
                {
                    "role": "user",
                    "content": [{"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.content}],
                }
            )
            continue

        role = "assistant" if msg.role == Role.ASSISTANT else "user"
        if not msg.user_input_multi_content:
            messages.append({"role": role, "content": msg.content})
            continue

        blocks: List[Dict[str, Any]] = []
        if msg.content:
            blocks.append({"type": "text", "text": msg.content})
        for part in msg.user_input_multi_content:
            if part.type == PartType.TEXT:
                blocks.append({"type": "text", "text": part.text})
            elif part.type == PartType.IMAGE_URL:
                blocks.append(_image_block(part.url, part.base64_data, part.mime_type))
            elif part.type == PartType.FILE_URL and part.mime_type == "application/pdf" and part.base64_data:
                blocks.append(
                    {
                        "type": "document",
                        "source": {"type": "base64", "media_type": part.mime_type, "data": part.base64_data},
                    }
                )
            else:
                blocks.append({"type": "text", "text": f"[{part.type.value}]"})
        messages.append({"role": role, "content": blocks})
    return messages


def _wrap(e: Exception, model: str) -> BackendError:
    if isinstance(e, (anthropic.APITimeoutError, httpx.TimeoutException)):
        return BackendError("claude request timed out", str(e), backend="claude", model=model, error_type="timeout")
    return BackendError("claude request failed", str(e), backend="claude", model=model)


class AnthropicBackend(ChatBackend):
    """Backend that calls the Anthropic Messages API."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client = anthropic.Anthropic(
            api_key=self.settings.api_key or None,
            base_url=self.settings.base_url or None,
        )

    @property
    def provider_name(self) -> str:
        return "Anthropic"

    def thinking_params(self, thinking: Optional[bool]) -> dict:
        if self.apply_policy and thinking:
            return {"thinking": {"type": "enabled", "budget_tokens": THINKING_BUDGET}}
        return {}

    def _request(self, history: List[ChatMessage], thinking: Optional[bool]) -> Dict[str, Any]:
        system, rest = split_system(history)
        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": MAX_TOKENS,
            "messages": to_anthropic_messages(rest),
        }
        if system:
            request["system"] = system
        request.update(self.thinking_params(thinking))
        return request

    def complete(self, history: List[ChatMessage], thinking: Optional[bool] = None) -> ChatMessage:
        try:
            response = self._client.messages.create(**self._request(history, thinking))
        except (anthropic.AnthropicError, httpx.HTTPError) as e:
            raise _wrap(e, self.model) from e

        text = ""
        reasoning = ""
        for block in response.content:
            if block.type == "text":
                text += block.text
            elif block.type == "thinking":
                reasoning += block.thinking
        return ChatMessage.assistant(content=text, reasoning_content=reasoning)

    def stream_incremental(self, history: List[ChatMessage], thinking: Optional[bool] = None) -> IncrementalStream:
        try:
            stream = self._client.messages.create(stream=True, **self._request(history, thinking))
        except (anthropic.AnthropicError, httpx.HTTPError) as e:
            raise _wrap(e, self.model) from e

        return IncrementalStream(self._chunks(stream), on_close=stream.close)

    def _chunks(self, stream) -> Iterator[ChatMessage]:
        try:
            for event in stream:
                if event.type != "content_block_delta":
                    continue
                delta = event.delta
                if delta.type == "text_delta":
                    yield ChatMessage.assistant(content=delta.text)
                elif delta.type == "thinking_delta":
                    yield ChatMessage.assistant(reasoning_content=delta.thinking)
        except (anthropic.AnthropicError, httpx.HTTPError) as e:
            raise _wrap(e, self.model) from e

