"""
OpenAI-Compatible Backend - Chat Completions via the OpenAI SDK.

Serves openai itself plus every provider that exposes an OpenAI-compatible
endpoint (deepseek, grok, glm, kimi, minimax, qwen, ollama, openrouter).
"""

import logging
from typing import Any, Dict, Iterator, List, Optional

import httpx
import openai

from backends.base import ChatBackend, IncrementalStream, part_url
from errors import BackendError
from services.messages import ChatMessage, FunctionCall, PartType, Role, ToolCall

logger = logging.getLogger(__name__)

# Endpoints used when a backend is registered without a base URL
DEFAULT_BASE_URLS = {
    "deepseek": "https://api.deepseek.com",
    "grok": "https://api.x.ai/v1",
    "glm": "https://open.bigmodel.cn/api/paas/v4",
    "kimi": "https://api.moonshot.cn/v1",
    "minimax": "https://api.minimax.chat/v1",
    "qwen": "https://dashscope.aliyuncs.com/compatible-mode/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "ollama": "http://localhost:11434/v1",
}


def supports_reasoning_effort(model: str) -> bool:
    """OpenAI models that accept reasoning_effort (o1/o3 and gpt-5 onwards)."""
    m = model.lower()
    if m.startswith("o1") or m.startswith("o3"):
        return True
    return any(tag in m for tag in ("gpt-5", "gpt-6", "gpt-7"))


def accepts_effort_none(model: str) -> bool:
    """gpt-5.1 and later accept reasoning_effort="none"."""
    m = model.lower()
    return any(tag in m for tag in ("gpt-5.1", "gpt-5.2", "gpt-6", "gpt-7"))


def is_grok_reasoning_model(model: str) -> bool:
    return "reasoning" in model.lower()


def wrap_openai_error(e: Exception, backend: str, model: str) -> BackendError:
    if isinstance(e, (openai.APITimeoutError, httpx.TimeoutException)):
        return BackendError(f"{backend} request timed out", str(e), backend=backend, model=model, error_type="timeout")
    return BackendError(f"{backend} request failed", str(e), backend=backend, model=model)


def to_openai_messages(history: List[ChatMessage]) -> List[Dict[str, Any]]:
    """Translate history into Chat Completions message dicts."""
    messages = []
    for msg in history:
        entry: Dict[str, Any] = {"role": msg.role.value}

        if msg.role == Role.USER and msg.user_input_multi_content:
            content: List[Dict[str, Any]] = []
            if msg.content:
                content.append({"type": "text", "text": msg.content})
            for part in msg.user_input_multi_content:
                if part.type == PartType.TEXT:
                    content.append({"type": "text", "text": part.text})
                elif part.type == PartType.IMAGE_URL:
                    content.append({"type": "image_url", "image_url": {"url": part_url(part)}})
                elif part.type == PartType.AUDIO_URL and part.base64_data:
                    fmt = (part.mime_type.split("/")[-1] or "wav") if part.mime_type else "wav"
                    content.append({"type": "input_audio", "input_audio": {"data": part.base64_data, "format": fmt}})
                elif part.type == PartType.VIDEO_URL:
                    content.append({"type": "video_url", "video_url": {"url": part_url(part)}})
                else:
                    content.append({"type": "text", "text": f"[File: {part.url or part.mime_type or 'attachment'}]"})
            entry["content"] = content
        else:
            entry["content"] = msg.content

        if msg.name:
            entry["name"] = msg.name
        if msg.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": call.type,
                    "function": {"name": call.function.name, "arguments": call.function.arguments},
                }
                for call in msg.tool_calls
            ]
        if msg.role == Role.TOOL:
            entry["tool_call_id"] = msg.tool_call_id

        messages.append(entry)
    return messages


def _reasoning_of(obj: Any) -> str:
    # deepseek/qwen/grok use reasoning_content, openrouter uses reasoning
    value = getattr(obj, "reasoning_content", None) or getattr(obj, "reasoning", None)
    return value if isinstance(value, str) else ""


class OpenAIChatBackend(ChatBackend):
    """Backend for OpenAI Chat Completions and compatible APIs."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        base_url = self.settings.base_url or DEFAULT_BASE_URLS.get(self.backend_name)
        self._client = openai.OpenAI(
            api_key=self.settings.api_key or "not-needed",  # local endpoints don't require auth
            base_url=base_url or None,  # None = default OpenAI endpoint
        )

    @property
    def provider_name(self) -> str:
        return "OpenAI Chat"

    def thinking_params(self, thinking: Optional[bool]) -> dict:
        if not self.apply_policy or thinking is None:
            return {}

        if self.backend_name == "openai" and supports_reasoning_effort(self.model):
            if thinking:
                return {"reasoning_effort": "high"}
            return {"reasoning_effort": "none" if accepts_effort_none(self.model) else "low"}

        if self.backend_name == "grok" and is_grok_reasoning_model(self.model):
            return {"reasoning_effort": "high" if thinking else "low"}

        return {}

    def complete(self, history: List[ChatMessage], thinking: Optional[bool] = None) -> ChatMessage:
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=to_openai_messages(history),
                **self.thinking_params(thinking),
            )
        except (openai.OpenAIError, httpx.HTTPError) as e:
            raise wrap_openai_error(e, self.backend_name, self.model) from e

        if not response.choices:
            raise BackendError(
                "Empty response", backend=self.backend_name, model=self.model, error_type="invalid"
            )

        message = response.choices[0].message
        tool_calls = [
            ToolCall(
                id=call.id,
                type=call.type,
                function=FunctionCall(name=call.function.name, arguments=call.function.arguments),
            )
            for call in (message.tool_calls or [])
            if getattr(call, "function", None) is not None
        ]
        result = ChatMessage.assistant(content=message.content or "", reasoning_content=_reasoning_of(message))
        result.tool_calls = tool_calls
        return result

    def stream_incremental(self, history: List[ChatMessage], thinking: Optional[bool] = None) -> IncrementalStream:
        try:
            stream = self._client.chat.completions.create(
                model=self.model,
                messages=to_openai_messages(history),
                stream=True,
                **self.thinking_params(thinking),
            )
        except (openai.OpenAIError, httpx.HTTPError) as e:
            raise wrap_openai_error(e, self.backend_name, self.model) from e

        return IncrementalStream(self._chunks(stream), on_close=stream.close)

    def _chunks(self, stream) -> Iterator[ChatMessage]:
        try:
            for chunk in stream:
                if not chunk.choices:
                    continue  # usage-only chunk
                delta = chunk.choices[0].delta
                content = delta.content or ""
                reasoning = _reasoning_of(delta)
                if content or reasoning:
                    yield ChatMessage.assistant(content=content, reasoning_content=reasoning)
        except (openai.OpenAIError, httpx.HTTPError) as e:
            raise wrap_openai_error(e, self.backend_name, self.model) from e
