"""
Gemini Backend - wraps Google's Gen AI SDK.

Image-generation models answer with inline image parts, which come back as
assistant-generated multimodal content.
"""

import base64
import binascii
import logging
from typing import Any, Dict, Iterator, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from backends.base import ChatBackend, IncrementalStream, split_system
from errors import BackendError, ErrorCode, ValidationError
from services.messages import ChatMessage, MessagePart, PartType, Role

logger = logging.getLogger(__name__)

MIME_PART_TYPES = {
    "image": PartType.IMAGE_URL,
    "audio": PartType.AUDIO_URL,
    "video": PartType.VIDEO_URL,
}


def _wrap(e: Exception, model: str) -> BackendError:
    if isinstance(e, httpx.TimeoutException):
        return BackendError("gemini request timed out", str(e), backend="gemini", model=model, error_type="timeout")
    return BackendError("gemini request failed", str(e), backend="gemini", model=model)


def _to_part(part: MessagePart) -> types.Part:
    if part.type == PartType.TEXT:
        return types.Part(text=part.text)
    if part.base64_data:
        try:
            data = base64.b64decode(part.base64_data, validate=True)
        except binascii.Error as e:
            raise ValidationError(
                "inline part is not valid base64",
                str(e),
                code=ErrorCode.VALIDATION_INVALID_FORMAT,
                parameter="base64_data",
            ) from e
        return types.Part.from_bytes(data=data, mime_type=part.mime_type or "application/octet-stream")
    if part.url:
        return types.Part.from_uri(file_uri=part.url, mime_type=part.mime_type or None)
    return types.Part(text=f"[{part.type.value}]")


def to_gemini_contents(history: List[ChatMessage]) -> List[types.Content]:
    """Translate non-system history into Gemini contents."""
    contents = []
    for msg in history:
        role = "model" if msg.role == Role.ASSISTANT else "user"
        parts = []
        if msg.content:
            parts.append(types.Part(text=msg.content))
        parts.extend(_to_part(p) for p in msg.user_input_multi_content)
        if not parts:
            parts.append(types.Part(text=""))
        contents.append(types.Content(role=role, parts=parts))
    return contents


def from_gemini_parts(parts: Optional[List[Any]]) -> ChatMessage:
    """Fold response parts into one assistant message."""
    content = ""
    reasoning = ""
    media: List[MessagePart] = []
    for part in parts or []:
        inline = getattr(part, "inline_data", None)
        if inline is not None and inline.data:
            mime = inline.mime_type or ""
            media.append(
                MessagePart(
                    type=MIME_PART_TYPES.get(mime.split("/")[0], PartType.FILE_URL),
                    base64_data=base64.b64encode(inline.data).decode("ascii"),
                    mime_type=mime,
                )
            )
        elif part.text:
            if part.thought:
                reasoning += part.text
            else:
                content += part.text
    return ChatMessage.assistant(content=content, reasoning_content=reasoning, parts=media)


def _candidate_parts(response) -> Optional[List[Any]]:
    if not response.candidates:
        return None
    content = response.candidates[0].content
    return content.parts if content is not None else None


class GeminiBackend(ChatBackend):
    """Backend that calls the Gemini API."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client = None

    @property
    def provider_name(self) -> str:
        return "Gemini"

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self.settings.api_key:
                raise BackendError("Gemini API key not configured", backend="gemini", model=self.model)

            http_options = types.HttpOptions(base_url=self.settings.base_url) if self.settings.base_url else None
            self._client = genai.Client(api_key=self.settings.api_key, http_options=http_options)
            logger.info(f"Gemini backend initialized: {self.model}")
        return self._client

    def thinking_params(self, thinking: Optional[bool]) -> dict:
        if not self.apply_policy or thinking is None:
            return {}
        if thinking:
            return {"thinking_config": types.ThinkingConfig(include_thoughts=True, thinking_level="HIGH")}
        return {"thinking_config": types.ThinkingConfig(include_thoughts=False, thinking_level="LOW")}

    def _config(self, system: str, thinking: Optional[bool]) -> types.GenerateContentConfig:
        options: Dict[str, Any] = dict(self.thinking_params(thinking))
        if system:
            options["system_instruction"] = system
        if "image" in self.model.lower():
            options["response_modalities"] = ["TEXT", "IMAGE"]
        return types.GenerateContentConfig(**options)

    def complete(self, history: List[ChatMessage], thinking: Optional[bool] = None) -> ChatMessage:
        system, rest = split_system(history)
        client = self._get_client()
        try:
            response = client.models.generate_content(
                model=self.model,
                contents=to_gemini_contents(rest),
                config=self._config(system, thinking),
            )
        except (genai_errors.APIError, httpx.HTTPError) as e:
            raise _wrap(e, self.model) from e

        parts = _candidate_parts(response)
        if parts is None:
            raise BackendError("Gemini returned no candidates", backend="gemini", model=self.model, error_type="invalid")
        return from_gemini_parts(parts)

    def stream_incremental(self, history: List[ChatMessage], thinking: Optional[bool] = None) -> IncrementalStream:
        system, rest = split_system(history)
        client = self._get_client()
        try:
            responses = client.models.generate_content_stream(
                model=self.model,
                contents=to_gemini_contents(rest),
                config=self._config(system, thinking),
            )
        except (genai_errors.APIError, httpx.HTTPError) as e:
            raise _wrap(e, self.model) from e

        # Each turn owns its backend, so closing the client ends the open response
        return IncrementalStream(self._chunks(responses), on_close=client.close)

    def _chunks(self, responses) -> Iterator[ChatMessage]:
        try:
            for response in responses:
                chunk = from_gemini_parts(_candidate_parts(response))
                if chunk.has_payload():
                    yield chunk
        except (genai_errors.APIError, httpx.HTTPError) as e:
            raise _wrap(e, self.model) from e
