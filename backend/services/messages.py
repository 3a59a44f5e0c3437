"""
Chat message payloads.

A ChatMessage is what gets stored (as JSON) in the messages table and what
flows between the orchestrator and the backends. Backends translate it into
their provider's wire format; nothing outside backends/ sees provider types.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class Modality(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"


class PartType(str, Enum):
    TEXT = "text"
    IMAGE_URL = "image_url"
    AUDIO_URL = "audio_url"
    VIDEO_URL = "video_url"
    FILE_URL = "file_url"


# File parts have no modality and are never filtered
PART_MODALITY: Dict[PartType, Modality] = {
    PartType.TEXT: Modality.TEXT,
    PartType.IMAGE_URL: Modality.IMAGE,
    PartType.AUDIO_URL: Modality.AUDIO,
    PartType.VIDEO_URL: Modality.VIDEO,
}

# Bracket tags that stand in for media a backend cannot accept
MODALITY_PLACEHOLDER: Dict[Modality, str] = {
    Modality.IMAGE: "[Image]",
    Modality.AUDIO: "[Audio]",
    Modality.VIDEO: "[Video]",
}


class MessagePart(BaseModel):
    """One element of multimodal message content."""

    type: PartType
    text: str = ""
    url: str = ""
    base64_data: str = ""
    mime_type: str = ""

    @property
    def modality(self) -> Optional[Modality]:
        return PART_MODALITY.get(self.type)

    @classmethod
    def text_part(cls, text: str) -> "MessagePart":
        return cls(type=PartType.TEXT, text=text)


class FunctionCall(BaseModel):
    name: str = ""
    arguments: str = ""


class ToolCall(BaseModel):
    id: str = ""
    type: str = "function"
    function: FunctionCall = Field(default_factory=FunctionCall)


class ChatMessage(BaseModel):
    """A single chat turn or a partial chunk of one."""

    role: Role = Role.USER
    content: str = ""
    reasoning_content: str = ""
    name: str = ""
    user_input_multi_content: List[MessagePart] = Field(default_factory=list)
    assistant_gen_multi_content: List[MessagePart] = Field(default_factory=list)
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: str = ""
    tool_name: str = ""
    extra: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def user(cls, content: str, parts: Optional[List[MessagePart]] = None) -> "ChatMessage":
        return cls(role=Role.USER, content=content, user_input_multi_content=parts or [])

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def assistant(
        cls,
        content: str = "",
        reasoning_content: str = "",
        parts: Optional[List[MessagePart]] = None,
    ) -> "ChatMessage":
        return cls(
            role=Role.ASSISTANT,
            content=content,
            reasoning_content=reasoning_content,
            assistant_gen_multi_content=parts or [],
        )

    def has_payload(self) -> bool:
        """True when the message carries text, media or tool calls."""
        return bool(
            self.content
            or self.reasoning_content
            or self.user_input_multi_content
            or self.assistant_gen_multi_content
            or self.tool_calls
        )

    def title_text(self) -> str:
        """Text used for titles and snippets: content, else the first text part."""
        if self.content:
            return self.content
        for part in self.user_input_multi_content:
            if part.type == PartType.TEXT and part.text:
                return part.text
        return ""

    def to_json(self) -> str:
        return self.model_dump_json(exclude_defaults=True)

    @classmethod
    def from_json(cls, data: str) -> "ChatMessage":
        return cls.model_validate_json(data)
