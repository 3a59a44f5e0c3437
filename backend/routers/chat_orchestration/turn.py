"""
Forkline Turn - request, result and accumulation state for one chat turn
"""

from dataclasses import dataclass, field
from typing import List, Optional

from errors import ErrorCode, ValidationError
from services.messages import ChatMessage, MessagePart, Role

# Tool results are sent back as their own turn
INBOUND_ROLES = (Role.USER, Role.TOOL)


@dataclass
class TurnRequest:
    """One inbound turn.

    Attributes:
        message: The user (or tool result) message to append
        model: Target model name; empty means the configured default
        backend: Explicit backend name; pins the backend and disables thinking policy
        session_id: Branch to continue; None starts a new conversation
        thinking: Tri-state reasoning preference (None = backend default)
        parent_message_id: Fork point when no session_id is given
    """

    message: ChatMessage
    model: str = ""
    backend: Optional[str] = None
    session_id: Optional[str] = None
    thinking: Optional[bool] = None
    parent_message_id: Optional[int] = None

    def validate(self) -> None:
        if not self.message.content and not self.message.user_input_multi_content:
            raise ValidationError("message content is required", parameter="message.content")
        if self.message.role not in INBOUND_ROLES:
            raise ValidationError(
                "turn message must have the user or tool role",
                code=ErrorCode.VALIDATION_INVALID_FORMAT,
                parameter="message.role",
                expected="user|tool",
                received=self.message.role.value,
            )


@dataclass
class TurnResult:
    """Outcome of a non-streaming turn."""

    message: ChatMessage
    model: str
    backend: str
    tree_id: str
    session_id: str
    message_id: int
    is_new: bool = False

    def to_dict(self) -> dict:
        return {
            "message": self.message.model_dump(mode="json", exclude_defaults=True),
            "model": self.model,
            "backend": self.backend,
            "tree_id": self.tree_id,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "is_new": self.is_new,
        }


@dataclass
class TurnAccumulator:
    """Folds streamed chunks into the final assistant message."""

    content: List[str] = field(default_factory=list)
    reasoning: List[str] = field(default_factory=list)
    parts: List[MessagePart] = field(default_factory=list)
    chunks: int = 0

    def add(self, chunk: ChatMessage) -> None:
        self.chunks += 1
        if chunk.content:
            self.content.append(chunk.content)
        if chunk.reasoning_content:
            self.reasoning.append(chunk.reasoning_content)
        if chunk.assistant_gen_multi_content:
            self.parts.extend(chunk.assistant_gen_multi_content)

    @property
    def reasoning_chars(self) -> int:
        return sum(len(r) for r in self.reasoning)

    def message(self) -> ChatMessage:
        return ChatMessage.assistant(
            content="".join(self.content),
            reasoning_content="".join(self.reasoning),
            parts=list(self.parts),
        )
