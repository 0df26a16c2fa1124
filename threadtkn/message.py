"""Chat message model shared by stores, the assembler and the session."""

from dataclasses import dataclass, field
from typing import Any, Literal


Role = Literal["user", "assistant"]


@dataclass
class ChatMessage:
    """A single turn in a conversation.

    Messages form a singly-linked chain through ``parent_message_id``,
    pointing back toward the conversation root.

    Attributes:
        id: Unique message id (UUID v4 when generated).
        role: "user" or "assistant".
        text: Message content. Grows while an assistant reply streams in.
        conversation_id: Groups messages into one conversation.
        parent_message_id: Id of the previous turn, or None at the root.
        detail: Backend metadata attached once a response completes.
    """
    id: str
    role: Role
    text: str
    conversation_id: str
    parent_message_id: str | None = None
    detail: dict[str, Any] | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "conversation_id": self.conversation_id,
            "parent_message_id": self.parent_message_id,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            role=data.get("role") or "user",
            text=data.get("text") or "",
            conversation_id=data["conversation_id"],
            parent_message_id=data.get("parent_message_id"),
            detail=data.get("detail"),
        )
