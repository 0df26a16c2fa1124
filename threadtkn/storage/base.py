"""Base protocol for message stores."""

from typing import Protocol, runtime_checkable

from threadtkn.message import ChatMessage


@runtime_checkable
class MessageStore(Protocol):
    """Protocol that all message stores must implement.

    Stores are async key/value maps from message id to ChatMessage. The
    session writes every turn through ``set`` and the assembler walks parent
    chains through ``get``.
    """

    async def get(self, message_id: str) -> ChatMessage | None:
        """Look up a message.

        Args:
            message_id: Id of the message.

        Returns:
            The message, or None if the store does not hold it.
        """
        ...

    async def set(self, message_id: str, message: ChatMessage) -> None:
        """Insert or replace a message.

        Args:
            message_id: Key to store the message under.
            message: Message to store.

        Raises:
            StoreError: If the write fails.
        """
        ...
