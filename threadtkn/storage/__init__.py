"""Message stores for conversation persistence."""

from threadtkn.storage.base import MessageStore
from threadtkn.storage.memory import MemoryMessageStore
from threadtkn.storage.file import FileMessageStore

__all__ = ["MessageStore", "MemoryMessageStore", "FileMessageStore"]
