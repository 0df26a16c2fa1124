"""In-memory message store, the default for a ChatSession.

Bounded LRU cache. No persistence: data is lost when the process ends,
and evicting old entries may cut off long conversation histories.
"""

from collections import OrderedDict
from dataclasses import replace

from threadtkn.message import ChatMessage


DEFAULT_MAX_SIZE = 10_000


class MemoryMessageStore:
    """LRU message store backed by an OrderedDict.

    Reads and writes both mark an entry as most recently used. Once
    ``max_size`` entries are held, each new id evicts the least recently
    used one.

    Messages are copied on the way in and out so callers cannot mutate
    stored state (a streaming reply keeps growing after it is handed out).

    Example:
        >>> store = MemoryMessageStore(max_size=2)
        >>> await store.set(msg.id, msg)
        >>> await store.get(msg.id)
        ChatMessage(id=..., role='user', ...)
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._data: OrderedDict[str, ChatMessage] = OrderedDict()
        self._max_size = max_size

    @property
    def max_size(self) -> int:
        return self._max_size

    async def get(self, message_id: str) -> ChatMessage | None:
        message = self._data.get(message_id)
        if message is None:
            return None
        self._data.move_to_end(message_id)
        return replace(message)

    async def set(self, message_id: str, message: ChatMessage) -> None:
        if message_id in self._data:
            self._data.move_to_end(message_id)
        elif len(self._data) >= self._max_size:
            # Evict least recently used
            self._data.popitem(last=False)
        self._data[message_id] = replace(message)

    def clear(self) -> None:
        """Drop every stored message."""
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._data

    def to_dict(self) -> dict:
        """Export storage state as a dictionary.

        Useful for debugging or manual inspection.
        """
        return {
            "max_size": self._max_size,
            "messages": [m.to_dict() for m in self._data.values()],
        }
