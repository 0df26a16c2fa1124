"""Durable message store backed by a JSON-lines file.

Every ``set`` appends one JSON record to the file. On startup the file is
replayed into an in-memory index, where the last record for an id wins.
Conversations therefore survive a process restart.
"""

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path

from threadtkn.errors import StoreError
from threadtkn.message import ChatMessage


logger = logging.getLogger(__name__)


class FileMessageStore:
    """Append-only JSON-lines message store.

    Example:
        >>> store = FileMessageStore("saved/messages.jsonl")
        >>> session = ChatSession(backend, store=store)
    """

    def __init__(self, path: str | Path) -> None:
        """Open (or create) a store file.

        Args:
            path: Location of the JSON-lines file. Parent directories are
                created if missing.
        """
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._index: dict[str, ChatMessage] = {}
        self._lock = asyncio.Lock()
        self._load()

    @property
    def path(self) -> Path:
        """Get the store file path."""
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return

        skipped = 0
        with open(self._path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                    message = ChatMessage.from_dict(record["message"])
                    self._index[record["key"]] = message
                except (json.JSONDecodeError, KeyError, TypeError):
                    skipped += 1

        if skipped:
            logger.warning("Skipped %d unreadable record(s) in %s", skipped, self._path)

    async def get(self, message_id: str) -> ChatMessage | None:
        message = self._index.get(message_id)
        return replace(message) if message is not None else None

    async def set(self, message_id: str, message: ChatMessage) -> None:
        try:
            line = json.dumps(
                {"key": message_id, "message": message.to_dict()},
                ensure_ascii=False,
            )
        except TypeError as e:
            raise StoreError(code="STORE_ENCODE_ERROR", message=str(e)) from e

        async with self._lock:
            try:
                await asyncio.to_thread(self._append, line)
            except OSError as e:
                raise StoreError(code="STORE_WRITE_ERROR", message=str(e)) from e
            self._index[message_id] = ChatMessage.from_dict(message.to_dict())

    def _append(self, line: str) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def __len__(self) -> int:
        return len(self._index)
