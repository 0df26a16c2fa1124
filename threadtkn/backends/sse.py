"""Server-sent events decoding.

Completion endpoints stream their output as ``text/event-stream``: frames of
``field: value`` lines separated by a blank line. SSEDecoder turns the body's
lines into ServerSentEvent objects, one per dispatched frame.
"""

from dataclasses import dataclass


DONE_SENTINEL = "[DONE]"


@dataclass
class ServerSentEvent:
    """A single dispatched SSE frame."""
    data: str
    event: str = "message"
    id: str | None = None
    retry: int | None = None


class SSEDecoder:
    """Incremental line-oriented SSE decoder.

    Feed it one line at a time (without the trailing newline); it returns an
    event whenever a blank line completes a frame carrying data.
    """

    def __init__(self) -> None:
        self._data: list[str] = []
        self._event = ""
        self._last_event_id: str | None = None
        self._retry: int | None = None

    def decode(self, line: str) -> ServerSentEvent | None:
        line = line.rstrip("\r\n")

        if not line:
            return self._dispatch()

        if line.startswith(":"):
            # comment / keep-alive
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            if "\0" not in value:
                self._last_event_id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)

        return None

    def flush(self) -> ServerSentEvent | None:
        """Dispatch a frame left open when the body ended without a blank line."""
        return self._dispatch()

    def _dispatch(self) -> ServerSentEvent | None:
        if not self._data:
            self._event = ""
            return None

        sse = ServerSentEvent(
            data="\n".join(self._data),
            event=self._event or "message",
            id=self._last_event_id,
            retry=self._retry,
        )
        self._data = []
        self._event = ""
        return sse
