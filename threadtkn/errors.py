"""Exception hierarchy for threadTKN.

Every error raised across module boundaries derives from ThreadTknError so
callers can catch one type. Each error carries a machine-readable ``code``.
"""


class ThreadTknError(Exception):
    """Base error.

    Attributes:
        code: Machine-readable error code (e.g. "BACKEND_ERROR").
        message: Human-readable description.
        extra: Any additional context (provider, message id, ...).
    """

    def __init__(self, code: str, message: str, **extra) -> None:
        self.code = code
        self.message = message
        self.extra = extra
        super().__init__(message)


class ValidationError(ThreadTknError):
    """Invalid arguments or configuration, raised before any I/O."""


class BackendError(ThreadTknError):
    """The completion endpoint answered with a non-success status.

    Attributes:
        status_code: HTTP status code.
        status_text: HTTP reason phrase.
        reason: Raw response body.
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        status_text: str = "",
        reason: str = "",
        **extra,
    ) -> None:
        super().__init__("BACKEND_ERROR", message, **extra)
        self.status_code = status_code
        self.status_text = status_text
        self.reason = reason


class MalformedResponseError(ThreadTknError):
    """Success status, but the payload holds no completion content."""

    def __init__(self, message: str, **extra) -> None:
        super().__init__("MALFORMED_RESPONSE", message, **extra)


class CompletionTimeoutError(ThreadTknError):
    """The overall operation exceeded its deadline."""

    def __init__(self, message: str, timeout: float, **extra) -> None:
        super().__init__("TIMEOUT", message, **extra)
        self.timeout = timeout


class RequestCancelledError(ThreadTknError):
    """The request was aborted through its cancellation token."""

    def __init__(self, message: str = "Request was cancelled", **extra) -> None:
        super().__init__("CANCELLED", message, **extra)


class NetworkError(ThreadTknError):
    """Transport-level failure (DNS, connect, read)."""


class StreamInterruptedError(NetworkError):
    """The event stream broke off before any content arrived."""


class StoreError(ThreadTknError):
    """A message store could not read or write."""
