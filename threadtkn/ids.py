"""Message and conversation id helpers."""

import re
import uuid

from threadtkn.errors import ValidationError


_UUID_V4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def new_id() -> str:
    """Return a fresh UUID v4 string."""
    return str(uuid.uuid4())


def is_valid_uuid_v4(value: object) -> bool:
    """Check whether ``value`` is a canonical UUID v4 string."""
    return isinstance(value, str) and bool(_UUID_V4_RE.match(value))


def require_uuid_v4(value: str | None, field_name: str) -> None:
    """Raise ValidationError if ``value`` is set but not a UUID v4.

    Args:
        value: Id to check. None is accepted (the field is optional).
        field_name: Name used in the error message.

    Raises:
        ValidationError: If the id is malformed.
    """
    if value is None:
        return
    if not is_valid_uuid_v4(value):
        raise ValidationError(
            code="INVALID_ID",
            message=f"{field_name} is not a valid v4 UUID: {value!r}",
            field=field_name,
        )
