"""Source status lifecycle and type-specific field rules.

    pending → processing → completed
                         → failed
    completed / failed → pending   (reset only; chunks are deleted)
"""

from __future__ import annotations

import urllib.parse

from docfuse.errors import IllegalTransitionError, ValidationError

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

STATUSES: frozenset[str] = frozenset([PENDING, PROCESSING, COMPLETED, FAILED])

SOURCE_TYPES: frozenset[str] = frozenset(["file", "url", "text"])

_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset([PROCESSING]),
    PROCESSING: frozenset([COMPLETED, FAILED]),
    COMPLETED: frozenset([PENDING]),
    FAILED: frozenset([PENDING]),
}

_FILE_FIELDS = ("file_name", "file_size", "mime_type")


def can_transition(current: str, new: str) -> bool:
    return new in _TRANSITIONS.get(current, frozenset())


def check_transition(current: str, new: str) -> None:
    """Raise IllegalTransitionError unless *current* → *new* is allowed."""
    if new not in STATUSES:
        raise IllegalTransitionError(f"Unknown source status '{new}'")
    if not can_transition(current, new):
        raise IllegalTransitionError(
            f"Illegal source status transition {current!r} → {new!r}"
        )


def validate_type_fields(
    source_type: str,
    *,
    file_name: str | None = None,
    file_size: int | None = None,
    mime_type: str | None = None,
    url: str | None = None,
) -> None:
    """Check that exactly the field group matching *source_type* is populated.

    Raises:
        ValidationError: Unsupported type, missing required field, a field from
            another type's group, or a malformed URL.
    """
    if source_type not in SOURCE_TYPES:
        raise ValidationError(
            f"Unsupported source type '{source_type}'. "
            f"Expected one of: {', '.join(sorted(SOURCE_TYPES))}"
        )

    file_values = {"file_name": file_name, "file_size": file_size, "mime_type": mime_type}
    has_file_fields = any(v is not None for v in file_values.values())

    if source_type == "file":
        if not file_name:
            raise ValidationError("Source type 'file' requires file_name")
        if url is not None:
            raise ValidationError("Source type 'file' must not carry a url")
        if file_size is not None and file_size < 0:
            raise ValidationError(f"file_size must be >= 0, got {file_size}")
    elif source_type == "url":
        if not url:
            raise ValidationError("Source type 'url' requires url")
        if has_file_fields:
            raise ValidationError(
                f"Source type 'url' must not carry file fields ({', '.join(_FILE_FIELDS)})"
            )
        validate_url(url)
    elif url is not None or has_file_fields:
        raise ValidationError("Source type 'text' must not carry file or url fields")


def validate_url(url: str) -> None:
    """Raise ValidationError unless *url* is an absolute http(s) URL with a host."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValidationError(
            f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."
        )
    if not parsed.hostname:
        raise ValidationError(f"URL has no hostname: {url}")
