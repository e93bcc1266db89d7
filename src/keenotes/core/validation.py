"""Input validation for KeeNotes.

This module provides validation functions for all user inputs.
All validators raise ValidationError with descriptive messages.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional, Union
from urllib.parse import urlparse

from .kdf import KDF_BACKENDS


class ValidationError(ValueError):
    """Validation error with field and message attributes."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"


__all__ = [
    "ValidationError",
    "validate_note_id",
    "validate_note_content",
    "validate_search_query",
    "validate_channel",
    "validate_endpoint_url",
    "validate_client_id",
    "validate_positive_int",
    "validate_positive_float",
    "validate_config_value",
]

MAX_NOTE_CONTENT_LENGTH = 100_000
MAX_SEARCH_QUERY_LENGTH = 500
MAX_CHANNEL_LENGTH = 50


def validate_note_id(note_id: Union[int, str]) -> int:
    """Validate a note ID and return it as int."""
    if isinstance(note_id, bool):
        raise ValidationError("note_id", "must be an integer, got bool")
    if isinstance(note_id, str):
        try:
            note_id = int(note_id.strip())
        except ValueError:
            raise ValidationError("note_id", f"must be an integer, got '{note_id}'") from None
    if not isinstance(note_id, int):
        raise ValidationError(
            "note_id", f"must be an integer, got {type(note_id).__name__}"
        )
    if note_id < 0:
        raise ValidationError("note_id", "must not be negative")
    return note_id


def validate_note_content(content: str) -> None:
    """Validate note content."""
    if not isinstance(content, str):
        raise ValidationError(
            "content", f"must be a string, got {type(content).__name__}"
        )
    if not content.strip():
        raise ValidationError("content", "cannot be empty or whitespace only")
    if len(content) > MAX_NOTE_CONTENT_LENGTH:
        raise ValidationError(
            "content",
            f"cannot exceed {MAX_NOTE_CONTENT_LENGTH} characters (got {len(content)})",
        )


def validate_search_query(query: Optional[str]) -> None:
    """Validate a search query."""
    if query is None:
        return
    if not isinstance(query, str):
        raise ValidationError(
            "search_query", f"must be a string or None, got {type(query).__name__}"
        )
    if len(query) > MAX_SEARCH_QUERY_LENGTH:
        raise ValidationError(
            "search_query",
            f"cannot exceed {MAX_SEARCH_QUERY_LENGTH} characters (got {len(query)})",
        )


def validate_channel(channel: str) -> None:
    """Validate a channel label."""
    if not isinstance(channel, str):
        raise ValidationError(
            "channel", f"must be a string, got {type(channel).__name__}"
        )
    if not channel.strip():
        raise ValidationError("channel", "cannot be empty")
    if len(channel) > MAX_CHANNEL_LENGTH:
        raise ValidationError(
            "channel", f"cannot exceed {MAX_CHANNEL_LENGTH} characters (got {len(channel)})"
        )


def validate_endpoint_url(url: str) -> None:
    """Validate an HTTP(S) endpoint URL."""
    if not isinstance(url, str):
        raise ValidationError(
            "endpoint_url", f"must be a string, got {type(url).__name__}"
        )
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https"):
        raise ValidationError("endpoint_url", "must start with http:// or https://")
    if not parsed.netloc:
        raise ValidationError("endpoint_url", "must include a host")


def validate_client_id(client_id: str) -> str:
    """Validate a client ID (UUID string) and return it in canonical form."""
    if not isinstance(client_id, str):
        raise ValidationError(
            "client_id", f"must be a string, got {type(client_id).__name__}"
        )
    try:
        return str(uuid.UUID(client_id))
    except ValueError as e:
        raise ValidationError("client_id", f"invalid UUID format: {e}") from None


def validate_positive_int(value: Any, field_name: str) -> int:
    """Validate and convert a positive integer."""
    if isinstance(value, bool):
        raise ValidationError(field_name, "must be an integer, got bool")
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ValidationError(field_name, f"must be an integer, got '{value}'") from None
    if result <= 0:
        raise ValidationError(field_name, f"must be positive, got {result}")
    return result


def validate_positive_float(value: Any, field_name: str) -> float:
    """Validate and convert a positive number."""
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ValidationError(field_name, f"must be a number, got '{value}'") from None
    if result <= 0:
        raise ValidationError(field_name, f"must be positive, got {result}")
    return result


def validate_config_value(key: str, value: Any) -> Any:
    """Validate a config value for a known key and convert it to its type.

    Args:
        key: Config key
        value: Raw value (typically a string from the command line)

    Returns:
        The converted value

    Raises:
        ValidationError: If the key is unknown or the value is invalid
    """
    if key == "endpoint_url":
        if value:
            validate_endpoint_url(value)
        return value.strip() if isinstance(value, str) else value
    if key in ("token", "database_file"):
        if not isinstance(value, str):
            raise ValidationError(key, f"must be a string, got {type(value).__name__}")
        return value
    if key == "client_id":
        return validate_client_id(value)
    if key == "channel":
        validate_channel(value)
        return value.strip()
    if key in ("review_days", "request_timeout"):
        return validate_positive_int(value, key)
    if key == "reconnect_delay":
        return validate_positive_float(value, key)
    if key == "kdf_backend":
        if value not in KDF_BACKENDS:
            raise ValidationError(key, f"must be one of {', '.join(KDF_BACKENDS)}")
        return value
    raise ValidationError("key", f"unknown config key '{key}'")
