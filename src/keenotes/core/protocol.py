"""Sync channel messages for KeeNotes.

The sync channel carries JSON objects tagged by a "type" field. This module
turns inbound frames into typed, immutable event objects and builds the
outbound frames. It does no I/O.

Inbound types: sync_batch, sync_complete, realtime_update, ping, pong,
error, new_note_ack. Anything else decodes to UnknownMessage.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from .models import ConnectionState

logger = logging.getLogger(__name__)

__all__ = [
    "ProtocolError",
    "NotePayload",
    "SyncBatch",
    "SyncComplete",
    "RealtimeUpdate",
    "Ping",
    "Pong",
    "ServerError",
    "NewNoteAck",
    "UnknownMessage",
    "SessionStarted",
    "ConnectionStateChanged",
    "InboundEvent",
    "decode_message",
    "parse_note_payload",
    "encode_handshake",
    "encode_pong",
]

DEFAULT_CHANNEL = "default"


class ProtocolError(ValueError):
    """A frame or note payload could not be decoded."""


@dataclass(frozen=True)
class NotePayload:
    """One note as delivered by the server (content possibly encrypted)."""

    id: int
    content: str
    channel: str
    created_at: str
    encrypted: bool = True


@dataclass(frozen=True)
class SyncBatch:
    """One page of the catch-up burst.

    Notes are kept as raw dicts so that a single unparseable note does not
    invalidate the whole batch.
    """

    batch_id: int
    total_batches: int
    notes: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class SyncComplete:
    total_synced: int
    last_sync_id: int


@dataclass(frozen=True)
class RealtimeUpdate:
    note: Dict[str, Any]


@dataclass(frozen=True)
class Ping:
    pass


@dataclass(frozen=True)
class Pong:
    pass


@dataclass(frozen=True)
class ServerError:
    message: str


@dataclass(frozen=True)
class NewNoteAck:
    note_id: Optional[int]


@dataclass(frozen=True)
class UnknownMessage:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionStarted:
    """Marker queued when a handshake is sent; a new burst begins."""

    last_sync_id: int


@dataclass(frozen=True)
class ConnectionStateChanged:
    """Marker queued on every transport state change."""

    state: ConnectionState


InboundEvent = Union[
    SyncBatch,
    SyncComplete,
    RealtimeUpdate,
    Ping,
    Pong,
    ServerError,
    NewNoteAck,
    UnknownMessage,
    SessionStarted,
    ConnectionStateChanged,
]


def _int_field(data: Dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool):
        raise ProtocolError(f"'{key}' must be an integer, got bool")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ProtocolError(f"'{key}' must be an integer, got {value!r}") from None


def parse_note_payload(raw: Any) -> NotePayload:
    """Parse a note object from sync_batch or realtime_update.

    Accepts both "created_at" and "createdAt".

    Raises:
        ProtocolError: If the payload is not an object or has no integer id
    """
    if not isinstance(raw, dict):
        raise ProtocolError(f"note must be an object, got {type(raw).__name__}")
    if "id" not in raw:
        raise ProtocolError("note has no 'id'")
    note_id = _int_field(raw, "id", -1)

    content = raw.get("content")
    if content is None:
        content = ""
    created_at = raw.get("created_at")
    if created_at is None:
        created_at = raw.get("createdAt") or ""

    return NotePayload(
        id=note_id,
        content=str(content),
        channel=str(raw.get("channel") or DEFAULT_CHANNEL),
        created_at=str(created_at),
        encrypted=bool(raw.get("encrypted", True)),
    )


def decode_message(text: Union[str, bytes]) -> InboundEvent:
    """Decode one inbound frame.

    Args:
        text: Raw frame (text or UTF-8 bytes)

    Returns:
        The typed event; unknown types become UnknownMessage

    Raises:
        ProtocolError: If the frame is not a JSON object or a known message
            has malformed fields
    """
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"frame is not UTF-8: {e}") from None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"frame is not valid JSON: {e}") from None
    if not isinstance(data, dict):
        raise ProtocolError(f"frame must be a JSON object, got {type(data).__name__}")

    msg_type = data.get("type")
    if not isinstance(msg_type, str):
        return UnknownMessage(type=str(msg_type), payload=data)

    if msg_type == "sync_batch":
        notes = data.get("notes")
        if not isinstance(notes, list):
            raise ProtocolError("sync_batch has no 'notes' array")
        return SyncBatch(
            batch_id=_int_field(data, "batch_id", 0),
            total_batches=_int_field(data, "total_batches", 1),
            notes=tuple(notes),
        )
    if msg_type == "sync_complete":
        return SyncComplete(
            total_synced=_int_field(data, "total_synced", 0),
            last_sync_id=_int_field(data, "last_sync_id", -1),
        )
    if msg_type == "realtime_update":
        note = data.get("note")
        if not isinstance(note, dict):
            raise ProtocolError("realtime_update has no 'note' object")
        return RealtimeUpdate(note=note)
    if msg_type == "ping":
        return Ping()
    if msg_type == "pong":
        return Pong()
    if msg_type == "error":
        return ServerError(message=str(data.get("message") or "Unknown error"))
    if msg_type == "new_note_ack":
        note_id = data.get("id")
        return NewNoteAck(note_id=_int_field(data, "id", -1) if note_id is not None else None)

    return UnknownMessage(type=msg_type, payload=data)


def encode_handshake(client_id: str, last_sync_id: int) -> str:
    """Build the handshake frame sent on every new connection."""
    return json.dumps(
        {"type": "handshake", "client_id": client_id, "last_sync_id": last_sync_id}
    )


def encode_pong() -> str:
    return json.dumps({"type": "pong"})
