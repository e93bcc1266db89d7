"""Sync reconciler for KeeNotes.

Applies inbound sync events to the local cache, one at a time and in arrival
order. For each sync_batch the decrypted notes and the advanced last_sync_id
are written in a single transaction, so an interrupted burst resumes after
the last batch that was fully applied.

The reconciler is not thread-safe; exactly one consumer thread calls
handle_event().
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from .crypto import CryptoError, CryptoService
from .database import Database
from .models import ConnectionState, SyncStatus
from .protocol import (
    ConnectionStateChanged,
    NewNoteAck,
    NotePayload,
    Pong,
    ProtocolError,
    RealtimeUpdate,
    ServerError,
    SessionStarted,
    SyncBatch,
    SyncComplete,
    UnknownMessage,
    parse_note_payload,
)

logger = logging.getLogger(__name__)

__all__ = [
    "DECRYPTION_FAILED_PLACEHOLDER",
    "SyncListener",
    "BatchResult",
    "SyncReconciler",
]

# Stored in place of the content of a note that could not be decrypted
DECRYPTION_FAILED_PLACEHOLDER = "[Decryption failed: wrong password or corrupted note]"


class SyncListener(Protocol):
    """Receives progress notifications from the reconciler thread."""

    def on_status_changed(self, status: SyncStatus) -> None: ...

    def on_batch_applied(self, result: "BatchResult") -> None: ...

    def on_note_received(self, note: Dict[str, Any]) -> None: ...

    def on_burst_finished(self, success: bool) -> None: ...


@dataclass
class BatchResult:
    """Outcome of applying one sync_batch.

    Attributes:
        batch_id: Batch number as sent by the server
        total_batches: Batch count of the burst
        applied: Notes written to the cache
        failed: Payloads skipped because they could not be parsed
        decrypt_failures: Notes stored with the placeholder
        last_sync_id: Watermark after the batch
    """

    batch_id: int
    total_batches: int
    applied: int = 0
    failed: int = 0
    decrypt_failures: int = 0
    last_sync_id: int = -1


@dataclass
class BurstProgress:
    """Counters for the current catch-up burst.

    storage_failed is set once a batch of the burst could not be stored.
    From then on notes are still cached but last_sync_id stays put until the
    next handshake, so the server re-sends everything after it.
    """

    expected_batches: int = 0
    received_batches: int = 0
    notes_applied: int = 0
    storage_failed: bool = False
    errors: List[str] = field(default_factory=list)


class SyncReconciler:
    """Applies sync events to the local cache and advances the watermark."""

    def __init__(
        self,
        db: Database,
        crypto: CryptoService,
        password_source: Callable[[], Optional[str]],
    ) -> None:
        """Initialize reconciler.

        Args:
            db: Local note cache
            crypto: Envelope codec
            password_source: Returns the cached password (read once per burst)
        """
        self.db = db
        self.crypto = crypto
        self._password_source = password_source
        self._password: Optional[str] = password_source()
        self.status = SyncStatus.IDLE
        self.connection_state = ConnectionState.DISCONNECTED
        self.progress = BurstProgress()
        self.completed_bursts = 0
        self._listeners: List[SyncListener] = []

    def add_listener(self, listener: SyncListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SyncListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, method: str, *args: Any) -> None:
        for listener in list(self._listeners):
            callback = getattr(listener, method, None)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Sync listener {method} failed: {e}")

    def _set_status(self, status: SyncStatus) -> None:
        if status is not self.status:
            self.status = status
            self._notify("on_status_changed", status)

    @property
    def expected_batches(self) -> int:
        return self.progress.expected_batches

    @property
    def received_batches(self) -> int:
        return self.progress.received_batches

    # ===== Dispatch =====

    def handle_event(self, event: Any) -> None:
        """Apply one inbound event."""
        if isinstance(event, SyncBatch):
            self.handle_sync_batch(event)
        elif isinstance(event, SyncComplete):
            self.handle_sync_complete(event)
        elif isinstance(event, RealtimeUpdate):
            self.handle_realtime_update(event)
        elif isinstance(event, SessionStarted):
            self.handle_session_started(event)
        elif isinstance(event, ConnectionStateChanged):
            self.connection_state = event.state
            if event.state is ConnectionState.DISCONNECTED and self.status is SyncStatus.SYNCING:
                self._set_status(SyncStatus.IDLE)
        elif isinstance(event, ServerError):
            logger.error(f"Server error: {event.message}")
            self.progress.errors.append(f"Server error: {event.message}")
        elif isinstance(event, NewNoteAck):
            logger.info(f"Server acknowledged new note with id={event.note_id}")
        elif isinstance(event, Pong):
            logger.debug("Received pong")
        elif isinstance(event, UnknownMessage):
            logger.warning(f"Unknown message type: {event.type}")
        else:
            logger.warning(f"Ignoring unexpected event {type(event).__name__}")

    def handle_session_started(self, event: SessionStarted) -> None:
        """A handshake was sent: start a new burst."""
        self._password = self._password_source()
        if not self._password:
            logger.warning("No encryption password set, encrypted notes will be stored as received")
        self.progress = BurstProgress()
        self._set_status(SyncStatus.IDLE)
        logger.info(f"Sync session started from last_sync_id={event.last_sync_id}")

    # ===== Note decoding =====

    def _decode_note(self, payload: NotePayload, result: Optional[BatchResult] = None) -> Dict[str, Any]:
        content = payload.content
        if payload.encrypted and self._password:
            try:
                content = self.crypto.decrypt_with_password(payload.content, self._password)
            except CryptoError as e:
                logger.warning(f"Failed to decrypt note {payload.id}: {e}")
                content = DECRYPTION_FAILED_PLACEHOLDER
                if result is not None:
                    result.decrypt_failures += 1
        elif payload.encrypted:
            logger.warning(f"No encryption password, storing note {payload.id} as received")

        return {
            "id": payload.id,
            "content": content,
            "channel": payload.channel,
            "created_at": payload.created_at,
        }

    # ===== Handlers =====

    def handle_sync_batch(self, batch: SyncBatch) -> BatchResult:
        """Decrypt and store one batch, advancing the watermark atomically."""
        if self.progress.expected_batches == 0:
            self.progress.expected_batches = batch.total_batches
            logger.info(f"Starting new sync, expecting {batch.total_batches} batches")
        self._set_status(SyncStatus.SYNCING)

        result = BatchResult(batch_id=batch.batch_id, total_batches=batch.total_batches)
        notes: List[Dict[str, Any]] = []
        for index, raw in enumerate(batch.notes):
            try:
                payload = parse_note_payload(raw)
            except ProtocolError as e:
                logger.warning(f"Skipping note {index} of batch {batch.batch_id}: {e}")
                result.failed += 1
                continue
            notes.append(self._decode_note(payload, result))

        if notes:
            try:
                if self.progress.storage_failed:
                    self.db.upsert_notes(notes)
                    result.last_sync_id = self.db.get_last_sync_id()
                else:
                    result.last_sync_id = self.db.apply_sync_batch(notes)
                result.applied = len(notes)
            except sqlite3.Error as e:
                logger.error(f"Failed to store batch {batch.batch_id}: {e}")
                self.progress.errors.append(f"Batch {batch.batch_id}: {e}")
                self.progress.storage_failed = True
                result.failed += len(notes)
                result.last_sync_id = self.db.get_last_sync_id()
        else:
            result.last_sync_id = self.db.get_last_sync_id()

        self.progress.received_batches += 1
        self.progress.notes_applied += result.applied
        logger.info(
            f"Batch {batch.batch_id}/{batch.total_batches} complete: "
            f"success={result.applied}, fail={result.failed}"
        )
        self._notify("on_batch_applied", result)
        return result

    def handle_sync_complete(self, event: SyncComplete) -> None:
        """End of the catch-up burst."""
        logger.info(
            f"Sync complete: total_synced={event.total_synced}, "
            f"last_sync_id={event.last_sync_id}"
        )
        success = False
        try:
            if self.progress.storage_failed:
                logger.error(
                    f"Burst incomplete, keeping last_sync_id at {self.db.get_last_sync_id()}"
                )
                self._set_status(SyncStatus.IDLE)
            else:
                if event.total_synced > 0:
                    self.db.update_last_sync_id(event.last_sync_id)
                self._set_status(SyncStatus.COMPLETED)
                success = True
        except sqlite3.Error as e:
            logger.error(f"Failed to update last_sync_id on sync complete: {e}")
            self.progress.errors.append(f"sync_complete: {e}")
            self._set_status(SyncStatus.IDLE)
        finally:
            self.progress.expected_batches = 0
            self.progress.received_batches = 0
            self.completed_bursts += 1
        self._notify("on_burst_finished", success)

    def handle_realtime_update(self, event: RealtimeUpdate) -> Optional[Dict[str, Any]]:
        """Store a single pushed note and advance the watermark past it."""
        try:
            payload = parse_note_payload(event.note)
        except ProtocolError as e:
            logger.warning(f"Skipping realtime update: {e}")
            return None

        note = self._decode_note(payload)
        try:
            if self.progress.storage_failed:
                self.db.upsert_note(note)
            else:
                self.db.apply_sync_batch([note], payload.id)
        except sqlite3.Error as e:
            logger.error(f"Failed to store realtime note {payload.id}: {e}")
            self.progress.errors.append(f"Realtime note {payload.id}: {e}")
            self.progress.storage_failed = True
            return None

        logger.info(f"Realtime update: note {payload.id}")
        self._notify("on_note_received", note)
        return note
