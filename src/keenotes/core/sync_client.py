"""Sync client for KeeNotes.

Coordinates one TransportSession, one SyncReconciler and the inbound event
queue between them. A single consumer thread applies events in the order the
session received them.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .config import Config
from .crypto import CryptoService
from .database import Database
from .models import ConnectionState, SyncStatus
from .reconciler import BatchResult, SyncListener, SyncReconciler
from .transport import ConnectionFactory, TransportSession

logger = logging.getLogger(__name__)

__all__ = ["SyncResult", "SyncClient"]

# Sentinel that stops the consumer thread
_STOP = object()


@dataclass
class SyncResult:
    """Result of a one-shot sync."""

    success: bool
    notes_synced: int = 0
    last_sync_id: int = -1
    errors: List[str] = field(default_factory=list)


class _BurstWaiter:
    """Listener used by sync_once to observe the end of the first burst."""

    def __init__(self) -> None:
        self.completed = threading.Event()
        self.succeeded = False
        self.notes_synced = 0

    def on_status_changed(self, status: SyncStatus) -> None:
        pass

    def on_batch_applied(self, result: BatchResult) -> None:
        self.notes_synced += result.applied

    def on_note_received(self, note: Any) -> None:
        pass

    def on_burst_finished(self, success: bool) -> None:
        self.succeeded = success
        self.completed.set()


class SyncClient:
    """Keeps the local cache in sync with the server.

    Call start() for continuous sync (catch-up burst, then realtime updates)
    or sync_once() to catch up and disconnect.
    """

    def __init__(
        self,
        db: Database,
        config: Config,
        connection_factory: Optional[ConnectionFactory] = None,
    ) -> None:
        """Initialize sync client.

        Args:
            db: Database instance
            config: Config instance (endpoint, token, client_id, password)
            connection_factory: Overrides the websocket connection factory

        Raises:
            ConfigurationError: If endpoint or token is missing
        """
        config.require_server()
        self.db = db
        self.config = config
        self.crypto = CryptoService(
            config.get_encryption_password, kdf_backend=config.get_kdf_backend()
        )
        self.events: "queue.Queue[Any]" = queue.Queue()
        self.reconciler = SyncReconciler(db, self.crypto, config.get_encryption_password)
        self.session = TransportSession(
            endpoint_url=config.get_endpoint_url(),
            token=config.get_token(),
            client_id=config.get_client_id(),
            last_sync_id_source=db.get_last_sync_id,
            events=self.events,
            connection_factory=connection_factory,
            reconnect_delay=config.get_reconnect_delay(),
        )
        self._consumer: Optional[threading.Thread] = None

    @property
    def connection_state(self) -> ConnectionState:
        return self.session.state

    @property
    def status(self) -> SyncStatus:
        return self.reconciler.status

    def add_listener(self, listener: SyncListener) -> None:
        self.reconciler.add_listener(listener)

    def remove_listener(self, listener: SyncListener) -> None:
        self.reconciler.remove_listener(listener)

    def is_running(self) -> bool:
        return self._consumer is not None and self._consumer.is_alive()

    def start(self) -> None:
        """Start the consumer thread and connect."""
        if not self.is_running():
            self._consumer = threading.Thread(
                target=self._consume, name="keenotes-sync-consumer", daemon=True
            )
            self._consumer.start()
        self.session.connect()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Disconnect and let the consumer drain the queue."""
        self.session.disconnect()
        self.session.join(timeout)
        consumer = self._consumer
        if consumer is not None:
            self.events.put(_STOP)
            consumer.join(timeout)
            self._consumer = None
        logger.info("Sync client stopped")

    def _consume(self) -> None:
        while True:
            event = self.events.get()
            try:
                if event is _STOP:
                    return
                self.reconciler.handle_event(event)
            except Exception as e:
                logger.error(f"Error applying {type(event).__name__}: {e}")
            finally:
                self.events.task_done()

    def sync_once(self, timeout: float = 60.0) -> SyncResult:
        """Connect, wait for the catch-up burst to complete, and disconnect.

        Args:
            timeout: Seconds to wait for sync_complete

        Returns:
            SyncResult with the notes applied and the resulting watermark
        """
        waiter = _BurstWaiter()
        self.add_listener(waiter)
        try:
            started = time.monotonic()
            self.start()
            completed = waiter.completed.wait(timeout)
            elapsed = time.monotonic() - started
        finally:
            self.stop()
            self.remove_listener(waiter)

        errors = list(self.reconciler.progress.errors)
        if not completed:
            errors.append(f"Timed out after {timeout:g}s waiting for sync to complete")
        else:
            logger.info(f"Sync finished in {elapsed:.1f}s: {waiter.notes_synced} notes")

        return SyncResult(
            success=completed and waiter.succeeded and not errors,
            notes_synced=waiter.notes_synced,
            last_sync_id=self.db.get_last_sync_id(),
            errors=errors,
        )

    def reset_sync_state(self) -> None:
        """Forget the watermark so the next connection fetches everything."""
        self.db.reset_sync_state()
