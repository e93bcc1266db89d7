"""Status enums shared by the transport, the reconciler and the CLI."""

from __future__ import annotations

from enum import Enum


class SyncStatus(Enum):
    """Progress of the current sync burst, for UI feedback only."""

    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"


class ConnectionState(Enum):
    """Connection state of the transport session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
