"""Test helpers for KeeNotes tests.

Provides envelope and note payload builders, a scripted in-process stand-in
for the websocket connection used by TransportSession, and a subprocess
runner for the CLI.
"""

from __future__ import annotations

import json
import os
import queue
import subprocess
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from websockets.exceptions import ConnectionClosedOK

from keenotes.core.crypto import IV_LENGTH, SALT_LENGTH, seal
from keenotes.core.kdf import derive_key
from keenotes.core.timestamp_utils import current_timestamp_ms

FAST_KDF = "argon2-cffi"

# Per-password cache of (salt, key) so tests derive each key only once
_KEY_CACHE: Dict[str, tuple] = {}


def make_envelope(
    plaintext: str, password: str, timestamp_ms: Optional[int] = None
) -> str:
    """Build a base64 envelope, reusing one derived key per password."""
    if password not in _KEY_CACHE:
        salt = os.urandom(SALT_LENGTH)
        _KEY_CACHE[password] = (salt, derive_key(password, salt, backend=FAST_KDF))
    salt, key = _KEY_CACHE[password]
    ts = current_timestamp_ms() if timestamp_ms is None else timestamp_ms
    return seal(plaintext, key, salt, os.urandom(IV_LENGTH), ts).to_base64()


def note_payload(
    note_id: int,
    content: str,
    channel: str = "mobile-android",
    created_at: str = "2024-03-01 12:00:00",
    encrypted: bool = True,
) -> Dict[str, Any]:
    """Note object as the server sends it."""
    return {
        "id": note_id,
        "content": content,
        "channel": channel,
        "created_at": created_at,
        "encrypted": encrypted,
    }


def sync_batch_frame(batch_id: int, total_batches: int, notes: List[Dict[str, Any]]) -> str:
    return json.dumps({
        "type": "sync_batch",
        "batch_id": batch_id,
        "total_batches": total_batches,
        "notes": notes,
    })


def sync_complete_frame(total_synced: int, last_sync_id: int) -> str:
    return json.dumps({
        "type": "sync_complete",
        "total_synced": total_synced,
        "last_sync_id": last_sync_id,
    })


def realtime_frame(note: Dict[str, Any]) -> str:
    return json.dumps({"type": "realtime_update", "note": note})


_CLOSED = object()

# Feed this to a FakeConnection to close it from the server side
DROP = _CLOSED


class FakeConnection:
    """Scripted connection with the send/recv/close surface of websockets.

    Frames queued with feed() are returned by recv(). drop() or close() makes
    the pending recv() raise ConnectionClosedOK. An optional responder is
    called with every decoded outbound message and returns frames to feed.
    """

    def __init__(
        self,
        responder: Optional[Callable[[Dict[str, Any]], List[str]]] = None,
    ) -> None:
        self.sent: List[str] = []
        self.closed = False
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._responder = responder
        self.handshake_received = threading.Event()

    def feed(self, *frames: str) -> None:
        for frame in frames:
            self._inbox.put(frame)

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._inbox.put(_CLOSED)

    def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(text)
        message = json.loads(text)
        if message.get("type") == "handshake":
            self.handshake_received.set()
        if self._responder is not None:
            self.feed(*self._responder(message))

    def recv(self) -> str:
        item = self._inbox.get()
        if item is _CLOSED:
            self.closed = True
            raise ConnectionClosedOK(None, None)
        return item

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put(_CLOSED)

    def sent_messages(self) -> List[Dict[str, Any]]:
        return [json.loads(text) for text in self.sent]


class FakeServer:
    """Connection factory that hands out FakeConnections.

    Attributes:
        calls: (url, headers, origin) for every connection attempt
        connections: Connections handed out, in order
        failures: Number of upcoming attempts that raise ConnectionRefusedError
    """

    def __init__(
        self,
        responder: Optional[Callable[[Dict[str, Any]], List[str]]] = None,
        failures: int = 0,
    ) -> None:
        self.calls: List[tuple] = []
        self.connections: List[FakeConnection] = []
        self.failures = failures
        self._responder = responder
        self._lock = threading.Lock()
        self.connected = threading.Condition(self._lock)

    def __call__(self, url: str, headers: Dict[str, str], origin: str) -> FakeConnection:
        with self._lock:
            self.calls.append((url, headers, origin))
            if self.failures > 0:
                self.failures -= 1
                self.connected.notify_all()
                raise ConnectionRefusedError("connection refused")
            connection = FakeConnection(self._responder)
            self.connections.append(connection)
            self.connected.notify_all()
            return connection

    def wait_for_connections(self, count: int, timeout: float = 5.0) -> bool:
        with self._lock:
            return self.connected.wait_for(lambda: len(self.connections) >= count, timeout)

    def wait_for_calls(self, count: int, timeout: float = 5.0) -> bool:
        with self._lock:
            return self.connected.wait_for(lambda: len(self.calls) >= count, timeout)


def handshake_sync_id(message: Dict[str, Any]) -> Optional[int]:
    """last_sync_id of a handshake message, or None for other messages."""
    if message.get("type") != "handshake":
        return None
    return message["last_sync_id"]


PROJECT_ROOT = Path(__file__).parent.parent


def run_cli(
    config_dir: Path,
    *args: str,
    input: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.CompletedProcess:
    """Run the keenotes CLI in a subprocess against a config directory."""
    full_env = {
        k: v for k, v in os.environ.items() if k != "KEENOTES_PASSWORD"
    }
    full_env["PYTHONPATH"] = str(PROJECT_ROOT / "src")
    full_env.update(env or {})
    return subprocess.run(
        [sys.executable, "-m", "keenotes.main", "-d", str(config_dir), *args],
        input=input,
        stdin=None if input is not None else subprocess.DEVNULL,
        capture_output=True,
        text=True,
        env=full_env,
        cwd=PROJECT_ROOT,
        timeout=60,
    )
