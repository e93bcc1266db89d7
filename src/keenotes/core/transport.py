"""Websocket transport session for KeeNotes sync.

The connection lifecycle is an explicit state machine written as a pure
function, transition(state, event) -> (state, effects). TransportSession
owns the socket, a receive thread and a single reconnect timer, and turns
the effects into I/O.

Every decoded inbound frame (except ping, which the session answers itself)
is put on the inbound queue together with SessionStarted and
ConnectionStateChanged markers. A single consumer elsewhere applies them in
arrival order.
"""

from __future__ import annotations

import logging
import queue
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from websockets.exceptions import ConnectionClosed
from websockets.sync.client import connect as ws_connect

from .models import ConnectionState
from .protocol import (
    ConnectionStateChanged,
    Ping,
    ProtocolError,
    SessionStarted,
    decode_message,
    encode_handshake,
    encode_pong,
)

logger = logging.getLogger(__name__)

__all__ = [
    "TransportEvent",
    "Effect",
    "transition",
    "build_ws_url",
    "build_origin",
    "TransportSession",
    "DEFAULT_RECONNECT_DELAY",
]

DEFAULT_RECONNECT_DELAY = 5.0
OPEN_TIMEOUT = 10.0


class TransportEvent(Enum):
    """Inputs to the connection state machine."""

    CONNECT_REQUESTED = "connect_requested"
    SOCKET_OPENED = "socket_opened"
    CONNECTION_LOST = "connection_lost"
    DISCONNECT_REQUESTED = "disconnect_requested"
    RECONNECT_TIMER_FIRED = "reconnect_timer_fired"


class Effect(Enum):
    """Side effects requested by the state machine."""

    OPEN_SOCKET = "open_socket"
    SEND_HANDSHAKE = "send_handshake"
    CLOSE_SOCKET = "close_socket"
    SCHEDULE_RECONNECT = "schedule_reconnect"
    CANCEL_RECONNECT = "cancel_reconnect"


def transition(
    state: ConnectionState, event: TransportEvent
) -> Tuple[ConnectionState, Tuple[Effect, ...]]:
    """Compute the next connection state and the effects to perform.

    Args:
        state: Current state
        event: Event that occurred

    Returns:
        Tuple of (new state, effects in execution order)
    """
    disconnected = ConnectionState.DISCONNECTED
    connecting = ConnectionState.CONNECTING
    connected = ConnectionState.CONNECTED

    if event is TransportEvent.DISCONNECT_REQUESTED:
        return disconnected, (Effect.CANCEL_RECONNECT, Effect.CLOSE_SOCKET)

    if event is TransportEvent.CONNECT_REQUESTED:
        if state is disconnected:
            return connecting, (Effect.CANCEL_RECONNECT, Effect.OPEN_SOCKET)
        return state, ()

    if event is TransportEvent.SOCKET_OPENED:
        if state is connecting:
            return connected, (Effect.SEND_HANDSHAKE,)
        return state, ()

    if event is TransportEvent.CONNECTION_LOST:
        if state in (connecting, connected):
            return disconnected, (Effect.SCHEDULE_RECONNECT,)
        return state, ()

    if event is TransportEvent.RECONNECT_TIMER_FIRED:
        if state is disconnected:
            return connecting, (Effect.OPEN_SOCKET,)
        return state, ()

    raise ValueError(f"Unknown transport event: {event!r}")


def build_ws_url(endpoint_url: str) -> str:
    """Derive the sync socket URL from the HTTP note endpoint.

    http becomes ws and https becomes wss; the path gets a /ws suffix unless
    it already ends in /ws. Query and fragment are dropped.

    Raises:
        ValueError: If the URL has no host or an unsupported scheme
    """
    parsed = urlparse(endpoint_url.strip())
    scheme = parsed.scheme.lower()
    if scheme in ("https", "wss"):
        ws_scheme = "wss"
    elif scheme in ("http", "ws"):
        ws_scheme = "ws"
    else:
        raise ValueError(f"Unsupported endpoint scheme: '{parsed.scheme}'")
    if not parsed.netloc:
        raise ValueError(f"Endpoint URL has no host: '{endpoint_url}'")

    path = parsed.path or ""
    if path in ("", "/"):
        path = "/ws"
    elif not path.endswith("/ws"):
        path = path.rstrip("/") + "/ws"

    return urlunparse((ws_scheme, parsed.netloc, path, "", "", ""))


def build_origin(endpoint_url: str) -> str:
    """Origin header value for the socket: scheme and host of the endpoint."""
    parsed = urlparse(endpoint_url.strip())
    secure = parsed.scheme.lower() in ("https", "wss")
    return f"{'https' if secure else 'http'}://{parsed.hostname or ''}"


def default_connection_factory(
    url: str, headers: Dict[str, str], origin: str
) -> Any:
    """Open a synchronous websocket connection."""
    return ws_connect(
        url,
        additional_headers=headers,
        origin=origin,
        open_timeout=OPEN_TIMEOUT,
    )


ConnectionFactory = Callable[[str, Dict[str, str], str], Any]


class TransportSession:
    """One websocket connection to the sync endpoint, with reconnects.

    The connection object returned by the factory must provide send(text),
    recv() and close(); recv() raises websockets' ConnectionClosed (or any
    OSError) when the connection ends.
    """

    def __init__(
        self,
        endpoint_url: str,
        token: str,
        client_id: str,
        last_sync_id_source: Callable[[], int],
        events: "queue.Queue[Any]",
        connection_factory: Optional[ConnectionFactory] = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
    ) -> None:
        """Initialize transport session.

        Args:
            endpoint_url: HTTP(S) note endpoint; the socket URL is derived
            token: Bearer token
            client_id: Client identifier sent in the handshake
            last_sync_id_source: Reads the durable watermark at handshake time
            events: Inbound event queue
            connection_factory: Opens a connection; defaults to websockets
            reconnect_delay: Seconds to wait before reconnecting
        """
        self.url = build_ws_url(endpoint_url)
        self.origin = build_origin(endpoint_url)
        self._token = token
        self.client_id = client_id
        self._last_sync_id_source = last_sync_id_source
        self.events = events
        self._factory = connection_factory or default_connection_factory
        self.reconnect_delay = reconnect_delay

        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._connection: Optional[Any] = None
        self._generation = 0
        self._timer: Optional[threading.Timer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def connect(self) -> None:
        """Request a connection. Idempotent while connecting or connected."""
        self._dispatch(TransportEvent.CONNECT_REQUESTED)

    def disconnect(self) -> None:
        """Close the connection and cancel any pending reconnect."""
        self._dispatch(TransportEvent.DISCONNECT_REQUESTED)

    def send(self, text: str) -> bool:
        """Send a text frame if connected.

        Returns:
            True if the frame was handed to the connection
        """
        with self._lock:
            connection = self._connection
            if self._state is not ConnectionState.CONNECTED or connection is None:
                return False
        try:
            connection.send(text)
            return True
        except (ConnectionClosed, OSError) as e:
            logger.warning(f"Send failed: {e}")
            return False

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the current connection thread to finish."""
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    # ===== State machine driver =====

    def _dispatch(self, event: TransportEvent, generation: Optional[int] = None) -> None:
        to_close: Optional[Any] = None
        handshake_to: Optional[Any] = None
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(f"Ignoring {event.value} from stale connection")
                return

            old_state = self._state
            new_state, effects = transition(old_state, event)
            self._state = new_state
            logger.debug(f"{old_state.value} --{event.value}--> {new_state.value}")

            if new_state is not old_state:
                self.events.put(ConnectionStateChanged(new_state))

            for effect in effects:
                if effect is Effect.CANCEL_RECONNECT:
                    self._cancel_timer()
                elif effect is Effect.SCHEDULE_RECONNECT:
                    self._schedule_timer()
                elif effect is Effect.OPEN_SOCKET:
                    self._start_connection()
                elif effect is Effect.SEND_HANDSHAKE:
                    handshake_to = self._connection
                elif effect is Effect.CLOSE_SOCKET:
                    to_close = self._connection
                    self._connection = None
                    self._generation += 1

        if handshake_to is not None:
            self._send_handshake(handshake_to)

        if to_close is not None:
            try:
                to_close.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Error closing connection: {e}")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_timer(self) -> None:
        self._cancel_timer()
        timer = threading.Timer(self.reconnect_delay, self._on_timer)
        timer.daemon = True
        self._timer = timer
        timer.start()
        logger.info(f"Reconnecting in {self.reconnect_delay:g}s")

    def _on_timer(self) -> None:
        with self._lock:
            if self._timer is None or self._timer is not threading.current_thread():
                return
            self._timer = None
        self._dispatch(TransportEvent.RECONNECT_TIMER_FIRED)

    def _start_connection(self) -> None:
        self._generation += 1
        generation = self._generation
        thread = threading.Thread(
            target=self._run,
            args=(generation,),
            name=f"keenotes-ws-{generation}",
            daemon=True,
        )
        self._thread = thread
        thread.start()

    def _send_handshake(self, connection: Any) -> None:
        try:
            last_sync_id = self._last_sync_id_source()
        except Exception as e:
            logger.error(f"Could not read last_sync_id, requesting full sync: {e}")
            last_sync_id = -1

        # Queued before the handshake goes out so it precedes every batch
        self.events.put(SessionStarted(last_sync_id=last_sync_id))
        try:
            connection.send(encode_handshake(self.client_id, last_sync_id))
            logger.info(f"Handshake sent with last_sync_id={last_sync_id}")
        except (ConnectionClosed, OSError) as e:
            logger.error(f"Failed to send handshake: {e}")

    # ===== Connection thread =====

    def _run(self, generation: int) -> None:
        headers = {"Authorization": f"Bearer {self._token}"}
        logger.info(f"Connecting to {self.url}")
        try:
            connection = self._factory(self.url, headers, self.origin)
        except Exception as e:
            logger.error(f"Connection to {self.url} failed: {e}")
            self._dispatch(TransportEvent.CONNECTION_LOST, generation)
            return

        with self._lock:
            if generation != self._generation:
                stale = True
            else:
                stale = False
                self._connection = connection
        if stale:
            connection.close()
            return

        logger.info("Connected")
        self._dispatch(TransportEvent.SOCKET_OPENED, generation)
        self._receive_loop(connection, generation)

    def _receive_loop(self, connection: Any, generation: int) -> None:
        while True:
            try:
                frame = connection.recv()
            except ConnectionClosed as e:
                logger.info(f"Connection closed: {e}")
                break
            except OSError as e:
                logger.error(f"Receive failed: {e}")
                break

            try:
                event = decode_message(frame)
            except ProtocolError as e:
                logger.warning(f"Dropping malformed frame: {e}")
                continue

            if isinstance(event, Ping):
                try:
                    connection.send(encode_pong())
                except (ConnectionClosed, OSError) as e:
                    logger.warning(f"Failed to answer ping: {e}")
                continue

            self.events.put(event)

        with self._lock:
            if self._connection is connection:
                self._connection = None
        self._dispatch(TransportEvent.CONNECTION_LOST, generation)
