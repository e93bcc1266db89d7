"""Unit tests for the transport state machine and URL helpers."""

from __future__ import annotations

import pytest

from keenotes.core.models import ConnectionState
from keenotes.core.transport import (
    Effect,
    TransportEvent,
    build_origin,
    build_ws_url,
    transition,
)

DISCONNECTED = ConnectionState.DISCONNECTED
CONNECTING = ConnectionState.CONNECTING
CONNECTED = ConnectionState.CONNECTED


@pytest.mark.unit
class TestTransition:
    """Test every state and event combination."""

    @pytest.mark.parametrize(
        "state,event,expected_state,expected_effects",
        [
            (DISCONNECTED, TransportEvent.CONNECT_REQUESTED, CONNECTING,
             (Effect.CANCEL_RECONNECT, Effect.OPEN_SOCKET)),
            (CONNECTING, TransportEvent.CONNECT_REQUESTED, CONNECTING, ()),
            (CONNECTED, TransportEvent.CONNECT_REQUESTED, CONNECTED, ()),

            (CONNECTING, TransportEvent.SOCKET_OPENED, CONNECTED, (Effect.SEND_HANDSHAKE,)),
            (DISCONNECTED, TransportEvent.SOCKET_OPENED, DISCONNECTED, ()),
            (CONNECTED, TransportEvent.SOCKET_OPENED, CONNECTED, ()),

            (CONNECTING, TransportEvent.CONNECTION_LOST, DISCONNECTED,
             (Effect.SCHEDULE_RECONNECT,)),
            (CONNECTED, TransportEvent.CONNECTION_LOST, DISCONNECTED,
             (Effect.SCHEDULE_RECONNECT,)),
            (DISCONNECTED, TransportEvent.CONNECTION_LOST, DISCONNECTED, ()),

            (DISCONNECTED, TransportEvent.RECONNECT_TIMER_FIRED, CONNECTING,
             (Effect.OPEN_SOCKET,)),
            (CONNECTING, TransportEvent.RECONNECT_TIMER_FIRED, CONNECTING, ()),
            (CONNECTED, TransportEvent.RECONNECT_TIMER_FIRED, CONNECTED, ()),
        ],
    )
    def test_transition(self, state, event, expected_state, expected_effects) -> None:
        assert transition(state, event) == (expected_state, expected_effects)

    @pytest.mark.parametrize("state", [DISCONNECTED, CONNECTING, CONNECTED])
    def test_disconnect_from_any_state(self, state: ConnectionState) -> None:
        """A user disconnect cancels reconnects and closes the socket."""
        assert transition(state, TransportEvent.DISCONNECT_REQUESTED) == (
            DISCONNECTED,
            (Effect.CANCEL_RECONNECT, Effect.CLOSE_SOCKET),
        )

    def test_lost_then_timer_reconnects(self) -> None:
        """A dropped connection schedules exactly one reconnect which reopens the socket."""
        state, effects = transition(CONNECTED, TransportEvent.CONNECTION_LOST)
        assert effects.count(Effect.SCHEDULE_RECONNECT) == 1
        state, effects = transition(state, TransportEvent.RECONNECT_TIMER_FIRED)
        assert state is CONNECTING
        assert effects == (Effect.OPEN_SOCKET,)

    def test_unknown_event(self) -> None:
        with pytest.raises(ValueError):
            transition(DISCONNECTED, "connect")


@pytest.mark.unit
class TestBuildWsUrl:
    """Test derivation of the socket URL from the note endpoint."""

    @pytest.mark.parametrize(
        "endpoint,expected",
        [
            ("http://host:8080", "ws://host:8080/ws"),
            ("http://host:8080/", "ws://host:8080/ws"),
            ("https://notes.example.com/api/notes", "wss://notes.example.com/api/notes/ws"),
            ("https://notes.example.com/api/", "wss://notes.example.com/api/ws"),
            ("https://notes.example.com/ws", "wss://notes.example.com/ws"),
            ("https://notes.example.com/notes?x=1#top", "wss://notes.example.com/notes/ws"),
            ("  https://notes.example.com  ", "wss://notes.example.com/ws"),
            ("HTTPS://notes.example.com", "wss://notes.example.com/ws"),
        ],
    )
    def test_build_ws_url(self, endpoint: str, expected: str) -> None:
        assert build_ws_url(endpoint) == expected

    @pytest.mark.parametrize("endpoint", ["ftp://host/notes", "notes.example.com", "https://"])
    def test_invalid_endpoint(self, endpoint: str) -> None:
        with pytest.raises(ValueError):
            build_ws_url(endpoint)


@pytest.mark.unit
class TestBuildOrigin:
    """Test the Origin header value."""

    def test_https_origin(self) -> None:
        assert build_origin("https://notes.example.com:8443/api") == "https://notes.example.com"

    def test_http_origin(self) -> None:
        assert build_origin("http://localhost:8080/notes") == "http://localhost"
