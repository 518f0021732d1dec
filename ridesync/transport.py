"""
Persistent push channel to the dispatch server.

`TransportSession` owns the one long-lived connection per authenticated
identity.  The wire format is newline-delimited JSON over TCP (see
``json_codec``); the access token travels once, in the connection handshake,
never inside individual events.  Inbound events fan out to every handler
registered for the event name, in registration order, on the scheduler's loop
thread.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from PyQt6.QtCore import QObject, pyqtSignal

from .core.utils import scrub_sensitive
from .event_loop import Scheduler, TimerHandle
from .json_codec import decode_frame, encode_frame, encode_handshake
from .protocol import (
    AUTH_ERROR_MESSAGE,
    CONNECT_ERROR_EVENT,
    CONNECT_EVENT,
    connection_state,
    event_name,
    inbound_event,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]
FrameCallback = Callable[[str, Any], None]
CloseCallback = Callable[[Optional[BaseException]], None]

_BUFFER_SIZE = 4096


class TransportError(RuntimeError):
    """Raised when the push channel cannot be opened or written to."""


class AuthenticationError(TransportError):
    """Raised when the server refuses the connection credential."""


class CredentialStore(Protocol):
    access_token: Optional[str]

    def clear(self) -> None: ...


class Connection(Protocol):
    def send(self, event: str, payload: Any) -> None: ...

    def close(self) -> None: ...


Connector = Callable[[Dict[str, str], FrameCallback, CloseCallback], Connection]


# ---------------------------------------------------------------------------
# TCP implementation
# ---------------------------------------------------------------------------


class SocketConnection:
    """One open TCP connection with a background reader thread."""

    def __init__(
        self,
        sock: socket.socket,
        on_frame: FrameCallback,
        on_close: CloseCallback,
        *,
        initial_buffer: bytes = b"",
    ) -> None:
        self._sock = sock
        self._on_frame = on_frame
        self._on_close = on_close
        self._buffer = initial_buffer
        self._send_lock = threading.Lock()
        self._closed = threading.Event()
        self._reader = threading.Thread(
            target=self._read_loop, name="RideSyncReader", daemon=True
        )
        self._reader.start()

    def send(self, event: str, payload: Any) -> None:
        data = encode_frame(event, payload)
        with self._send_lock:
            try:
                self._sock.sendall(data)
            except OSError as exc:
                raise TransportError(f"Unable to send {event!r}: {exc}") from exc

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def _read_loop(self) -> None:
        error: Optional[BaseException] = None
        try:
            self._drain_buffer()
            while not self._closed.is_set():
                chunk = self._sock.recv(_BUFFER_SIZE)
                if not chunk:
                    break
                self._buffer += chunk
                self._drain_buffer()
        except OSError as exc:
            if not self._closed.is_set():
                error = exc
        finally:
            was_closed = self._closed.is_set()
            self.close()
            if not was_closed:
                self._on_close(error)

    def _drain_buffer(self) -> None:
        while b"\n" in self._buffer:
            raw_line, self._buffer = self._buffer.split(b"\n", 1)
            if not raw_line.strip():
                continue
            try:
                frame = decode_frame(raw_line)
            except ValueError as exc:
                logger.warning("Dropping malformed frame: %s", exc)
                continue
            self._on_frame(frame.event, frame.payload)


class SocketConnector:
    """Opens `SocketConnection`s and performs the credential handshake."""

    def __init__(self, host: str, port: int, *, timeout: float = 8.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout

    def __call__(
        self,
        headers: Dict[str, str],
        on_frame: FrameCallback,
        on_close: CloseCallback,
    ) -> SocketConnection:
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as exc:
            raise TransportError(
                f"Unable to reach dispatch server at {self.host}:{self.port}: {exc}"
            ) from exc
        try:
            sock.sendall(encode_handshake(headers))
            reply, rest = self._read_handshake_reply(sock)
        except Exception:
            sock.close()
            raise
        if reply.event == CONNECT_ERROR_EVENT:
            sock.close()
            message = ""
            if isinstance(reply.payload, dict):
                message = str(reply.payload.get("message") or "")
            if message == AUTH_ERROR_MESSAGE:
                raise AuthenticationError(message)
            raise TransportError(message or "Server refused the connection.")
        if reply.event != CONNECT_EVENT:
            sock.close()
            raise TransportError(f"Unexpected handshake reply {reply.event!r}")
        sock.settimeout(None)
        return SocketConnection(sock, on_frame, on_close, initial_buffer=rest)

    def _read_handshake_reply(self, sock: socket.socket) -> Tuple[Any, bytes]:
        buffer = bytearray()
        try:
            while b"\n" not in buffer:
                chunk = sock.recv(_BUFFER_SIZE)
                if not chunk:
                    raise TransportError("Connection closed during handshake.")
                buffer.extend(chunk)
        except OSError as exc:
            raise TransportError(f"Handshake failed: {exc}") from exc
        line, rest = bytes(buffer).split(b"\n", 1)
        try:
            return decode_frame(line), rest
        except ValueError as exc:
            raise TransportError("Malformed handshake reply from server") from exc


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class ListenerGroup:
    """
    The handlers one component registered on a `TransportSession`.

    ``clear()`` removes exactly these registrations and nothing another
    component added for the same event names.
    """

    def __init__(self, transport: "TransportSession") -> None:
        self._transport = transport
        self._removers: List[Callable[[], None]] = []

    def on(self, event: Any, handler: Handler) -> None:
        self._removers.append(self._transport.on(event, handler))

    def clear(self) -> None:
        removers, self._removers = self._removers, []
        for remove in removers:
            remove()

    def __len__(self) -> int:
        return len(self._removers)


class TransportSession(QObject):
    state_changed = pyqtSignal(str)
    account_suspended = pyqtSignal(str)
    auth_failed = pyqtSignal(str)

    def __init__(
        self,
        scheduler: Scheduler,
        connector: Connector,
        *,
        credential_store: CredentialStore,
        refresh_credential: Optional[Callable[[], str]] = None,
        reconnect_initial: float = 1.0,
        reconnect_max: float = 30.0,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self._scheduler = scheduler
        self._connector = connector
        self._credentials = credential_store
        self._refresh_credential = refresh_credential
        self._reconnect_initial = reconnect_initial
        self._reconnect_max = reconnect_max
        self._handlers: Dict[str, List[Handler]] = {}
        self._session_handlers: Dict[str, Handler] = {
            inbound_event.ACCOUNT_SUSPENDED.value: self._on_account_suspended,
        }
        self._connection: Optional[Connection] = None
        self._state = connection_state.DISCONNECTED
        self._generation = 0
        self._wanted = False
        self._refresh_attempted = False
        self._backoff = reconnect_initial
        self._reconnect_timer: Optional[TimerHandle] = None

    # Public API -----------------------------------------------------------------
    @property
    def state(self) -> connection_state:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is connection_state.CONNECTED

    def connect(self, credential: Optional[str] = None) -> None:  # type: ignore[override]
        if credential:
            self._credentials.access_token = credential
        if not self._credentials.access_token:
            raise AuthenticationError("No access token available to connect.")
        self._wanted = True
        self._refresh_attempted = False
        self._backoff = self._reconnect_initial
        self._open()

    def disconnect(self) -> None:  # type: ignore[override]
        self._wanted = False
        self._cancel_reconnect()
        self._generation += 1
        self._close_connection()
        self._set_state(connection_state.DISCONNECTED)

    def emit(self, event: Any, payload: Any = None) -> bool:  # type: ignore[override]
        name = event_name(event)
        if self._state is not connection_state.CONNECTED or self._connection is None:
            logger.warning("Socket not connected, dropping %r", name)
            return False
        logger.info("[Client->Server] event=%s payload=%s", name, scrub_sensitive(payload))
        try:
            self._connection.send(name, payload)
        except TransportError as exc:
            logger.warning("Send failed for %r: %s", name, exc)
            self._handle_closed(self._generation, exc)
            return False
        return True

    def on(self, event: Any, handler: Handler) -> Callable[[], None]:
        name = event_name(event)
        self._handlers.setdefault(name, []).append(handler)

        def _remove() -> None:
            self._remove_handler(name, handler)

        return _remove

    def off(self, event: Any, handler: Optional[Handler] = None) -> None:
        name = event_name(event)
        if handler is None:
            self._handlers.pop(name, None)
            return
        self._remove_handler(name, handler)

    def listeners(self) -> ListenerGroup:
        return ListenerGroup(self)

    def handler_count(self, event: Any) -> int:
        return len(self._handlers.get(event_name(event), ()))

    def deliver(self, event: str, payload: Any) -> None:
        """Dispatch one inbound event; must run on the loop thread."""
        logger.debug("[Client<-Server] event=%s payload=%s", event, scrub_sensitive(payload))
        session_handler = self._session_handlers.get(event)
        if session_handler is not None:
            self._invoke(event, session_handler, payload)
        for handler in list(self._handlers.get(event, ())):
            self._invoke(event, handler, payload)

    # Connection lifecycle -------------------------------------------------------
    def _open(self) -> None:
        self._cancel_reconnect()
        self._generation += 1
        generation = self._generation
        self._close_connection()
        self._set_state(connection_state.CONNECTING)
        headers = {"access_token": self._credentials.access_token or ""}

        def _on_frame(event: str, payload: Any) -> None:
            self._scheduler.call_soon_threadsafe(self._deliver_if_current, generation, event, payload)

        def _on_close(error: Optional[BaseException]) -> None:
            self._scheduler.call_soon_threadsafe(self._handle_closed, generation, error)

        self._scheduler.submit(
            lambda: self._connector(headers, _on_frame, _on_close),
            on_result=lambda conn: self._on_connected(generation, conn),
            on_error=lambda exc: self._on_connect_failed(generation, exc),
        )

    def _on_connected(self, generation: int, connection: Connection) -> None:
        if generation != self._generation or not self._wanted:
            connection.close()
            return
        self._connection = connection
        self._refresh_attempted = False
        self._backoff = self._reconnect_initial
        logger.info("Socket connected")
        self._set_state(connection_state.CONNECTED)

    def _on_connect_failed(self, generation: int, exc: BaseException) -> None:
        if generation != self._generation or not self._wanted:
            return
        if isinstance(exc, AuthenticationError):
            self._recover_authentication(exc)
            return
        logger.warning("Socket connection error: %s", exc)
        self._schedule_reconnect()

    def _recover_authentication(self, exc: BaseException) -> None:
        if self._refresh_credential is None or self._refresh_attempted:
            self._fail_authentication(str(exc))
            return
        self._refresh_attempted = True
        logger.info("Auth connection error - attempting token refresh")
        generation = self._generation
        self._scheduler.submit(
            self._refresh_credential,
            on_result=lambda token: self._on_credential_refreshed(generation, token),
            on_error=lambda err: self._on_refresh_failed(generation, err),
        )

    def _on_credential_refreshed(self, generation: int, token: Any) -> None:
        if generation != self._generation or not self._wanted:
            return
        if token:
            self._credentials.access_token = str(token)
        logger.info("Token refreshed, reconnecting socket")
        self._open()

    def _on_refresh_failed(self, generation: int, exc: BaseException) -> None:
        if generation != self._generation or not self._wanted:
            return
        logger.error("Failed to refresh token: %s", exc)
        self._fail_authentication(str(exc))

    def _fail_authentication(self, reason: str) -> None:
        self._wanted = False
        self._set_state(connection_state.DISCONNECTED)
        self.auth_failed.emit(reason or AUTH_ERROR_MESSAGE)

    def _deliver_if_current(self, generation: int, event: str, payload: Any) -> None:
        if generation != self._generation:
            logger.debug("Ignoring %r from a superseded connection", event)
            return
        self.deliver(event, payload)

    def _handle_closed(self, generation: int, error: Optional[BaseException]) -> None:
        if generation != self._generation:
            return
        self._close_connection()
        if not self._wanted:
            self._set_state(connection_state.DISCONNECTED)
            return
        logger.warning("Socket disconnected: %s", error or "closed by server")
        self._generation += 1
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        self._set_state(connection_state.CONNECTING)
        delay = self._backoff
        self._backoff = min(self._backoff * 2, self._reconnect_max)
        self._cancel_reconnect()
        logger.info("Reconnecting in %.1fs", delay)
        self._reconnect_timer = self._scheduler.call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_timer = None
        if self._wanted:
            self._open()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            connection.close()

    def _set_state(self, state: connection_state) -> None:
        if state is self._state:
            return
        self._state = state
        self.state_changed.emit(state.value)

    # Handlers -------------------------------------------------------------------
    def _remove_handler(self, name: str, handler: Handler) -> None:
        handlers = self._handlers.get(name)
        if not handlers:
            return
        for index, registered in enumerate(handlers):
            if registered == handler:
                del handlers[index]
                break
        if not handlers:
            self._handlers.pop(name, None)

    def _invoke(self, event: str, handler: Handler, payload: Any) -> None:
        try:
            handler(payload)
        except Exception:  # noqa: BLE001
            logger.exception("Handler for %r raised", event)

    def _on_account_suspended(self, payload: Any) -> None:
        reason = ""
        if isinstance(payload, dict):
            reason = str(payload.get("reason") or "")
        reason = reason or "Your account has been disapproved by an administrator."
        logger.warning("Account suspended: %s", reason)
        self._credentials.clear()
        self.disconnect()
        self.account_suspended.emit(reason)
