"""Shared fakes for the test-suite: an in-memory push channel and REST API."""

from __future__ import annotations

from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from PyQt6.QtCore import QCoreApplication

from ridesync.event_loop import ManualScheduler
from ridesync.protocol import event_name
from ridesync.rest_api import MemoryCredentialStore
from ridesync.transport import TransportError, TransportSession

APP = QCoreApplication.instance() or QCoreApplication([])


class FakeConnection:
    def __init__(self, connector: "FakeConnector", headers: Dict[str, str], on_frame, on_close) -> None:
        self._connector = connector
        self.headers = headers
        self._on_frame = on_frame
        self._on_close = on_close
        self.closed = False
        self.fail_sends = False

    def send(self, event: str, payload: Any) -> None:
        if self.fail_sends:
            raise TransportError("broken pipe")
        self._connector.sent.append((event, payload))

    def close(self) -> None:
        self.closed = True

    def push(self, event: Any, payload: Any = None) -> None:
        self._on_frame(event_name(event), payload)

    def drop(self, error: Optional[BaseException] = None) -> None:
        self._on_close(error)


class FakeConnector:
    """Stands in for `SocketConnector`; every call opens a `FakeConnection`."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Any]] = []
        self.connections: List[FakeConnection] = []
        self.attempts: List[Dict[str, str]] = []
        self._failures: Deque[BaseException] = deque()

    def fail_next(self, *errors: BaseException) -> None:
        self._failures.extend(errors)

    def __call__(self, headers: Dict[str, str], on_frame, on_close) -> FakeConnection:
        self.attempts.append(dict(headers))
        if self._failures:
            raise self._failures.popleft()
        connection = FakeConnection(self, dict(headers), on_frame, on_close)
        self.connections.append(connection)
        return connection

    @property
    def current(self) -> FakeConnection:
        return self.connections[-1]


class FakeRestAPI:
    """
    REST double.  Results are read when the scheduler runs the call, so tests
    can change them after the request was issued.
    """

    def __init__(self) -> None:
        self.open_offers: List[Dict[str, Any]] = []
        self.active_rides: List[Dict[str, Any]] = []
        self.conversations: List[Dict[str, Any]] = []
        self.user_role: Optional[str] = None
        self.new_access_token = "token-refreshed"
        self.errors: Dict[str, BaseException] = {}
        self.calls: List[str] = []
        self._queued: Dict[str, Deque[Any]] = {}

    def queue(self, method: str, *results: Any) -> None:
        self._queued.setdefault(method, deque()).extend(results)

    def fetch_open_offers(self, status: str = "SEARCHING_FOR_RIDER") -> List[Dict[str, Any]]:
        return self._result("fetch_open_offers", lambda: list(self.open_offers))

    def fetch_active_rides(self) -> List[Dict[str, Any]]:
        return self._result("fetch_active_rides", lambda: list(self.active_rides))

    def fetch_conversations(self):
        return self._result("fetch_conversations", lambda: (list(self.conversations), self.user_role))

    def refresh_tokens(self) -> str:
        return self._result("refresh_tokens", lambda: self.new_access_token)

    def _result(self, method: str, default: Callable[[], Any]) -> Any:
        self.calls.append(method)
        if method in self.errors:
            raise self.errors[method]
        queued = self._queued.get(method)
        if queued:
            return queued.popleft()
        return default()


class Harness:
    """A connected `TransportSession` on a virtual clock."""

    def __init__(
        self,
        *,
        user_id: str = "user-self",
        role: str = "customer",
        refresh_credential: Optional[Callable[[], str]] = None,
    ) -> None:
        self.scheduler = ManualScheduler()
        self.connector = FakeConnector()
        self.credentials = MemoryCredentialStore(
            access_token="token-1", refresh_token="refresh-1", user_id=user_id, role=role
        )
        self.transport = TransportSession(
            self.scheduler,
            self.connector,
            credential_store=self.credentials,
            refresh_credential=refresh_credential,
        )

    def connect(self) -> "Harness":
        self.transport.connect()
        self.scheduler.run_background()
        return self

    def push(self, event: Any, payload: Any = None) -> None:
        self.connector.current.push(event, payload)
        self.scheduler.run_ready()

    def sent(self, event: Any = None) -> List[Tuple[str, Any]]:
        if event is None:
            return list(self.connector.sent)
        name = event_name(event)
        return [frame for frame in self.connector.sent if frame[0] == name]

    def sent_events(self) -> List[str]:
        return [name for name, _ in self.connector.sent]

    def clear_sent(self) -> None:
        self.connector.sent.clear()


def record(signal) -> List[Tuple[Any, ...]]:
    calls: List[Tuple[Any, ...]] = []
    signal.connect(lambda *args: calls.append(args))
    return calls


def ride_payload(
    ride_id: str,
    status: str = "SEARCHING_FOR_RIDER",
    *,
    vehicle: str = "Cab",
    rider: Any = None,
    fare: float = 120.0,
    **extra: Any,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "_id": ride_id,
        "status": status,
        "vehicle": vehicle,
        "fare": fare,
        "pickup": {"latitude": 14.5995, "longitude": 120.9842, "address": "Rizal Park"},
        "drop": {"latitude": 14.5547, "longitude": 121.0244, "address": "Makati"},
        "customer": {"_id": "user-customer"},
    }
    if rider is not None:
        payload["rider"] = rider
    payload.update(extra)
    return payload


def message_payload(
    message_id: str,
    chat_id: str,
    sender_id: str,
    content: str,
    **extra: Any,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "_id": message_id,
        "chatId": chat_id,
        "sender": {"userId": {"_id": sender_id, "firstName": "Test"}, "role": "customer"},
        "content": content,
        "messageType": "text",
        "createdAt": "2024-05-01T10:00:00Z",
    }
    payload.update(extra)
    return payload
