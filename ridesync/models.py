from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .core.utils import coerce_float, coerce_int, estimate_eta_minutes, haversine_km


class Role(str, enum.Enum):
    REQUESTER = "customer"
    FULFILLER = "rider"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        if isinstance(value, Role):
            return value
        normalized = str(value or "").strip().lower()
        if normalized in {"rider", "driver", "fulfiller"}:
            return cls.FULFILLER
        if normalized in {"customer", "passenger", "requester", "user"}:
            return cls.REQUESTER
        raise ValueError(f"Unknown role: {value!r}")


class RideStatus(str, enum.Enum):
    SEARCHING = "SEARCHING_FOR_RIDER"
    START = "START"
    ARRIVED = "ARRIVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> Optional["RideStatus"]:
        if isinstance(value, RideStatus):
            return value
        if not value:
            return None
        normalized = str(value).strip().upper()
        if normalized in {"SEARCHING", "SEARCHING_FOR_RIDER"}:
            return cls.SEARCHING
        if normalized == "CANCELED":
            return cls.CANCELLED
        try:
            return cls(normalized)
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED, RideStatus.TIMEOUT})
ACTIVE_STATUSES = frozenset({RideStatus.SEARCHING, RideStatus.START, RideStatus.ARRIVED})

# Statuses only ever move forward along this order; all terminal states share
# the last rank.
_STATUS_RANK = {
    RideStatus.SEARCHING: 0,
    RideStatus.START: 1,
    RideStatus.ARRIVED: 2,
    RideStatus.COMPLETED: 3,
    RideStatus.CANCELLED: 3,
    RideStatus.TIMEOUT: 3,
}


def entity_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        for key in ("_id", "id", "userId"):
            nested = value.get(key)
            if nested:
                return entity_id(nested)
        return None
    return str(value)


def _display_name(value: Any) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    parts = [str(value.get(k) or "").strip() for k in ("firstName", "lastName")]
    joined = " ".join(p for p in parts if p)
    return joined or value.get("name") or None


def extract_ride_id(payload: Any) -> Optional[str]:
    """
    Resolve the ride an event refers to.

    Servers send bare ID strings for some events and nested ride objects for
    others, so every spelling seen on the wire is accepted.
    """
    if payload is None:
        return None
    if isinstance(payload, (str, int)):
        text = str(payload).strip()
        return text or None
    if not isinstance(payload, dict):
        return None
    for key in ("rideId", "ride_id", "_id", "id"):
        value = payload.get(key)
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
    nested = payload.get("ride")
    if isinstance(nested, (dict, str, int)):
        return extract_ride_id(nested)
    return None


@dataclass(frozen=True)
class Coords:
    latitude: float
    longitude: float
    address: str = ""
    landmark: Optional[str] = None
    heading: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["Coords"]:
        if not isinstance(payload, dict):
            return None
        latitude = coerce_float(payload.get("latitude"))
        longitude = coerce_float(payload.get("longitude"))
        if latitude is None or longitude is None:
            return None
        return cls(
            latitude=latitude,
            longitude=longitude,
            address=str(payload.get("address") or ""),
            landmark=payload.get("landmark") or None,
            heading=coerce_float(payload.get("heading")),
        )

    def as_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"latitude": self.latitude, "longitude": self.longitude}
        if self.address:
            payload["address"] = self.address
        if self.landmark:
            payload["landmark"] = self.landmark
        if self.heading is not None:
            payload["heading"] = self.heading
        return payload

    def distance_km(self, other: "Coords") -> Optional[float]:
        return haversine_km(self.latitude, self.longitude, other.latitude, other.longitude)


@dataclass(frozen=True)
class Ride:
    id: str
    status: Optional[RideStatus] = None
    pickup: Optional[Coords] = None
    drop: Optional[Coords] = None
    fulfiller_id: Optional[str] = None
    fulfiller_name: Optional[str] = None
    requester_id: Optional[str] = None
    fare: Optional[float] = None
    payment_method: Optional[str] = None
    otp: Optional[str] = None
    passenger_count: int = 1
    vehicle: Optional[str] = None
    distance_km: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["Ride"]:
        if not isinstance(payload, dict):
            return None
        if isinstance(payload.get("ride"), dict) and not payload.get("_id"):
            payload = payload["ride"]
        ride_id = entity_id(payload.get("_id") or payload.get("id"))
        if not ride_id:
            return None
        rider = payload.get("rider")
        otp = payload.get("otp")
        return cls(
            id=ride_id,
            status=RideStatus.parse(payload.get("status")),
            pickup=Coords.from_payload(payload.get("pickup")),
            drop=Coords.from_payload(payload.get("drop")),
            fulfiller_id=entity_id(rider),
            fulfiller_name=_display_name(rider),
            requester_id=entity_id(payload.get("customer")),
            fare=coerce_float(payload.get("fare")),
            payment_method=payload.get("paymentMethod") or None,
            otp=str(otp) if otp not in (None, "") else None,
            passenger_count=max(1, coerce_int(payload.get("passengerCount"), 1)),
            vehicle=payload.get("vehicle") or None,
            distance_km=coerce_float(payload.get("distance")),
            raw=dict(payload),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status is not None and self.status.is_terminal


@dataclass(frozen=True)
class PendingOffer:
    ride: Ride
    received_at: float = 0.0
    pickup_distance_km: Optional[float] = None
    pickup_eta_min: Optional[float] = None

    @property
    def id(self) -> str:
        return self.ride.id

    @property
    def vehicle(self) -> Optional[str]:
        return self.ride.vehicle

    @classmethod
    def build(
        cls,
        ride: Ride,
        *,
        received_at: float,
        fulfiller_location: Optional[Coords] = None,
    ) -> "PendingOffer":
        distance: Optional[float] = None
        if fulfiller_location is not None and ride.pickup is not None:
            distance = fulfiller_location.distance_km(ride.pickup)
        return cls(
            ride=ride,
            received_at=received_at,
            pickup_distance_km=distance,
            pickup_eta_min=estimate_eta_minutes(distance, ride.vehicle),
        )

    def is_actionable_for(self, vehicle_type: Optional[str]) -> bool:
        # A fulfiller without a registered vehicle is not gated.
        if not vehicle_type:
            return True
        return self.ride.vehicle == vehicle_type


@dataclass(frozen=True)
class ChatMessage:
    id: str
    chat_id: str
    sender_id: Optional[str]
    sender_role: Optional[str]
    content: str
    message_type: str = "text"
    created_at: Optional[str] = None
    client_message_id: Optional[str] = None
    pending: bool = False
    sent_at: float = 0.0

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["ChatMessage"]:
        if not isinstance(payload, dict):
            return None
        message_id = entity_id(payload.get("_id") or payload.get("id"))
        chat_id = entity_id(payload.get("chatId"))
        if not message_id or not chat_id:
            return None
        sender = payload.get("sender") if isinstance(payload.get("sender"), dict) else {}
        return cls(
            id=message_id,
            chat_id=chat_id,
            sender_id=entity_id(sender.get("userId")),
            sender_role=sender.get("role") or None,
            content=str(payload.get("content") or ""),
            message_type=str(payload.get("messageType") or "text"),
            created_at=payload.get("createdAt"),
            client_message_id=payload.get("clientMessageId") or None,
        )

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith("temp_")


class HealthState(str, enum.Enum):
    CONNECTED = "connected"
    CONNECTING = "connecting"
    DEGRADED = "degraded"


@dataclass
class ConnectionHealth:
    state: HealthState = HealthState.CONNECTING
    last_push_at: float = 0.0
    channel_failed: bool = False

    def reset(self, now: float) -> None:
        self.state = HealthState.CONNECTING
        self.last_push_at = now
        self.channel_failed = False

    def mark_push(self, now: float) -> bool:
        """Record a processed push event; returns True if the state changed."""
        changed = self.state is not HealthState.CONNECTED
        self.last_push_at = now
        self.channel_failed = False
        self.state = HealthState.CONNECTED
        return changed

    def mark_failed(self) -> bool:
        changed = not self.channel_failed
        self.channel_failed = True
        self.state = HealthState.DEGRADED
        return changed

    def silence(self, now: float) -> float:
        return now - self.last_push_at
