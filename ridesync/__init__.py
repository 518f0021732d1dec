"""Realtime client core for a two-sided ride dispatch service."""

from .core.logger import configure_logging, logger
from .client import DispatchClient
from .chat import ChatRoomError, ChatRoomSession
from .core.config import ConfigError, Settings
from .event_loop import ManualScheduler, QtScheduler, Scheduler
from .location import LocationReporter
from .models import ChatMessage, Coords, HealthState, PendingOffer, Ride, RideStatus, Role
from .notifications import NotificationBroker, UnreadCounterBinding
from .offers import OfferReconciler
from .rest_api import MemoryCredentialStore, RestAPI, RestAPIError
from .ride_session import RideSessionController
from .transport import AuthenticationError, SocketConnector, TransportError, TransportSession

__version__ = "0.1.0"

__all__ = [
    "AuthenticationError",
    "ChatMessage",
    "ChatRoomError",
    "ChatRoomSession",
    "ConfigError",
    "Coords",
    "DispatchClient",
    "HealthState",
    "LocationReporter",
    "ManualScheduler",
    "MemoryCredentialStore",
    "NotificationBroker",
    "OfferReconciler",
    "PendingOffer",
    "QtScheduler",
    "RestAPI",
    "RestAPIError",
    "Ride",
    "RideSessionController",
    "RideStatus",
    "Role",
    "Scheduler",
    "Settings",
    "SocketConnector",
    "TransportError",
    "TransportSession",
    "UnreadCounterBinding",
    "configure_logging",
    "logger",
]
