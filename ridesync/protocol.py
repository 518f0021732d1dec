import enum
from dataclasses import dataclass
from typing import Any

HANDSHAKE_EVENT = "handshake"
CONNECT_EVENT = "connect"
CONNECT_ERROR_EVENT = "connect_error"
AUTH_ERROR_MESSAGE = "Authentication error"

# ==== CLIENT → SERVER ====


class outbound_event(str, enum.Enum):
    # RIDE ROOM
    SUBSCRIBE_RIDE = "subscribeRide"
    LEAVE_RIDE = "leaveRide"
    SEARCH_RIDER = "searchrider"
    CANCEL_RIDE = "cancelRide"

    # COUNTERPARTY LOCATION
    SUBSCRIBE_COUNTERPARTY_LOCATION = "subscribeToriderLocation"
    UNSUBSCRIBE_COUNTERPARTY_LOCATION = "unsubscribeFromriderLocation"

    # OFFERS
    REQUEST_ALL_OPEN_OFFERS = "requestAllSearchingRides"
    ACCEPT_OFFER = "acceptRide"

    # CHAT
    JOIN_CHAT = "joinChat"
    LEAVE_CHAT = "leaveChat"
    FETCH_MESSAGES = "fetchMessages"
    SEND_MESSAGE = "sendMessage"
    TYPING = "typing"
    MARK_READ = "markMessagesRead"

    # OWN LOCATION / AVAILABILITY
    UPDATE_LOCATION = "updateLocation"
    GO_ON_DUTY = "goOnDuty"
    GO_OFF_DUTY = "goOffDuty"


# ==== SERVER → CLIENT ====


class inbound_event(str, enum.Enum):
    # RIDE ROOM
    RIDE_SNAPSHOT = "rideData"
    RIDE_UPDATE = "rideUpdate"
    RIDE_ACCEPTED = "rideAccepted"
    RIDE_COMPLETED = "rideCompleted"
    RIDE_CANCELED = "rideCanceled"
    COUNTERPARTY_CANCELLED = "riderCancelledRide"
    COUNTERPARTY_LOCATION = "riderLocationUpdate"

    # OFFERS
    ALL_OPEN_OFFERS = "allSearchingRides"
    NEW_RIDE_REQUEST = "newRideRequest"
    RIDE_OFFER = "rideOffer"
    OFFER_UPDATED = "rideOfferUpdated"
    OFFER_CANCELED = "rideOfferCanceled"
    OFFER_TIMEOUT = "rideOfferTimeout"

    # SESSION
    ERROR = "error"
    ACCOUNT_SUSPENDED = "accountDisapproved"

    # CHAT
    NEW_MESSAGE = "newMessage"
    UNREAD_COUNT_UPDATE = "unreadCountUpdate"
    MESSAGES_READ = "messagesRead"
    TYPING = "userTyping"
    MESSAGES_FETCHED = "messagesFetched"
    MESSAGES_ERROR = "messagesError"
    MARK_READ_SUCCESS = "markReadSuccess"


class connection_state(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class Frame:
    event: str
    payload: Any = None


def event_name(event: Any) -> str:
    if isinstance(event, enum.Enum):
        return str(event.value)
    return str(event)
