from __future__ import annotations

import dataclasses
import logging
from typing import Any, List, Optional

from PyQt6.QtCore import QObject, pyqtSignal

from .core.constants import SEARCH_PROBE_INTERVAL, TERMINAL_COUNTDOWN
from .event_loop import Scheduler, TimerHandle
from .models import Coords, Ride, RideStatus, Role, entity_id, extract_ride_id
from .protocol import connection_state, inbound_event, outbound_event

logger = logging.getLogger(__name__)


class RideSessionController(QObject):
    """
    Live view of one ride for either party.

    The controller subscribes to the ride room, keeps the latest `Ride` it was
    sent, and decides when the screen showing it should go away.  Events for
    any other ride are dropped, statuses never move backwards, and a terminal
    status reached mid-session is shown for ``terminal_countdown`` seconds
    before ``navigate_home`` fires.
    """

    ride_changed = pyqtSignal(object)
    counterparty_moved = pyqtSignal(object)
    countdown_started = pyqtSignal(str, float)
    navigate_home = pyqtSignal(str)
    notice = pyqtSignal(str, str)

    def __init__(
        self,
        transport: Any,
        scheduler: Scheduler,
        *,
        role: Role | str,
        rest_api: Any = None,
        search_probe_interval: float = SEARCH_PROBE_INTERVAL,
        terminal_countdown: float = TERMINAL_COUNTDOWN,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self._transport = transport
        self._scheduler = scheduler
        self._role = Role.parse(role)
        self._rest_api = rest_api
        self._probe_interval = search_probe_interval
        self._countdown_seconds = terminal_countdown
        self._ride_id: Optional[str] = None
        self._ride: Optional[Ride] = None
        self._initial_load = True
        self._left = False
        self._counterparty_id: Optional[str] = None
        self._counterparty_coords: Optional[Coords] = None
        self._listeners = None
        self._probe: Optional[TimerHandle] = None
        self._countdown: Optional[TimerHandle] = None
        transport.state_changed.connect(self._on_transport_state)

    # Public API -----------------------------------------------------------------
    @property
    def role(self) -> Role:
        return self._role

    @property
    def ride_id(self) -> Optional[str]:
        return self._ride_id

    @property
    def ride(self) -> Optional[Ride]:
        return self._ride

    @property
    def status(self) -> Optional[RideStatus]:
        return self._ride.status if self._ride else None

    @property
    def counterparty_id(self) -> Optional[str]:
        return self._counterparty_id

    @property
    def counterparty_coords(self) -> Optional[Coords]:
        return self._counterparty_coords

    @property
    def active(self) -> bool:
        return self._ride_id is not None

    @property
    def countdown_active(self) -> bool:
        return self._countdown is not None and self._countdown.active

    def subscribe(self, ride_id: str) -> None:
        ride_id = str(ride_id)
        if self._ride_id is not None:
            self.unsubscribe()
        self._ride_id = ride_id
        self._ride = None
        self._initial_load = True
        self._left = False

        listeners = self._transport.listeners()
        listeners.on(inbound_event.RIDE_SNAPSHOT, self._on_snapshot)
        listeners.on(inbound_event.RIDE_UPDATE, self._on_update)
        listeners.on(inbound_event.RIDE_ACCEPTED, self._on_update)
        listeners.on(inbound_event.RIDE_COMPLETED, self._on_update)
        listeners.on(inbound_event.RIDE_CANCELED, self._on_canceled)
        listeners.on(inbound_event.COUNTERPARTY_CANCELLED, self._on_counterparty_cancelled)
        listeners.on(inbound_event.COUNTERPARTY_LOCATION, self._on_counterparty_location)
        listeners.on(inbound_event.ERROR, self._on_error)
        self._listeners = listeners

        logger.info("Subscribing to ride %s", ride_id)
        self._transport.emit(outbound_event.SUBSCRIBE_RIDE, ride_id)

    def unsubscribe(self) -> None:
        ride_id = self._ride_id
        if ride_id is None:
            return
        self._leave_room()
        if self._counterparty_id is not None:
            self._transport.emit(
                outbound_event.UNSUBSCRIBE_COUNTERPARTY_LOCATION, self._counterparty_id
            )
        if self._listeners is not None:
            self._listeners.clear()
            self._listeners = None
        self._stop_probe()
        self._cancel_countdown()
        self._ride_id = None
        self._ride = None
        self._counterparty_id = None
        self._counterparty_coords = None
        logger.info("Unsubscribed from ride %s", ride_id)

    def dismiss(self) -> None:
        """Leave a finished ride now instead of waiting for the countdown."""
        if self._ride_id is not None:
            self._close("dismissed")

    def cancel(self, reason: str = "") -> bool:
        if self._ride_id is None:
            return False
        return self._transport.emit(
            outbound_event.CANCEL_RIDE, {"rideId": self._ride_id, "reason": reason}
        )

    def refresh(self) -> None:
        """Re-read the ride over REST; the answer is dropped if the ride changed meanwhile."""
        if self._rest_api is None or self._ride_id is None:
            return
        captured = self._ride_id
        self._scheduler.submit(
            self._rest_api.fetch_active_rides,
            on_result=lambda rides: self._apply_refresh(captured, rides),
            on_error=lambda exc: logger.warning("Ride refresh for %s failed: %s", captured, exc),
        )

    # Event handlers -------------------------------------------------------------
    def _on_snapshot(self, payload: Any) -> None:
        ride = self._ride_for_me(payload, "snapshot")
        if ride is None:
            return
        if self._initial_load and ride.is_terminal:
            logger.info("Ride %s already %s on initial load", ride.id, ride.status.value)
            self._close("already_finished")
            return
        self._initial_load = False
        if self._apply(ride) and ride.status is RideStatus.SEARCHING:
            self._transport.emit(outbound_event.SEARCH_RIDER, self._ride_id)

    def _on_update(self, payload: Any) -> None:
        ride = self._ride_for_me(payload, "update")
        if ride is not None:
            self._apply(ride)

    def _on_canceled(self, payload: Any) -> None:
        if not self._is_current(payload):
            logger.debug("Ignoring cancellation for another ride: %s", extract_ride_id(payload))
            return
        ride = Ride.from_payload(payload.get("ride")) if isinstance(payload, dict) else None
        if ride is not None and ride.id == self._ride_id:
            self._apply(ride)
            return
        self.notice.emit("Ride canceled", "Ride was canceled")
        self._close("canceled")

    def _on_counterparty_cancelled(self, payload: Any) -> None:
        if not self._is_current(payload):
            return
        name = payload.get("riderName") if isinstance(payload, dict) else None
        self.notice.emit(
            "Rider Cancelled Ride",
            f"{name or 'Your rider'} has cancelled the ride. "
            "You will be redirected to the home screen.",
        )
        self._leave_room()
        self._start_countdown()

    def _on_counterparty_location(self, payload: Any) -> None:
        if self._counterparty_id is None or not isinstance(payload, dict):
            return
        sender = entity_id(payload.get("riderId") or payload.get("userId"))
        if sender is not None and sender != self._counterparty_id:
            logger.debug("Ignoring location for %s, following %s", sender, self._counterparty_id)
            return
        coords = Coords.from_payload(payload.get("coords"))
        if coords is None:
            return
        self._counterparty_coords = coords
        self.counterparty_moved.emit(coords)

    def _on_transport_state(self, state: str) -> None:
        # Room membership does not survive a dropped connection.
        if state != connection_state.CONNECTED.value or self._ride_id is None or self._left:
            return
        logger.info("Connection restored, resubscribing to ride %s", self._ride_id)
        self._transport.emit(outbound_event.SUBSCRIBE_RIDE, self._ride_id)
        if self._counterparty_id is not None:
            self._transport.emit(outbound_event.SUBSCRIBE_COUNTERPARTY_LOCATION, self._counterparty_id)

    def _on_error(self, payload: Any) -> None:
        message = ""
        if isinstance(payload, dict):
            message = str(payload.get("message") or "")
        elif payload:
            message = str(payload)
        logger.error("Ride error for %s: %s", self._ride_id, message or payload)
        self.notice.emit("Ride error", message or "Failed to load ride data")
        self._close("error")

    # State ----------------------------------------------------------------------
    def _ride_for_me(self, payload: Any, kind: str) -> Optional[Ride]:
        if not self._is_current(payload):
            logger.debug("Ignoring %s for another ride: %s", kind, extract_ride_id(payload))
            return None
        ride = Ride.from_payload(payload)
        if ride is None or ride.id != self._ride_id:
            return None
        return ride

    def _is_current(self, payload: Any) -> bool:
        return self._ride_id is not None and extract_ride_id(payload) == self._ride_id

    def _apply(self, ride: Ride) -> bool:
        current = self._ride
        if current is not None and current.status is not None:
            if ride.status is None:
                ride = dataclasses.replace(ride, status=current.status)
            elif ride.status.rank < current.status.rank:
                logger.debug(
                    "Discarding out-of-order %s for ride %s (at %s)",
                    ride.status.value,
                    ride.id,
                    current.status.value,
                )
                return False
        self._ride = ride
        self._sync_counterparty(ride)
        self._sync_probe(ride)
        self.ride_changed.emit(ride)
        if ride.is_terminal:
            self._leave_room()
            self._start_countdown()
        return True

    def _apply_refresh(self, captured: str, rides: List[Any]) -> None:
        if captured != self._ride_id:
            logger.debug("Dropping stale refresh for ride %s", captured)
            return
        for payload in rides or []:
            ride = Ride.from_payload(payload)
            if ride is not None and ride.id == captured:
                self._apply(ride)
                return
        logger.debug("Ride %s is no longer active on the server", captured)

    def _sync_counterparty(self, ride: Ride) -> None:
        if self._role is not Role.REQUESTER:
            return
        new_id = ride.fulfiller_id
        if new_id == self._counterparty_id:
            return
        if self._counterparty_id is not None:
            self._transport.emit(
                outbound_event.UNSUBSCRIBE_COUNTERPARTY_LOCATION, self._counterparty_id
            )
        self._counterparty_id = new_id
        self._counterparty_coords = None
        if new_id is not None:
            logger.info("Subscribing to rider location %s", new_id)
            self._transport.emit(outbound_event.SUBSCRIBE_COUNTERPARTY_LOCATION, new_id)

    def _sync_probe(self, ride: Ride) -> None:
        if ride.status is RideStatus.SEARCHING:
            if self._probe is None:
                self._probe = self._scheduler.call_every(self._probe_interval, self._probe_ride)
        else:
            self._stop_probe()

    def _probe_ride(self) -> None:
        if self._ride_id is not None:
            self._transport.emit(outbound_event.SUBSCRIBE_RIDE, self._ride_id)

    def _stop_probe(self) -> None:
        if self._probe is not None:
            self._probe.cancel()
            self._probe = None

    def _start_countdown(self) -> None:
        if self.countdown_active or self._ride_id is None:
            return
        self._stop_probe()
        self._countdown = self._scheduler.call_later(
            self._countdown_seconds, self._close, "finished"
        )
        self.countdown_started.emit(self._ride_id, self._countdown_seconds)

    def _cancel_countdown(self) -> None:
        if self._countdown is not None:
            self._countdown.cancel()
            self._countdown = None

    def _leave_room(self) -> None:
        if self._left or self._ride_id is None:
            return
        self._left = True
        self._transport.emit(outbound_event.LEAVE_RIDE, self._ride_id)

    def _close(self, reason: str) -> None:
        self.unsubscribe()
        self.navigate_home.emit(reason)
