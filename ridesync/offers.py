"""
Open-offer feed for an on-duty fulfiller.

The feed is fed by two channels.  The push channel is asked for the full batch
every heartbeat and also streams single-offer events; the REST channel is a
rate-limited fallback that only fires when the push channel has gone quiet.
`OfferReconciler` merges both into one ordered set keyed by ride ID.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from PyQt6.QtCore import QObject, pyqtSignal

from .core.constants import (
    DEGRADED_AFTER_HEARTBEATS,
    HEARTBEAT_INTERVAL,
    OFFER_TTL,
    PUSH_TIMEOUT_FACTOR,
    REST_BACKUP_INTERVAL,
)
from .event_loop import Scheduler, TimerHandle
from .models import ConnectionHealth, Coords, HealthState, PendingOffer, Ride, extract_ride_id
from .protocol import inbound_event, outbound_event

logger = logging.getLogger(__name__)


class OfferReconciler(QObject):
    offers_changed = pyqtSignal(list)
    offer_expired = pyqtSignal(str)
    offer_accepted = pyqtSignal(object)
    health_changed = pyqtSignal(str)
    notice = pyqtSignal(str, str)

    def __init__(
        self,
        transport: Any,
        rest_api: Any,
        scheduler: Scheduler,
        *,
        vehicle_type: Optional[str] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        rest_interval: float = REST_BACKUP_INTERVAL,
        degraded_after: float = DEGRADED_AFTER_HEARTBEATS,
        push_timeout_factor: float = PUSH_TIMEOUT_FACTOR,
        offer_ttl: float = OFFER_TTL,
        recent_confirmation_window: Optional[float] = None,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self._transport = transport
        self._rest_api = rest_api
        self._scheduler = scheduler
        self.vehicle_type = vehicle_type
        self._heartbeat_interval = heartbeat_interval
        self._rest_interval = rest_interval
        self._degraded_after = degraded_after
        self._push_timeout = heartbeat_interval * push_timeout_factor
        self._offer_ttl = offer_ttl
        if recent_confirmation_window is None:
            recent_confirmation_window = degraded_after * heartbeat_interval
        self._confirmation_window = recent_confirmation_window

        self._offers: Dict[str, PendingOffer] = {}
        self._dismissed: Set[str] = set()
        self._push_confirmed: Dict[str, float] = {}
        self._expiry: Dict[str, TimerHandle] = {}
        self._health = ConnectionHealth()
        self._fulfiller_location: Optional[Coords] = None

        self._active = False
        self._generation = 0
        self._rest_in_flight = False
        self._listeners = None
        self._heartbeat: Optional[TimerHandle] = None
        self._rest_timer: Optional[TimerHandle] = None
        self._push_deadline: Optional[TimerHandle] = None

    # Public API -----------------------------------------------------------------
    @property
    def active(self) -> bool:
        return self._active

    @property
    def offers(self) -> List[PendingOffer]:
        return list(self._offers.values())

    @property
    def offer_ids(self) -> List[str]:
        return list(self._offers)

    @property
    def health(self) -> HealthState:
        return self._health.state

    @property
    def degraded(self) -> bool:
        return self._health.channel_failed

    def get(self, ride_id: str) -> Optional[PendingOffer]:
        return self._offers.get(str(ride_id))

    def is_dismissed(self, ride_id: str) -> bool:
        return str(ride_id) in self._dismissed

    def activate(self) -> None:
        if self._active:
            return
        self._active = True
        self._generation += 1
        self._clear_state()
        self._health.reset(self._scheduler.now())
        self.health_changed.emit(self._health.state.value)

        listeners = self._transport.listeners()
        listeners.on(inbound_event.ALL_OPEN_OFFERS, self._on_batch)
        listeners.on(inbound_event.NEW_RIDE_REQUEST, self._on_new_request)
        listeners.on(inbound_event.RIDE_OFFER, self._on_offer)
        listeners.on(inbound_event.OFFER_UPDATED, self._on_offer_updated)
        listeners.on(inbound_event.OFFER_CANCELED, self._on_offer_withdrawn)
        listeners.on(inbound_event.OFFER_TIMEOUT, self._on_offer_withdrawn)
        listeners.on(inbound_event.RIDE_ACCEPTED, self._on_accepted)
        listeners.on(inbound_event.ERROR, self._on_error)
        self._listeners = listeners

        logger.info("Going available: requesting open offers on both channels")
        self._transport.emit(outbound_event.REQUEST_ALL_OPEN_OFFERS)
        self._fetch_rest()
        self._heartbeat = self._scheduler.call_every(self._heartbeat_interval, self._send_heartbeat)
        self._rest_timer = self._scheduler.call_every(self._rest_interval, self._rest_tick)
        self.offers_changed.emit([])

    def deactivate(self) -> None:
        if not self._active:
            return
        self._active = False
        self._generation += 1
        for handle in (self._heartbeat, self._rest_timer, self._push_deadline):
            if handle is not None:
                handle.cancel()
        self._heartbeat = self._rest_timer = self._push_deadline = None
        if self._listeners is not None:
            self._listeners.clear()
            self._listeners = None
        self._clear_state()
        logger.info("Going unavailable: offer feed cleared")
        self.offers_changed.emit([])

    def dismiss(self, ride_id: str) -> None:
        ride_id = str(ride_id)
        self._dismissed.add(ride_id)
        if self._remove(ride_id):
            self._changed()

    def decline(self, ride_id: str, reason: Optional[str] = None) -> bool:
        sent = self._transport.emit(
            outbound_event.CANCEL_RIDE,
            {"rideId": str(ride_id), "reason": reason or "Declined by rider"},
        )
        self.dismiss(ride_id)
        return sent

    def can_accept(self, ride_id: str) -> bool:
        offer = self.get(ride_id)
        return offer is not None and offer.is_actionable_for(self.vehicle_type)

    def accept(self, ride_id: str) -> bool:
        offer = self.get(ride_id)
        if offer is None:
            self.notice.emit("Ride unavailable", "This ride is no longer available.")
            return False
        if not offer.is_actionable_for(self.vehicle_type):
            self.notice.emit(
                "Vehicle Type Mismatch",
                f"This ride requires a {offer.vehicle}, but your vehicle type is "
                f"{self.vehicle_type}. Please update your profile or choose a matching ride.",
            )
            return False
        logger.info("Accepting ride offer %s", offer.id)
        return self._transport.emit(outbound_event.ACCEPT_OFFER, {"rideId": offer.id})

    def set_fulfiller_location(self, coords: Optional[Coords]) -> None:
        self._fulfiller_location = coords
        if not self._offers:
            return
        self._offers = {
            ride_id: PendingOffer.build(
                offer.ride, received_at=offer.received_at, fulfiller_location=coords
            )
            for ride_id, offer in self._offers.items()
        }
        self._changed()

    # Timers -------------------------------------------------------------------------
    def _send_heartbeat(self) -> None:
        self._transport.emit(outbound_event.REQUEST_ALL_OPEN_OFFERS)
        # The deadline is longer than the heartbeat; keep the pending one.
        if self._push_deadline is None:
            self._push_deadline = self._scheduler.call_later(
                self._push_timeout, self._check_push_deadline
            )

    def _check_push_deadline(self) -> None:
        self._push_deadline = None
        if not self._active:
            return
        silence = self._health.silence(self._scheduler.now())
        if silence > self._push_timeout:
            logger.warning("Push response timeout (%.1fs) - falling back to REST", silence)
            self._mark_failed()
            self._fetch_rest()

    def _rest_tick(self) -> None:
        silence = self._health.silence(self._scheduler.now())
        if self._health.channel_failed:
            self._fetch_rest()
        elif silence > self._degraded_after * self._heartbeat_interval:
            logger.info("No push for %.1fs, using REST backup", silence)
            self._mark_failed()
            self._fetch_rest()

    # REST channel -------------------------------------------------------------------
    def _fetch_rest(self) -> None:
        if self._rest_in_flight:
            return
        self._rest_in_flight = True
        generation = self._generation
        issued_at = self._scheduler.now()
        self._scheduler.submit(
            self._rest_api.fetch_open_offers,
            on_result=lambda rides: self._on_rest_result(generation, issued_at, rides),
            on_error=lambda exc: self._on_rest_error(generation, exc),
        )

    def _on_rest_result(self, generation: int, issued_at: float, rides: Any) -> None:
        if generation != self._generation or not self._active:
            logger.debug("Discarding REST offers from an earlier activation")
            return
        self._rest_in_flight = False
        self._merge_rest(issued_at, rides or [])

    def _on_rest_error(self, generation: int, exc: BaseException) -> None:
        if generation != self._generation:
            return
        self._rest_in_flight = False
        logger.error("REST backup: error fetching rides: %s", exc)

    def _merge_rest(self, issued_at: float, payloads: Iterable[Any]) -> None:
        now = self._scheduler.now()
        authoritative = self._health.channel_failed
        rides = [ride for ride in self._parse(payloads) if ride.id not in self._dismissed]
        if not rides and not authoritative:
            logger.debug("Ignoring empty REST batch while the push channel is healthy")
            return

        changed = False
        seen = set()
        for ride in rides:
            seen.add(ride.id)
            confirmed = self._push_confirmed.get(ride.id)
            if ride.id in self._offers and confirmed is not None and confirmed >= issued_at:
                continue
            changed = self._upsert(ride) or changed

        for ride_id in list(self._offers):
            if ride_id in seen:
                continue
            confirmed = self._push_confirmed.get(ride_id)
            recently_confirmed = confirmed is not None and now - confirmed <= self._confirmation_window
            if authoritative or not recently_confirmed:
                changed = self._remove(ride_id) or changed
        logger.info("REST backup: merged %s rides (authoritative=%s)", len(rides), authoritative)
        if changed:
            self._changed()

    # Push channel -------------------------------------------------------------------
    def _on_batch(self, payload: Any) -> None:
        self._mark_push()
        now = self._scheduler.now()
        rides = [
            ride
            for ride in self._parse(payload if isinstance(payload, list) else [])
            if ride.id not in self._dismissed
        ]
        incoming = {ride.id: ride for ride in rides}
        changed = False
        for ride_id in list(self._offers):
            if ride_id not in incoming:
                changed = self._remove(ride_id) or changed
        for ride in rides:
            changed = self._upsert(ride) or changed
            self._push_confirmed[ride.id] = now
        logger.info("Received %s searching rides via push", len(rides))
        if changed:
            self._changed()

    def _on_new_request(self, payload: Any) -> None:
        self._mark_push()
        ride = Ride.from_payload(payload)
        if ride is None:
            logger.warning("Received invalid ride request data")
            return
        self._dismissed.discard(ride.id)
        self._push_confirmed[ride.id] = self._scheduler.now()
        if self._upsert(ride):
            self._changed()

    def _on_offer(self, payload: Any) -> None:
        self._mark_push()
        ride = Ride.from_payload(payload)
        if ride is None or ride.id in self._dismissed:
            return
        self._push_confirmed[ride.id] = self._scheduler.now()
        if ride.id not in self._offers and self._upsert(ride):
            self._changed()

    def _on_offer_updated(self, payload: Any) -> None:
        self._mark_push()
        ride = Ride.from_payload(payload)
        if ride is None or ride.id not in self._offers:
            return
        self._push_confirmed[ride.id] = self._scheduler.now()
        if self._upsert(ride):
            self._changed()

    def _on_offer_withdrawn(self, payload: Any) -> None:
        self._mark_push()
        ride_id = extract_ride_id(payload)
        if ride_id and self._remove(ride_id):
            self._changed()

    def _on_accepted(self, payload: Any) -> None:
        self._mark_push()
        if isinstance(payload, (str, int)):
            if self._remove(str(payload)):
                self._changed()
            return
        ride = Ride.from_payload(payload)
        if ride is None:
            logger.warning("Received invalid ride acceptance data")
            return
        logger.info("Ride %s accepted by us", ride.id)
        if self._remove(ride.id):
            self._changed()
        self.offer_accepted.emit(ride)

    def _on_error(self, payload: Any) -> None:
        message = payload.get("message") if isinstance(payload, dict) else payload
        self.notice.emit("Request failed", str(message or "The server rejected the request."))

    # Internal helpers ---------------------------------------------------------------
    def _parse(self, payloads: Iterable[Any]) -> List[Ride]:
        rides: List[Ride] = []
        seen = set()
        for payload in payloads:
            ride = Ride.from_payload(payload)
            if ride is None or ride.id in seen:
                continue
            seen.add(ride.id)
            rides.append(ride)
        return rides

    def _upsert(self, ride: Ride) -> bool:
        existing = self._offers.get(ride.id)
        if existing is not None and existing.ride == ride:
            return False
        received_at = existing.received_at if existing else self._scheduler.now()
        self._offers[ride.id] = PendingOffer.build(
            ride, received_at=received_at, fulfiller_location=self._fulfiller_location
        )
        if existing is None:
            self._expiry[ride.id] = self._scheduler.call_later(self._offer_ttl, self._expire, ride.id)
        return True

    def _remove(self, ride_id: str) -> bool:
        handle = self._expiry.pop(ride_id, None)
        if handle is not None:
            handle.cancel()
        self._push_confirmed.pop(ride_id, None)
        return self._offers.pop(ride_id, None) is not None

    def _expire(self, ride_id: str) -> None:
        self._expiry.pop(ride_id, None)
        if ride_id not in self._offers:
            return
        logger.info("Offer %s expired locally", ride_id)
        self._remove(ride_id)
        self._dismissed.add(ride_id)
        self.offer_expired.emit(ride_id)
        self._changed()

    def _mark_push(self) -> None:
        if self._health.mark_push(self._scheduler.now()):
            self.health_changed.emit(self._health.state.value)

    def _mark_failed(self) -> None:
        if self._health.mark_failed():
            self.health_changed.emit(self._health.state.value)
            self.notice.emit(
                "Connection Issue",
                "Having trouble connecting to the server. Switching to backup mode "
                "to ensure you don't miss any rides.",
            )

    def _clear_state(self) -> None:
        for handle in self._expiry.values():
            handle.cancel()
        self._expiry.clear()
        self._offers.clear()
        self._dismissed.clear()
        self._push_confirmed.clear()
        self._rest_in_flight = False

    def _changed(self) -> None:
        self.offers_changed.emit(self.offers)
