from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .core.constants import LOCATION_MIN_DISTANCE_M, LOCATION_UPDATE_INTERVAL
from .event_loop import Scheduler
from .models import Coords
from .protocol import outbound_event

logger = logging.getLogger(__name__)


class LocationReporter:
    """Publishes the fulfiller's own position and duty status."""

    def __init__(
        self,
        transport: Any,
        scheduler: Scheduler,
        *,
        min_interval: float = LOCATION_UPDATE_INTERVAL,
        min_distance_m: float = LOCATION_MIN_DISTANCE_M,
    ) -> None:
        self._transport = transport
        self._scheduler = scheduler
        self._min_interval = min_interval
        self._min_distance_m = min_distance_m
        self._on_duty = False
        self._last_sent: Optional[Coords] = None
        self._last_sent_at: Optional[float] = None

    @property
    def on_duty(self) -> bool:
        return self._on_duty

    @property
    def last_sent(self) -> Optional[Coords]:
        return self._last_sent

    def go_on_duty(self, coords: Coords) -> bool:
        sent = self._transport.emit(outbound_event.GO_ON_DUTY, self._payload(coords))
        if sent:
            self._on_duty = True
            self._remember(coords)
        return sent

    def go_off_duty(self) -> bool:
        self._on_duty = False
        self._last_sent = None
        self._last_sent_at = None
        return self._transport.emit(outbound_event.GO_OFF_DUTY)

    def report(self, coords: Coords, ride_id: Optional[str] = None, force: bool = False) -> bool:
        if not force and not self._should_report(coords):
            return False
        payload = self._payload(coords)
        if ride_id:
            payload["rideId"] = ride_id
        sent = self._transport.emit(outbound_event.UPDATE_LOCATION, payload)
        if sent:
            self._remember(coords)
        return sent

    def _should_report(self, coords: Coords) -> bool:
        if self._last_sent is None or self._last_sent_at is None:
            return True
        if self._scheduler.now() - self._last_sent_at >= self._min_interval:
            return True
        moved = coords.distance_km(self._last_sent)
        if moved is None:
            return True
        return moved * 1000.0 >= self._min_distance_m

    def _remember(self, coords: Coords) -> None:
        self._last_sent = coords
        self._last_sent_at = self._scheduler.now()

    def _payload(self, coords: Coords) -> Dict[str, Any]:
        return {
            "latitude": coords.latitude,
            "longitude": coords.longitude,
            "heading": coords.heading,
        }
