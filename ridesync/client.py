"""
Composition root for one authenticated identity.

`DispatchClient` owns the shared transport, the REST client and the unread
counter, and hands them to the per-screen controllers it builds.  Nothing in
the package keeps module-level state, so two clients can run side by side on
the same scheduler.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .chat import ChatRoomSession
from .core.config import Settings
from .event_loop import Scheduler
from .location import LocationReporter
from .notifications import NotificationBroker, UnreadCounterBinding
from .offers import OfferReconciler
from .rest_api import MemoryCredentialStore, RestAPI
from .ride_session import RideSessionController
from .transport import Connector, SocketConnector, TransportSession

logger = logging.getLogger(__name__)


class DispatchClient:
    def __init__(
        self,
        settings: Settings,
        scheduler: Scheduler,
        *,
        credential_store: MemoryCredentialStore,
        connector: Optional[Connector] = None,
        rest_api: Any = None,
    ) -> None:
        self.settings = settings
        self.scheduler = scheduler
        self.credentials = credential_store
        self.rest_api = rest_api or RestAPI(
            settings.base_url,
            credential_store=credential_store,
            timeout=settings.request_timeout,
        )
        connector = connector or SocketConnector(
            settings.socket_host, settings.socket_port, timeout=settings.connect_timeout
        )
        self.transport = TransportSession(
            scheduler,
            connector,
            credential_store=credential_store,
            refresh_credential=self.rest_api.refresh_tokens,
            reconnect_initial=settings.reconnect_initial,
            reconnect_max=settings.reconnect_max,
        )
        self.broker = NotificationBroker(self.rest_api, scheduler, role=credential_store.role)
        self.unread = UnreadCounterBinding(
            self.broker,
            self.transport,
            scheduler,
            own_user_id=credential_store.user_id,
            own_role=credential_store.role,
            refresh_interval=settings.unread_refresh_interval,
        )
        self.transport.account_suspended.connect(self._on_account_suspended)
        self.transport.auth_failed.connect(self._on_auth_failed)

    @property
    def role(self) -> Optional[str]:
        return self.credentials.role

    def start(self) -> None:
        logger.info("Starting dispatch client for %s (%s)", self.credentials.user_id, self.role)
        self.transport.connect()
        self.unread.attach()

    def shutdown(self) -> None:
        self.unread.detach()
        self.transport.disconnect()
        logger.info("Dispatch client stopped")

    # Factories ------------------------------------------------------------------
    def ride_session(self) -> RideSessionController:
        return RideSessionController(
            self.transport,
            self.scheduler,
            role=self.role or "customer",
            rest_api=self.rest_api,
            search_probe_interval=self.settings.search_probe_interval,
            terminal_countdown=self.settings.terminal_countdown,
        )

    def offer_reconciler(self, vehicle_type: Optional[str] = None) -> OfferReconciler:
        return OfferReconciler(
            self.transport,
            self.rest_api,
            self.scheduler,
            vehicle_type=vehicle_type,
            heartbeat_interval=self.settings.heartbeat_interval,
            rest_interval=self.settings.rest_backup_interval,
            degraded_after=self.settings.degraded_after,
            push_timeout_factor=self.settings.push_timeout_factor,
            offer_ttl=self.settings.offer_ttl,
        )

    def chat_room(self) -> ChatRoomSession:
        return ChatRoomSession(
            self.transport,
            self.scheduler,
            own_user_id=self.credentials.user_id,
            own_role=self.role,
            broker=self.broker,
            typing_idle=self.settings.typing_idle,
        )

    def location_reporter(self) -> LocationReporter:
        return LocationReporter(
            self.transport,
            self.scheduler,
            min_interval=self.settings.location_update_interval,
        )

    def resume_active_ride(self, on_found: Callable[[str], Any]) -> None:
        """Look up the first active ride and hand its ID to ``on_found``."""

        def _found(rides: List[Dict[str, Any]]) -> None:
            ride_ids = [str(ride.get("_id")) for ride in rides if ride.get("_id")]
            if not ride_ids:
                logger.info("No active rides found")
                return
            logger.info("Found %s active ride(s), resuming %s", len(ride_ids), ride_ids[0])
            on_found(ride_ids[0])

        self.scheduler.submit(
            self.rest_api.fetch_active_rides,
            on_result=_found,
            on_error=lambda exc: logger.error("Error looking up active rides: %s", exc),
        )

    # Session events -------------------------------------------------------------
    def _on_account_suspended(self, reason: str) -> None:
        self.unread.detach()
        self.broker.reset()

    def _on_auth_failed(self, reason: str) -> None:
        logger.error("Authentication failed: %s", reason)
        self.unread.detach()
