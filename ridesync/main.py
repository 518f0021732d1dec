"""Headless entry point: connect one identity and log what the server pushes."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import List, Optional

from PyQt6.QtCore import QCoreApplication

from .client import DispatchClient
from .core.config import ConfigError, Settings
from .core.constants import VEHICLE_TYPES
from .core.logger import configure_logging
from .event_loop import QtScheduler
from .models import Coords, Role
from .rest_api import MemoryCredentialStore

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a headless ride dispatch client.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--access-token", required=True, help="Access token for the handshake.")
    parser.add_argument("--refresh-token", default=None, help="Refresh token (optional).")
    parser.add_argument("--user-id", default=None, help="Own user ID, used to spot own chat messages.")
    parser.add_argument(
        "--role",
        default="customer",
        choices=["customer", "rider"],
        help="Which side of the ride to run (default: %(default)s).",
    )
    parser.add_argument("--ride-id", default=None, help="Ride to follow (customer role).")
    parser.add_argument(
        "--vehicle", default=None, choices=VEHICLE_TYPES, help="Registered vehicle type (rider role)."
    )
    parser.add_argument("--latitude", type=float, default=None, help="Own latitude (rider role).")
    parser.add_argument("--longitude", type=float, default=None, help="Own longitude (rider role).")
    parser.add_argument("--base-url", default=None, help="REST root (default from environment).")
    parser.add_argument("--socket-host", default=None, help="Push channel host.")
    parser.add_argument("--socket-port", type=int, default=None, help="Push channel port.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Log level for ridesync loggers (default: %(default)s).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.log_level)
    try:
        settings = Settings.from_env(
            base_url=args.base_url,
            socket_host=args.socket_host,
            socket_port=args.socket_port,
        )
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    app = QCoreApplication(sys.argv[:1])
    scheduler = QtScheduler()
    credentials = MemoryCredentialStore(
        access_token=args.access_token,
        refresh_token=args.refresh_token,
        user_id=args.user_id,
        role=Role.parse(args.role).value,
    )
    client = DispatchClient(settings, scheduler, credential_store=credentials)
    client.transport.state_changed.connect(lambda state: logger.info("Connection: %s", state))
    client.transport.account_suspended.connect(lambda reason: app.quit())
    client.transport.auth_failed.connect(lambda reason: app.quit())
    client.broker.subscribe(lambda count: logger.info("Unread messages: %s", count))

    if args.role == Role.FULFILLER.value:
        feed = client.offer_reconciler(vehicle_type=args.vehicle)
        feed.offers_changed.connect(
            lambda offers: logger.info("Open offers: %s", [offer.id for offer in offers])
        )
        feed.health_changed.connect(lambda state: logger.info("Offer feed health: %s", state))
        feed.notice.connect(lambda title, text: logger.warning("%s: %s", title, text))
        reporter = client.location_reporter()

        def _on_state(state: str) -> None:
            if state != "connected":
                return
            if args.latitude is not None and args.longitude is not None:
                reporter.go_on_duty(Coords(args.latitude, args.longitude))
            feed.activate()

        client.transport.state_changed.connect(_on_state)
    else:
        session = client.ride_session()
        session.ride_changed.connect(
            lambda ride: logger.info("Ride %s: %s", ride.id, ride.status.value if ride.status else "?")
        )
        session.counterparty_moved.connect(
            lambda coords: logger.info("Rider at %.5f,%.5f", coords.latitude, coords.longitude)
        )
        session.notice.connect(lambda title, text: logger.warning("%s: %s", title, text))
        session.navigate_home.connect(lambda reason: app.quit())

        def _on_state(state: str) -> None:
            if state != "connected" or session.active:
                return
            if args.ride_id:
                session.subscribe(args.ride_id)
            else:
                client.resume_active_ride(session.subscribe)

        client.transport.state_changed.connect(_on_state)

    signal.signal(signal.SIGINT, lambda *_: app.quit())
    client.start()
    exit_code = app.exec()
    client.shutdown()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
