"""
Tests for the live ride view.

Run with:
    python -m unittest tests.test_ride_session
"""

from __future__ import annotations

import unittest

from ridesync.models import Coords, RideStatus
from ridesync.ride_session import RideSessionController
from ridesync.rest_api import RestAPIError
from tests.support import FakeRestAPI, Harness, record, ride_payload

RIDER_A = {"_id": "rider-a", "firstName": "Ana", "lastName": "Cruz"}
RIDER_B = {"_id": "rider-b", "firstName": "Ben"}


class RideSessionTestCase(unittest.TestCase):
    role = "customer"

    def setUp(self) -> None:
        self.harness = Harness(role=self.role).connect()
        self.scheduler = self.harness.scheduler
        self.rest = FakeRestAPI()
        self.session = RideSessionController(
            self.harness.transport,
            self.scheduler,
            role=self.role,
            rest_api=self.rest,
            search_probe_interval=3.0,
            terminal_countdown=5.0,
        )
        self.changes = record(self.session.ride_changed)
        self.moves = record(self.session.counterparty_moved)
        self.countdowns = record(self.session.countdown_started)
        self.home = record(self.session.navigate_home)
        self.notices = record(self.session.notice)

    def subscribe(self, ride_id: str = "R1") -> None:
        self.session.subscribe(ride_id)

    def push(self, event: str, payload) -> None:
        self.harness.push(event, payload)


class SubscribeTest(RideSessionTestCase):
    def test_subscribe_joins_the_ride_room(self) -> None:
        self.subscribe()
        self.assertTrue(self.session.active)
        self.assertEqual(self.harness.sent(), [("subscribeRide", "R1")])

    def test_initial_terminal_snapshot_navigates_home_without_countdown(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "COMPLETED", rider=RIDER_A))
        self.assertEqual(self.home, [("already_finished",)])
        self.assertEqual(self.countdowns, [])
        self.assertEqual(self.changes, [])
        self.assertFalse(self.session.active)
        self.assertEqual(self.harness.sent_events(), ["subscribeRide", "leaveRide"])

    def test_update_before_first_snapshot_keeps_initial_load_rule(self) -> None:
        self.subscribe()
        self.push("rideUpdate", ride_payload("R1", "START"))
        self.push("rideData", ride_payload("R1", "COMPLETED", rider=RIDER_A))
        self.assertEqual(self.home, [("already_finished",)])
        self.assertEqual(self.countdowns, [])
        self.assertFalse(self.session.active)

    def test_terminal_status_mid_session_starts_one_countdown(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "START", rider=RIDER_A))
        self.push("rideCompleted", ride_payload("R1", "COMPLETED", rider=RIDER_A))
        self.push("rideUpdate", ride_payload("R1", "COMPLETED", rider=RIDER_A))

        self.assertEqual(self.countdowns, [("R1", 5.0)])
        self.assertTrue(self.session.countdown_active)
        self.assertEqual(self.session.status, RideStatus.COMPLETED)
        self.assertEqual(self.harness.sent("leaveRide"), [("leaveRide", "R1")])

        self.scheduler.advance(4.0)
        self.assertEqual(self.home, [])
        self.scheduler.advance(1.0)
        self.assertEqual(self.home, [("finished",)])
        self.assertEqual(
            self.harness.sent_events(),
            ["subscribeRide", "subscribeToriderLocation", "leaveRide", "unsubscribeFromriderLocation"],
        )

    def test_dismiss_leaves_before_countdown_ends(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "ARRIVED", rider=RIDER_A))
        self.push("rideCompleted", ride_payload("R1", "COMPLETED", rider=RIDER_A))
        self.session.dismiss()
        self.scheduler.advance(10.0)
        self.assertEqual(self.home, [("dismissed",)])
        self.assertEqual(len(self.harness.sent("leaveRide")), 1)

    def test_resubscribe_switches_rooms(self) -> None:
        self.subscribe("R1")
        self.subscribe("R2")
        self.push("rideData", ride_payload("R1", "START"))
        self.assertEqual(self.changes, [])
        self.push("rideData", ride_payload("R2", "START"))
        self.assertEqual(self.session.ride.id, "R2")
        self.assertEqual(
            self.harness.sent(),
            [("subscribeRide", "R1"), ("leaveRide", "R1"), ("subscribeRide", "R2")],
        )


class RideEventsTest(RideSessionTestCase):
    def test_events_for_other_rides_are_ignored(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "START", rider=RIDER_A))
        self.push("rideUpdate", ride_payload("R2", "COMPLETED"))
        self.push("rideCanceled", {"rideId": "R2"})
        self.push("riderCancelledRide", {"rideId": "R2"})
        self.assertEqual(len(self.changes), 1)
        self.assertEqual(self.session.status, RideStatus.START)
        self.assertEqual(self.home, [])
        self.assertEqual(self.notices, [])

    def test_status_never_moves_backwards(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "ARRIVED", rider=RIDER_A))
        self.push("rideUpdate", ride_payload("R1", "START", rider=RIDER_A))
        self.assertEqual(self.session.status, RideStatus.ARRIVED)
        self.assertEqual(len(self.changes), 1)

    def test_update_without_status_keeps_current_status(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "ARRIVED", rider=RIDER_A))
        self.push("rideUpdate", {"_id": "R1", "fare": 150, "rider": RIDER_A})
        self.assertEqual(self.session.status, RideStatus.ARRIVED)
        self.assertEqual(self.session.ride.fare, 150.0)

    def test_searching_ride_is_probed_until_accepted(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1"))
        self.assertEqual(self.harness.sent("searchrider"), [("searchrider", "R1")])
        self.scheduler.advance(3.0)
        self.scheduler.advance(3.0)
        self.assertEqual(len(self.harness.sent("subscribeRide")), 3)

        self.push("rideAccepted", ride_payload("R1", "START", rider=RIDER_A))
        self.scheduler.advance(30.0)
        self.assertEqual(len(self.harness.sent("subscribeRide")), 3)
        self.assertEqual(self.session.status, RideStatus.START)

    def test_rider_cancelled_notice_then_countdown(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "START", rider=RIDER_A))
        self.push("riderCancelledRide", {"rideId": "R1", "riderName": "Ana"})
        self.assertEqual(self.notices[0][0], "Rider Cancelled Ride")
        self.assertIn("Ana", self.notices[0][1])
        self.assertEqual(self.harness.sent("leaveRide"), [("leaveRide", "R1")])
        self.scheduler.advance(5.0)
        self.assertEqual(self.home, [("finished",)])

    def test_canceled_with_ride_body_is_applied(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "START", rider=RIDER_A))
        self.push("rideCanceled", {"rideId": "R1", "ride": ride_payload("R1", "CANCELLED", rider=RIDER_A)})
        self.assertEqual(self.session.status, RideStatus.CANCELLED)
        self.assertEqual(self.countdowns, [("R1", 5.0)])
        self.assertEqual(self.notices, [])

    def test_bare_cancellation_goes_home(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "START"))
        self.push("rideCanceled", "R1")
        self.assertEqual(self.notices, [("Ride canceled", "Ride was canceled")])
        self.assertEqual(self.home, [("canceled",)])

    def test_error_event_goes_home(self) -> None:
        self.subscribe()
        with self.assertLogs("ridesync.ride_session", level="ERROR"):
            self.push("error", {"message": "Ride not found"})
        self.assertEqual(self.notices, [("Ride error", "Ride not found")])
        self.assertEqual(self.home, [("error",)])
        self.assertFalse(self.session.active)

    def test_cancel_sends_reason(self) -> None:
        self.assertFalse(self.session.cancel("no ride yet"))
        self.subscribe()
        self.assertTrue(self.session.cancel("Changed plans"))
        self.assertEqual(
            self.harness.sent("cancelRide"),
            [("cancelRide", {"rideId": "R1", "reason": "Changed plans"})],
        )


class CounterpartyTest(RideSessionTestCase):
    def test_location_subscription_follows_assigned_rider(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "START", rider=RIDER_A))
        self.assertEqual(self.session.counterparty_id, "rider-a")
        self.push("rideUpdate", ride_payload("R1", "START", rider=RIDER_B))
        self.assertEqual(
            self.harness.sent_events()[1:],
            ["subscribeToriderLocation", "unsubscribeFromriderLocation", "subscribeToriderLocation"],
        )
        self.assertEqual(
            [payload for _, payload in self.harness.sent()[1:]],
            ["rider-a", "rider-a", "rider-b"],
        )

    def test_location_updates_are_filtered_by_rider(self) -> None:
        self.subscribe()
        self.push("riderLocationUpdate", {"riderId": "rider-a", "coords": {"latitude": 1, "longitude": 2}})
        self.assertEqual(self.moves, [])

        self.push("rideData", ride_payload("R1", "START", rider=RIDER_A))
        self.push("riderLocationUpdate", {"riderId": "rider-b", "coords": {"latitude": 1, "longitude": 2}})
        self.push("riderLocationUpdate", {"riderId": "rider-a", "coords": {"latitude": 14.6, "longitude": 120.99}})
        self.push("riderLocationUpdate", {"coords": {"latitude": 14.61, "longitude": 121.0}})
        self.push("riderLocationUpdate", {"riderId": "rider-a", "coords": {"latitude": "x"}})
        self.assertEqual(
            [args[0] for args in self.moves],
            [Coords(14.6, 120.99), Coords(14.61, 121.0)],
        )
        self.assertEqual(self.session.counterparty_coords, Coords(14.61, 121.0))

    def test_unsubscribe_releases_everything_in_order(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "START", rider=RIDER_A))
        self.harness.clear_sent()
        self.session.unsubscribe()
        self.assertEqual(
            self.harness.sent(),
            [("leaveRide", "R1"), ("unsubscribeFromriderLocation", "rider-a")],
        )
        self.assertEqual(self.harness.transport.handler_count("rideUpdate"), 0)
        self.assertIsNone(self.session.counterparty_id)
        self.push("rideUpdate", ride_payload("R1", "ARRIVED"))
        self.assertEqual(len(self.changes), 1)
        self.session.unsubscribe()
        self.assertEqual(len(self.harness.sent()), 2)


class ReconnectTest(RideSessionTestCase):
    def drop_and_reconnect(self) -> None:
        with self.assertLogs("ridesync.transport", level="WARNING"):
            self.harness.connector.current.drop(ConnectionResetError("reset by peer"))
            self.scheduler.run_ready()
        self.scheduler.advance(1.0)
        self.scheduler.run_background()
        self.assertTrue(self.harness.transport.connected)

    def test_reconnect_rejoins_ride_and_location_rooms(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "START", rider=RIDER_A))
        self.harness.clear_sent()
        self.drop_and_reconnect()
        self.assertEqual(
            self.harness.sent(),
            [("subscribeRide", "R1"), ("subscribeToriderLocation", "rider-a")],
        )

        self.push("rideCompleted", ride_payload("R1", "COMPLETED", rider=RIDER_A))
        self.assertEqual(self.countdowns, [("R1", 5.0)])

    def test_finished_ride_is_not_rejoined(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "START", rider=RIDER_A))
        self.push("rideCompleted", ride_payload("R1", "COMPLETED", rider=RIDER_A))
        self.harness.clear_sent()
        self.drop_and_reconnect()
        self.assertEqual(self.harness.sent(), [])

    def test_no_resubscribe_without_a_ride(self) -> None:
        self.drop_and_reconnect()
        self.assertEqual(self.harness.sent(), [])


class FulfillerRoleTest(RideSessionTestCase):
    role = "rider"

    def test_fulfiller_does_not_track_own_location(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "START", rider=RIDER_A))
        self.assertEqual(self.harness.sent_events(), ["subscribeRide"])
        self.assertIsNone(self.session.counterparty_id)


class RefreshTest(RideSessionTestCase):
    def test_refresh_applies_matching_ride(self) -> None:
        self.subscribe()
        self.push("rideData", ride_payload("R1", "START", rider=RIDER_A))
        self.rest.active_rides = [ride_payload("R9", "START"), ride_payload("R1", "ARRIVED", rider=RIDER_A)]
        self.session.refresh()
        self.scheduler.run_background()
        self.assertEqual(self.session.status, RideStatus.ARRIVED)

    def test_refresh_result_for_previous_ride_is_dropped(self) -> None:
        self.subscribe("R1")
        self.rest.active_rides = [ride_payload("R1", "ARRIVED")]
        self.session.refresh()
        self.subscribe("R2")
        self.scheduler.run_background()
        self.assertIsNone(self.session.ride)
        self.assertEqual(self.changes, [])

    def test_refresh_failure_is_logged(self) -> None:
        self.subscribe()
        self.rest.errors["fetch_active_rides"] = RestAPIError("offline")
        self.session.refresh()
        with self.assertLogs("ridesync.ride_session", level="WARNING"):
            self.scheduler.run_background()
        self.assertTrue(self.session.active)


if __name__ == "__main__":
    unittest.main()
