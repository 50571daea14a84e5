import json
import threading
import time
from datetime import datetime, timezone
from unittest.mock import Mock

import requests
from django.test import SimpleTestCase

from common.utils import ParticipantStatus
from .api import ApiError, MeetupApiClient
from .connection import ConnectionStatus, RealtimeConnection, backoff_delay, build_ws_url
from .eta_refresh import EtaRefreshScheduler, RosterEntry
from .event_sync import EventStateSync
from .location_reporter import GeolocationError, LocationReporter, Position


# ---------------------- Connection ----------------------

class FakeApp:
    """
    WebSocketApp stand-in. `behaviour` decides what one run_forever does:
        "refused"  closes without ever opening
        "drop"     opens, then closes unexpectedly
        "auth"     closes with the token-rejected code
        "hold"     opens and stays open until close() is called
    """

    def __init__(self, url, behaviour, on_open, on_message, on_error, on_close):
        self.url = url
        self.behaviour = behaviour
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close
        self.sent = []
        self._closed = threading.Event()

    def run_forever(self):
        if self.behaviour == "refused":
            self.on_error(self, ConnectionRefusedError("refused"))
            self.on_close(self, None, None)
        elif self.behaviour == "auth":
            self.on_close(self, 4001, "token_required")
        elif self.behaviour == "drop":
            self.on_open(self)
            self.on_close(self, 1006, None)
        else:
            self.on_open(self)
            self._closed.wait(5)
            self.on_close(self, 1000, None)

    def send(self, text):
        self.sent.append(json.loads(text))

    def close(self):
        self._closed.set()


class AppFactory:
    def __init__(self, *script, default="refused"):
        self.script = list(script)
        self.default = default
        self.apps = []

    def __call__(self, url, **callbacks):
        behaviour = self.script.pop(0) if self.script else self.default
        app = FakeApp(url, behaviour, **callbacks)
        self.apps.append(app)
        return app


class RealtimeConnectionTests(SimpleTestCase):
    def _connection(self, factory, attempts=3):
        connection = RealtimeConnection(
            "http://localhost:8000",
            "tok",
            event_id="evt",
            reconnect_attempts=attempts,
            reconnect_delay=0,
            ping_interval=60,
            app_factory=factory,
        )
        statuses = []
        connection.add_status_listener(statuses.append)
        return connection, statuses

    def test_backoff_schedule(self):
        self.assertEqual([backoff_delay(n, 3.0) for n in (1, 2, 3)], [3.0, 4.5, 6.75])

        connection = RealtimeConnection("http://h", "t", reconnect_attempts=2, reconnect_delay=3.0)
        self.assertEqual(connection.next_reconnect_delay(), 3.0)
        self.assertEqual(connection.next_reconnect_delay(), 4.5)
        self.assertIsNone(connection.next_reconnect_delay())

    def test_build_ws_url(self):
        self.assertEqual(
            build_ws_url("https://api.example.com/", "abc", "evt-1"),
            "wss://api.example.com/ws/events/?token=abc&eventId=evt-1",
        )

    def test_gives_up_after_attempts(self):
        factory = AppFactory()
        connection, statuses = self._connection(factory, attempts=3)

        connection.connect()
        connection.wait(5)

        self.assertEqual(len(factory.apps), 4)
        self.assertEqual(connection.status, ConnectionStatus.DISCONNECTED)
        self.assertEqual(statuses.count(ConnectionStatus.RECONNECTING), 3)

    def test_successful_open_resets_attempts(self):
        factory = AppFactory("drop", "drop", "drop", "auth")
        connection, statuses = self._connection(factory, attempts=1)

        connection.connect()
        connection.wait(5)

        self.assertEqual(len(factory.apps), 4)
        self.assertEqual(statuses.count(ConnectionStatus.CONNECTED), 3)

    def test_token_rejection_is_not_retried(self):
        factory = AppFactory("auth")
        connection, _ = self._connection(factory)

        connection.connect()
        connection.wait(5)

        self.assertEqual(len(factory.apps), 1)
        self.assertEqual(connection.last_close_code, 4001)
        self.assertEqual(connection.status, ConnectionStatus.DISCONNECTED)

    def test_manual_disconnect_does_not_reconnect(self):
        factory = AppFactory("hold")
        connection, _ = self._connection(factory)
        opened = threading.Event()
        connection.add_status_listener(lambda s: s == ConnectionStatus.CONNECTED and opened.set())

        connection.connect()
        self.assertTrue(opened.wait(5))

        connection.disconnect()

        self.assertEqual(len(factory.apps), 1)
        self.assertEqual(connection.status, ConnectionStatus.DISCONNECTED)

    def test_send_message(self):
        factory = AppFactory("hold")
        connection, _ = self._connection(factory)
        self.assertFalse(connection.send_message("ping"))

        opened = threading.Event()
        connection.add_status_listener(lambda s: s == ConnectionStatus.CONNECTED and opened.set())
        connection.connect()
        self.assertTrue(opened.wait(5))

        self.assertTrue(connection.send_message("location_update", {"lat": 1.0, "lng": 2.0}))
        self.assertEqual(factory.apps[0].sent, [{"type": "location_update", "data": {"lat": 1.0, "lng": 2.0}}])
        connection.disconnect()

    def test_messages_reach_listeners(self):
        connection, _ = self._connection(AppFactory())
        received = []
        connection.add_message_listener(received.append)
        connection.add_message_listener(Mock(side_effect=RuntimeError("listener bug")))

        connection._on_message(None, '{"type": "eta_updated", "data": {}}')
        connection._on_message(None, "not json")
        connection._on_message(None, '["eta_updated"]')
        connection._on_message(None, '"pong"')

        self.assertEqual(received, [{"type": "eta_updated", "data": {}}])


# ---------------------- Location reporter ----------------------

class FakeConnection:
    def __init__(self, status=ConnectionStatus.CONNECTED):
        self.status = status
        self.sent = []
        self.listeners = []

    def add_status_listener(self, callback):
        self.listeners.append(callback)

    def set_status(self, status):
        self.status = status
        for callback in self.listeners:
            callback(status)

    def send_message(self, msg_type, data=None):
        if self.status != ConnectionStatus.CONNECTED:
            return False
        self.sent.append((msg_type, data))
        return True


class LocationReporterTests(SimpleTestCase):
    def setUp(self):
        self.now = 1000.0
        self.position = Position(28.6315, 77.2167, accuracy=10, timestamp=self.now)
        self.connection = FakeConnection()
        self.reporter = LocationReporter(
            self.connection,
            locate=lambda: self.position,
            event_id="evt",
            start_delay=60,
            clock=lambda: self.now,
        )

    def tearDown(self):
        self.reporter.stop()

    def test_sends_good_fix(self):
        self.assertTrue(self.reporter.report_once())
        self.assertEqual(self.connection.sent, [
            ("location_update", {"eventId": "evt", "lat": 28.6315, "lng": 77.2167}),
        ])

    def test_drops_inaccurate_and_stale_fixes(self):
        self.position = Position(28.6, 77.2, accuracy=80, timestamp=self.now)
        self.assertFalse(self.reporter.report_once())

        self.position = Position(28.6, 77.2, accuracy=10, timestamp=self.now - 6)
        self.assertFalse(self.reporter.report_once())
        self.assertEqual(self.connection.sent, [])

    def test_geolocation_error_skips_sample(self):
        def locate():
            raise GeolocationError("permission denied")

        self.reporter.locate = locate
        self.assertFalse(self.reporter.report_once())

    def test_stationary_device_is_suppressed_until_interval(self):
        self.assertTrue(self.reporter.report_once())

        self.now += 10
        self.position = Position(28.63151, 77.2167, accuracy=10, timestamp=self.now)
        self.assertFalse(self.reporter.report_once())

        self.now += 6
        self.position = Position(28.63151, 77.2167, accuracy=10, timestamp=self.now)
        self.assertTrue(self.reporter.report_once())

    def test_movement_is_sent_immediately(self):
        self.assertTrue(self.reporter.report_once())
        self.now += 2
        # ~11 m north
        self.position = Position(28.6316, 77.2167, accuracy=10, timestamp=self.now)
        self.assertTrue(self.reporter.report_once())

    def test_runs_only_when_enabled_participant_and_connected(self):
        self.assertFalse(self.reporter.is_running)

        self.reporter.set_enabled(True)
        self.assertFalse(self.reporter.is_running)

        self.reporter.set_participant(True)
        self.assertTrue(self.reporter.is_running)

        self.connection.set_status(ConnectionStatus.RECONNECTING)
        self.assertFalse(self.reporter.is_running)

        self.connection.set_status(ConnectionStatus.CONNECTED)
        self.assertTrue(self.reporter.is_running)

        self.reporter.set_enabled(False)
        self.assertFalse(self.reporter.is_running)

    def test_stop_is_idempotent_and_forgets_last_sample(self):
        self.assertTrue(self.reporter.report_once())
        self.reporter.stop()
        self.reporter.stop()
        self.assertFalse(self.reporter.is_redundant(self.position))

    def test_status_change_does_not_wait_for_sample_in_flight(self):
        entered = threading.Event()
        release = threading.Event()

        def locate():
            entered.set()
            release.wait(5)
            return self.position

        self.reporter.locate = locate
        self.reporter.start_delay = 0
        self.reporter.set_enabled(True)
        self.reporter.set_participant(True)
        self.assertTrue(entered.wait(2))

        started = time.monotonic()
        self.connection.set_status(ConnectionStatus.RECONNECTING)
        elapsed = time.monotonic() - started
        release.set()

        self.assertFalse(self.reporter.is_running)
        self.assertLess(elapsed, 1)


# ---------------------- ETA refresh ----------------------

class FakeDirections:
    def __init__(self, duration=1200, distance=8000):
        self.response = {"duration": duration, "distance": distance}
        self.fail_for = set()
        self.calls = []

    def __call__(self, origin, destination, mode):
        self.calls.append((origin, destination, mode))
        if origin in self.fail_for:
            return None
        return dict(self.response)


class EtaRefreshSchedulerTests(SimpleTestCase):
    EVENT_AT = datetime(2030, 1, 1, 18, 0, tzinfo=timezone.utc)

    def setUp(self):
        self.clock = 0.0
        self.wall = datetime(2030, 1, 1, 17, 0, tzinfo=timezone.utc)
        self.directions = FakeDirections()
        self.sleep = Mock()
        self.scheduler = EtaRefreshScheduler(
            self.directions,
            self.EVENT_AT,
            event_lat=28.6129,
            event_lng=77.2295,
            clock=lambda: self.clock,
            now=lambda: self.wall,
            sleep=self.sleep,
        )
        self.scheduler.set_roster([
            RosterEntry("alice", 28.6315, 77.2167),
            RosterEntry("bob", 28.7041, 77.1025),
        ])

    def test_computes_roster(self):
        self.assertTrue(self.scheduler.refresh())

        alice = self.scheduler.results["alice"]
        self.assertEqual(alice.eta_minutes, 20)
        self.assertAlmostEqual(alice.distance_km, 2.42, delta=0.05)
        self.assertEqual(alice.status, ParticipantStatus.MOVING)
        self.assertEqual(alice.leave_by, datetime(2030, 1, 1, 17, 35, tzinfo=timezone.utc))
        self.assertFalse(alice.should_leave_now)
        self.assertEqual(self.directions.calls[0], ("28.6315,77.2167", "28.6129,77.2295", "driving"))

    def test_throttled_within_interval(self):
        self.assertTrue(self.scheduler.refresh())
        self.clock += 30
        self.assertFalse(self.scheduler.refresh())
        self.assertEqual(len(self.directions.calls), 2)

        self.assertTrue(self.scheduler.refresh(force=True))
        self.clock += 61
        self.assertTrue(self.scheduler.refresh())
        self.assertEqual(len(self.directions.calls), 6)

    def test_membership_change_bypasses_throttle(self):
        self.scheduler.refresh()

        # New positions alone do not count as a change
        self.scheduler.set_roster([
            RosterEntry("alice", 28.62, 77.22),
            RosterEntry("bob", 28.7041, 77.1025),
        ])
        self.assertFalse(self.scheduler.refresh())

        self.scheduler.set_roster([RosterEntry("alice", 28.62, 77.22)])
        self.assertTrue(self.scheduler.refresh())
        self.assertEqual(set(self.scheduler.results), {"alice"})

    def test_participant_without_position_is_far_and_not_looked_up(self):
        self.scheduler.set_roster([RosterEntry("carol")])
        self.scheduler.refresh()

        self.assertEqual(self.scheduler.results["carol"].status, ParticipantStatus.FAR)
        self.assertIsNone(self.scheduler.results["carol"].eta_minutes)
        self.assertEqual(self.directions.calls, [])

    def test_calls_are_spaced_out(self):
        self.scheduler.set_roster([
            RosterEntry("a", 28.60, 77.20),
            RosterEntry("b", 28.61, 77.21),
            RosterEntry("c"),
            RosterEntry("d", 28.62, 77.22),
        ])
        self.scheduler.refresh()

        self.assertEqual(len(self.directions.calls), 3)
        self.assertEqual(self.sleep.call_count, 2)
        self.sleep.assert_called_with(0.2)

    def test_failed_lookup_keeps_distance(self):
        self.directions.fail_for.add("28.7041,77.1025")
        self.scheduler.refresh()

        bob = self.scheduler.results["bob"]
        self.assertIsNone(bob.eta_minutes)
        self.assertIsNone(bob.leave_by)
        self.assertIsNotNone(bob.distance_km)
        self.assertEqual(bob.status, ParticipantStatus.FAR)
        self.assertIsNone(self.scheduler.last_success_at)
        self.assertTrue(self.scheduler.is_stale())

    def test_tick_reevaluates_should_leave(self):
        self.scheduler.refresh()
        self.assertFalse(self.scheduler.results["alice"].should_leave_now)

        self.scheduler.tick(datetime(2030, 1, 1, 17, 40, tzinfo=timezone.utc))

        self.assertTrue(self.scheduler.results["alice"].should_leave_now)
        self.assertEqual(len(self.directions.calls), 2)

    def test_staleness(self):
        self.assertTrue(self.scheduler.is_stale())
        self.scheduler.refresh()
        self.assertFalse(self.scheduler.is_stale())
        self.clock += 61
        self.assertTrue(self.scheduler.is_stale())

    def test_event_without_coordinates_uses_route_distance(self):
        scheduler = EtaRefreshScheduler(
            self.directions,
            self.EVENT_AT,
            event_location="India Gate",
            now=lambda: self.wall,
            sleep=self.sleep,
        )
        scheduler.set_roster([RosterEntry("alice", 28.6315, 77.2167)])
        scheduler.refresh()

        self.assertEqual(self.directions.calls[-1][1], "India Gate")
        self.assertEqual(scheduler.results["alice"].distance_km, 8.0)


# ---------------------- Event state sync ----------------------

def _state(is_participant=True, participants=None):
    return {
        "id": "evt",
        "datetime": "2030-01-01T18:00:00Z",
        "location": "India Gate",
        "location_lat": 28.6129,
        "location_lng": 77.2295,
        "is_participant": is_participant,
        "participants": participants if participants is not None else [
            {"user": {"id": "u1"}, "last_lat": 28.6315, "last_lng": 77.2167},
        ],
    }


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate() and time.monotonic() < deadline:
        time.sleep(0.01)
    return predicate()


class EventStateSyncTests(SimpleTestCase):
    def setUp(self):
        self.now = 0.0
        self.api = Mock()
        self.api.get_event.return_value = _state()
        self.api.get_directions.return_value = {"duration": 600, "distance": 4000}
        self.reporter = Mock()
        self.scheduler = Mock()
        self.sync = EventStateSync(
            self.api, "evt", reporter=self.reporter, scheduler=self.scheduler, clock=lambda: self.now,
        )

    def tearDown(self):
        self.sync.stop()

    def test_open_joins_when_not_on_roster(self):
        self.api.get_event.side_effect = [_state(is_participant=False), _state(is_participant=True)]

        state = self.sync.open()

        self.api.join_event.assert_called_once_with("evt")
        self.assertTrue(state["is_participant"])
        self.reporter.set_participant.assert_called_with(True)

    def test_open_without_join(self):
        self.api.get_event.return_value = _state(is_participant=False)
        self.sync.open(join=False)
        self.api.join_event.assert_not_called()
        self.reporter.set_participant.assert_called_with(False)

    def test_fetch_feeds_scheduler(self):
        self.sync.refresh()

        roster = self.scheduler.set_roster.call_args[0][0]
        self.assertEqual(roster, [RosterEntry("u1", 28.6315, 77.2167)])
        self.scheduler.refresh.assert_called_once()

    def test_builds_scheduler_from_state(self):
        sync = EventStateSync(self.api, "evt")
        sync.refresh()

        self.assertEqual(sync.scheduler.event_datetime, datetime(2030, 1, 1, 18, 0, tzinfo=timezone.utc))
        self.assertEqual(sync.scheduler.results["u1"].eta_minutes, 10)

    def test_broadcasts_mark_dirty_without_fetching(self):
        self.sync.refresh()
        self.api.get_event.reset_mock()

        for msg_type in ("eta_updated", "participant_joined", "participant_left"):
            self.sync.handle_message({"type": msg_type, "data": {}})
        self.sync.handle_message({"type": "pong", "data": {}})

        self.api.get_event.assert_not_called()
        self.assertTrue(self.sync.is_dirty)

        self.sync.run_once()
        self.assertEqual(self.api.get_event.call_count, 1)
        self.assertFalse(self.sync.is_dirty)

        self.sync.run_once()
        self.assertEqual(self.api.get_event.call_count, 1)

    def test_burst_during_fetch_collapses_into_one_follow_up(self):
        calls = []

        def get_event(event_id):
            calls.append(event_id)
            if len(calls) == 1:
                self.sync.handle_message({"type": "eta_updated"})
                self.sync.handle_message({"type": "eta_updated"})
            return _state()

        self.api.get_event.side_effect = get_event
        self.sync.run_once()
        self.sync.run_once()
        self.sync.run_once()

        self.assertEqual(len(calls), 2)

    def test_pass_without_changes_runs_throttled_refresh_and_tick(self):
        self.sync.refresh()
        self.scheduler.reset_mock()

        self.sync.run_once()

        self.api.get_event.assert_called_once()
        self.scheduler.refresh.assert_called_once_with()
        self.scheduler.tick.assert_called_once_with()

    def test_full_resync_on_interval(self):
        self.sync.run_once()
        self.assertEqual(self.api.get_event.call_count, 1)

        self.now += self.sync.resync_interval - 1
        self.sync.run_once()
        self.assertEqual(self.api.get_event.call_count, 1)

        self.now += 1
        self.sync.run_once()
        self.assertEqual(self.api.get_event.call_count, 2)

    def test_event_deleted(self):
        self.sync.handle_message({"type": "event_deleted", "data": {"eventId": "evt"}})

        self.assertTrue(self.sync.deleted)
        self.reporter.set_participant.assert_called_with(False)
        self.sync.handle_message({"type": "eta_updated"})
        self.sync.run_once()
        self.api.get_event.assert_not_called()
        self.scheduler.tick.assert_not_called()

    def test_missing_event_counts_as_deleted(self):
        self.api.get_event.side_effect = ApiError(404, {"error": "Event not found"})
        self.assertIsNone(self.sync.refresh())
        self.assertTrue(self.sync.deleted)

    def test_other_api_errors_propagate_and_keep_state_dirty(self):
        self.api.get_event.side_effect = [ApiError(500, "boom"), _state()]
        self.sync.handle_message({"type": "eta_updated"})

        with self.assertRaises(ApiError):
            self.sync.run_once()
        self.assertTrue(self.sync.is_dirty)

        self.sync.run_once()
        self.assertFalse(self.sync.is_dirty)
        self.assertEqual(self.api.get_event.call_count, 2)

    def test_resync_after_reconnect(self):
        self.sync.refresh()
        self.api.get_event.reset_mock()

        self.sync.handle_status(ConnectionStatus.CONNECTED)
        self.assertFalse(self.sync.is_dirty)

        self.sync.handle_status(ConnectionStatus.RECONNECTING)
        self.sync.handle_status(ConnectionStatus.CONNECTED)
        self.api.get_event.assert_not_called()
        self.assertTrue(self.sync.is_dirty)

        self.sync.run_once()
        self.assertEqual(self.api.get_event.call_count, 1)

    def test_worker_recomputes_etas_on_a_timer(self):
        directions = FakeDirections()
        scheduler = EtaRefreshScheduler(
            get_directions=directions,
            event_datetime=datetime(2030, 1, 1, 18, 0, tzinfo=timezone.utc),
            event_lat=28.6129,
            event_lng=77.2295,
            refresh_interval=0.05,
            call_delay=0,
        )
        sync = EventStateSync(self.api, "evt", scheduler=scheduler, tick_interval=0.02)

        sync.start()
        try:
            self.assertTrue(_wait_for(lambda: len(directions.calls) >= 3))
        finally:
            sync.stop()

        self.assertFalse(sync.is_running)
        # Recomputed from the roster it already had, not by re-fetching
        self.assertEqual(self.api.get_event.call_count, 1)

    def test_worker_picks_up_broadcasts(self):
        self.sync.tick_interval = 5
        self.sync.start()
        self.assertTrue(_wait_for(lambda: self.api.get_event.call_count == 1))

        # Woken by the broadcast rather than waiting out the tick
        self.sync.handle_message({"type": "participant_joined", "data": {}})
        self.assertTrue(_wait_for(lambda: self.api.get_event.call_count == 2))

        self.sync.stop()
        self.assertFalse(self.sync.is_running)

    def test_worker_survives_errors(self):
        self.api.get_event.side_effect = [ApiError(500, "boom"), _state(), _state()]
        self.sync.tick_interval = 0.02

        self.sync.start()
        self.assertTrue(_wait_for(lambda: self.api.get_event.call_count >= 2))
        self.assertTrue(self.sync.is_running)
        self.assertIsNotNone(self.sync.state)

    def test_start_and_stop_are_idempotent(self):
        self.sync.start()
        thread = self.sync._thread
        self.sync.start()
        self.assertIs(self.sync._thread, thread)

        self.sync.stop()
        self.sync.stop()
        self.assertFalse(thread.is_alive())


# ---------------------- REST client ----------------------

def _http_response(status_code=200, payload=None):
    resp = Mock(status_code=status_code, ok=status_code < 400, content=b"{}" if payload is not None else b"")
    resp.json.return_value = payload
    return resp


class MeetupApiClientTests(SimpleTestCase):
    def setUp(self):
        self.session = Mock(headers={})
        self.client = MeetupApiClient("http://localhost:8000/", session=self.session)

    def test_login_stores_token(self):
        self.session.request.return_value = _http_response(200, {
            "user": {"id": "u1", "username": "jane"},
            "tokens": {"access": "acc", "refresh": "ref"},
        })

        self.client.login("jane@example.com", "password123")

        self.assertEqual(self.client.token, "acc")
        self.assertEqual(self.session.headers["Authorization"], "Bearer acc")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", "http://localhost:8000/api/auth/login/"))
        self.assertEqual(kwargs["timeout"], 10)

    def test_error_response_raises(self):
        self.session.request.return_value = _http_response(404, {"error": "Event not found"})
        with self.assertRaises(ApiError) as ctx:
            self.client.get_event("evt")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_directions_failures_return_none(self):
        self.session.request.side_effect = requests.ConnectionError("down")
        self.assertIsNone(self.client.get_directions("a", "b"))

        self.session.request.side_effect = None
        self.session.request.return_value = _http_response(502, {"error": "Failed to get directions"})
        self.assertIsNone(self.client.get_directions("a", "b"))

    def test_directions_success(self):
        self.session.request.return_value = _http_response(200, {"duration": 600, "distance": 4000})
        self.assertEqual(self.client.get_directions("a", "b")["duration"], 600)
        self.assertEqual(self.session.request.call_args[1]["timeout"], 30)
