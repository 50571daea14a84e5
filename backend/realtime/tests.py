import asyncio
from datetime import datetime, timezone as dt_timezone
from unittest.mock import patch

from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TransactionTestCase
from rest_framework_simplejwt.tokens import AccessToken

from events import storage
from events.models import EventParticipant
from services.directions import DirectionsResult
from services.tracking import LocationUpdatePipeline
from .consumers.base import CLOSE_TOKEN_INVALID, CLOSE_TOKEN_REQUIRED
from .consumers.event_consumer import EventConsumer
from .messages import (
    INBOUND_PARSERS,
    INBOUND_VARIANTS,
    LocationUpdate,
    MalformedMessageError,
    ParticipantJoined,
    ParticipantLeft,
    Ping,
    parse_inbound,
)
from .middleware import JWTAuthMiddleware
from .registry import Connection, ConnectionRegistry
from .routing import get_websocket_urlpatterns

User = get_user_model()

EVENT_ID = "7b0c8a4e-2f51-4b7e-9a57-2a3c1d6e9f10"


class RecordingLayer:
    """Stands in for a channel layer; records sends, fails for chosen channels."""

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    async def send(self, channel, message):
        if channel in self.fail_for:
            raise RuntimeError("channel full")
        self.sent.append((channel, message))


# ---------------------- Registry ----------------------

class ConnectionRegistryTests(SimpleTestCase):
    def setUp(self):
        self.layer = RecordingLayer()
        self.registry = ConnectionRegistry(channel_layer=self.layer)

    def test_register_then_unregister_prunes_both_maps(self):
        conn = Connection("sock-1", "user-a", EVENT_ID)
        self.registry.register(conn)
        self.assertEqual(self.registry.connections_for_user("user-a"), {conn})
        self.assertEqual(self.registry.connections_for_event(EVENT_ID), {conn})

        self.registry.unregister(conn)
        self.assertEqual(self.registry.connections_for_user("user-a"), set())
        self.assertEqual(self.registry.connections_for_event(EVENT_ID), set())
        self.assertEqual(self.registry.user_count(), 0)
        self.assertEqual(self.registry.event_count(), 0)

    def test_churn_does_not_grow_maps(self):
        for i in range(200):
            conn = Connection(f"sock-{i}", f"user-{i % 7}", EVENT_ID if i % 2 else None)
            self.registry.register(conn)
            self.registry.unregister(conn)
        self.assertEqual(self.registry.user_count(), 0)
        self.assertEqual(self.registry.event_count(), 0)

    def test_unregister_is_idempotent(self):
        conn = Connection("sock-1", "user-a", EVENT_ID)
        self.registry.register(conn)
        self.registry.unregister(conn)
        self.registry.unregister(conn)
        self.assertEqual(self.registry.user_count(), 0)

    def test_connection_without_event_is_not_in_any_room(self):
        self.registry.register(Connection("sock-1", "user-a"))
        self.assertEqual(self.registry.user_count(), 1)
        self.assertEqual(self.registry.event_count(), 0)

    def test_multiple_sockets_per_user(self):
        first = Connection("sock-1", "user-a", EVENT_ID)
        second = Connection("sock-2", "user-a", EVENT_ID)
        self.registry.register(first)
        self.registry.register(second)
        self.registry.unregister(first)
        self.assertEqual(self.registry.connections_for_user("user-a"), {second})
        self.assertEqual(self.registry.connections_for_event(EVENT_ID), {second})

    async def test_broadcast_skips_excluded_user(self):
        self.registry.register(Connection("sock-a1", "user-a", EVENT_ID))
        self.registry.register(Connection("sock-a2", "user-a", EVENT_ID))
        self.registry.register(Connection("sock-b", "user-b", EVENT_ID))
        self.registry.register(Connection("sock-c", "user-c", "other-event"))

        sent = await self.registry.broadcast(EVENT_ID, "eta_updated", {"eta": 5}, exclude_user_id="user-a")

        self.assertEqual(sent, 1)
        self.assertEqual(self.layer.sent, [(
            "sock-b",
            {"type": "realtime.broadcast", "event": "eta_updated", "data": {"eta": 5}},
        )])

    async def test_broadcast_to_empty_room_is_noop(self):
        self.assertEqual(await self.registry.broadcast(EVENT_ID, "event_deleted", {}), 0)
        self.assertEqual(self.layer.sent, [])

    async def test_failed_send_does_not_stop_fan_out(self):
        self.layer.fail_for.add("sock-b")
        self.registry.register(Connection("sock-b", "user-b", EVENT_ID))
        self.registry.register(Connection("sock-c", "user-c", EVENT_ID))

        sent = await self.registry.broadcast(EVENT_ID, "participant_left", {"participantId": "x"})

        self.assertEqual(sent, 1)
        self.assertEqual([channel for channel, _ in self.layer.sent], ["sock-c"])

    def test_independent_instances(self):
        other = ConnectionRegistry(channel_layer=RecordingLayer())
        self.registry.register(Connection("sock-1", "user-a", EVENT_ID))
        self.assertEqual(other.user_count(), 0)


# ---------------------- Messages ----------------------

class ParseInboundTests(SimpleTestCase):
    def test_location_update_with_envelope(self):
        message = parse_inbound({"type": "location_update", "data": {"eventId": EVENT_ID, "lat": 28.6, "lng": 77.2}})
        self.assertEqual(message, LocationUpdate(event_id=EVENT_ID, lat=28.6, lng=77.2))

    def test_location_update_with_top_level_fields(self):
        message = parse_inbound({"type": "location_update", "lat": "1.5", "lng": 2})
        self.assertEqual(message, LocationUpdate(event_id=None, lat=1.5, lng=2.0))

    def test_membership_and_ping(self):
        self.assertEqual(
            parse_inbound({"type": "participant_joined", "data": {"eventId": EVENT_ID}}),
            ParticipantJoined(event_id=EVENT_ID),
        )
        self.assertEqual(
            parse_inbound({"type": "participant_left", "data": {"eventId": EVENT_ID}}),
            ParticipantLeft(event_id=EVENT_ID),
        )
        self.assertEqual(parse_inbound({"type": "ping"}), Ping())

    def test_malformed_frames(self):
        bad_frames = [
            [],
            {},
            {"type": "teleport"},
            {"type": "location_update", "data": {"lat": 91, "lng": 0}},
            {"type": "location_update", "data": {"lat": 0, "lng": -181}},
            {"type": "location_update", "data": {"lat": "north", "lng": 0}},
            {"type": "location_update", "data": {"lat": 1}},
            {"type": "participant_joined", "data": {"eventId": "not-a-uuid"}},
            {"type": "ping", "data": "nope"},
        ]
        for frame in bad_frames:
            with self.subTest(frame=frame):
                with self.assertRaises(MalformedMessageError):
                    parse_inbound(frame)

    def test_every_variant_is_parsed_and_handled(self):
        parsed_types = set()
        for msg_type in INBOUND_PARSERS:
            frame = {"type": msg_type, "data": {"eventId": EVENT_ID, "lat": 0, "lng": 0}}
            parsed_types.add(type(parse_inbound(frame)))
        self.assertEqual(parsed_types, set(INBOUND_VARIANTS))

        consumer = EventConsumer()
        self.assertEqual(set(consumer.handlers), set(INBOUND_VARIANTS))


# ---------------------- WebSocket flow ----------------------

class FakeGateway:
    def __init__(self):
        self.calls = 0

    async def get_directions(self, origin, destination, mode="driving"):
        self.calls += 1
        return DirectionsResult(900, 5200, "15 mins", "5.2 km")


class EventSocketTests(TransactionTestCase):
    def setUp(self):
        self.alice = User.objects.create_user(username="alice", email="alice@example.com", password="pass1234")
        self.bob = User.objects.create_user(username="bob", email="bob@example.com", password="pass1234")
        self.carol = User.objects.create_user(username="carol", email="carol@example.com", password="pass1234")
        self.event = storage.create_event(
            self.alice,
            name="Dinner",
            location="India Gate",
            location_lat=28.6129,
            location_lng=77.2295,
            datetime=datetime(2030, 1, 1, 18, 0, tzinfo=dt_timezone.utc),
        )
        storage.join_event(self.event.id, self.bob.id)

        self.registry = ConnectionRegistry()
        self.gateway = FakeGateway()
        pipeline = LocationUpdatePipeline(self.registry, gateway=self.gateway)
        self.application = JWTAuthMiddleware(
            URLRouter(get_websocket_urlpatterns(self.registry, pipeline))
        )

    def _path(self, user=None, token=None, event_id=None):
        if token is None and user is not None:
            token = str(AccessToken.for_user(user))
        params = []
        if token is not None:
            params.append(f"token={token}")
        params.append(f"eventId={event_id or self.event.id}")
        return "/ws/events/?" + "&".join(params)

    async def _connect(self, user):
        communicator = WebsocketCommunicator(self.application, self._path(user))
        connected, _ = await communicator.connect()
        self.assertTrue(connected)
        greeting = await communicator.receive_json_from()
        self.assertEqual(greeting["type"], "connection_established")
        self.assertEqual(greeting["data"]["userId"], str(user.id))
        return communicator

    async def test_missing_token_is_rejected(self):
        communicator = WebsocketCommunicator(self.application, self._path())
        await communicator.connect()

        error = await communicator.receive_json_from()
        self.assertEqual(error, {"type": "error", "data": {"message": "token_required"}})
        closed = await communicator.receive_output()
        self.assertEqual(closed, {"type": "websocket.close", "code": CLOSE_TOKEN_REQUIRED})
        self.assertEqual(self.registry.user_count(), 0)

        await communicator.send_json_to({"type": "ping"})
        self.assertTrue(await communicator.receive_nothing(timeout=0.2))
        await communicator.disconnect()

    async def test_invalid_token_is_rejected(self):
        communicator = WebsocketCommunicator(self.application, self._path(token="not-a-jwt"))
        await communicator.connect()

        error = await communicator.receive_json_from()
        self.assertEqual(error["data"]["message"], "token_invalid")
        closed = await communicator.receive_output()
        self.assertEqual(closed["code"], CLOSE_TOKEN_INVALID)
        self.assertEqual(self.registry.user_count(), 0)
        await communicator.disconnect()

    async def test_bearer_prefix_is_accepted(self):
        token = "Bearer%20" + str(AccessToken.for_user(self.alice))
        communicator = WebsocketCommunicator(self.application, self._path(token=token))
        connected, _ = await communicator.connect()
        self.assertTrue(connected)
        greeting = await communicator.receive_json_from()
        self.assertEqual(greeting["type"], "connection_established")
        await communicator.disconnect()

    async def test_connect_registers_and_disconnect_unregisters(self):
        communicator = await self._connect(self.alice)
        self.assertEqual(len(self.registry.connections_for_event(str(self.event.id))), 1)

        await communicator.disconnect()
        self.assertEqual(self.registry.connections_for_event(str(self.event.id)), set())
        self.assertEqual(self.registry.user_count(), 0)

    async def test_location_update_reaches_other_participant_only(self):
        alice = await self._connect(self.alice)
        bob = await self._connect(self.bob)

        await alice.send_json_to({
            "type": "location_update",
            "data": {"eventId": str(self.event.id), "lat": 28.6315, "lng": 77.2167},
        })

        update = await bob.receive_json_from(timeout=2)
        self.assertEqual(update["type"], "eta_updated")
        self.assertEqual(update["data"]["participantId"], str(self.alice.id))
        self.assertEqual(update["data"]["eventId"], str(self.event.id))
        self.assertEqual(update["data"]["eta"], 15)
        self.assertFalse(update["data"]["isMoving"])
        self.assertTrue(await bob.receive_nothing(timeout=0.2))
        self.assertTrue(await alice.receive_nothing(timeout=0.2))

        participant = await EventParticipant.objects.aget(event=self.event, user=self.alice)
        self.assertEqual(participant.last_lat, 28.6315)

        await alice.disconnect()
        await bob.disconnect()

    async def test_location_update_uses_bound_event_when_omitted(self):
        alice = await self._connect(self.alice)
        bob = await self._connect(self.bob)

        await alice.send_json_to({"type": "location_update", "lat": 28.62, "lng": 77.22})

        update = await bob.receive_json_from(timeout=2)
        self.assertEqual(update["type"], "eta_updated")

        await alice.disconnect()
        await bob.disconnect()

    async def test_non_participant_update_gets_error_and_no_broadcast(self):
        carol = await self._connect(self.carol)
        bob = await self._connect(self.bob)

        await carol.send_json_to({
            "type": "location_update",
            "data": {"eventId": str(self.event.id), "lat": 28.6, "lng": 77.2},
        })

        error = await carol.receive_json_from(timeout=2)
        self.assertEqual(error["type"], "error")
        self.assertIn("Location update failed", error["data"]["message"])
        self.assertTrue(await bob.receive_nothing(timeout=0.2))
        self.assertEqual(self.gateway.calls, 0)

        await carol.disconnect()
        await bob.disconnect()

    async def test_malformed_messages_keep_session_open(self):
        alice = await self._connect(self.alice)

        await alice.send_to(text_data="{not json")
        self.assertEqual((await alice.receive_json_from())["data"]["message"], "Invalid JSON")

        await alice.send_json_to({"type": "teleport"})
        self.assertEqual((await alice.receive_json_from())["data"]["message"], "Unknown message type: teleport")

        await alice.send_json_to({"type": "location_update", "data": {"lat": "north", "lng": 0}})
        self.assertEqual((await alice.receive_json_from())["type"], "error")

        await alice.send_json_to({"data": {}})
        self.assertEqual((await alice.receive_json_from())["data"]["message"], "Message type is required")

        await alice.send_json_to({"type": "ping"})
        pong = await alice.receive_json_from()
        self.assertEqual(pong["type"], "pong")
        self.assertIn("timestamp", pong["data"])

        await alice.disconnect()

    async def test_handler_crash_replies_with_error(self):
        alice = await self._connect(self.alice)

        with patch("realtime.consumers.event_consumer.parse_inbound", side_effect=RuntimeError("boom")):
            await alice.send_json_to({"type": "ping"})
            error = await alice.receive_json_from()

        self.assertEqual(error["data"]["message"], "Error processing ping")
        await alice.send_json_to({"type": "ping"})
        self.assertEqual((await alice.receive_json_from())["type"], "pong")
        await alice.disconnect()

    async def test_join_and_leave_broadcast_to_room(self):
        alice = await self._connect(self.alice)
        carol = await self._connect(self.carol)

        await carol.send_json_to({"type": "participant_joined", "data": {"eventId": str(self.event.id)}})
        joined = await alice.receive_json_from(timeout=2)
        self.assertEqual(joined["type"], "participant_joined")
        self.assertEqual(joined["data"]["participant"]["id"], str(self.carol.id))
        self.assertEqual(joined["data"]["participant"]["user"]["username"], "carol")
        self.assertTrue(await carol.receive_nothing(timeout=0.2))

        # Joining twice leaves one row
        await carol.send_json_to({"type": "participant_joined", "data": {"eventId": str(self.event.id)}})
        await alice.receive_json_from(timeout=2)
        self.assertEqual(await EventParticipant.objects.filter(event=self.event, user=self.carol).acount(), 1)

        await carol.send_json_to({"type": "participant_left", "data": {"eventId": str(self.event.id)}})
        left = await alice.receive_json_from(timeout=2)
        self.assertEqual(left, {
            "type": "participant_left",
            "data": {"eventId": str(self.event.id), "participantId": str(self.carol.id)},
        })

        await alice.disconnect()
        await carol.disconnect()

    async def test_idle_socket_is_closed(self):
        with self.settings(REALTIME_IDLE_TIMEOUT_SECONDS=0.1):
            communicator = await self._connect(self.alice)
            closed = await communicator.receive_output(timeout=2)
        self.assertEqual(closed, {"type": "websocket.close", "code": 4008})
        await communicator.disconnect()
        self.assertEqual(self.registry.user_count(), 0)

    async def test_unparseable_frames_keep_idle_socket_alive(self):
        with self.settings(REALTIME_IDLE_TIMEOUT_SECONDS=0.3):
            communicator = await self._connect(self.alice)

            # Frames keep arriving for longer than the timeout
            for frame in ("{not json", '{"data": {}}', "{not json", '{"data": {}}', "{not json"):
                await asyncio.sleep(0.15)
                await communicator.send_to(text_data=frame)
                reply = await communicator.receive_json_from(timeout=1)
                self.assertEqual(reply["type"], "error")

            closed = await communicator.receive_output(timeout=2)
        self.assertEqual(closed, {"type": "websocket.close", "code": 4008})
        await communicator.disconnect()
