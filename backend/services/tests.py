import asyncio
from datetime import datetime, timedelta, timezone as dt_timezone
from unittest.mock import AsyncMock, Mock, patch

import requests
from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TransactionTestCase

from events import storage
from events.models import Event, EventParticipant
from realtime.registry import ConnectionRegistry
from services.directions import DirectionsGateway, DirectionsResult
from services.tracking import (
    EventNotFoundError,
    LocationSharingDisabledError,
    LocationUpdatePipeline,
    NotAParticipantError,
)

User = get_user_model()

OK_RESPONSE = {
    "status": "OK",
    "routes": [{
        "legs": [{
            "duration": {"value": 1260, "text": "21 mins"},
            "distance": {"value": 8400, "text": "8.4 km"},
        }]
    }],
}


def _response(payload, status_code=200):
    resp = Mock()
    resp.status_code = status_code
    resp.json.return_value = payload
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return resp


class DirectionsGatewayTests(SimpleTestCase):
    def setUp(self):
        self.session = Mock()
        self.gateway = DirectionsGateway(api_key="key", session=self.session, timeout=30)

    def test_successful_route(self):
        self.session.get.return_value = _response(OK_RESPONSE)

        result = self.gateway.get_directions("28.6,77.2", "28.61,77.23")

        self.assertEqual(result, DirectionsResult(1260, 8400, "21 mins", "8.4 km"))
        self.assertEqual(result.eta_minutes, 21)
        self.assertEqual(result.to_dict(), {
            "duration": 1260,
            "distance": 8400,
            "durationText": "21 mins",
            "distanceText": "8.4 km",
        })
        _, kwargs = self.session.get.call_args
        self.assertEqual(kwargs["timeout"], 30)
        self.assertEqual(kwargs["params"]["mode"], "driving")
        self.assertEqual(kwargs["params"]["key"], "key")

    def test_timeout_returns_none(self):
        self.session.get.side_effect = requests.Timeout("slow")
        self.assertIsNone(self.gateway.get_directions("a", "b"))

    def test_transport_error_returns_none(self):
        self.session.get.side_effect = requests.ConnectionError("down")
        self.assertIsNone(self.gateway.get_directions("a", "b"))

    def test_http_error_returns_none(self):
        self.session.get.return_value = _response({}, status_code=500)
        self.assertIsNone(self.gateway.get_directions("a", "b"))

    def test_provider_status_not_ok_returns_none(self):
        self.session.get.return_value = _response({"status": "OVER_QUERY_LIMIT", "error_message": "quota"})
        self.assertIsNone(self.gateway.get_directions("a", "b"))

    def test_missing_route_returns_none(self):
        self.session.get.return_value = _response({"status": "OK", "routes": []})
        self.assertIsNone(self.gateway.get_directions("a", "b"))

    def test_non_json_body_returns_none(self):
        resp = _response(None)
        resp.json.side_effect = ValueError("not json")
        self.session.get.return_value = resp
        self.assertIsNone(self.gateway.get_directions("a", "b"))

    def test_json_that_is_not_an_object_returns_none(self):
        for body in (["not", "an", "object"], "OK", 42, None):
            with self.subTest(body=body):
                self.session.get.return_value = _response(body)
                self.assertIsNone(self.gateway.get_directions("1,1", "2,2"))

    def test_missing_api_key_skips_request(self):
        gateway = DirectionsGateway(api_key="", session=self.session)
        self.assertFalse(gateway.is_configured)
        self.assertIsNone(gateway.get_directions("a", "b"))
        self.session.get.assert_not_called()


class FakeGateway:
    def __init__(self, result=None, error=None, delay=0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = []

    async def get_directions(self, origin, destination, mode="driving"):
        self.calls.append((origin, destination, mode))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


class Clock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class LocationUpdatePipelineTests(TransactionTestCase):
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

        self.registry = ConnectionRegistry(channel_layer=Mock())
        self.registry.broadcast = AsyncMock(return_value=1)
        self.gateway = FakeGateway(DirectionsResult(1260, 8400, "21 mins", "8.4 km"))
        self.clock = Clock(datetime(2030, 1, 1, 17, 0, tzinfo=dt_timezone.utc))
        self.pipeline = LocationUpdatePipeline(self.registry, gateway=self.gateway, clock=self.clock)

    async def test_first_report_updates_row_and_broadcasts(self):
        result = await self.pipeline.process(self.event.id, self.alice.id, 28.6315, 77.2167)

        self.assertFalse(result.is_moving)
        self.assertEqual(result.eta, 21)
        self.assertAlmostEqual(result.distance, 2.42, delta=0.05)

        participant = await EventParticipant.objects.aget(event=self.event, user=self.alice)
        self.assertEqual(participant.last_lat, 28.6315)
        self.assertEqual(participant.last_location_at, self.clock.now)
        self.assertEqual(participant.estimated_arrival, self.clock.now + timedelta(minutes=21))
        self.assertAlmostEqual(participant.distance_to_event, result.distance)

        self.assertEqual(self.gateway.calls, [("28.6315,77.2167", "28.6129,77.2295", "driving")])

        self.registry.broadcast.assert_awaited_once()
        args, kwargs = self.registry.broadcast.call_args
        self.assertEqual(args[0], str(self.event.id))
        self.assertEqual(args[1], "eta_updated")
        self.assertEqual(args[2]["participantId"], str(self.alice.id))
        self.assertEqual(args[2]["eta"], 21)
        self.assertFalse(args[2]["isMoving"])
        self.assertEqual(kwargs["exclude_user_id"], str(self.alice.id))

    async def test_moving_when_far_enough_and_recent(self):
        await self.pipeline.process(self.event.id, self.alice.id, 28.6315, 77.2167)
        self.clock.advance(10)
        result = await self.pipeline.process(self.event.id, self.alice.id, 28.6250, 77.2200)
        self.assertTrue(result.is_moving)

    async def test_not_moving_when_previous_sample_is_old(self):
        await self.pipeline.process(self.event.id, self.alice.id, 28.6315, 77.2167)
        self.clock.advance(45)
        result = await self.pipeline.process(self.event.id, self.alice.id, 28.6250, 77.2200)
        self.assertFalse(result.is_moving)

    async def test_not_moving_for_small_shift(self):
        await self.pipeline.process(self.event.id, self.alice.id, 28.6315, 77.2167)
        self.clock.advance(10)
        result = await self.pipeline.process(self.event.id, self.alice.id, 28.6316, 77.2167)
        self.assertFalse(result.is_moving)

    async def test_gateway_failure_keeps_update_with_zero_eta(self):
        self.gateway.result = None

        result = await self.pipeline.process(self.event.id, self.alice.id, 28.6315, 77.2167)

        self.assertEqual(result.eta, 0)
        participant = await EventParticipant.objects.aget(event=self.event, user=self.alice)
        self.assertIsNone(participant.estimated_arrival)
        self.assertIsNotNone(participant.distance_to_event)
        self.registry.broadcast.assert_awaited_once()

    async def test_gateway_exception_is_treated_as_unknown_eta(self):
        self.gateway.error = RuntimeError("boom")
        result = await self.pipeline.process(self.event.id, self.alice.id, 28.6315, 77.2167)
        self.assertEqual(result.eta, 0)

    async def test_event_without_coordinates_routes_to_location_text(self):
        event = await Event.objects.acreate(
            name="Picnic",
            location="Lodhi Garden",
            datetime=datetime(2030, 1, 1, 12, 0, tzinfo=dt_timezone.utc),
            creator=self.alice,
        )
        await EventParticipant.objects.acreate(event=event, user=self.alice)

        result = await self.pipeline.process(event.id, self.alice.id, 28.6315, 77.2167)

        self.assertIsNone(result.distance)
        self.assertEqual(self.gateway.calls[-1][1], "Lodhi Garden")
        payload = self.registry.broadcast.call_args[0][2]
        self.assertEqual(payload["distance"], 0.0)

    async def test_non_participant_is_rejected_without_broadcast(self):
        with self.assertRaises(NotAParticipantError):
            await self.pipeline.process(self.event.id, self.carol.id, 28.6, 77.2)
        self.registry.broadcast.assert_not_awaited()
        self.assertEqual(self.gateway.calls, [])

    async def test_unknown_event_is_rejected(self):
        with self.assertRaises(EventNotFoundError):
            await self.pipeline.process("00000000-0000-0000-0000-000000000000", self.alice.id, 28.6, 77.2)
        self.registry.broadcast.assert_not_awaited()

    async def test_location_sharing_disabled_is_rejected(self):
        await Event.objects.filter(id=self.event.id).aupdate(allow_location_sharing=False)
        with self.assertRaises(LocationSharingDisabledError):
            await self.pipeline.process(self.event.id, self.alice.id, 28.6, 77.2)
        self.registry.broadcast.assert_not_awaited()

    async def test_persistence_failure_aborts_without_broadcast(self):
        with patch("services.tracking.location_pipeline._persist_location", AsyncMock(side_effect=RuntimeError("db down"))):
            with self.assertRaises(RuntimeError):
                await self.pipeline.process(self.event.id, self.alice.id, 28.6315, 77.2167)
        self.registry.broadcast.assert_not_awaited()

    async def test_concurrent_samples_for_one_participant_apply_in_order(self):
        self.gateway.delay = 0.2

        first, second = await asyncio.gather(
            self.pipeline.process(self.event.id, self.alice.id, 28.60, 77.20),
            self.pipeline.process(self.event.id, self.alice.id, 28.62, 77.20),
        )

        # The second sample saw the first one stored, so it counts as movement
        self.assertFalse(first.is_moving)
        self.assertTrue(second.is_moving)
        participant = await EventParticipant.objects.aget(event=self.event, user=self.alice)
        self.assertEqual(participant.last_lat, 28.62)
        self.assertEqual(self.registry.broadcast.await_count, 2)
