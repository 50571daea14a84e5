from datetime import datetime, timedelta, timezone as dt_timezone
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient

from realtime.messages import OutboundEvent
from services.directions import DirectionsResult
from . import storage
from .models import Event, EventParticipant

User = get_user_model()

EVENT_AT = datetime(2030, 1, 1, 18, 0, tzinfo=dt_timezone.utc)


def _make_event(creator, **overrides):
    fields = {
        "name": "Dinner",
        "location": "India Gate",
        "location_lat": 28.6129,
        "location_lng": 77.2295,
        "datetime": EVENT_AT,
    }
    fields.update(overrides)
    return storage.create_event(creator, **fields)


class StorageTests(TestCase):
    def setUp(self):
        self.alice = User.objects.create_user(username="alice", email="alice@example.com", password="pass1234")
        self.bob = User.objects.create_user(username="bob", email="bob@example.com", password="pass1234")
        self.event = _make_event(self.alice)

    def test_create_event_adds_creator_to_roster(self):
        participants = storage.get_event_participants(self.event.id)
        self.assertEqual([p.user_id for p in participants], [self.alice.id])

    def test_join_is_idempotent(self):
        first, created = storage.join_event(self.event.id, self.bob.id)
        again, created_again = storage.join_event(self.event.id, self.bob.id)

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.id, again.id)
        self.assertEqual(EventParticipant.objects.filter(event=self.event, user=self.bob).count(), 1)

    def test_leave_reports_membership(self):
        storage.join_event(self.event.id, self.bob.id)
        self.assertTrue(storage.leave_event(self.event.id, self.bob.id))
        self.assertFalse(storage.leave_event(self.event.id, self.bob.id))

    def test_viewing_does_not_join(self):
        state = storage.get_event_with_participants(self.event.id, self.bob.id)

        self.assertFalse(state.is_participant)
        self.assertFalse(state.is_creator)
        self.assertIsNone(storage.get_participant(self.event.id, self.bob.id))

        owner_view = storage.get_event_with_participants(self.event.id, self.alice.id)
        self.assertTrue(owner_view.is_creator)
        self.assertTrue(owner_view.is_participant)

    def test_missing_event(self):
        self.assertIsNone(storage.get_event_with_participants("00000000-0000-0000-0000-000000000000", self.bob.id))

    def test_user_events_include_created_and_joined(self):
        other = _make_event(self.bob, name="Lunch", datetime=EVENT_AT - timedelta(hours=5))
        _make_event(self.bob, name="Private")
        storage.join_event(other.id, self.alice.id)

        events = storage.get_user_events(self.alice.id)
        self.assertEqual([e.name for e in events], ["Lunch", "Dinner"])

    def test_location_update_keeps_unknowns(self):
        now = datetime(2030, 1, 1, 17, 0, tzinfo=dt_timezone.utc)
        storage.update_participant_location(self.event.id, self.alice.id, 28.6, 77.2, False, 12, 2.5, now=now)
        participant = storage.update_participant_location(
            self.event.id, self.alice.id, 28.61, 77.21, True, 0, None, now=now + timedelta(seconds=10)
        )

        participant.refresh_from_db()
        self.assertEqual(participant.last_lat, 28.61)
        self.assertTrue(participant.is_moving)
        self.assertEqual(participant.distance_to_event, 2.5)
        self.assertEqual(participant.estimated_arrival, now + timedelta(minutes=12))
        self.assertEqual(participant.last_location_at, now + timedelta(seconds=10))

    def test_location_update_for_non_participant(self):
        self.assertIsNone(
            storage.update_participant_location(self.event.id, self.bob.id, 1.0, 2.0, False, 0, None)
        )

    def test_delete_event_cascades(self):
        self.assertTrue(storage.delete_event(self.event.id))
        self.assertFalse(EventParticipant.objects.filter(event_id=self.event.id).exists())
        self.assertFalse(storage.delete_event(self.event.id))


@patch("events.views.notify_event")
class EventApiTests(TestCase):
    def setUp(self):
        self.alice = User.objects.create_user(username="alice", email="alice@example.com", password="pass1234")
        self.bob = User.objects.create_user(username="bob", email="bob@example.com", password="pass1234")
        self.event = _make_event(self.alice)
        self.client = APIClient()
        self.client.force_authenticate(self.alice)

    def _as(self, user):
        self.client.force_authenticate(user)

    def test_requires_authentication(self, notify):
        self.client.force_authenticate(None)
        response = self.client.get(reverse("events:event-list"))
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_create_event(self, notify):
        response = self.client.post(reverse("events:event-list"), {
            "name": "Brunch",
            "location": "Khan Market",
            "location_lat": 28.6003,
            "location_lng": 77.2270,
            "datetime": "2030-02-01T10:00:00Z",
        }, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["creator"]["username"], "alice")
        event = Event.objects.get(id=response.data["id"])
        self.assertTrue(EventParticipant.objects.filter(event=event, user=self.alice).exists())

    def test_create_event_validates_coordinates(self, notify):
        base = {"name": "X", "location": "Y", "datetime": "2030-02-01T10:00:00Z"}
        for extra in ({"location_lat": 95, "location_lng": 0}, {"location_lat": 10}):
            with self.subTest(extra=extra):
                response = self.client.post(reverse("events:event-list"), {**base, **extra}, format="json")
                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_list_events(self, notify):
        _make_event(self.bob, name="Not mine")
        response = self.client.get(reverse("events:event-list"))
        self.assertEqual([e["name"] for e in response.data], ["Dinner"])

    def test_detail_is_read_only(self, notify):
        self._as(self.bob)
        response = self.client.get(reverse("events:event-detail", args=[self.event.id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data["is_participant"])
        self.assertFalse(response.data["is_creator"])
        self.assertEqual(len(response.data["participants"]), 1)
        self.assertFalse(EventParticipant.objects.filter(event=self.event, user=self.bob).exists())

    def test_detail_includes_status(self, notify):
        storage.update_participant_location(self.event.id, self.alice.id, 28.6129, 77.2296, False, 1, 0.01)
        response = self.client.get(reverse("events:event-detail", args=[self.event.id]))
        self.assertEqual(response.data["participants"][0]["status"], "arrived")

    def test_detail_not_found(self, notify):
        response = self.client.get(reverse("events:event-detail", args=["00000000-0000-0000-0000-000000000000"]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_join_then_join_again(self, notify):
        self._as(self.bob)
        url = reverse("events:join-event", args=[self.event.id])

        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(response.data["created"])
        notify.assert_called_once()
        args, kwargs = notify.call_args
        self.assertEqual(args[1], OutboundEvent.PARTICIPANT_JOINED)
        self.assertEqual(args[2]["participant"]["id"], str(self.bob.id))
        self.assertEqual(kwargs["exclude_user_id"], self.bob.id)

        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data["created"])
        notify.assert_called_once()

    def test_join_unknown_event(self, notify):
        response = self.client.post(reverse("events:join-event", args=["00000000-0000-0000-0000-000000000000"]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        notify.assert_not_called()

    def test_leave(self, notify):
        storage.join_event(self.event.id, self.bob.id)
        self._as(self.bob)
        url = reverse("events:leave-event", args=[self.event.id])

        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        args, _ = notify.call_args
        self.assertEqual(args[1], OutboundEvent.PARTICIPANT_LEFT)
        self.assertEqual(args[2], {"eventId": str(self.event.id), "participantId": str(self.bob.id)})

        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_participants(self, notify):
        storage.join_event(self.event.id, self.bob.id)
        response = self.client.get(reverse("events:event-participants", args=[self.event.id]))
        self.assertEqual(
            sorted(p["user"]["username"] for p in response.data),
            ["alice", "bob"],
        )

    def test_only_creator_can_delete(self, notify):
        storage.join_event(self.event.id, self.bob.id)
        self._as(self.bob)
        response = self.client.delete(reverse("events:event-detail", args=[self.event.id]))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertTrue(Event.objects.filter(id=self.event.id).exists())
        notify.assert_not_called()

    def test_delete_notifies_room(self, notify):
        response = self.client.delete(reverse("events:event-detail", args=[self.event.id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(Event.objects.filter(id=self.event.id).exists())
        args, _ = notify.call_args
        self.assertEqual(args[1], OutboundEvent.EVENT_DELETED)
        self.assertEqual(args[2], {"eventId": str(self.event.id)})


class DirectionsApiTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="alice", email="alice@example.com", password="pass1234")
        self.client = APIClient()
        self.client.force_authenticate(self.user)
        self.url = reverse("directions")

    @patch("events.views.get_directions_gateway")
    def test_returns_route(self, get_gateway):
        gateway = Mock(is_configured=True)
        gateway.get_directions.return_value = DirectionsResult(600, 4000, "10 mins", "4.0 km")
        get_gateway.return_value = gateway

        response = self.client.get(self.url, {"origin": "28.6,77.2", "destination": "India Gate"})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {
            "duration": 600,
            "distance": 4000,
            "durationText": "10 mins",
            "distanceText": "4.0 km",
        })
        gateway.get_directions.assert_called_once_with(
            origin="28.6,77.2", destination="India Gate", mode="driving"
        )

    def test_missing_params(self):
        response = self.client.get(self.url, {"origin": "28.6,77.2"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    @patch("events.views.get_directions_gateway")
    def test_provider_failure(self, get_gateway):
        get_gateway.return_value = Mock(is_configured=True, **{"get_directions.return_value": None})
        response = self.client.get(self.url, {"origin": "a", "destination": "b"})
        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)

    @patch("events.views.get_directions_gateway")
    def test_not_configured(self, get_gateway):
        get_gateway.return_value = Mock(is_configured=False)
        response = self.client.get(self.url, {"origin": "a", "destination": "b"})
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
