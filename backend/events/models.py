import uuid

from django.conf import settings
from django.db import models


class Event(models.Model):
    """A scheduled meetup that participants travel to"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")

    # Destination: free text always, coordinates when geocoded
    location = models.CharField(max_length=255)
    location_lat = models.FloatField(null=True, blank=True)
    location_lng = models.FloatField(null=True, blank=True)

    datetime = models.DateTimeField()
    creator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='created_events'
    )
    allow_location_sharing = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'events'
        ordering = ['datetime']

    def __str__(self):
        return f"{self.name} @ {self.location}"

    @property
    def has_coordinates(self) -> bool:
        return self.location_lat is not None and self.location_lng is not None


class EventParticipant(models.Model):
    """A user's membership in an event, with their last known position"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name='participants')
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='event_memberships'
    )

    # Last known position only, no history
    last_lat = models.FloatField(null=True, blank=True)
    last_lng = models.FloatField(null=True, blank=True)
    last_location_at = models.DateTimeField(null=True, blank=True)

    is_moving = models.BooleanField(default=False)
    distance_to_event = models.FloatField(null=True, blank=True)  # km
    estimated_arrival = models.DateTimeField(null=True, blank=True)
    joined_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'event_participants'
        ordering = ['joined_at']
        constraints = [
            models.UniqueConstraint(fields=['event', 'user'], name='unique_event_participant'),
        ]

    def __str__(self):
        return f"{self.user_id} in {self.event_id}"

    @property
    def has_location(self) -> bool:
        return self.last_lat is not None and self.last_lng is not None
