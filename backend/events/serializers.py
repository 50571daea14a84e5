from rest_framework import serializers

from accounts.serializers import UserSerializer
from common.utils import classify_status
from .models import Event, EventParticipant


class ParticipantSerializer(serializers.ModelSerializer):
    user = UserSerializer(read_only=True)
    status = serializers.SerializerMethodField()

    class Meta:
        model = EventParticipant
        fields = [
            "id",
            "user",
            "last_lat",
            "last_lng",
            "last_location_at",
            "is_moving",
            "distance_to_event",
            "estimated_arrival",
            "joined_at",
            "status",
        ]
        read_only_fields = fields

    def get_status(self, obj):
        """Arrival bucket from the stored distance; None until one is known"""
        if obj.distance_to_event is None:
            return None
        return classify_status(obj.distance_to_event).value


class EventSerializer(serializers.ModelSerializer):
    creator = UserSerializer(read_only=True)
    location_lat = serializers.FloatField(
        required=False, allow_null=True, min_value=-90, max_value=90
    )
    location_lng = serializers.FloatField(
        required=False, allow_null=True, min_value=-180, max_value=180
    )

    class Meta:
        model = Event
        fields = [
            "id",
            "name",
            "description",
            "location",
            "location_lat",
            "location_lng",
            "datetime",
            "allow_location_sharing",
            "creator",
            "created_at",
        ]
        read_only_fields = ["id", "creator", "created_at"]

    def validate(self, data):
        lat = data.get("location_lat")
        lng = data.get("location_lng")
        if (lat is None) != (lng is None):
            raise serializers.ValidationError(
                "location_lat and location_lng must be provided together"
            )
        return data


class EventDetailSerializer(EventSerializer):
    """Full event state: the canonical fetch clients resync from"""
    participants = serializers.SerializerMethodField()
    is_creator = serializers.SerializerMethodField()
    is_participant = serializers.SerializerMethodField()

    class Meta(EventSerializer.Meta):
        fields = EventSerializer.Meta.fields + ["participants", "is_creator", "is_participant"]

    def get_participants(self, obj):
        participants = self.context.get("participants")
        if participants is None:
            participants = obj.participants.select_related("user")
        return ParticipantSerializer(participants, many=True).data

    def get_is_creator(self, obj):
        return self.context.get("is_creator", False)

    def get_is_participant(self, obj):
        return self.context.get("is_participant", False)


class DirectionsQuerySerializer(serializers.Serializer):
    origin = serializers.CharField()
    destination = serializers.CharField()
    mode = serializers.ChoiceField(
        choices=["driving", "walking", "bicycling", "transit"],
        default="driving",
    )
