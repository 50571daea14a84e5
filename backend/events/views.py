import logging

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from realtime.messages import OutboundEvent
from realtime.notifications import (
    event_deleted_payload,
    notify_event,
    participant_joined_payload,
    participant_left_payload,
)
from services.directions import get_directions_gateway
from . import storage
from .serializers import (
    DirectionsQuerySerializer,
    EventDetailSerializer,
    EventSerializer,
    ParticipantSerializer,
)

logger = logging.getLogger(__name__)


def _not_found():
    return Response({'error': 'Event not found'}, status=status.HTTP_404_NOT_FOUND)


# ==================== Event APIs ====================

@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def event_list(request):
    """List the caller's events, or create one (the creator joins it)"""
    if request.method == 'GET':
        events = storage.get_user_events(request.user.id)
        return Response(EventSerializer(events, many=True).data)

    serializer = EventSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    event = storage.create_event(request.user, **serializer.validated_data)
    return Response(EventSerializer(event).data, status=status.HTTP_201_CREATED)


@api_view(['GET', 'DELETE'])
@permission_classes([IsAuthenticated])
def event_detail(request, event_id):
    """
    GET: full event state with roster. Read only; joining is a separate call.
    DELETE: creator only; connected participants get event_deleted.
    """
    if request.method == 'GET':
        state = storage.get_event_with_participants(event_id, request.user.id)
        if state is None:
            return _not_found()

        serializer = EventDetailSerializer(
            state.event,
            context={
                'request': request,
                'participants': state.participants,
                'is_creator': state.is_creator,
                'is_participant': state.is_participant,
            },
        )
        return Response(serializer.data)

    event = storage.get_event(event_id)
    if event is None:
        return _not_found()

    if event.creator_id != request.user.id:
        return Response(
            {'error': 'Only the creator can delete this event'},
            status=status.HTTP_403_FORBIDDEN
        )

    storage.delete_event(event_id)
    notify_event(event_id, OutboundEvent.EVENT_DELETED, event_deleted_payload(event_id))
    logger.info("Event %s deleted by %s", event_id, request.user.id)

    return Response({'success': True})


# ==================== Membership APIs ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def join_event(request, event_id):
    """Join an event. Calling again is harmless and returns the same row."""
    if storage.get_event(event_id) is None:
        return _not_found()

    participant, created = storage.join_event(event_id, request.user.id)
    if created:
        notify_event(
            event_id,
            OutboundEvent.PARTICIPANT_JOINED,
            participant_joined_payload(event_id, request.user),
            exclude_user_id=request.user.id,
        )

    return Response({
        'message': 'Successfully joined event',
        'created': created,
        'participant': ParticipantSerializer(participant).data,
    }, status=status.HTTP_201_CREATED if created else status.HTTP_200_OK)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def leave_event(request, event_id):
    """Leave an event"""
    if not storage.leave_event(event_id, request.user.id):
        return Response({'error': 'Not a participant'}, status=status.HTTP_404_NOT_FOUND)

    notify_event(
        event_id,
        OutboundEvent.PARTICIPANT_LEFT,
        participant_left_payload(event_id, request.user.id),
        exclude_user_id=request.user.id,
    )
    return Response({'success': True})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def event_participants(request, event_id):
    """Roster of an event"""
    if storage.get_event(event_id) is None:
        return _not_found()

    participants = storage.get_event_participants(event_id)
    return Response(ParticipantSerializer(participants, many=True).data)


# ==================== Directions API ====================

@api_view(['GET'])
@permission_classes([IsAuthenticated])
def directions_view(request):
    """
    Travel time and distance between two places.

    Query: ?origin=<lat,lng|address>&destination=<lat,lng|address>&mode=driving
    """
    query = DirectionsQuerySerializer(data=request.query_params)
    if not query.is_valid():
        return Response(query.errors, status=status.HTTP_400_BAD_REQUEST)

    gateway = get_directions_gateway()
    if not gateway.is_configured:
        return Response(
            {'error': 'Directions provider not configured'},
            status=status.HTTP_503_SERVICE_UNAVAILABLE
        )

    result = gateway.get_directions(**query.validated_data)
    if result is None:
        return Response(
            {'error': 'Failed to get directions'},
            status=status.HTTP_502_BAD_GATEWAY
        )

    return Response(result.to_dict())
