from django.contrib import admin

from .models import Event, EventParticipant


class EventParticipantInline(admin.TabularInline):
    model = EventParticipant
    extra = 0
    readonly_fields = [
        "last_lat",
        "last_lng",
        "last_location_at",
        "is_moving",
        "distance_to_event",
        "estimated_arrival",
        "joined_at",
    ]


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    list_display = ["name", "location", "datetime", "creator", "allow_location_sharing"]
    list_filter = ["allow_location_sharing", "datetime"]
    search_fields = ["name", "location", "creator__username", "creator__email"]
    inlines = [EventParticipantInline]


@admin.register(EventParticipant)
class EventParticipantAdmin(admin.ModelAdmin):
    list_display = ["event", "user", "is_moving", "distance_to_event", "last_location_at"]
    list_filter = ["is_moving"]
    search_fields = ["event__name", "user__username"]
