from django.contrib import admin
from django.urls import path, include

from events.views import directions_view
from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check), # Health check endpoint

    # Authentication endpoints (at /api/auth/)
    path('api/auth/', include('accounts.urls')),  # register, login, refresh

    # Events, participants, join/leave (at /api/events/)
    path('api/events/', include('events.urls')),

    # Directions proxy used by clients for roster ETA refresh
    path('api/directions/', directions_view, name='directions'),
]
