from django.urls import path
from . import views

app_name = 'events'

urlpatterns = [
    path('', views.event_list, name='event-list'),
    path('<uuid:event_id>/', views.event_detail, name='event-detail'),

    # Membership
    path('<uuid:event_id>/join/', views.join_event, name='join-event'),
    path('<uuid:event_id>/leave/', views.leave_event, name='leave-event'),
    path('<uuid:event_id>/participants/', views.event_participants, name='event-participants'),
]
