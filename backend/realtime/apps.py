"""Realtime app configuration."""

from django.apps import AppConfig


class RealtimeConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'realtime'

    def ready(self):
        from .registry import ConnectionRegistry

        # One registry per process, shared by consumers and HTTP views
        self.registry = ConnectionRegistry()
