"""
Services package - Business logic layer.

This package contains the business logic that operates on Django models
but is decoupled from the HTTP/WebSocket layer.

Modules:
    - directions: Routing provider gateway (travel time / distance)
    - tracking: Location update pipeline for event participants
"""
