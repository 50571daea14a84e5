"""
Realtime app for WebSocket communication about live events.

This app provides:
- An event WebSocket consumer that accepts location reports and relays updates
- A process-local connection registry used for event room fan-out
- JWT authentication middleware for WebSocket handshakes
- Typed parsing of inbound messages
- Notification helpers for broadcasting from synchronous (HTTP) code

Key Components:
    - registry.py: Connection registry and room broadcast
    - middleware.py: Token resolution at handshake time
    - messages.py: Inbound message variants and outbound event names
    - consumers/: WebSocket consumers
    - notifications.py: Sync broadcast helpers for views

Usage:
    from realtime.consumers import EventConsumer
    from realtime.registry import get_connection_registry
    from realtime.notifications import notify_event
"""
