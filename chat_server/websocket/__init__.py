"""WebSocket module for real-time delivery.

This module provides:
- DeliveryHub, mapping live connections to users and fanning out events
- Handlers for client chat events
"""

from chat_server.websocket.hub import DeliveryHub

__all__ = ['DeliveryHub']
