"""
API package for VodPipe
"""

from .app import Services, build_services, create_app
from .websocket import broadcast_event, websocket_connections

__all__ = [
    "Services",
    "build_services",
    "create_app",
    "broadcast_event",
    "websocket_connections",
]
