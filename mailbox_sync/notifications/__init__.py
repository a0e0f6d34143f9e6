"""
User-facing synchronization status notifications
"""

from .channel import ClientChannel, WebSocketChannelManager
from .sync_logger import SynchronizationLogger

__all__ = [
    "ClientChannel",
    "SynchronizationLogger",
    "WebSocketChannelManager",
]
