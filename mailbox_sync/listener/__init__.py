"""
Listener subscriptions, failover and the HTTP surface for push notifications
"""

from .failover import FailoverController, ListenerRecoveryHandler, failover_period_start
from .manager import ListenerActionError, ListenerActions, ListenerSubscriptionManager
from .router import create_listener_router

__all__ = [
    "FailoverController",
    "ListenerActionError",
    "ListenerActions",
    "ListenerRecoveryHandler",
    "ListenerSubscriptionManager",
    "create_listener_router",
    "failover_period_start",
]
