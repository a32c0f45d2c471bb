"""
Subscribe module - live change notification.

Invariants:
    - Every matching node is delivered once at registration time
    - Every later change to a matching node is delivered once, in order
    - unsubscribe() is idempotent and re-entrant
"""

from .engine import SubscriptionEngine, SubscriptionHandle

__all__ = ["SubscriptionEngine", "SubscriptionHandle"]
