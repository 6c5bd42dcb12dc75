"""
Notification construction and deduplication.

The engine only enqueues notification rows; delivery is someone else's job.
"""

from .dedup import NotificationCandidate, NotificationDeduper, NotificationScope

__all__ = ["NotificationCandidate", "NotificationDeduper", "NotificationScope"]
