"""
At-most-once derived notifications.

Before fanning a derived notification (e.g. "Event Started") out to every
active user, the deduper asks the store whether an equivalent one already
exists for the same entity, subtype and calendar day. The scope is matched
on structured payload fields through bound parameters, never by splicing
entity text into a query.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from timekeeper.observability import notifications_created

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationScope:
    """Identifies 'this notification, for this entity, for this day'."""

    category: str
    entity_id: str
    subtype: str
    entity_date: str

    def payload_keys(self) -> dict[str, str]:
        return {
            "entity_id": self.entity_id,
            "entity_date": self.entity_date,
            "notification_subtype": self.subtype,
        }


@dataclass
class NotificationCandidate:
    """A notification to be created for one or more recipients."""

    category: str
    title: str
    message: str
    type: str = "info"
    payload: dict[str, Any] = field(default_factory=dict)

    def scoped(self, scope: NotificationScope) -> "NotificationCandidate":
        """Copy with the scope's dedup keys stamped into the payload."""
        return NotificationCandidate(
            category=scope.category,
            title=self.title,
            message=self.message,
            type=self.type,
            payload={**self.payload, **scope.payload_keys()},
        )


class NotificationStore(Protocol):
    def count_existing_notifications(
        self, entity_id: str, subtype: str, entity_date: str, category: str | None = None
    ) -> int: ...

    def insert_notification_for_all_users(
        self, candidate: NotificationCandidate
    ) -> list[dict[str, Any]]: ...


class NotificationDeduper:
    """Creates a fan-out notification unless one already exists for its scope."""

    def __init__(self, store: NotificationStore):
        self.store = store

    def ensure_notification(
        self,
        scope: NotificationScope,
        build: Callable[[], NotificationCandidate],
    ) -> list[dict[str, Any]]:
        """
        Fan out the candidate to all active users once per scope.

        Args:
            scope: Entity/subtype/day the notification belongs to
            build: Called only when no notification exists yet

        Returns:
            Created rows as [{id, user_id}], empty when deduplicated
        """
        existing = self.store.count_existing_notifications(
            scope.entity_id, scope.subtype, scope.entity_date, scope.category
        )
        if existing:
            logger.debug(
                f"{scope.subtype} already sent for {scope.category} {scope.entity_id} "
                f"on {scope.entity_date}"
            )
            return []

        candidate = build().scoped(scope)
        created = self.store.insert_notification_for_all_users(candidate)
        notifications_created.inc(len(created))
        return created
