"""
Notification deduplication.

Several code paths can observe the same event (a poll result, a push callback,
a manual override). Every user-visible notification goes through
``NotificationDeduplicationService.should_show`` so that each
``(task_id, kind)`` pair fires at most once per session.
"""

from collections import deque
from datetime import datetime
import threading

import structlog

from beatstudio.tasks.models import Notification, NotificationKind

logger = structlog.get_logger(__name__)


class NotificationDeduplicationService:
    """
    Table of ``(task_id, kind) -> shown_at``.

    Append-only within a session. ``clear()`` is the only way entries leave
    the table and is called on account switch.

    Example:
        >>> dedup = NotificationDeduplicationService()
        >>> dedup.should_show("t1", NotificationKind.COMPLETION)
        True
        >>> dedup.should_show("t1", NotificationKind.COMPLETION)
        False
    """

    def __init__(self):
        self._shown: dict[tuple[str, NotificationKind], datetime] = {}
        self._lock = threading.Lock()

    def should_show(self, task_id: str, kind: NotificationKind) -> bool:
        """
        Atomically check and record a notification key.

        Args:
            task_id: Task the notification is about
            kind: Notification kind

        Returns:
            True the first time the key is seen, False afterwards
        """
        key = (task_id, kind)
        with self._lock:
            if key in self._shown:
                logger.debug(
                    "Duplicate notification suppressed",
                    task_id=task_id,
                    kind=kind.value,
                )
                return False
            self._shown[key] = datetime.now()
            return True

    def has_shown(self, task_id: str, kind: NotificationKind) -> bool:
        with self._lock:
            return (task_id, kind) in self._shown

    def shown_at(self, task_id: str, kind: NotificationKind) -> datetime | None:
        with self._lock:
            return self._shown.get((task_id, kind))

    def clear(self) -> None:
        """Drop every record (account switch)."""
        with self._lock:
            count = len(self._shown)
            self._shown.clear()
        logger.info("Notification records cleared", cleared=count)

    def __len__(self) -> int:
        return len(self._shown)


class NotificationFeed:
    """Bounded feed of notifications that passed the dedup gate."""

    def __init__(
        self,
        dedup: NotificationDeduplicationService | None = None,
        max_entries: int = 200,
    ):
        self.dedup = dedup if dedup is not None else NotificationDeduplicationService()
        self._entries: deque[Notification] = deque(maxlen=max_entries)

    def notify(self, task_id: str, kind: NotificationKind, message: str) -> bool:
        """
        Publish a notification if its key has not fired yet.

        Returns:
            True if the notification was published
        """
        if not self.dedup.should_show(task_id, kind):
            return False

        self._entries.append(Notification(task_id=task_id, kind=kind, message=message))
        logger.info("Notification published", task_id=task_id, kind=kind.value)
        return True

    def recent(self, limit: int = 50) -> list[Notification]:
        """Most recent notifications, newest first."""
        return list(reversed(self._entries))[:limit]

    def count(self, task_id: str | None = None, kind: NotificationKind | None = None) -> int:
        return sum(
            1
            for n in self._entries
            if (task_id is None or n.task_id == task_id)
            and (kind is None or n.kind == kind)
        )

    def clear(self) -> None:
        self._entries.clear()
        self.dedup.clear()
