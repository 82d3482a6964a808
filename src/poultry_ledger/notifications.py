"""Post-commit notification dispatch.

Lifecycle managers never talk to a notification backend directly. After an
atomic unit commits they emit a :class:`NotificationEvent`; the
:class:`NotificationDispatcher` keeps those events in an outbox and hands
them to every registered sink. A failing sink is logged and skipped, so a
committed business mutation can never be undone by a notification problem.
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Callable, Deque, Iterable, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import NotificationCategory

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


@dataclass(frozen=True)
class NotificationEvent:
    """A "notify user X of event Y" request raised after a commit."""

    user_id: str
    title: str
    message: str
    category: NotificationCategory
    link: Optional[str] = None


NotificationSink = Callable[[NotificationEvent], None]


class NotificationDispatcher:
    """Outbox that delivers notification events to sinks, best effort.

    With ``auto_flush`` enabled (the default) every :meth:`emit` drains the
    outbox immediately; otherwise events wait until :meth:`flush` is called,
    e.g. by a background worker.
    """

    def __init__(self, sinks: Iterable[NotificationSink] = (), *, auto_flush: bool = True) -> None:
        self._sinks: List[NotificationSink] = list(sinks)
        self._outbox: Deque[NotificationEvent] = deque()
        self._lock = threading.Lock()
        self.auto_flush = auto_flush

    def subscribe(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    @property
    def pending(self) -> int:
        return len(self._outbox)

    def emit(self, event: NotificationEvent) -> None:
        """Queue ``event`` for delivery; never raises for delivery failures."""

        with self._lock:
            self._outbox.append(event)
        log.debug("Queued '%s' notification for user '%s'", event.category.value, event.user_id)
        if self.auto_flush:
            self.flush()

    def flush(self) -> int:
        """Deliver every queued event and return how many sink calls succeeded."""

        delivered = 0
        while True:
            with self._lock:
                if not self._outbox:
                    return delivered
                event = self._outbox.popleft()
            for sink in self._sinks:
                try:
                    sink(event)
                except Exception:  # sink failures must not surface to committed operations
                    log.warning(
                        "Notification '%s' for user '%s' could not be delivered",
                        event.title,
                        event.user_id,
                        exc_info=True,
                    )
                else:
                    delivered += 1


class WorkbookNotificationSink:
    """Sink that stores notifications on the workbook's ``Notifications`` sheet."""

    def __init__(self, workbook: Workbook, lock: threading.RLock) -> None:
        self._workbook = workbook
        self._lock = lock

    def __call__(self, event: NotificationEvent) -> None:
        record = data_manager.NotificationRow(
            notification_id=f"N{uuid.uuid4().hex}",
            user_id=event.user_id,
            title=event.title,
            message=event.message,
            category=event.category.value,
            link=event.link,
            is_read=False,
            created_at_iso=datetime.now(UTC).isoformat(),
        )
        with self._lock:
            data_manager.append_record(self._workbook, data_manager.NOTIFICATIONS_SHEET, record)


def list_notifications(context: RuntimeContext, user_id: str, *, limit: int = 20) -> List[data_manager.NotificationRow]:
    """Return the newest ``limit`` notifications addressed to ``user_id``."""

    with context._lock:
        rows = [row for row in data_manager.iter_notifications(context.workbook) if row.user_id == user_id]
    rows.sort(key=lambda row: row.created_at_iso, reverse=True)
    return rows[:limit]


def mark_notifications_read(context: RuntimeContext, user_id: str) -> int:
    """Flag every unread notification for ``user_id`` as read.

    Returns:
        int: Number of notifications updated.
    """

    updated = 0
    with context._lock:
        unread = [
            row.notification_id
            for row in data_manager.iter_notifications(context.workbook)
            if row.user_id == user_id and not row.is_read
        ]
        for notification_id in unread:
            data_manager.update_record(
                context.workbook,
                data_manager.NOTIFICATIONS_SHEET,
                notification_id,
                field_values={"IsRead": True},
            )
            updated += 1
    log.info("Marked %d notification(s) as read for user '%s'", updated, user_id)
    return updated
