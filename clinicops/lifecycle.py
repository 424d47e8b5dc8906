"""Notification state machine.

A notification moves forward through ``pending -> sent -> delivered -> seen ->
read``.  Higher stages imply the lower ones happened, so every forward mark
backfills the earlier timestamps it skipped.  ``cancelled``, ``retracted``,
``failed`` and ``read`` are terminal.  Retraction is the one explicit way
back out of the forward path and is only allowed while the recipient has not
seen the notification.

All transitions operate on a loaded :class:`Notification` row; persisting the
change is the caller's job so it can happen inside the caller's transaction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, FrozenSet, Optional

import structlog

from clinicops.db.models import Notification, NotificationStatus
from clinicops.errors import InvalidStateTransitionError
from clinicops.time_utils import utc_now


logger = structlog.get_logger(__name__)


RETRACTION_MARKER = "[CANCELLED]"

FORWARD_RANK: Dict[NotificationStatus, int] = {
    NotificationStatus.PENDING: 0,
    NotificationStatus.SENT: 1,
    NotificationStatus.DELIVERED: 2,
    NotificationStatus.SEEN: 3,
    NotificationStatus.READ: 4,
}

TERMINAL_STATUSES: FrozenSet[NotificationStatus] = frozenset(
    {
        NotificationStatus.CANCELLED,
        NotificationStatus.RETRACTED,
        NotificationStatus.FAILED,
        NotificationStatus.READ,
    }
)

# Statuses a patient never sees; staff views return everything.
HIDDEN_FROM_PATIENT: FrozenSet[NotificationStatus] = frozenset(
    {NotificationStatus.CANCELLED, NotificationStatus.RETRACTED}
)
VISIBLE_TO_PATIENT: FrozenSet[NotificationStatus] = frozenset(
    status for status in NotificationStatus if status not in HIDDEN_FROM_PATIENT
)


def derive_status(notification: Notification) -> NotificationStatus:
    """Return the effective status of *notification*.

    The stored status wins when present.  Rows written without one fall back to
    the most advanced timestamp recorded on the row.
    """

    if notification.status:
        return NotificationStatus(notification.status)
    if notification.retracted_at is not None:
        return NotificationStatus.RETRACTED
    if notification.cancelled_at is not None:
        return NotificationStatus.CANCELLED
    if notification.failure_reason:
        return NotificationStatus.FAILED
    if notification.read_at is not None:
        return NotificationStatus.READ
    if notification.seen_at is not None:
        return NotificationStatus.SEEN
    if notification.delivered_at is not None:
        return NotificationStatus.DELIVERED
    if notification.sent_at is not None:
        return NotificationStatus.SENT
    return NotificationStatus.PENDING


def is_unread(notification: Notification) -> bool:
    return notification.read_at is None and derive_status(notification) != NotificationStatus.READ


# Statuses from which a notification can no longer be withdrawn.
NOT_RETRACTABLE: FrozenSet[NotificationStatus] = frozenset(
    {
        NotificationStatus.SEEN,
        NotificationStatus.READ,
        NotificationStatus.CANCELLED,
        NotificationStatus.RETRACTED,
        NotificationStatus.FAILED,
    }
)


def can_retract(notification: Notification) -> bool:
    """Return ``True`` while the recipient has not seen *notification*."""

    if notification.seen_at is not None:
        return False
    return derive_status(notification) not in NOT_RETRACTABLE


def _append_marker(text: Optional[str]) -> str:
    text = text or ""
    if text.endswith(RETRACTION_MARKER):
        return text
    return f"{text} {RETRACTION_MARKER}".strip()


class LifecycleManager:
    """Apply lifecycle transitions to notification rows."""

    def __init__(self, now: Optional[Callable[[], datetime]] = None) -> None:
        self._now = now or utc_now

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _current(self, notification: Notification) -> NotificationStatus:
        return derive_status(notification)

    def _set_status(self, notification: Notification, status: NotificationStatus, now: datetime) -> None:
        previous = notification.status
        notification.status = status.value
        notification.updated_at = now
        logger.debug(
            "notification_transition",
            notification_id=notification.id,
            previous=previous,
            status=status.value,
        )

    def _advance(self, notification: Notification, target: NotificationStatus) -> bool:
        """Return ``True`` if *notification* should move forward to *target*.

        Marks on a notification already at or past *target* are no-ops; marks on
        cancelled, retracted or failed notifications are rejected.
        """

        current = self._current(notification)
        if current not in FORWARD_RANK:
            raise InvalidStateTransitionError(
                f"Cannot mark a {current.value} notification as {target.value}",
                notification_id=notification.id,
                status=current.value,
                target=target.value,
            )
        return FORWARD_RANK[current] < FORWARD_RANK[target]

    # ------------------------------------------------------------------
    # Forward transitions
    # ------------------------------------------------------------------
    def mark_sent(self, notification: Notification) -> Notification:
        current = self._current(notification)
        if current == NotificationStatus.SENT:
            return notification
        if current != NotificationStatus.PENDING:
            raise InvalidStateTransitionError(
                f"Only pending notifications can be sent (status={current.value})",
                notification_id=notification.id,
                status=current.value,
            )
        now = self._now()
        notification.sent_at = notification.sent_at or now
        self._set_status(notification, NotificationStatus.SENT, now)
        return notification

    def mark_delivered(self, notification: Notification) -> Notification:
        if not self._advance(notification, NotificationStatus.DELIVERED):
            return notification
        now = self._now()
        notification.sent_at = notification.sent_at or now
        notification.delivered_at = notification.delivered_at or now
        self._set_status(notification, NotificationStatus.DELIVERED, now)
        return notification

    def mark_seen(self, notification: Notification) -> Notification:
        if not self._advance(notification, NotificationStatus.SEEN):
            return notification
        now = self._now()
        notification.sent_at = notification.sent_at or now
        notification.delivered_at = notification.delivered_at or now
        notification.seen_at = notification.seen_at or now
        self._set_status(notification, NotificationStatus.SEEN, now)
        return notification

    def mark_read(self, notification: Notification) -> Notification:
        if not self._advance(notification, NotificationStatus.READ):
            return notification
        now = self._now()
        notification.sent_at = notification.sent_at or now
        notification.delivered_at = notification.delivered_at or now
        notification.seen_at = notification.seen_at or now
        notification.read_at = notification.read_at or now
        self._set_status(notification, NotificationStatus.READ, now)
        return notification

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------
    def mark_failed(self, notification: Notification, reason: str) -> Notification:
        current = self._current(notification)
        if current in TERMINAL_STATUSES:
            raise InvalidStateTransitionError(
                f"Cannot fail a {current.value} notification",
                notification_id=notification.id,
                status=current.value,
            )
        now = self._now()
        notification.failure_reason = reason or "unknown failure"
        self._set_status(notification, NotificationStatus.FAILED, now)
        return notification

    def retract(self, notification: Notification, reason: Optional[str] = None) -> Notification:
        if notification.seen_at is not None:
            raise InvalidStateTransitionError(
                "Notification has already been seen and can no longer be retracted",
                notification_id=notification.id,
                seen_at=notification.seen_at.isoformat(),
            )
        current = self._current(notification)
        if current == NotificationStatus.RETRACTED:
            notification.title = _append_marker(notification.title)
            notification.message = _append_marker(notification.message)
            return notification
        if not can_retract(notification):
            raise InvalidStateTransitionError(
                f"A {current.value} notification cannot be retracted",
                notification_id=notification.id,
                status=current.value,
            )
        now = self._now()
        notification.title = _append_marker(notification.title)
        notification.message = _append_marker(notification.message)
        notification.retracted_at = now
        notification.retraction_reason = reason
        self._set_status(notification, NotificationStatus.RETRACTED, now)
        return notification

    def cancel(self, notification: Notification, reason: Optional[str] = None) -> Notification:
        """Cancel a reminder that has not gone out yet."""

        current = self._current(notification)
        if current == NotificationStatus.CANCELLED:
            return notification
        if current != NotificationStatus.PENDING:
            raise InvalidStateTransitionError(
                f"Only pending notifications can be cancelled (status={current.value})",
                notification_id=notification.id,
                status=current.value,
            )
        now = self._now()
        notification.cancelled_at = now
        self._set_status(notification, NotificationStatus.CANCELLED, now)
        logger.info("notification_cancelled", notification_id=notification.id, reason=reason)
        return notification


__all__ = [
    "RETRACTION_MARKER",
    "FORWARD_RANK",
    "TERMINAL_STATUSES",
    "HIDDEN_FROM_PATIENT",
    "VISIBLE_TO_PATIENT",
    "NOT_RETRACTABLE",
    "derive_status",
    "is_unread",
    "can_retract",
    "LifecycleManager",
]
