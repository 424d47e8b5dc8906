"""Persistence access for notifications, templates and medication routines.

Queries take an explicit :class:`Session` so callers decide where transaction
boundaries lie; :meth:`NotificationStore.transaction` opens one with the usual
commit/rollback semantics.  The two race-sensitive writes, claiming a due
notification and advancing a routine's reminder pointer, are single
conditional ``UPDATE`` statements whose row count tells the caller whether it
won.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import date, datetime
from typing import Iterable, List, Optional, Tuple

import sqlalchemy as sa
import structlog
from sqlalchemy.orm import Session, sessionmaker

from clinicops.db.models import (
    MedicationRoutine,
    Notification,
    NotificationStatus,
    NotificationTemplate,
    NotificationType,
    UTCDateTime,
    User,
)
from clinicops.errors import NotFoundError
from clinicops.lifecycle import HIDDEN_FROM_PATIENT, derive_status
from clinicops.migrations import session_scope


logger = structlog.get_logger(__name__)

_HIDDEN_VALUES = [status.value for status in HIDDEN_FROM_PATIENT]
_MARKABLE_VALUES = [
    NotificationStatus.PENDING.value,
    NotificationStatus.SENT.value,
    NotificationStatus.DELIVERED.value,
    NotificationStatus.SEEN.value,
]


def _legacy_unread() -> sa.ColumnElement[bool]:
    """Match status-less rows that derive to an unread forward state."""

    return sa.and_(
        Notification.status.is_(None),
        Notification.retracted_at.is_(None),
        Notification.cancelled_at.is_(None),
        Notification.failure_reason.is_(None),
        Notification.read_at.is_(None),
    )


def patient_visible() -> sa.ColumnElement[bool]:
    """SQL form of the patient visibility rule."""

    return sa.or_(
        sa.and_(
            Notification.status.is_(None),
            Notification.retracted_at.is_(None),
            Notification.cancelled_at.is_(None),
        ),
        Notification.status.notin_(_HIDDEN_VALUES),
    )


def unread() -> sa.ColumnElement[bool]:
    return sa.and_(
        Notification.read_at.is_(None),
        sa.or_(
            Notification.status.is_(None),
            Notification.status != NotificationStatus.READ.value,
        ),
    )


def pending() -> sa.ColumnElement[bool]:
    return sa.and_(
        Notification.sent_at.is_(None),
        sa.or_(
            Notification.status == NotificationStatus.PENDING.value,
            sa.and_(_legacy_unread(), Notification.delivered_at.is_(None)),
        ),
    )


def _ts(value: datetime) -> sa.BindParameter:
    return sa.literal(value, type_=UTCDateTime())


class NotificationStore:
    """Data access for the notification engine."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def transaction(self) -> AbstractContextManager[Session]:
        return session_scope(self._session_factory)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def get_notification(
        self, session: Session, notification_id: int, *, for_update: bool = False
    ) -> Optional[Notification]:
        stmt = sa.select(Notification).where(Notification.id == notification_id)
        if for_update:
            # Ignored by SQLite; row locks on PostgreSQL.
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()

    def require_notification(
        self, session: Session, notification_id: int, *, for_update: bool = False
    ) -> Notification:
        notification = self.get_notification(session, notification_id, for_update=for_update)
        if notification is None:
            raise NotFoundError(
                f"Notification {notification_id} does not exist",
                notification_id=notification_id,
            )
        return notification

    def add_notification(self, session: Session, notification: Notification) -> Notification:
        """Insert *notification*, stamping its derived status if none was set."""

        notification.status = derive_status(notification).value
        session.add(notification)
        session.flush()
        logger.debug(
            "notification_stored",
            notification_id=notification.id,
            recipient_id=notification.recipient_id,
            type=notification.type,
            status=notification.status,
        )
        return notification

    def list_for_recipient(
        self,
        session: Session,
        recipient_id: int,
        *,
        include_hidden: bool,
        only_unread: bool = False,
    ) -> List[Notification]:
        stmt = sa.select(Notification).where(Notification.recipient_id == recipient_id)
        if not include_hidden:
            stmt = stmt.where(patient_visible())
        if only_unread:
            stmt = stmt.where(unread())
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        return list(session.execute(stmt).scalars())

    def count_unread(self, session: Session, recipient_id: int) -> int:
        stmt = (
            sa.select(sa.func.count(Notification.id))
            .where(Notification.recipient_id == recipient_id)
            .where(patient_visible())
            .where(unread())
        )
        return int(session.execute(stmt).scalar_one())

    def list_sent_by_doctor(
        self, session: Session, doctor_id: int
    ) -> List[Tuple[Notification, Optional[str], Optional[str]]]:
        """Return notifications sent by *doctor_id* with recipient name and email."""

        stmt = (
            sa.select(Notification, User.username, User.email)
            .join(User, User.id == Notification.recipient_id, isouter=True)
            .where(Notification.sender_id == doctor_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
        )
        return [(row[0], row[1], row[2]) for row in session.execute(stmt).all()]

    def due_candidates(self, session: Session, cutoff: datetime, limit: int) -> List[int]:
        stmt = (
            sa.select(Notification.id)
            .where(Notification.scheduled_for.is_not(None))
            .where(Notification.scheduled_for <= _ts(cutoff))
            .where(pending())
            .order_by(Notification.scheduled_for, Notification.id)
            .limit(limit)
        )
        return list(session.execute(stmt).scalars())

    def claim_due(self, session: Session, notification_id: int, now: datetime) -> bool:
        """Atomically move a pending row to sent; ``True`` only for the winner."""

        stmt = (
            sa.update(Notification)
            .where(Notification.id == notification_id)
            .where(pending())
            .values(
                status=NotificationStatus.SENT.value,
                sent_at=now,
                updated_at=now,
                version=Notification.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount == 1

    def mark_all_read(self, session: Session, recipient_id: int, now: datetime) -> List[int]:
        """Mark every visible unread notification of *recipient_id* as read.

        Earlier stage timestamps are backfilled where missing.  Returns the ids
        that were targeted so the caller can verify the write.
        """

        ids = list(
            session.execute(
                sa.select(Notification.id)
                .where(Notification.recipient_id == recipient_id)
                .where(unread())
                .where(
                    sa.or_(
                        Notification.status.in_(_MARKABLE_VALUES),
                        _legacy_unread(),
                    )
                )
            ).scalars()
        )
        if not ids:
            return []
        stamp = _ts(now)
        session.execute(
            sa.update(Notification)
            .where(Notification.id.in_(ids))
            .values(
                status=NotificationStatus.READ.value,
                sent_at=sa.func.coalesce(Notification.sent_at, stamp),
                delivered_at=sa.func.coalesce(Notification.delivered_at, stamp),
                seen_at=sa.func.coalesce(Notification.seen_at, stamp),
                read_at=sa.func.coalesce(Notification.read_at, stamp),
                updated_at=now,
                version=Notification.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return ids

    def statuses_for(self, session: Session, ids: Iterable[int]) -> List[Notification]:
        """Re-read rows bypassing the identity map."""

        ids = list(ids)
        if not ids:
            return []
        stmt = (
            sa.select(Notification)
            .where(Notification.id.in_(ids))
            .execution_options(populate_existing=True)
        )
        return list(session.execute(stmt).scalars())

    def reminder_exists(
        self,
        session: Session,
        *,
        recipient_id: int,
        related_entity_type: str,
        related_entity_id: int,
        scheduled_for: datetime,
        title: str,
    ) -> bool:
        stmt = (
            sa.select(Notification.id)
            .where(Notification.recipient_id == recipient_id)
            .where(Notification.related_entity_type == related_entity_type)
            .where(Notification.related_entity_id == related_entity_id)
            .where(Notification.scheduled_for == _ts(scheduled_for))
            .where(Notification.title == title)
            .where(
                sa.or_(
                    Notification.status.is_(None),
                    Notification.status != NotificationStatus.CANCELLED.value,
                )
            )
            .limit(1)
        )
        return session.execute(stmt).first() is not None

    def pending_for_entity(
        self, session: Session, related_entity_type: str, related_entity_id: int
    ) -> List[Notification]:
        stmt = (
            sa.select(Notification)
            .where(Notification.related_entity_type == related_entity_type)
            .where(Notification.related_entity_id == related_entity_id)
            .where(pending())
        )
        return list(session.execute(stmt).scalars())

    def purge_sent_before(self, session: Session, cutoff: datetime) -> int:
        stmt = (
            sa.delete(Notification)
            .where(Notification.sent_at.is_not(None))
            .where(Notification.sent_at < _ts(cutoff))
            .execution_options(synchronize_session=False)
        )
        return int(session.execute(stmt).rowcount or 0)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------
    def get_template(self, session: Session, template_id: int) -> Optional[NotificationTemplate]:
        return session.get(NotificationTemplate, template_id)

    def active_templates_by_type(
        self, session: Session, notification_type: NotificationType | str
    ) -> List[NotificationTemplate]:
        kind = getattr(notification_type, "value", notification_type)
        stmt = (
            sa.select(NotificationTemplate)
            .where(NotificationTemplate.type == kind)
            .where(NotificationTemplate.is_active.is_(True))
            .order_by(NotificationTemplate.name)
        )
        return list(session.execute(stmt).scalars())

    # ------------------------------------------------------------------
    # Medication routines
    # ------------------------------------------------------------------
    def get_routine(self, session: Session, routine_id: int) -> Optional[MedicationRoutine]:
        return session.get(MedicationRoutine, routine_id)

    def reminder_routine_ids(self, session: Session, today: date) -> List[int]:
        """Ids of active, reminder-enabled routines running on *today*."""

        stmt = (
            sa.select(MedicationRoutine.id)
            .where(MedicationRoutine.is_active.is_(True))
            .where(MedicationRoutine.reminder_enabled.is_(True))
            .where(MedicationRoutine.start_date <= today)
            .where(
                sa.or_(
                    MedicationRoutine.end_date.is_(None),
                    MedicationRoutine.end_date >= today,
                )
            )
            .order_by(MedicationRoutine.id)
        )
        return list(session.execute(stmt).scalars())

    def claim_routine_day(
        self, session: Session, routine_id: int, now: datetime, day_start: datetime
    ) -> bool:
        """Advance the routine's reminder pointer to *now* unless already done today.

        *day_start* is the UTC instant at which the current local day began.  The
        update only matches while ``last_reminder_sent_at`` is unset or earlier
        than that, so at most one caller per routine per day gets ``True``.
        """

        stmt = (
            sa.update(MedicationRoutine)
            .where(MedicationRoutine.id == routine_id)
            .where(
                sa.or_(
                    MedicationRoutine.last_reminder_sent_at.is_(None),
                    MedicationRoutine.last_reminder_sent_at < _ts(day_start),
                )
            )
            .values(last_reminder_sent_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount == 1


__all__ = [
    "NotificationStore",
    "patient_visible",
    "unread",
    "pending",
]
