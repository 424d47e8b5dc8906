"""SQLAlchemy models for notifications, templates and medication routines."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String, Text, Time
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    SQLite drops the offset on write and hands back naive values; both are
    normalised here so comparisons inside the engine never mix naive and
    aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class NotificationType(str, enum.Enum):
    """Kinds of notification the engine produces."""

    APPOINTMENT_REMINDER = "appointment_reminder"
    MEDICATION_REMINDER = "medication_reminder"
    GENERAL = "general"
    SYSTEM_NOTIFICATION = "system_notification"


class NotificationPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationStatus(str, enum.Enum):
    """Lifecycle states for a notification."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"
    READ = "read"
    CANCELLED = "cancelled"
    RETRACTED = "retracted"
    FAILED = "failed"


class RelatedEntityType(str, enum.Enum):
    APPOINTMENT = "appointment"
    MEDICATION_ROUTINE = "medication_routine"
    TEMPLATE = "template"
    SYSTEM = "system"


class UserRole(str, enum.Enum):
    DOCTOR = "doctor"
    PATIENT = "patient"
    STAFF = "staff"
    MANAGER = "manager"


class User(Base):
    """Directory entry maintained by the account service; read-only here."""

    __tablename__ = "users"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    username = sa.Column(String, nullable=False, unique=True, index=True)
    email = sa.Column(String, nullable=True, unique=True)
    role = sa.Column(String, nullable=False)
    created_at = sa.Column(UTCDateTime(), nullable=False, default=_utcnow)


class Appointment(Base):
    """Booking record maintained by the appointment service; read-only here."""

    __tablename__ = "appointments"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    patient_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    doctor_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    scheduled_at = sa.Column(UTCDateTime(), nullable=False)
    status = sa.Column(String, nullable=False, server_default=sa.text("'scheduled'"))
    created_at = sa.Column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.Index("idx_appointments_pair", "doctor_id", "patient_id"),
    )


class NotificationTemplate(Base):
    __tablename__ = "notification_templates"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String, nullable=False, unique=True)
    type = sa.Column(String, nullable=False, default=NotificationType.GENERAL.value)
    subject = sa.Column(String, nullable=False)
    body = sa.Column(Text, nullable=False)
    priority = sa.Column(String, nullable=False, default=NotificationPriority.MEDIUM.value)
    is_active = sa.Column(Boolean, nullable=False, default=True, server_default=sa.true())
    created_at = sa.Column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at = sa.Column(UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.Index("idx_notification_templates_type", "type", "is_active"),
    )


class MedicationRoutine(Base):
    __tablename__ = "medication_routines"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    patient_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    medication_name = sa.Column(String, nullable=False)
    dosage = sa.Column(String, nullable=False)
    instructions = sa.Column(Text, nullable=True)
    start_date = sa.Column(Date, nullable=False)
    end_date = sa.Column(Date, nullable=True)
    time_of_day = sa.Column(Time, nullable=False)
    is_active = sa.Column(Boolean, nullable=False, default=True, server_default=sa.true())
    reminder_enabled = sa.Column(Boolean, nullable=False, default=True, server_default=sa.true())
    reminder_minutes_before = sa.Column(Integer, nullable=False, default=30, server_default=sa.text("30"))
    last_reminder_sent_at = sa.Column(UTCDateTime(), nullable=True)
    created_at = sa.Column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at = sa.Column(UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.Index("idx_medication_routines_active", "is_active", "reminder_enabled"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    recipient_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    sender_id = sa.Column(Integer, ForeignKey("users.id"), nullable=True)
    type = sa.Column(String, nullable=False)
    title = sa.Column(String, nullable=False)
    message = sa.Column(Text, nullable=False)
    priority = sa.Column(String, nullable=False, default=NotificationPriority.MEDIUM.value)
    # Nullable for rows written before statuses were persisted; see lifecycle.derive_status.
    status = sa.Column(String, nullable=True)
    related_entity_id = sa.Column(Integer, nullable=True)
    related_entity_type = sa.Column(String, nullable=True)
    scheduled_for = sa.Column(UTCDateTime(), nullable=True)
    sent_at = sa.Column(UTCDateTime(), nullable=True)
    delivered_at = sa.Column(UTCDateTime(), nullable=True)
    seen_at = sa.Column(UTCDateTime(), nullable=True)
    read_at = sa.Column(UTCDateTime(), nullable=True)
    retracted_at = sa.Column(UTCDateTime(), nullable=True)
    cancelled_at = sa.Column(UTCDateTime(), nullable=True)
    retraction_reason = sa.Column(Text, nullable=True)
    failure_reason = sa.Column(Text, nullable=True)
    version = sa.Column(Integer, nullable=False, default=1, server_default=sa.text("1"))
    created_at = sa.Column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at = sa.Column(UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        sa.Index("idx_notifications_recipient", "recipient_id", "created_at"),
        sa.Index("idx_notifications_due", "status", "scheduled_for"),
        sa.Index("idx_notifications_related", "related_entity_type", "related_entity_id"),
        sa.Index("idx_notifications_sender", "sender_id"),
    )


__all__ = [
    "Base",
    "UTCDateTime",
    "NotificationType",
    "NotificationPriority",
    "NotificationStatus",
    "RelatedEntityType",
    "UserRole",
    "User",
    "Appointment",
    "NotificationTemplate",
    "MedicationRoutine",
    "Notification",
]
