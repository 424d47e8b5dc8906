"""Reminder generation for appointments and medication routines.

Reminder planning is split in two layers.  The ``*_reminder_plan`` functions are
pure: given the current time and an entity they return the reminders that
should exist, without touching the database.  :class:`ReminderScheduler`
materialises those plans, deduplicating appointment reminders against what is
already stored and guarding medication reminders with the per-routine
``last_reminder_sent_at`` pointer so each calendar day is handled once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from typing import List, Optional, Tuple

import structlog
from prometheus_client import Counter

from clinicops.collaborators import AppointmentLog, AppointmentRecord, Clock
from clinicops.config import EngineSettings, get_engine_settings
from clinicops.db.models import (
    MedicationRoutine,
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    RelatedEntityType,
)
from clinicops.errors import NotFoundError
from clinicops.lifecycle import LifecycleManager
from clinicops.notification_store import NotificationStore
from clinicops.schemas import AppointmentContext, MedicationContext, build_context
from clinicops.template_renderer import render
from clinicops.time_utils import (
    at_local_time,
    ensure_utc,
    format_display,
    local_date,
    local_day_bounds,
    resolve_timezone,
)


logger = structlog.get_logger(__name__)

REMINDERS_CREATED_TOTAL = Counter(
    "clinicops_reminders_created_total",
    "Scheduled reminders persisted, by notification type",
    ["type"],
)
ROUTINE_FAILURES_TOTAL = Counter(
    "clinicops_medication_routine_failures_total",
    "Medication routines whose reminder run raised an error",
)


# (offset before the appointment, title suffix, message body)
APPOINTMENT_OFFSETS: Tuple[Tuple[timedelta, str, str], ...] = (
    (
        timedelta(hours=24),
        "Tomorrow",
        "You have an appointment with Dr. {doctorName} tomorrow at {appointmentTime}",
    ),
    (
        timedelta(hours=1),
        "1 Hour",
        "Your appointment with Dr. {doctorName} is in 1 hour at {appointmentTime}",
    ),
    (
        timedelta(minutes=30),
        "30 Minutes",
        "Your appointment with Dr. {doctorName} is in 30 minutes at {appointmentTime}",
    ),
)

MEDICATION_TITLE = "Medication Reminder"
MEDICATION_BODY = "Time to take your medication: {medicationName} ({dosage})"
MEDICATION_PRE_TITLE = "Medication Reminder - Upcoming"
MEDICATION_PRE_BODY = "Reminder: Take your medication {medicationName} ({dosage}) in {minutesBefore} minutes"

# Appointment statuses that no longer warrant reminders.
CLOSED_APPOINTMENT_STATUSES = frozenset({"cancelled", "canceled", "completed", "no_show"})


@dataclass(frozen=True)
class ReminderPlan:
    """A reminder that should exist, prior to being persisted."""

    recipient_id: int
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    scheduled_for: datetime
    related_entity_type: RelatedEntityType
    related_entity_id: int
    occurrence: Optional[date] = None
    sender_id: Optional[int] = None

    def to_notification(self, created_at: datetime) -> Notification:
        return Notification(
            recipient_id=self.recipient_id,
            sender_id=self.sender_id,
            type=self.type.value,
            title=self.title,
            message=self.message,
            priority=self.priority.value,
            status=NotificationStatus.PENDING.value,
            related_entity_type=self.related_entity_type.value,
            related_entity_id=self.related_entity_id,
            scheduled_for=self.scheduled_for,
            created_at=created_at,
            updated_at=created_at,
        )


@dataclass
class MedicationRunReport:
    routines_checked: int = 0
    routines_claimed: int = 0
    routines_skipped: int = 0
    routines_failed: int = 0
    reminders_created: int = 0
    failed_ids: List[int] = field(default_factory=list)


def appointment_reminder_plan(
    appointment: AppointmentRecord,
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> List[ReminderPlan]:
    """Return the reminders still ahead of *now* for *appointment*.

    Offsets whose reminder time is not strictly after *now* are dropped; missed
    windows are never caught up.
    """

    tz = tz or resolve_timezone(None)
    now = ensure_utc(now)
    scheduled_at = ensure_utc(appointment.scheduled_at)
    context = build_context(
        NotificationType.APPOINTMENT_REMINDER,
        AppointmentContext(
            patient_name=appointment.patient_name,
            doctor_name=appointment.doctor_name,
            appointment_time=scheduled_at,
            appointment_id=appointment.id,
        ),
    )
    variables = context.as_variables()
    local_time = format_display(scheduled_at, tz)
    variables.update(appointment_time=local_time, appointmentTime=local_time)

    plans: List[ReminderPlan] = []
    for offset, suffix, body in APPOINTMENT_OFFSETS:
        remind_at = scheduled_at - offset
        if remind_at <= now:
            continue
        plans.append(
            ReminderPlan(
                recipient_id=appointment.patient_id,
                type=NotificationType.APPOINTMENT_REMINDER,
                title=f"Appointment Reminder - {suffix}",
                message=render(body, variables),
                priority=NotificationPriority.HIGH,
                scheduled_for=remind_at,
                related_entity_type=RelatedEntityType.APPOINTMENT,
                related_entity_id=appointment.id,
            )
        )
    return plans


def _routine_days(
    routine: MedicationRoutine, now: datetime, horizon_days: int, tz: tzinfo
) -> List[date]:
    today = local_date(now, tz)
    first = max(routine.start_date, today)
    last = today + timedelta(days=horizon_days)
    if routine.end_date is not None:
        last = min(last, routine.end_date)
    if routine.last_reminder_sent_at is not None:
        first = max(first, local_date(routine.last_reminder_sent_at, tz) + timedelta(days=1))
    days: List[date] = []
    current = first
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days


def medication_reminder_plan(
    routine: MedicationRoutine,
    now: datetime,
    *,
    horizon_days: int,
    tz: Optional[tzinfo] = None,
) -> List[ReminderPlan]:
    """Return one reminder per remaining day of *routine* within the horizon.

    Days on or before the local date of ``last_reminder_sent_at`` are already
    handled and are left out.  A positive ``reminder_minutes_before`` adds an
    "upcoming" reminder that many minutes ahead of each dose.  Reminders whose
    time is not strictly after *now* are dropped; a missed dose is never
    caught up.
    """

    tz = tz or resolve_timezone(None)
    if not routine.is_active or not routine.reminder_enabled:
        return []

    minutes_before = routine.reminder_minutes_before or 0
    context = build_context(
        NotificationType.MEDICATION_REMINDER,
        MedicationContext(
            medication_name=routine.medication_name,
            dosage=routine.dosage,
            instructions=routine.instructions,
            minutes_before=max(0, minutes_before),
        ),
    )
    variables = context.as_variables()
    message = render(MEDICATION_BODY, variables)
    pre_message = render(MEDICATION_PRE_BODY, variables) if minutes_before > 0 else None

    now = ensure_utc(now)
    plans: List[ReminderPlan] = []
    for day in _routine_days(routine, now, horizon_days, tz):
        dose_at = at_local_time(day, routine.time_of_day, tz)
        if dose_at <= now:
            continue
        pre_at = dose_at - timedelta(minutes=minutes_before)
        if pre_message is not None and pre_at > now:
            plans.append(
                ReminderPlan(
                    recipient_id=routine.patient_id,
                    type=NotificationType.MEDICATION_REMINDER,
                    title=MEDICATION_PRE_TITLE,
                    message=pre_message,
                    priority=NotificationPriority.MEDIUM,
                    scheduled_for=pre_at,
                    related_entity_type=RelatedEntityType.MEDICATION_ROUTINE,
                    related_entity_id=routine.id,
                    occurrence=day,
                )
            )
        plans.append(
            ReminderPlan(
                recipient_id=routine.patient_id,
                type=NotificationType.MEDICATION_REMINDER,
                title=MEDICATION_TITLE,
                message=message,
                priority=NotificationPriority.MEDIUM,
                scheduled_for=dose_at,
                related_entity_type=RelatedEntityType.MEDICATION_ROUTINE,
                related_entity_id=routine.id,
                occurrence=day,
            )
        )
    return plans


class ReminderScheduler:
    """Persist reminder plans for appointments and medication routines."""

    def __init__(
        self,
        store: NotificationStore,
        appointments: AppointmentLog,
        clock: Clock,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self._store = store
        self._appointments = appointments
        self._clock = clock
        self._settings = settings or get_engine_settings()
        self._tz = resolve_timezone(self._settings.timezone)
        self._lifecycle = LifecycleManager(clock.now)

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------
    def schedule_appointment_reminders(self, appointment_id: int) -> List[int]:
        """Create any missing reminders for *appointment_id* and return their ids."""

        appointment = self._appointments.find_by_id(appointment_id)
        if appointment is None:
            raise NotFoundError(
                f"Appointment {appointment_id} does not exist",
                appointment_id=appointment_id,
            )
        if (appointment.status or "").lower() in CLOSED_APPOINTMENT_STATUSES:
            logger.info(
                "appointment_reminders_skipped",
                appointment_id=appointment_id,
                status=appointment.status,
            )
            return []

        now = self._clock.now()
        plans = appointment_reminder_plan(appointment, now, self._tz)
        created: List[int] = []
        with self._store.transaction() as session:
            for plan in plans:
                if self._store.reminder_exists(
                    session,
                    recipient_id=plan.recipient_id,
                    related_entity_type=plan.related_entity_type.value,
                    related_entity_id=plan.related_entity_id,
                    scheduled_for=plan.scheduled_for,
                    title=plan.title,
                ):
                    continue
                row = self._store.add_notification(session, plan.to_notification(now))
                created.append(row.id)
        if created:
            REMINDERS_CREATED_TOTAL.labels(type=NotificationType.APPOINTMENT_REMINDER.value).inc(
                len(created)
            )
        logger.info(
            "appointment_reminders_scheduled",
            appointment_id=appointment_id,
            planned=len(plans),
            created=len(created),
        )
        return created

    def cancel_appointment_reminders(
        self, appointment_id: int, reason: Optional[str] = None
    ) -> int:
        """Cancel reminders for *appointment_id* that have not gone out yet."""

        with self._store.transaction() as session:
            rows = self._store.pending_for_entity(
                session, RelatedEntityType.APPOINTMENT.value, appointment_id
            )
            for row in rows:
                self._lifecycle.cancel(row, reason)
        logger.info("appointment_reminders_cancelled", appointment_id=appointment_id, count=len(rows))
        return len(rows)

    # ------------------------------------------------------------------
    # Medication routines
    # ------------------------------------------------------------------
    def run_medication_reminders(self, now: Optional[datetime] = None) -> MedicationRunReport:
        """Materialise today's reminders for every eligible routine.

        Each routine is handled in its own transaction.  The day's reminders are
        written only by the caller whose compare-and-set on the routine pointer
        succeeds, so overlapping runs never duplicate a day.
        """

        now = ensure_utc(now or self._clock.now())
        today = local_date(now, self._tz)
        day_start, _ = local_day_bounds(now, self._tz)
        report = MedicationRunReport()

        with self._store.transaction() as session:
            routine_ids = self._store.reminder_routine_ids(session, today)

        for routine_id in routine_ids:
            report.routines_checked += 1
            try:
                created = self._run_routine(routine_id, now, today, day_start)
            except Exception:
                report.routines_failed += 1
                report.failed_ids.append(routine_id)
                ROUTINE_FAILURES_TOTAL.inc()
                logger.exception("medication_reminder_failed", routine_id=routine_id)
                continue
            if created is None:
                report.routines_skipped += 1
                continue
            report.routines_claimed += 1
            report.reminders_created += created

        if report.reminders_created:
            REMINDERS_CREATED_TOTAL.labels(type=NotificationType.MEDICATION_REMINDER.value).inc(
                report.reminders_created
            )
        logger.info(
            "medication_reminders_run",
            checked=report.routines_checked,
            claimed=report.routines_claimed,
            skipped=report.routines_skipped,
            failed=report.routines_failed,
            created=report.reminders_created,
        )
        return report

    def _run_routine(
        self, routine_id: int, now: datetime, today: date, day_start: datetime
    ) -> Optional[int]:
        """Return the number of reminders written, or ``None`` if nothing was claimed.

        When every reminder of today is already in the past the pointer is left
        alone, so the routine is picked up again on its next day.
        """

        with self._store.transaction() as session:
            routine = self._store.get_routine(session, routine_id)
            if routine is None:
                return None
            todays = [
                plan
                for plan in medication_reminder_plan(
                    routine,
                    now,
                    horizon_days=self._settings.reminder_horizon_days,
                    tz=self._tz,
                )
                if plan.occurrence == today
            ]
            if not todays:
                return None
            if not self._store.claim_routine_day(session, routine_id, now, day_start):
                logger.debug("medication_day_already_claimed", routine_id=routine_id)
                return None
            for plan in todays:
                self._store.add_notification(session, plan.to_notification(now))
            return len(todays)


__all__ = [
    "APPOINTMENT_OFFSETS",
    "ReminderPlan",
    "MedicationRunReport",
    "appointment_reminder_plan",
    "medication_reminder_plan",
    "ReminderScheduler",
    "REMINDERS_CREATED_TOTAL",
]
