from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from clinicops.collaborators import (
    AppointmentLog,
    AppointmentRecord,
    Clock,
    SqlAppointmentLog,
    SqlUserDirectory,
    SystemClock,
    UserDirectory,
    UserRecord,
)
from clinicops.config import EngineSettings, get_engine_settings
from clinicops.db.models import (
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    RelatedEntityType,
    UserRole,
)
from clinicops.due_processor import DeliveryHook, DueNotificationProcessor
from clinicops.errors import (
    ConcurrentUpdateError,
    InvalidTemplateVariablesError,
    NotFoundError,
    NotificationError,
    PermissionDeniedError,
    PersistenceInconsistencyError,
)
from clinicops.lifecycle import LifecycleManager, can_retract, derive_status, is_unread
from clinicops.notification_store import NotificationStore
from clinicops.permissions import PermissionGate
from clinicops.scheduling import MEDICATION_BODY, MEDICATION_TITLE, ReminderScheduler
from clinicops.schemas import (
    AppointmentContext,
    BatchSendReport,
    ContactablePatient,
    MedicationContext,
    NotificationView,
    OperationResult,
    TemplateContext,
    build_context,
)
from clinicops.template_renderer import render
from clinicops.time_utils import ensure_utc, format_display, resolve_timezone


logger = structlog.get_logger(__name__)

_STAFF_ROLES = (UserRole.STAFF, UserRole.MANAGER)


def to_view(
    notification: Notification,
    *,
    patient_name: Optional[str] = None,
    patient_email: Optional[str] = None,
) -> NotificationView:
    """Build the read model for *notification* using its derived status."""

    return NotificationView(
        id=notification.id,
        recipient_id=notification.recipient_id,
        sender_id=notification.sender_id,
        type=notification.type,
        title=notification.title,
        message=notification.message,
        priority=notification.priority,
        status=derive_status(notification),
        is_read=not is_unread(notification),
        related_entity_id=notification.related_entity_id,
        related_entity_type=notification.related_entity_type,
        scheduled_for=notification.scheduled_for,
        sent_at=notification.sent_at,
        delivered_at=notification.delivered_at,
        seen_at=notification.seen_at,
        read_at=notification.read_at,
        retracted_at=notification.retracted_at,
        retraction_reason=notification.retraction_reason,
        failure_reason=notification.failure_reason,
        can_retract=can_retract(notification),
        created_at=notification.created_at,
        updated_at=notification.updated_at,
        patient_name=patient_name,
        patient_email=patient_email,
    )


class NotificationService:
    """Create notifications, drive their lifecycle and answer read queries.

    Request-triggered transitions run as one transaction per attempt: the row
    is loaded (locked where the backend supports it), the guard is checked and
    the new state written together.  A concurrent modification detected through
    the row version is retried once before failing with
    :class:`ConcurrentUpdateError`.  Expected failures never escape: operations
    returning :class:`OperationResult` report them as failures, the recipient
    acknowledgements and immediate notifications return ``None``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        users: Optional[UserDirectory] = None,
        appointments: Optional[AppointmentLog] = None,
        clock: Optional[Clock] = None,
        settings: Optional[EngineSettings] = None,
        delivery_hook: Optional[DeliveryHook] = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._settings = settings or get_engine_settings()
        self._tz = resolve_timezone(self._settings.timezone)
        self.store = NotificationStore(session_factory)
        self.users = users or SqlUserDirectory(session_factory)
        self.appointments = appointments or SqlAppointmentLog(session_factory)
        self.gate = PermissionGate(self.users, self.appointments)
        self.lifecycle = LifecycleManager(self._clock.now)
        self.scheduler = ReminderScheduler(
            self.store, self.appointments, self._clock, self._settings
        )
        self.processor = DueNotificationProcessor(
            self.store, self._clock, self._settings, delivery_hook=delivery_hook
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_user(self, user_id: int, role: Optional[UserRole] = None) -> UserRecord:
        user = self.users.lookup(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} does not exist", user_id=user_id)
        if role is not None and not user.has_role(role):
            raise PermissionDeniedError(
                f"User {user_id} is not a {role.value}",
                user_id=user_id,
                role=user.role,
            )
        return user

    def _or_none(self, event: str, operation: Callable[[], Any], **context: Any) -> Any:
        """Run *operation*, turning expected failures into ``None``.

        A lost write is not an expected failure and still propagates.
        """

        try:
            return operation()
        except PersistenceInconsistencyError:
            raise
        except NotificationError as exc:
            logger.warning(event, code=exc.code, error=exc.message, **context)
            return None

    def _recipient_of(self, notification_id: int) -> int:
        with self.store.transaction() as session:
            return self.store.require_notification(session, notification_id).recipient_id

    def _transition(
        self,
        notification_id: int,
        apply: Callable[[Notification], Any],
        *,
        recipient_id: Optional[int] = None,
    ) -> NotificationView:
        """Load, guard and update one notification atomically, retrying once."""

        for attempt in (1, 2):
            try:
                with self.store.transaction() as session:
                    notification = self.store.require_notification(
                        session, notification_id, for_update=True
                    )
                    if recipient_id is not None and notification.recipient_id != recipient_id:
                        # Do not reveal notifications addressed to someone else.
                        raise NotFoundError(
                            f"Notification {notification_id} does not exist",
                            notification_id=notification_id,
                        )
                    apply(notification)
                    session.flush()
                    return to_view(notification)
            except StaleDataError as exc:
                if attempt == 2:
                    raise ConcurrentUpdateError(
                        f"Notification {notification_id} changed concurrently",
                        notification_id=notification_id,
                    ) from exc
                logger.info("notification_transition_retry", notification_id=notification_id)
        raise AssertionError("unreachable")  # pragma: no cover

    def _create_immediate(
        self,
        *,
        recipient_id: int,
        notification_type: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority | str = NotificationPriority.MEDIUM,
        related_entity_type: Optional[RelatedEntityType] = None,
        related_entity_id: Optional[int] = None,
        sender_id: Optional[int] = None,
    ) -> NotificationView:
        self._require_user(recipient_id)
        now = self._clock.now()
        notification = Notification(
            recipient_id=recipient_id,
            sender_id=sender_id,
            type=notification_type.value,
            title=title,
            message=message,
            priority=NotificationPriority(getattr(priority, "value", priority)).value,
            status=NotificationStatus.SENT.value,
            sent_at=now,
            related_entity_type=related_entity_type.value if related_entity_type else None,
            related_entity_id=related_entity_id,
            created_at=now,
            updated_at=now,
        )
        with self.store.transaction() as session:
            self.store.add_notification(session, notification)
            view = to_view(notification)
        logger.info(
            "notification_created",
            notification_id=view.id,
            recipient_id=recipient_id,
            type=notification_type.value,
        )
        return view

    # ------------------------------------------------------------------
    # Doctor-initiated messages
    # ------------------------------------------------------------------
    def send(
        self,
        doctor_id: int,
        patient_id: int,
        template_id: int,
        variables: Optional[Mapping[str, Any] | TemplateContext] = None,
    ) -> OperationResult[NotificationView]:
        """Render *template_id* for *patient_id* and deliver it immediately."""

        try:
            doctor = self._require_user(doctor_id, UserRole.DOCTOR)
            patient = self._require_user(patient_id, UserRole.PATIENT)
            self.gate.require_contact(doctor_id, patient_id)

            with self.store.transaction() as session:
                template = self.store.get_template(session, template_id)
                if template is None or not template.is_active:
                    raise NotFoundError(
                        f"Active template {template_id} does not exist",
                        template_id=template_id,
                    )
                template_type = template.type
                subject, body, priority = template.subject, template.body, template.priority

            context = build_context(
                template_type,
                variables,
                defaults={"patient_name": patient.username, "doctor_name": doctor.username},
            )
            values = context.as_variables()
            view = self._create_immediate(
                recipient_id=patient_id,
                notification_type=NotificationType(template_type),
                title=render(subject, values),
                message=render(body, values),
                priority=priority,
                related_entity_type=RelatedEntityType.TEMPLATE,
                related_entity_id=template_id,
                sender_id=doctor_id,
            )
        except NotificationError as exc:
            logger.warning(
                "doctor_notification_rejected",
                doctor_id=doctor_id,
                patient_id=patient_id,
                template_id=template_id,
                code=exc.code,
                error=exc.message,
            )
            return OperationResult.failure(exc)
        return OperationResult.success(view)

    def retract(
        self, notification_id: int, doctor_id: int, reason: Optional[str] = None
    ) -> OperationResult[NotificationView]:
        """Withdraw a notification the recipient has not seen yet."""

        try:
            self._require_user(doctor_id, UserRole.DOCTOR)
            recipient_id = self._recipient_of(notification_id)
            self.gate.require_contact(doctor_id, recipient_id)

            def _apply(notification: Notification) -> None:
                if notification.sender_id is not None and notification.sender_id != doctor_id:
                    raise PermissionDeniedError(
                        "Only the sending doctor can retract this notification",
                        notification_id=notification_id,
                        doctor_id=doctor_id,
                    )
                self.lifecycle.retract(notification, reason)

            view = self._transition(notification_id, _apply)
        except NotificationError as exc:
            logger.warning(
                "notification_retract_rejected",
                notification_id=notification_id,
                doctor_id=doctor_id,
                code=exc.code,
                error=exc.message,
            )
            return OperationResult.failure(exc)
        logger.info("notification_retracted", notification_id=notification_id, doctor_id=doctor_id)
        return OperationResult.success(view)

    def can_retract(self, notification_id: int) -> bool:
        with self.store.transaction() as session:
            notification = self.store.get_notification(session, notification_id)
            return notification is not None and can_retract(notification)

    def get_history(
        self, viewer_id: int, subject_id: int, as_staff: bool = False
    ) -> OperationResult[List[NotificationView]]:
        """Return *subject_id*'s notifications as *viewer_id* is allowed to see them.

        Doctors need shared appointment history with the patient, patients may
        only read their own, staff and managers are unrestricted.  Cancelled and
        retracted notifications are included only for staff-side viewers asking
        with ``as_staff``.
        """

        try:
            viewer = self._require_user(viewer_id)
            if viewer.has_role(UserRole.DOCTOR):
                self.gate.require_contact(viewer_id, subject_id)
                include_hidden = as_staff
            elif viewer.has_role(UserRole.PATIENT):
                if viewer_id != subject_id:
                    raise PermissionDeniedError(
                        "Patients may only view their own notifications",
                        viewer_id=viewer_id,
                        subject_id=subject_id,
                    )
                include_hidden = False
            elif any(viewer.has_role(role) for role in _STAFF_ROLES):
                include_hidden = as_staff
            else:
                raise PermissionDeniedError(
                    "Unknown viewer role", viewer_id=viewer_id, role=viewer.role
                )
            with self.store.transaction() as session:
                rows = self.store.list_for_recipient(
                    session, subject_id, include_hidden=include_hidden
                )
                views = [to_view(row) for row in rows]
        except NotificationError as exc:
            logger.warning(
                "notification_history_rejected",
                viewer_id=viewer_id,
                subject_id=subject_id,
                code=exc.code,
            )
            return OperationResult.failure(exc)
        return OperationResult.success(views)

    # ------------------------------------------------------------------
    # Recipient acknowledgements
    # ------------------------------------------------------------------
    # Unknown ids, other users' notifications and illegal transitions all come
    # back as ``None``.
    def _acknowledge(
        self, event: str, notification_id: int, user_id: int, apply: Callable[[Notification], Any]
    ) -> Optional[NotificationView]:
        return self._or_none(
            event,
            lambda: self._transition(notification_id, apply, recipient_id=user_id),
            notification_id=notification_id,
            user_id=user_id,
        )

    def mark_delivered(self, notification_id: int, user_id: int) -> Optional[NotificationView]:
        return self._acknowledge(
            "notification_delivery_rejected", notification_id, user_id, self.lifecycle.mark_delivered
        )

    def mark_seen(self, notification_id: int, user_id: int) -> Optional[NotificationView]:
        return self._acknowledge(
            "notification_seen_rejected", notification_id, user_id, self.lifecycle.mark_seen
        )

    def mark_read(self, notification_id: int, user_id: int) -> Optional[NotificationView]:
        """Mark one notification read and confirm the stored row agrees."""

        view = self._acknowledge(
            "notification_read_rejected", notification_id, user_id, self.lifecycle.mark_read
        )
        if view is None:
            return None
        with self.store.transaction() as session:
            stored = self.store.statuses_for(session, [notification_id])
            if not stored or not self._is_read(stored[0]):
                logger.error(
                    "notification_read_not_persisted",
                    notification_id=notification_id,
                    user_id=user_id,
                )
                raise PersistenceInconsistencyError(
                    f"Notification {notification_id} was not persisted as read",
                    notification_id=notification_id,
                )
        return view

    def mark_all_read(self, user_id: int) -> int:
        """Mark every visible unread notification of *user_id* read.

        Returns the number of notifications updated.
        """

        now = self._clock.now()
        with self.store.transaction() as session:
            ids = self.store.mark_all_read(session, user_id, now)
        if not ids:
            return 0
        with self.store.transaction() as session:
            stored = self.store.statuses_for(session, ids)
            failed = sorted(
                set(ids) - {row.id for row in stored if self._is_read(row)}
            )
        if failed:
            logger.error("notifications_read_not_persisted", user_id=user_id, ids=failed)
            raise PersistenceInconsistencyError(
                f"{len(failed)} notifications were not persisted as read",
                user_id=user_id,
                notification_ids=failed,
            )
        logger.info("notifications_marked_read", user_id=user_id, count=len(ids))
        return len(ids)

    @staticmethod
    def _is_read(notification: Notification) -> bool:
        return (
            notification.read_at is not None
            and derive_status(notification) == NotificationStatus.READ
        )

    # ------------------------------------------------------------------
    # Immediate system-generated notifications
    # ------------------------------------------------------------------
    def create_appointment_reminder(
        self,
        patient_id: int,
        appointment_id: int,
        appointment_time: datetime,
        doctor_name: Optional[str] = None,
    ) -> Optional[NotificationView]:
        """Notify *patient_id* about an appointment right away.

        Returns ``None`` when the patient does not exist.
        """

        context = AppointmentContext(
            doctor_name=doctor_name,
            appointment_time=ensure_utc(appointment_time),
            appointment_id=appointment_id,
        )
        values = context.as_variables()
        local_time = format_display(appointment_time, self._tz)
        values.update(appointment_time=local_time, appointmentTime=local_time)
        return self._or_none(
            "appointment_reminder_rejected",
            lambda: self._create_immediate(
                recipient_id=patient_id,
                notification_type=NotificationType.APPOINTMENT_REMINDER,
                title="Appointment Reminder",
                message=render(
                    "Your appointment with {doctorName} is scheduled for {appointmentTime}.", values
                ),
                related_entity_type=RelatedEntityType.APPOINTMENT,
                related_entity_id=appointment_id,
            ),
            patient_id=patient_id,
            appointment_id=appointment_id,
        )

    def create_medication_reminder(
        self, patient_id: int, routine_id: int, medication_name: str, dosage: str
    ) -> Optional[NotificationView]:
        values = MedicationContext(medication_name=medication_name, dosage=dosage).as_variables()
        return self._or_none(
            "medication_reminder_rejected",
            lambda: self._create_immediate(
                recipient_id=patient_id,
                notification_type=NotificationType.MEDICATION_REMINDER,
                title="Medication Reminder",
                message=render("It's time to take your medication: {medicationName} ({dosage}).", values),
                related_entity_type=RelatedEntityType.MEDICATION_ROUTINE,
                related_entity_id=routine_id,
            ),
            patient_id=patient_id,
            routine_id=routine_id,
        )

    def create_system_notification(
        self,
        user_id: int,
        title: str,
        message: str,
        priority: NotificationPriority | str = NotificationPriority.MEDIUM,
    ) -> Optional[NotificationView]:
        return self._or_none(
            "system_notification_rejected",
            lambda: self._create_immediate(
                recipient_id=user_id,
                notification_type=NotificationType.SYSTEM_NOTIFICATION,
                title=title,
                message=message,
                priority=priority,
                related_entity_type=RelatedEntityType.SYSTEM,
            ),
            user_id=user_id,
        )

    # ------------------------------------------------------------------
    # Doctor-side medication reminders and contact list
    # ------------------------------------------------------------------
    def patients_with_appointments(
        self, doctor_id: int
    ) -> OperationResult[List[ContactablePatient]]:
        """Patients *doctor_id* shares appointments with, latest appointment first."""

        try:
            self._require_user(doctor_id, UserRole.DOCTOR)
            latest: Dict[int, AppointmentRecord] = {}
            for appointment in self.appointments.find_for_doctor(doctor_id):
                latest.setdefault(appointment.patient_id, appointment)
            patients = []
            for patient_id, appointment in latest.items():
                patient = self.users.lookup(patient_id)
                patients.append(
                    ContactablePatient(
                        patient_id=patient_id,
                        patient_name=patient.username if patient else appointment.patient_name,
                        patient_email=patient.email if patient else None,
                        last_appointment=appointment.scheduled_at,
                        appointment_status=appointment.status,
                    )
                )
        except NotificationError as exc:
            logger.warning("contactable_patients_rejected", doctor_id=doctor_id, code=exc.code)
            return OperationResult.failure(exc)
        return OperationResult.success(patients)

    def send_manual_medication_reminder(
        self,
        doctor_id: int,
        patient_id: int,
        routine_id: int,
        message: Optional[str] = None,
    ) -> OperationResult[NotificationView]:
        """Send a reminder for one of *patient_id*'s routines right now.

        Without a *message* the text is built from the routine.  The routine's
        daily reminder pointer is not touched, so scheduled reminders still go
        out.
        """

        try:
            self._require_user(doctor_id, UserRole.DOCTOR)
            self._require_user(patient_id, UserRole.PATIENT)
            self.gate.require_contact(doctor_id, patient_id)
            with self.store.transaction() as session:
                routine = self.store.get_routine(session, routine_id)
                if routine is None or routine.patient_id != patient_id:
                    raise NotFoundError(
                        f"Medication routine {routine_id} does not exist for patient {patient_id}",
                        routine_id=routine_id,
                        patient_id=patient_id,
                    )
                values = MedicationContext(
                    medication_name=routine.medication_name,
                    dosage=routine.dosage,
                    instructions=routine.instructions,
                ).as_variables()
            if message and message.strip():
                body = message.strip()
            else:
                body = render(MEDICATION_BODY, values)
                if values.get("instructions"):
                    body = f"{body}. {values['instructions']}"
            view = self._create_immediate(
                recipient_id=patient_id,
                notification_type=NotificationType.MEDICATION_REMINDER,
                title=MEDICATION_TITLE,
                message=body,
                related_entity_type=RelatedEntityType.MEDICATION_ROUTINE,
                related_entity_id=routine_id,
                sender_id=doctor_id,
            )
        except NotificationError as exc:
            logger.warning(
                "manual_medication_reminder_rejected",
                doctor_id=doctor_id,
                patient_id=patient_id,
                routine_id=routine_id,
                code=exc.code,
                error=exc.message,
            )
            return OperationResult.failure(exc)
        return OperationResult.success(view)

    def send_batch_medication_reminders(
        self,
        doctor_id: int,
        patient_ids: Sequence[int],
        message: str,
        medication_details: Optional[str] = None,
    ) -> OperationResult[BatchSendReport]:
        """Send the same medication reminder to several patients.

        Each recipient is checked on its own; patients the doctor may not
        contact are reported in ``failures`` by error code.
        """

        try:
            self._require_user(doctor_id, UserRole.DOCTOR)
            if not message or not message.strip():
                raise InvalidTemplateVariablesError("Reminder message must not be empty")
        except NotificationError as exc:
            logger.warning("batch_medication_reminders_rejected", doctor_id=doctor_id, code=exc.code)
            return OperationResult.failure(exc)

        body = message.strip()
        if medication_details and medication_details.strip():
            body = f"{body}\n\nMedication: {medication_details.strip()}"
        report = BatchSendReport()
        for patient_id in dict.fromkeys(patient_ids):
            try:
                self._require_user(patient_id, UserRole.PATIENT)
                self.gate.require_contact(doctor_id, patient_id)
                report.sent.append(
                    self._create_immediate(
                        recipient_id=patient_id,
                        notification_type=NotificationType.MEDICATION_REMINDER,
                        title=MEDICATION_TITLE,
                        message=body,
                        sender_id=doctor_id,
                    )
                )
            except NotificationError as exc:
                report.failures[patient_id] = exc.code
        logger.info(
            "batch_medication_reminders_sent",
            doctor_id=doctor_id,
            sent=len(report.sent),
            failed=len(report.failures),
        )
        return OperationResult.success(report)

    # ------------------------------------------------------------------
    # Read queries
    # ------------------------------------------------------------------
    def list_for_patient(self, user_id: int, only_unread: bool = False) -> List[NotificationView]:
        with self.store.transaction() as session:
            rows = self.store.list_for_recipient(
                session, user_id, include_hidden=False, only_unread=only_unread
            )
            return [to_view(row) for row in rows]

    def count_unread(self, user_id: int) -> int:
        with self.store.transaction() as session:
            return self.store.count_unread(session, user_id)

    def list_for_staff(self, user_id: int) -> List[NotificationView]:
        """All notifications of *user_id*, including cancelled and retracted ones."""

        with self.store.transaction() as session:
            rows = self.store.list_for_recipient(session, user_id, include_hidden=True)
            return [to_view(row) for row in rows]

    def list_history_for_doctor(self, doctor_id: int) -> List[NotificationView]:
        with self.store.transaction() as session:
            rows = self.store.list_sent_by_doctor(session, doctor_id)
            return [
                to_view(row, patient_name=name, patient_email=email)
                for row, name, email in rows
            ]

    def templates_by_type(self, notification_type: NotificationType | str) -> List[dict]:
        with self.store.transaction() as session:
            return [
                {
                    "id": template.id,
                    "name": template.name,
                    "type": template.type,
                    "subject": template.subject,
                    "body": template.body,
                    "priority": template.priority,
                }
                for template in self.store.active_templates_by_type(session, notification_type)
            ]

    # ------------------------------------------------------------------
    # Reminder scheduling
    # ------------------------------------------------------------------
    def schedule_appointment_reminders(self, appointment_id: int) -> List[int]:
        return self.scheduler.schedule_appointment_reminders(appointment_id)

    def cancel_appointment_reminders(
        self, appointment_id: int, reason: Optional[str] = None
    ) -> int:
        return self.scheduler.cancel_appointment_reminders(appointment_id, reason)


__all__ = ["NotificationService", "to_view"]
