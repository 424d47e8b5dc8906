from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import Session, sessionmaker

from clinicops.config import EngineSettings
from clinicops.db import DatabaseSettings, create_engine_from_settings, make_session_factory
from clinicops.db import models as db_models
from clinicops.migrations import create_all_tables
from clinicops.notification_store import NotificationStore
from clinicops.notifications_service import NotificationService


START = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


@dataclass
class FrozenClock:
    """Deterministic clock that only moves when told to."""

    current: datetime

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@dataclass
class Seed:
    doctor_id: int
    other_doctor_id: int
    patient_id: int
    other_patient_id: int
    staff_id: int
    manager_id: int
    appointment_id: int
    template_id: int
    inactive_template_id: int


@pytest.fixture(scope="function")
def engine() -> Iterator[sa.engine.Engine]:
    eng = create_engine_from_settings(DatabaseSettings(url="sqlite://"))
    create_all_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine) -> sessionmaker[Session]:
    return make_session_factory(engine)


@pytest.fixture(scope="function")
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture(scope="function")
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture(scope="function")
def store(session_factory) -> NotificationStore:
    return NotificationStore(session_factory)


@pytest.fixture(scope="function")
def seed(session_factory, clock) -> Seed:
    with session_factory() as session:
        users = {
            "doctor": db_models.User(username="house", email="house@clinic.test", role="doctor"),
            "other_doctor": db_models.User(username="wilson", email="wilson@clinic.test", role="doctor"),
            "patient": db_models.User(username="alice", email="alice@example.test", role="patient"),
            "other_patient": db_models.User(username="bob", email="bob@example.test", role="patient"),
            "staff": db_models.User(username="cuddy", role="staff"),
            "manager": db_models.User(username="foreman", role="manager"),
        }
        session.add_all(users.values())
        session.flush()
        appointment = db_models.Appointment(
            patient_id=users["patient"].id,
            doctor_id=users["doctor"].id,
            scheduled_at=clock.now() + timedelta(days=2),
            status="scheduled",
        )
        template = db_models.NotificationTemplate(
            name="Lab results ready",
            type="general",
            subject="Results for {{patientName}}",
            body="Hello {patientName}, Dr. {{doctorName}} has posted your {testName} results.",
            priority="high",
        )
        inactive = db_models.NotificationTemplate(
            name="Retired template",
            type="general",
            subject="Old",
            body="Old body",
            is_active=False,
        )
        session.add_all([appointment, template, inactive])
        session.commit()
        return Seed(
            doctor_id=users["doctor"].id,
            other_doctor_id=users["other_doctor"].id,
            patient_id=users["patient"].id,
            other_patient_id=users["other_patient"].id,
            staff_id=users["staff"].id,
            manager_id=users["manager"].id,
            appointment_id=appointment.id,
            template_id=template.id,
            inactive_template_id=inactive.id,
        )


@pytest.fixture(scope="function")
def service(session_factory, clock, settings, seed) -> NotificationService:
    return NotificationService(session_factory, clock=clock, settings=settings)


@pytest.fixture(scope="function")
def make_notification(session_factory, clock):
    """Insert a notification row directly and return its id."""

    def _make(
        recipient_id: int,
        *,
        status: Optional[str] = "sent",
        title: str = "Notice",
        message: str = "Body",
        sender_id: Optional[int] = None,
        scheduled_for: Optional[datetime] = None,
        **fields,
    ) -> int:
        if status == "sent":
            fields.setdefault("sent_at", clock.now())
        row = db_models.Notification(
            recipient_id=recipient_id,
            sender_id=sender_id,
            type=fields.pop("type", "general"),
            title=title,
            message=message,
            priority=fields.pop("priority", "medium"),
            status=status,
            scheduled_for=scheduled_for,
            created_at=fields.pop("created_at", clock.now()),
            **fields,
        )
        with session_factory() as session:
            session.add(row)
            session.commit()
            return row.id

    return _make


@pytest.fixture(scope="function")
def make_routine(session_factory, seed):
    def _make(
        *,
        time_of_day: time = time(9, 0),
        start_date: date = date(2024, 4, 1),
        end_date: Optional[date] = None,
        minutes_before: int = 30,
        last_reminder_sent_at: Optional[datetime] = None,
        is_active: bool = True,
        reminder_enabled: bool = True,
    ) -> int:
        routine = db_models.MedicationRoutine(
            patient_id=seed.patient_id,
            doctor_id=seed.doctor_id,
            medication_name="Dolutegravir",
            dosage="50mg",
            instructions="With food",
            start_date=start_date,
            end_date=end_date,
            time_of_day=time_of_day,
            reminder_minutes_before=minutes_before,
            last_reminder_sent_at=last_reminder_sent_at,
            is_active=is_active,
            reminder_enabled=reminder_enabled,
        )
        with session_factory() as session:
            session.add(routine)
            session.commit()
            return routine.id

    return _make


@pytest.fixture(scope="function")
def load_notification(session_factory):
    def _load(notification_id: int) -> Optional[db_models.Notification]:
        with session_factory() as session:
            return session.get(db_models.Notification, notification_id)

    return _load


@pytest.fixture(scope="function")
def all_notifications(session_factory):
    def _all():
        with session_factory() as session:
            return list(
                session.execute(
                    sa.select(db_models.Notification).order_by(db_models.Notification.id)
                ).scalars()
            )

    return _all
