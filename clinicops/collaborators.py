"""Interfaces to the services the notification engine depends on.

The account and appointment services own their tables; the engine only reads
them.  Each collaborator is a small protocol with a SQLAlchemy implementation
over the shared database so the engine can run standalone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, aliased, sessionmaker

from clinicops.db import models as db_models
from clinicops.time_utils import utc_now


@dataclass(frozen=True)
class UserRecord:
    id: int
    role: str
    username: Optional[str] = None
    email: Optional[str] = None

    def has_role(self, role: db_models.UserRole | str) -> bool:
        expected = getattr(role, "value", role)
        return (self.role or "").strip().lower() == str(expected).lower()


@dataclass(frozen=True)
class AppointmentRecord:
    id: int
    patient_id: int
    doctor_id: int
    scheduled_at: datetime
    status: str
    patient_name: Optional[str] = None
    doctor_name: Optional[str] = None


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock returning aware UTC datetimes."""

    def now(self) -> datetime:
        return utc_now()


class UserDirectory(Protocol):
    def lookup(self, user_id: int) -> Optional[UserRecord]:
        ...


class AppointmentLog(Protocol):
    def find_shared(self, doctor_id: int, patient_id: int) -> List[AppointmentRecord]:
        ...

    def find_by_id(self, appointment_id: int) -> Optional[AppointmentRecord]:
        ...

    def find_for_doctor(self, doctor_id: int) -> List[AppointmentRecord]:
        ...


class SqlUserDirectory:
    """:class:`UserDirectory` backed by the ``users`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def lookup(self, user_id: int) -> Optional[UserRecord]:
        with self._session_factory() as session:
            row = session.get(db_models.User, user_id)
            if row is None:
                return None
            return UserRecord(id=row.id, role=row.role, username=row.username, email=row.email)


class SqlAppointmentLog:
    """:class:`AppointmentLog` backed by the ``appointments`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def _query(self):
        patient = aliased(db_models.User)
        doctor = aliased(db_models.User)
        return (
            select(
                db_models.Appointment,
                patient.username.label("patient_name"),
                doctor.username.label("doctor_name"),
            )
            .join(patient, patient.id == db_models.Appointment.patient_id, isouter=True)
            .join(doctor, doctor.id == db_models.Appointment.doctor_id, isouter=True)
        )

    @staticmethod
    def _to_record(row) -> AppointmentRecord:
        appointment = row[0]
        return AppointmentRecord(
            id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            scheduled_at=appointment.scheduled_at,
            status=appointment.status,
            patient_name=row.patient_name,
            doctor_name=row.doctor_name,
        )

    def find_shared(self, doctor_id: int, patient_id: int) -> List[AppointmentRecord]:
        stmt = (
            self._query()
            .where(
                db_models.Appointment.doctor_id == doctor_id,
                db_models.Appointment.patient_id == patient_id,
            )
            .order_by(db_models.Appointment.scheduled_at.desc())
        )
        with self._session_factory() as session:
            return [self._to_record(row) for row in session.execute(stmt).all()]

    def find_by_id(self, appointment_id: int) -> Optional[AppointmentRecord]:
        stmt = self._query().where(db_models.Appointment.id == appointment_id)
        with self._session_factory() as session:
            row = session.execute(stmt).first()
            return self._to_record(row) if row is not None else None

    def find_for_doctor(self, doctor_id: int) -> List[AppointmentRecord]:
        """Every appointment of *doctor_id*, most recent first."""

        stmt = (
            self._query()
            .where(db_models.Appointment.doctor_id == doctor_id)
            .order_by(db_models.Appointment.scheduled_at.desc(), db_models.Appointment.id.desc())
        )
        with self._session_factory() as session:
            return [self._to_record(row) for row in session.execute(stmt).all()]


__all__ = [
    "UserRecord",
    "AppointmentRecord",
    "Clock",
    "SystemClock",
    "UserDirectory",
    "AppointmentLog",
    "SqlUserDirectory",
    "SqlAppointmentLog",
]
