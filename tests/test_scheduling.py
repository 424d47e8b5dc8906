from datetime import date, datetime, time, timedelta, timezone

import pytest

from clinicops.collaborators import AppointmentRecord, SqlAppointmentLog
from clinicops.db.models import Appointment, MedicationRoutine
from clinicops.due_processor import DueNotificationProcessor
from clinicops.errors import NotFoundError
from clinicops.scheduling import (
    ReminderScheduler,
    appointment_reminder_plan,
    medication_reminder_plan,
)


NOW = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


def _appointment(scheduled_at: datetime) -> AppointmentRecord:
    return AppointmentRecord(
        id=7,
        patient_id=2,
        doctor_id=1,
        scheduled_at=scheduled_at,
        status="scheduled",
        patient_name="alice",
        doctor_name="house",
    )


def _routine(**fields) -> MedicationRoutine:
    values = dict(
        id=3,
        patient_id=2,
        doctor_id=1,
        medication_name="Dolutegravir",
        dosage="50mg",
        start_date=date(2024, 4, 1),
        end_date=None,
        time_of_day=time(9, 0),
        is_active=True,
        reminder_enabled=True,
        reminder_minutes_before=30,
        last_reminder_sent_at=None,
    )
    values.update(fields)
    return MedicationRoutine(**values)


@pytest.fixture
def scheduler(store, session_factory, clock, settings, seed):
    return ReminderScheduler(store, SqlAppointmentLog(session_factory), clock, settings)


def test_appointment_two_days_out_gets_three_reminders():
    plans = appointment_reminder_plan(_appointment(NOW + timedelta(days=2)), NOW)
    assert [p.title for p in plans] == [
        "Appointment Reminder - Tomorrow",
        "Appointment Reminder - 1 Hour",
        "Appointment Reminder - 30 Minutes",
    ]
    assert [p.scheduled_for for p in plans] == [
        NOW + timedelta(days=1),
        NOW + timedelta(days=2, hours=-1),
        NOW + timedelta(days=2, minutes=-30),
    ]
    assert all(p.priority.value == "high" for p in plans)
    assert plans[0].message == "You have an appointment with Dr. house tomorrow at 2024-05-03 08:00"


def test_appointment_ten_minutes_out_gets_none():
    assert appointment_reminder_plan(_appointment(NOW + timedelta(minutes=10)), NOW) == []


def test_appointment_offsets_must_be_strictly_after_now():
    plans = appointment_reminder_plan(_appointment(NOW + timedelta(hours=1)), NOW)
    assert [p.title for p in plans] == ["Appointment Reminder - 30 Minutes"]


def test_medication_plan_covers_horizon_with_pre_reminders():
    plans = medication_reminder_plan(_routine(end_date=date(2024, 5, 3)), NOW, horizon_days=90)
    assert len(plans) == 6
    assert {p.occurrence for p in plans} == {date(2024, 5, 1), date(2024, 5, 2), date(2024, 5, 3)}
    first_pre, first_dose = plans[0], plans[1]
    assert first_pre.title == "Medication Reminder - Upcoming"
    assert first_pre.scheduled_for == datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)
    assert first_pre.message == "Reminder: Take your medication Dolutegravir (50mg) in 30 minutes"
    assert first_dose.title == "Medication Reminder"
    assert first_dose.message == "Time to take your medication: Dolutegravir (50mg)"
    assert first_dose.priority.value == "medium"


def test_medication_plan_is_bounded_by_horizon_and_start_date():
    plans = medication_reminder_plan(
        _routine(start_date=date(2024, 5, 10), reminder_minutes_before=0), NOW, horizon_days=90
    )
    days = [p.occurrence for p in plans]
    assert days[0] == date(2024, 5, 10)
    assert days[-1] == date(2024, 7, 30)
    assert all(p.title == "Medication Reminder" for p in plans)


def test_medication_plan_skips_days_already_handled():
    plans = medication_reminder_plan(
        _routine(last_reminder_sent_at=NOW - timedelta(hours=1), end_date=date(2024, 5, 2)),
        NOW,
        horizon_days=90,
    )
    assert {p.occurrence for p in plans} == {date(2024, 5, 2)}


def test_inactive_routine_has_no_plan():
    assert medication_reminder_plan(_routine(is_active=False), NOW, horizon_days=90) == []
    assert medication_reminder_plan(_routine(reminder_enabled=False), NOW, horizon_days=90) == []


def test_schedule_appointment_reminders_is_idempotent(scheduler, seed, all_notifications):
    first = scheduler.schedule_appointment_reminders(seed.appointment_id)
    second = scheduler.schedule_appointment_reminders(seed.appointment_id)
    assert len(first) == 3
    assert second == []
    rows = all_notifications()
    assert len(rows) == 3
    assert {row.status for row in rows} == {"pending"}
    assert {row.related_entity_type for row in rows} == {"appointment"}
    assert all(row.sent_at is None for row in rows)


def test_schedule_unknown_appointment_raises(scheduler):
    with pytest.raises(NotFoundError):
        scheduler.schedule_appointment_reminders(9999)


def test_closed_appointment_gets_no_reminders(scheduler, seed, session_factory, all_notifications):
    with session_factory() as session:
        session.get(Appointment, seed.appointment_id).status = "cancelled"
        session.commit()
    assert scheduler.schedule_appointment_reminders(seed.appointment_id) == []
    assert all_notifications() == []


def test_cancel_appointment_reminders_only_touches_pending(
    scheduler, seed, session_factory, store, clock, all_notifications
):
    ids = scheduler.schedule_appointment_reminders(seed.appointment_id)
    with store.transaction() as session:
        store.claim_due(session, ids[0], clock.now())

    assert scheduler.cancel_appointment_reminders(seed.appointment_id, "rescheduled") == 2
    statuses = {row.id: row.status for row in all_notifications()}
    assert statuses[ids[0]] == "sent"
    assert statuses[ids[1]] == statuses[ids[2]] == "cancelled"


def test_medication_dedup_same_day_and_next_day(scheduler, make_routine, clock, all_notifications):
    make_routine(last_reminder_sent_at=clock.now() - timedelta(hours=2))

    report = scheduler.run_medication_reminders()
    assert report.reminders_created == 0
    assert report.routines_skipped == 1
    assert all_notifications() == []

    clock.advance(days=1)
    report = scheduler.run_medication_reminders()
    assert report.reminders_created == 2
    titles = sorted(row.title for row in all_notifications())
    assert titles == ["Medication Reminder", "Medication Reminder - Upcoming"]

    report = scheduler.run_medication_reminders()
    assert report.reminders_created == 0
    assert len(all_notifications()) == 2


def test_medication_without_pre_reminder_creates_one(scheduler, make_routine, all_notifications):
    make_routine(minutes_before=0)
    report = scheduler.run_medication_reminders()
    assert report.routines_claimed == 1
    rows = all_notifications()
    assert [row.title for row in rows] == ["Medication Reminder"]
    assert rows[0].status == "pending"
    assert rows[0].scheduled_for == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def test_medication_run_advances_pointer(scheduler, make_routine, session_factory, clock):
    routine_id = make_routine()
    scheduler.run_medication_reminders()
    with session_factory() as session:
        assert session.get(MedicationRoutine, routine_id).last_reminder_sent_at == clock.now()


def test_medication_failures_are_isolated(scheduler, make_routine, monkeypatch, all_notifications):
    broken = make_routine()
    healthy = make_routine()

    from clinicops import scheduling

    original = scheduling.medication_reminder_plan

    def flaky(routine, now, **kwargs):
        if routine.id == broken:
            raise RuntimeError("boom")
        return original(routine, now, **kwargs)

    monkeypatch.setattr(scheduling, "medication_reminder_plan", flaky)
    report = scheduler.run_medication_reminders()
    assert report.failed_ids == [broken]
    assert report.routines_claimed == 1
    assert {row.related_entity_id for row in all_notifications()} == {healthy}


def test_medication_plan_drops_reminders_already_past():
    plans = medication_reminder_plan(
        _routine(time_of_day=time(7, 0), end_date=date(2024, 5, 2)), NOW, horizon_days=90
    )
    assert {p.occurrence for p in plans} == {date(2024, 5, 2)}
    assert min(p.scheduled_for for p in plans) == datetime(2024, 5, 2, 6, 30, tzinfo=timezone.utc)


def test_medication_plan_keeps_dose_when_only_pre_reminder_passed():
    plans = medication_reminder_plan(
        _routine(time_of_day=time(8, 20), end_date=date(2024, 5, 1)), NOW, horizon_days=90
    )
    assert [(p.title, p.scheduled_for) for p in plans] == [
        ("Medication Reminder", datetime(2024, 5, 1, 8, 20, tzinfo=timezone.utc)),
    ]


def test_routine_created_after_dose_time_is_not_sent_late(
    scheduler, make_routine, store, clock, settings, session_factory, all_notifications
):
    routine_id = make_routine(time_of_day=time(7, 0))

    report = scheduler.run_medication_reminders()
    assert report.reminders_created == 0
    assert report.routines_skipped == 1
    assert all_notifications() == []
    with session_factory() as session:
        assert session.get(MedicationRoutine, routine_id).last_reminder_sent_at is None

    assert DueNotificationProcessor(store, clock, settings).run_once().claimed == 0

    clock.advance(hours=22)
    report = scheduler.run_medication_reminders()
    assert report.reminders_created == 2
    assert sorted(row.scheduled_for for row in all_notifications()) == [
        datetime(2024, 5, 2, 6, 30, tzinfo=timezone.utc),
        datetime(2024, 5, 2, 7, 0, tzinfo=timezone.utc),
    ]
