from datetime import datetime, timedelta, timezone

import pytest

from clinicops.db.models import Notification, NotificationStatus
from clinicops.errors import InvalidStateTransitionError
from clinicops.lifecycle import (
    LifecycleManager,
    VISIBLE_TO_PATIENT,
    can_retract,
    derive_status,
)


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _notification(**fields) -> Notification:
    fields.setdefault("status", "pending")
    return Notification(
        id=fields.pop("id", 1),
        recipient_id=1,
        type="general",
        title=fields.pop("title", "Notice"),
        message=fields.pop("message", "Body"),
        priority="medium",
        **fields,
    )


@pytest.fixture
def manager():
    return LifecycleManager(lambda: NOW)


def test_mark_sent_from_pending(manager):
    n = manager.mark_sent(_notification())
    assert n.status == "sent"
    assert n.sent_at == NOW


def test_mark_sent_rejects_delivered(manager):
    with pytest.raises(InvalidStateTransitionError):
        manager.mark_sent(_notification(status="delivered"))


@pytest.mark.parametrize("mark", ["mark_seen", "mark_read"])
def test_higher_marks_backfill_earlier_stages(manager, mark):
    n = getattr(manager, mark)(_notification())
    assert n.sent_at == NOW
    assert n.delivered_at == NOW
    assert n.seen_at == NOW


def test_backfill_keeps_existing_timestamps(manager):
    sent = NOW - timedelta(hours=2)
    n = manager.mark_delivered(_notification(status="sent", sent_at=sent))
    assert n.sent_at == sent
    assert n.delivered_at == NOW
    assert n.status == "delivered"


def test_mark_read_is_idempotent(manager):
    n = manager.mark_read(_notification(status="sent", sent_at=NOW))
    first = (n.status, n.read_at, n.seen_at)
    later = LifecycleManager(lambda: NOW + timedelta(minutes=5))
    later.mark_read(n)
    assert (n.status, n.read_at, n.seen_at) == first


def test_lower_mark_on_higher_status_is_noop(manager):
    n = _notification(status="read", sent_at=NOW, delivered_at=NOW, seen_at=NOW, read_at=NOW)
    manager.mark_seen(n)
    manager.mark_delivered(n)
    assert n.status == "read"


@pytest.mark.parametrize("status", ["cancelled", "retracted", "failed"])
def test_marks_on_exited_notifications_raise(manager, status):
    with pytest.raises(InvalidStateTransitionError):
        manager.mark_read(_notification(status=status))


def test_retract_before_seen_appends_marker_once(manager):
    n = _notification(status="sent", sent_at=NOW)
    manager.retract(n, "sent to wrong patient")
    manager.retract(n, "again")
    assert n.status == "retracted"
    assert n.title == "Notice [CANCELLED]"
    assert n.message == "Body [CANCELLED]"
    assert n.retraction_reason == "sent to wrong patient"
    assert n.retracted_at == NOW


def test_retract_after_seen_fails(manager):
    n = manager.mark_seen(_notification(status="sent", sent_at=NOW))
    with pytest.raises(InvalidStateTransitionError):
        manager.retract(n, "too late")
    assert n.status == "seen"
    assert not can_retract(n)


@pytest.mark.parametrize("status", ["seen", "read", "failed", "cancelled"])
def test_retract_agrees_with_can_retract_without_seen_at(manager, status):
    n = _notification(status=status, sent_at=NOW, seen_at=None)
    assert not can_retract(n)
    with pytest.raises(InvalidStateTransitionError):
        manager.retract(n, "too late")
    assert n.status == status
    assert n.retracted_at is None
    assert n.title == "Notice"


def test_legacy_read_row_cannot_be_retracted(manager):
    n = _notification(status=None, sent_at=NOW, read_at=NOW)
    assert derive_status(n) == NotificationStatus.READ
    with pytest.raises(InvalidStateTransitionError):
        manager.retract(n)
    assert n.status is None


def test_cancel_only_from_pending(manager):
    n = manager.cancel(_notification(), "appointment cancelled")
    assert n.status == "cancelled"
    assert n.cancelled_at == NOW
    with pytest.raises(InvalidStateTransitionError):
        manager.cancel(_notification(status="sent", sent_at=NOW))


def test_mark_failed_records_reason(manager):
    n = manager.mark_failed(_notification(status="sent"), "gateway down")
    assert n.status == "failed"
    assert n.failure_reason == "gateway down"
    with pytest.raises(InvalidStateTransitionError):
        manager.mark_failed(n, "again")


@pytest.mark.parametrize(
    "fields, expected",
    [
        ({}, NotificationStatus.PENDING),
        ({"sent_at": NOW}, NotificationStatus.SENT),
        ({"sent_at": NOW, "delivered_at": NOW}, NotificationStatus.DELIVERED),
        ({"seen_at": NOW}, NotificationStatus.SEEN),
        ({"read_at": NOW, "seen_at": NOW}, NotificationStatus.READ),
        ({"failure_reason": "x", "sent_at": NOW}, NotificationStatus.FAILED),
        ({"cancelled_at": NOW}, NotificationStatus.CANCELLED),
        ({"retracted_at": NOW, "read_at": NOW}, NotificationStatus.RETRACTED),
    ],
)
def test_derive_status_from_timestamps_when_unset(fields, expected):
    assert derive_status(_notification(status=None, **fields)) == expected


def test_stored_status_wins_over_timestamps():
    n = _notification(status="delivered", sent_at=NOW)
    assert derive_status(n) == NotificationStatus.DELIVERED


def test_patient_visibility_excludes_only_cancelled_and_retracted():
    hidden = set(NotificationStatus) - VISIBLE_TO_PATIENT
    assert hidden == {NotificationStatus.CANCELLED, NotificationStatus.RETRACTED}
