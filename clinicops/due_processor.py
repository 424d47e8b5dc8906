"""Periodic activation of scheduled notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog
from prometheus_client import Counter

from clinicops.collaborators import Clock
from clinicops.config import EngineSettings, get_engine_settings
from clinicops.db.models import Notification
from clinicops.lifecycle import LifecycleManager
from clinicops.notification_store import NotificationStore
from clinicops.time_utils import ensure_utc


logger = structlog.get_logger(__name__)

SWEEP_CLAIMED_TOTAL = Counter(
    "clinicops_due_sweep_claimed_total",
    "Due notifications claimed and moved to sent",
)
SWEEP_SKIPPED_TOTAL = Counter(
    "clinicops_due_sweep_skipped_total",
    "Due notifications already claimed by a concurrent run",
)
SWEEP_FAILED_TOTAL = Counter(
    "clinicops_due_sweep_failed_total",
    "Due notifications whose processing raised an error",
)
PURGED_TOTAL = Counter(
    "clinicops_notifications_purged_total",
    "Notifications deleted by the retention cleanup",
)

DeliveryHook = Callable[[Notification], None]

_CLAIMED = "claimed"
_SKIPPED = "skipped"
_FAILED = "failed"


@dataclass
class SweepReport:
    claimed: int = 0
    skipped: int = 0
    failed: int = 0
    claimed_ids: List[int] = field(default_factory=list)
    failed_ids: List[int] = field(default_factory=list)


class DueNotificationProcessor:
    """Move due pending notifications to ``sent``.

    Candidate rows are selected once per run; each one is then claimed with its
    own conditional update and transaction.  A runner that loses the claim
    skips the row.  The optional *delivery_hook* runs only for rows this runner
    claimed; if it raises, the row is marked failed with the error message.
    """

    def __init__(
        self,
        store: NotificationStore,
        clock: Clock,
        settings: Optional[EngineSettings] = None,
        delivery_hook: Optional[DeliveryHook] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._settings = settings or get_engine_settings()
        self._delivery_hook = delivery_hook
        self._lifecycle = LifecycleManager(clock.now)

    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = ensure_utc(now or self._clock.now())
        cutoff = now + timedelta(minutes=self._settings.due_slack_minutes)
        report = SweepReport()

        with self._store.transaction() as session:
            candidates = self._store.due_candidates(
                session, cutoff, self._settings.sweep_batch_size
            )

        for notification_id in candidates:
            try:
                outcome = self._process(notification_id, now)
            except Exception:
                logger.exception("due_notification_failed", notification_id=notification_id)
                outcome = _FAILED
            if outcome == _FAILED:
                report.failed += 1
                report.failed_ids.append(notification_id)
                SWEEP_FAILED_TOTAL.inc()
            elif outcome == _CLAIMED:
                report.claimed += 1
                report.claimed_ids.append(notification_id)
                SWEEP_CLAIMED_TOTAL.inc()
            else:
                report.skipped += 1
                SWEEP_SKIPPED_TOTAL.inc()

        if candidates:
            logger.info(
                "due_sweep_completed",
                candidates=len(candidates),
                claimed=report.claimed,
                skipped=report.skipped,
                failed=report.failed,
            )
        return report

    def _process(self, notification_id: int, now: datetime) -> str:
        with self._store.transaction() as session:
            if not self._store.claim_due(session, notification_id, now):
                logger.debug("due_notification_taken", notification_id=notification_id)
                return _SKIPPED

        if self._delivery_hook is None:
            return _CLAIMED

        # The claim is committed; a delivery failure is recorded on the row.
        with self._store.transaction() as session:
            notification = self._store.require_notification(session, notification_id)
            try:
                self._delivery_hook(notification)
            except Exception as exc:
                logger.warning(
                    "due_notification_delivery_failed",
                    notification_id=notification_id,
                    error=str(exc),
                )
                self._lifecycle.mark_failed(notification, str(exc) or type(exc).__name__)
                return _FAILED
        return _CLAIMED

    def purge_expired(
        self, now: Optional[datetime] = None, retention_days: Optional[int] = None
    ) -> int:
        """Delete notifications sent more than *retention_days* ago."""

        days = self._settings.retention_days if retention_days is None else retention_days
        if days <= 0:
            return 0
        now = ensure_utc(now or self._clock.now())
        cutoff = now - timedelta(days=days)
        with self._store.transaction() as session:
            deleted = self._store.purge_sent_before(session, cutoff)
        if deleted:
            PURGED_TOTAL.inc(deleted)
        logger.info("notifications_purged", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted


__all__ = ["DueNotificationProcessor", "SweepReport", "DeliveryHook"]
