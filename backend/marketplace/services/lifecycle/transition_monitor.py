"""
Deadline-Driven Transition Monitor

Each cycle:
1. Indexed scan for live applications with a due transition
   (counters positive or auction deadline elapsed)
2. decide() per candidate
3. Apply each transition in its own unit of work
4. Expire offers whose selection window closed
5. Raise urgency alerts for deadlines inside the alert horizon

One application's failure never stops the rest of the cycle.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Dict, Any, List

from sqlalchemy import and_, extract, func, or_
from sqlalchemy.orm import Session

from ...clock import Clock
from ...config import EngineConfig
from ...database import configured_unit_of_work
from ...models import (
    AlertSeverity, AlertType, ApplicationDB, ApplicationStatus, OfferDB, OfferStatus, stored_names,
)
from .alert_sink import AlertSink
from .state_machine import (
    ApplicationSnapshot, decide, effective_auction_deadline, find_integrity_issue,
)
from .transitions import TransitionExecutor

logger = logging.getLogger(__name__)


# =============================================================================
# READ MODELS
# =============================================================================

UNIX_EPOCH = datetime(1970, 1, 1)
JULIAN_DAY_AT_UNIX_EPOCH = 2440587.5


def _epoch_seconds(column, dialect_name: str):
    """Seconds since the Unix epoch for a naive UTC timestamp column."""
    if dialect_name == "postgresql":
        return extract("epoch", column)
    return (func.julianday(column) - JULIAN_DAY_AT_UNIX_EPOCH) * 86400.0


URGENCY_PRIORITY = {
    "auction_expired": 0,
    "selection_expired": 1,
    "auction_ending_soon": 2,
    "selection_ending_soon": 3,
}


@dataclass
class UrgentApplication:
    """An application whose active deadline is inside the alert horizon."""
    application_id: int
    status: ApplicationStatus
    urgency_level: str
    deadline: datetime
    minutes_remaining: float
    offers_count: int
    purchases_count: int


@dataclass
class StatusStat:
    status: str
    count: int
    average_age_hours: float


# =============================================================================
# MONITOR
# =============================================================================

class TransitionMonitor:
    """
    Scheduled driver of automatic lifecycle transitions.

    AUTHORITY: SYSTEM - runs without operator involvement. Operators see
    results through the status audit log and system alerts only.
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Clock, config: EngineConfig):
        self.session_factory = session_factory
        self.clock = clock
        self.config = config

    @property
    def auction_window(self) -> timedelta:
        return timedelta(hours=self.config.auction_window_hours)

    @property
    def horizon(self) -> timedelta:
        return timedelta(minutes=self.config.urgency_horizon_minutes)

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self.config.alert_cooldown_minutes)

    def _unit(self):
        return configured_unit_of_work(self.session_factory, self.config)

    def _live_filter(self):
        return ApplicationDB.status.in_(stored_names(ApplicationStatus.LIVE_AUCTION))

    # =========================================================================
    # TRANSITION CYCLE
    # =========================================================================

    def find_candidates(self, db: Session, now: datetime) -> List[ApplicationSnapshot]:
        """Live applications whose counters or elapsed deadline make a transition due."""
        rows = db.query(ApplicationDB).filter(
            self._live_filter(),
            or_(
                ApplicationDB.offers_count > 0,
                ApplicationDB.purchases_count > 0,
                ApplicationDB.auction_end_time <= now,
                and_(
                    ApplicationDB.auction_end_time.is_(None),
                    ApplicationDB.submitted_at <= now - self.auction_window,
                ),
                # Negative counters are surfaced as integrity issues
                ApplicationDB.offers_count < 0,
                ApplicationDB.purchases_count < 0,
            ),
        ).order_by(ApplicationDB.id).all()
        return [ApplicationSnapshot.from_row(row) for row in rows]

    def run_cycle(self, should_stop: Optional[Callable[[], bool]] = None) -> Dict[str, Any]:
        """
        Run one full monitor cycle.

        should_stop is checked between applications so a shutdown lets
        the in-flight unit of work finish first.
        """
        with self._unit() as db:
            candidates = self.find_candidates(db, self.clock.now())

        transitioned = []
        conflicts = []
        integrity_issues = []
        errors = []
        stopped = False

        for snapshot in candidates:
            if should_stop is not None and should_stop():
                stopped = True
                break
            try:
                now = self.clock.now()
                issue = find_integrity_issue(snapshot, now, self.auction_window)
                if issue:
                    integrity_issues.append({"application_id": snapshot.application_id, "issue": issue})
                    with self._unit() as db:
                        AlertSink(db, self.clock).report_integrity_issue(
                            snapshot.application_id, issue, cooldown=self.cooldown
                        )
                    continue

                transition = decide(snapshot, now, self.auction_window)
                if transition is None:
                    continue

                with self._unit() as db:
                    applied = TransitionExecutor(db, self.clock, self.config).apply(transition)

                if applied:
                    transitioned.append({
                        "application_id": transition.application_id,
                        "to_status": transition.to_status.value,
                        "reason": transition.reason,
                    })
                else:
                    conflicts.append(transition.application_id)

            except Exception as e:
                logger.exception(f"Transition failed for application {snapshot.application_id}")
                errors.append({"application_id": snapshot.application_id, "error": str(e)})

        offers_expired = 0 if stopped else self.expire_selection_windows()
        urgency_alerts = 0 if stopped else self.scan_urgency()

        if transitioned or errors:
            logger.info(
                f"Transition cycle: {len(candidates)} candidates, {len(transitioned)} transitioned, "
                f"{len(conflicts)} deferred, {len(errors)} errors"
            )

        return {
            "run_date": self.clock.now().isoformat(),
            "candidates": len(candidates),
            "transitioned": len(transitioned),
            "deferred": len(conflicts),
            "integrity_issues": len(integrity_issues),
            "errors": len(errors),
            "offers_expired": offers_expired,
            "urgency_alerts": urgency_alerts,
            "stopped": stopped,
            "details": {
                "transitions": transitioned,
                "deferred": conflicts,
                "integrity_issues": integrity_issues,
                "errors": errors,
            },
        }

    # =========================================================================
    # SELECTION WINDOW EXPIRY
    # =========================================================================

    def expire_selection_windows(self) -> int:
        """Mark still-submitted offers as deal_lost once the selection window closed."""
        now = self.clock.now()
        with self._unit() as db:
            application_ids = [
                row[0] for row in db.query(ApplicationDB.id).join(
                    OfferDB, OfferDB.application_id == ApplicationDB.id
                ).filter(
                    ApplicationDB.status.in_(stored_names(ApplicationStatus.COMPLETED)),
                    ApplicationDB.offer_selection_end_time <= now,
                    OfferDB.status == OfferStatus.SUBMITTED,
                ).distinct()
            ]

        expired = 0
        for application_id in application_ids:
            try:
                with self._unit() as db:
                    expired += db.query(OfferDB).filter(
                        OfferDB.application_id == application_id,
                        OfferDB.status == OfferStatus.SUBMITTED,
                    ).update(
                        {OfferDB.status: OfferStatus.DEAL_LOST, OfferDB.status_updated_at: now},
                        synchronize_session=False,
                    )
            except Exception:
                logger.exception(f"Offer expiry failed for application {application_id}")

        if expired:
            logger.info(f"Expired {expired} offer(s) after selection window closed")
        return expired

    # =========================================================================
    # URGENCY
    # =========================================================================

    def _auction_deadline_between(self, start: Optional[datetime], end: datetime):
        """Effective auction deadline in (start, end], honouring the submitted_at fallback."""
        window = self.auction_window
        explicit = [ApplicationDB.auction_end_time <= end]
        fallback = [ApplicationDB.auction_end_time.is_(None), ApplicationDB.submitted_at <= end - window]
        if start is not None:
            explicit.append(ApplicationDB.auction_end_time > start)
            fallback.append(ApplicationDB.submitted_at > start - window)
        return or_(and_(*explicit), and_(*fallback))

    def _urgent_rows(self, db: Session, now: datetime, include_expired: bool) -> List[UrgentApplication]:
        start = None if include_expired else now
        end = now + self.horizon

        live = db.query(ApplicationDB).filter(
            self._live_filter(),
            ApplicationDB.offers_count == 0,
            ApplicationDB.purchases_count == 0,
            self._auction_deadline_between(start, end),
        ).all()

        selection_query = db.query(ApplicationDB).filter(
            ApplicationDB.status.in_(stored_names(ApplicationStatus.COMPLETED)),
            ApplicationDB.offer_selection_end_time <= end,
            ApplicationDB.offers.any(OfferDB.status == OfferStatus.SUBMITTED),
        )
        if start is not None:
            selection_query = selection_query.filter(ApplicationDB.offer_selection_end_time > start)
        selecting = selection_query.all()

        urgent = []
        for application in live:
            deadline = effective_auction_deadline(ApplicationSnapshot.from_row(application), self.auction_window)
            level = "auction_expired" if deadline <= now else "auction_ending_soon"
            urgent.append(self._urgent(application, level, deadline, now))
        for application in selecting:
            deadline = application.offer_selection_end_time
            level = "selection_expired" if deadline <= now else "selection_ending_soon"
            urgent.append(self._urgent(application, level, deadline, now))

        urgent.sort(key=lambda u: (URGENCY_PRIORITY[u.urgency_level], u.deadline))
        return urgent

    @staticmethod
    def _urgent(application: ApplicationDB, level: str, deadline: datetime, now: datetime) -> UrgentApplication:
        return UrgentApplication(
            application_id=application.id,
            status=application.status,
            urgency_level=level,
            deadline=deadline,
            minutes_remaining=round((deadline - now).total_seconds() / 60, 1),
            offers_count=application.offers_count,
            purchases_count=application.purchases_count,
        )

    def list_urgent(self) -> List[UrgentApplication]:
        """Applications inside the alert horizon, including overdue ones not yet transitioned."""
        with self._unit() as db:
            return self._urgent_rows(db, self.clock.now(), include_expired=True)

    def scan_urgency(self) -> int:
        """Raise one deadline_approaching alert per application per cooldown window."""
        now = self.clock.now()
        with self._unit() as db:
            upcoming = self._urgent_rows(db, now, include_expired=False)

        raised = 0
        for item in upcoming:
            if item.urgency_level == "auction_ending_soon":
                title = "Auction Ending Soon"
                message = (
                    f"Application {item.application_id} auction ends in {item.minutes_remaining:.0f} "
                    f"minutes with no offers"
                )
                severity = AlertSeverity.HIGH
            else:
                title = "Selection Window Ending Soon"
                message = (
                    f"Application {item.application_id} has pending offers and its selection window "
                    f"closes in {item.minutes_remaining:.0f} minutes"
                )
                severity = AlertSeverity.MEDIUM
            try:
                with self._unit() as db:
                    alert = AlertSink(db, self.clock).raise_alert(
                        AlertType.DEADLINE_APPROACHING,
                        severity,
                        title,
                        message,
                        related_entity_type="application",
                        related_entity_id=item.application_id,
                        cooldown=self.cooldown,
                    )
                if alert is not None:
                    raised += 1
            except Exception:
                logger.exception(f"Urgency alert failed for application {item.application_id}")
        return raised

    # =========================================================================
    # STATS
    # =========================================================================

    def get_monitoring_stats(self) -> List[StatusStat]:
        """Per-status application count and average age since submission."""
        now = self.clock.now()
        now_epoch = (now - UNIX_EPOCH).total_seconds()
        with self._unit() as db:
            submitted_epoch = _epoch_seconds(ApplicationDB.submitted_at, db.get_bind().dialect.name)
            rows = db.query(
                ApplicationDB.status,
                func.count(ApplicationDB.id),
                func.avg(submitted_epoch),
            ).group_by(ApplicationDB.status).all()

        # Legacy aliases group separately and are merged under their canonical name
        totals: Dict[str, List[float]] = defaultdict(lambda: [0, 0.0])
        for status, count, average_submitted in rows:
            label = status.value if status else "unrecognised"
            totals[label][0] += count
            totals[label][1] += (now_epoch - float(average_submitted)) / 3600 * count

        return [
            StatusStat(
                status=label,
                count=count,
                average_age_hours=round(age_hours / count, 2),
            )
            for label, (count, age_hours) in sorted(totals.items())
        ]
