"""
Revenue Collection Ledger

One fee obligation per bank purchase. The ledger owns every status
change of a RevenueCollectionEntry after creation:

    pending --(payment confirmed)--> collected --(amount matches)--> verified
    pending --(timeout)--> failed --(retry, bounded)--> pending

Amounts are Decimal throughout. The expected fee is configuration, never
inferred from stored rows.
"""
import logging
import statistics
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Any

from dateutil.rrule import rrule, DAILY
from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from ...clock import Clock
from ...config import EngineConfig
from ...exceptions import ApplicationNotFoundError, InvalidTransitionError, LedgerEntryNotFoundError
from ...models import (
    AlertSeverity, AlertType, ApplicationDB, ApplicationStatus, BusinessMetricDB,
    CollectionStatus, RevenueCollectionDB, stored_names,
)
from .alert_sink import AlertSink

logger = logging.getLogger(__name__)

SUCCESSFUL_STATUSES = (CollectionStatus.COLLECTED, CollectionStatus.VERIFIED)
CENTS = Decimal("0.01")


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENTS)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class Anomaly:
    """One flagged outlier for one day."""
    day: date
    anomaly_type: str  # low_revenue | high_revenue | low_collections | high_collections
    value: float
    mean: float
    stddev: float


@dataclass
class RevenueStats:
    """Aggregate ledger figures over a trailing window."""
    window_hours: int
    total_collections: int = 0
    successful_collections: int = 0
    failed_collections: int = 0
    pending_collections: int = 0
    total_revenue: Decimal = Decimal("0.00")
    average_amount: Decimal = Decimal("0.00")
    currency: str = "SAR"


@dataclass
class RevenueTrendPoint:
    day: date
    revenue: Decimal = Decimal("0.00")
    collections: int = 0
    failed: int = 0


@dataclass
class _DailyBucket:
    revenue: Decimal = Decimal("0.00")
    successful: int = 0
    failed: int = 0
    total: int = 0


# =============================================================================
# LEDGER
# =============================================================================

class RevenueLedger:
    """
    Ledger operations inside the caller's unit of work.

    Every method flushes and leaves commit/rollback to the caller.
    """

    def __init__(self, db: Session, clock: Clock, config: EngineConfig):
        self.db = db
        self.clock = clock
        self.config = config
        self.alerts = AlertSink(db, clock)

    # =========================================================================
    # ENTRY CREATION
    # =========================================================================

    def create_entry(
        self,
        application_id: int,
        bank_user_id: str,
        amount: Optional[Decimal] = None,
    ) -> RevenueCollectionDB:
        """
        Record the fee owed for one bank purchase, starting in pending.

        At most one entry exists per (application, auction round, bank); a
        repeated call within the same round returns the existing entry
        unchanged. A re-opened auction starts a new round, so a bank buying
        again is billed again.
        """
        application = self.db.get(ApplicationDB, application_id)
        if application is None:
            raise ApplicationNotFoundError(application_id)
        auction_round = application.auction_round or 1

        existing = self.db.query(RevenueCollectionDB).filter(
            RevenueCollectionDB.application_id == application_id,
            RevenueCollectionDB.auction_round == auction_round,
            RevenueCollectionDB.bank_user_id == bank_user_id,
        ).first()
        if existing is not None:
            return existing

        now = self.clock.now()
        entry = RevenueCollectionDB(
            application_id=application_id,
            bank_user_id=bank_user_id,
            auction_round=auction_round,
            amount=_money(amount if amount is not None else self.config.purchase_fee),
            currency=self.config.currency,
            status=CollectionStatus.PENDING,
            retry_count=0,
            created_at=now,
            last_attempt_at=now,
        )
        self.db.add(entry)
        self.db.flush()
        logger.info(
            f"Revenue entry {entry.id} created: application {application_id} (round {auction_round}), "
            f"bank {bank_user_id}, {entry.amount} {entry.currency}"
        )
        return entry

    def create_entries_for_purchases(self, application: ApplicationDB) -> List[RevenueCollectionDB]:
        """One entry per purchasing bank recorded on the application."""
        banks = list(dict.fromkeys(application.purchased_by or []))
        if len(banks) < (application.purchases_count or 0):
            self.alerts.report_integrity_issue(
                application.id,
                f"purchases_count={application.purchases_count} but only {len(banks)} purchasing bank(s) recorded",
                cooldown=timedelta(minutes=self.config.alert_cooldown_minutes),
            )
        return [self.create_entry(application.id, str(bank)) for bank in banks]

    def sync_purchase_entries(self) -> int:
        """
        Create missing entries for completed applications with unbilled
        purchases. Only entries of the current auction round count.
        """
        billed = self.db.query(
            RevenueCollectionDB.application_id.label("application_id"),
            RevenueCollectionDB.auction_round.label("auction_round"),
            func.count(RevenueCollectionDB.id).label("entries"),
        ).group_by(RevenueCollectionDB.application_id, RevenueCollectionDB.auction_round).subquery()

        applications = self.db.query(ApplicationDB).outerjoin(
            billed,
            and_(
                billed.c.application_id == ApplicationDB.id,
                billed.c.auction_round == ApplicationDB.auction_round,
            ),
        ).filter(
            ApplicationDB.status.in_(stored_names(ApplicationStatus.COMPLETED)),
            ApplicationDB.purchases_count > func.coalesce(billed.c.entries, 0),
        ).all()

        created = 0
        for application in applications:
            before = sum(1 for c in application.collections if c.auction_round == application.auction_round)
            entries = self.create_entries_for_purchases(application)
            created += max(len(entries) - before, 0)
        return created

    def get_entry(self, entry_id: int) -> RevenueCollectionDB:
        entry = self.db.get(RevenueCollectionDB, entry_id)
        if entry is None:
            raise LedgerEntryNotFoundError(entry_id)
        return entry

    # =========================================================================
    # COLLECTION LIFECYCLE
    # =========================================================================

    def record_collection(self, entry_id: int, payment_reference: Optional[str] = None) -> RevenueCollectionDB:
        """Payment confirmed by the payment provider: pending -> collected."""
        entry = self.get_entry(entry_id)
        if entry.status != CollectionStatus.PENDING:
            raise InvalidTransitionError(
                f"Revenue entry {entry_id} is {entry.status.value}, only pending entries can be collected"
            )
        now = self.clock.now()
        entry.status = CollectionStatus.COLLECTED
        entry.payment_reference = payment_reference
        entry.collected_at = now
        entry.updated_at = now
        self.db.flush()
        return entry

    def mark_timed_out(self) -> List[RevenueCollectionDB]:
        """Fail entries pending longer than the collection timeout."""
        now = self.clock.now()
        timeout = timedelta(minutes=self.config.pending_timeout_minutes)
        stale = self.db.query(RevenueCollectionDB).filter(
            RevenueCollectionDB.status == CollectionStatus.PENDING,
            RevenueCollectionDB.last_attempt_at < now - timeout,
        ).all()

        for entry in stale:
            entry.status = CollectionStatus.FAILED
            entry.failure_reason = (
                f"Collection timeout: pending for more than {self.config.pending_timeout_minutes} minutes"
            )
            entry.updated_at = now
            self.alerts.raise_alert(
                AlertType.PAYMENT_FAILURE,
                AlertSeverity.MEDIUM,
                "Revenue Collection Timed Out",
                f"Collection {entry.id} for application {entry.application_id} "
                f"(bank {entry.bank_user_id}) timed out after {entry.retry_count} retr(ies)",
                related_entity_type="revenue_collection",
                related_entity_id=entry.id,
                cooldown=timeout,
            )
            logger.warning(f"Revenue entry {entry.id} timed out")

        self.db.flush()
        return stale

    def verify(self, entry: RevenueCollectionDB) -> bool:
        """
        Check a collected entry against the fixed fee.

        A match moves it to verified and recognizes the fee on the
        application. A mismatch is flagged and alerted. The amount is
        never modified.
        """
        if entry.status != CollectionStatus.COLLECTED:
            raise InvalidTransitionError(
                f"Revenue entry {entry.id} is {entry.status.value}, only collected entries can be verified"
            )

        now = self.clock.now()
        expected = _money(self.config.purchase_fee)
        actual = _money(entry.amount)
        entry.verified_at = now
        entry.updated_at = now

        if actual == expected:
            entry.verified = True
            entry.status = CollectionStatus.VERIFIED
            entry.verification_notes = "Amount verified"
            application = self.db.get(ApplicationDB, entry.application_id)
            if application is not None:
                application.revenue_collected = _money(application.revenue_collected) + actual
            self.db.flush()
            return True

        entry.verified = False
        entry.verification_notes = f"Amount mismatch: expected {expected}, got {actual}"
        self.alerts.raise_alert(
            AlertType.PAYMENT_FAILURE,
            AlertSeverity.MEDIUM,
            "Revenue Amount Mismatch",
            f"Collection {entry.id} for application {entry.application_id}: {entry.verification_notes}",
            related_entity_type="revenue_collection",
            related_entity_id=entry.id,
        )
        self.db.flush()
        logger.warning(f"Revenue entry {entry.id}: {entry.verification_notes}")
        return False

    def verify_collected(self) -> Dict[str, int]:
        """Verify every collected entry that has not been checked yet."""
        entries = self.db.query(RevenueCollectionDB).filter(
            RevenueCollectionDB.status == CollectionStatus.COLLECTED,
            RevenueCollectionDB.verified_at.is_(None),
        ).all()
        verified = sum(1 for entry in entries if self.verify(entry))
        return {"verified": verified, "mismatched": len(entries) - verified}

    def _retry_window_start(self) -> datetime:
        return self.clock.now() - timedelta(hours=self.config.retry_window_hours)

    def retry(self, entry: RevenueCollectionDB) -> bool:
        """Reset a failed entry to pending if it is still within the retry bound."""
        if entry.status != CollectionStatus.FAILED:
            return False
        if entry.retry_count >= self.config.max_collection_retries:
            return False
        if entry.created_at < self._retry_window_start():
            return False

        now = self.clock.now()
        entry.status = CollectionStatus.PENDING
        entry.retry_count += 1
        entry.failure_reason = None
        entry.last_attempt_at = now
        entry.updated_at = now
        self.db.flush()
        logger.info(f"Revenue entry {entry.id} retry {entry.retry_count}/{self.config.max_collection_retries}")
        return True

    def retry_failed(self) -> Dict[str, int]:
        """Retry eligible failed entries and escalate the ones past the bound."""
        eligible = self.db.query(RevenueCollectionDB).filter(
            RevenueCollectionDB.status == CollectionStatus.FAILED,
            RevenueCollectionDB.retry_count < self.config.max_collection_retries,
            RevenueCollectionDB.created_at >= self._retry_window_start(),
        ).all()
        retried = sum(1 for entry in eligible if self.retry(entry))
        return {"retried": retried, "exhausted": self.escalate_exhausted()}

    def escalate_exhausted(self) -> int:
        """Alert once for every failed entry that will never be retried again."""
        exhausted = self.db.query(RevenueCollectionDB).filter(
            RevenueCollectionDB.status == CollectionStatus.FAILED,
            RevenueCollectionDB.escalated_at.is_(None),
            (RevenueCollectionDB.retry_count >= self.config.max_collection_retries)
            | (RevenueCollectionDB.created_at < self._retry_window_start()),
        ).all()

        now = self.clock.now()
        for entry in exhausted:
            entry.escalated_at = now
            self.alerts.raise_alert(
                AlertType.PAYMENT_FAILURE,
                AlertSeverity.HIGH,
                "Revenue Collection Failed Permanently",
                f"Collection {entry.id} for application {entry.application_id} (bank {entry.bank_user_id}) "
                f"failed after {entry.retry_count} retr(ies): {entry.failure_reason or 'unknown reason'}",
                related_entity_type="revenue_collection",
                related_entity_id=entry.id,
            )
        self.db.flush()
        return len(exhausted)

    # =========================================================================
    # ANALYTICS
    # =========================================================================

    def _daily_buckets(self, since: datetime) -> Dict[date, _DailyBucket]:
        rows = self.db.query(
            RevenueCollectionDB.created_at,
            RevenueCollectionDB.amount,
            RevenueCollectionDB.status,
        ).filter(RevenueCollectionDB.created_at >= since).all()

        buckets: Dict[date, _DailyBucket] = defaultdict(_DailyBucket)
        for created_at, amount, status in rows:
            bucket = buckets[created_at.date()]
            bucket.total += 1
            if status in SUCCESSFUL_STATUSES:
                bucket.successful += 1
                bucket.revenue += _money(amount)
            elif status == CollectionStatus.FAILED:
                bucket.failed += 1
        return buckets

    def detect_anomalies(self) -> List[Anomaly]:
        """
        Flag days whose revenue or collection count lies more than
        anomaly_sigma standard deviations from the trailing-window mean.

        One alert is raised per anomalous day; a day already alerted on
        within the window is not alerted again.
        """
        window_days = self.config.anomaly_window_days
        buckets = self._daily_buckets(self.clock.now() - timedelta(days=window_days))
        if len(buckets) < 2:
            return []

        days = sorted(buckets)
        series = {
            "revenue": [float(buckets[d].revenue) for d in days],
            "collections": [float(buckets[d].successful) for d in days],
        }

        anomalies: List[Anomaly] = []
        for metric, values in series.items():
            mean = statistics.mean(values)
            stddev = statistics.stdev(values)
            if stddev == 0:
                continue
            threshold = self.config.anomaly_sigma * stddev
            for day, value in zip(days, values):
                if value > mean + threshold:
                    anomalies.append(Anomaly(day, f"high_{metric}", value, mean, stddev))
                elif value < mean - threshold:
                    anomalies.append(Anomaly(day, f"low_{metric}", value, mean, stddev))

        by_day: Dict[date, List[Anomaly]] = defaultdict(list)
        for anomaly in anomalies:
            by_day[anomaly.day].append(anomaly)

        for day, day_anomalies in sorted(by_day.items()):
            details = "; ".join(
                f"{a.anomaly_type} (value {a.value:.2f}, mean {a.mean:.2f}, stddev {a.stddev:.2f})"
                for a in day_anomalies
            )
            self.alerts.raise_alert(
                AlertType.REVENUE_ANOMALY,
                AlertSeverity.MEDIUM,
                "Revenue Anomaly Detected",
                f"{day.isoformat()}: {details}",
                related_entity_type="revenue_day",
                related_entity_id=day.isoformat(),
                cooldown=timedelta(days=window_days),
            )
        return anomalies

    def generate_daily_analytics(self) -> int:
        """Store daily_revenue, daily_collections and success_rate metrics."""
        now = self.clock.now()
        start = (now - timedelta(days=self.config.analytics_window_days)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        buckets = self._daily_buckets(start)

        written = 0
        for day, bucket in buckets.items():
            success_rate = (bucket.successful / bucket.total * 100) if bucket.total else 0.0
            metrics = {
                "daily_revenue": float(bucket.revenue),
                "daily_collections": float(bucket.successful),
                "success_rate": round(success_rate, 2),
            }
            for name, value in metrics.items():
                self._upsert_metric(name, day, value, {"currency": self.config.currency, "total": bucket.total})
                written += 1
        self.db.flush()
        return written

    def _upsert_metric(self, name: str, day: date, value: float, metadata: Dict[str, Any]) -> None:
        metric = self.db.query(BusinessMetricDB).filter(
            BusinessMetricDB.metric_name == name,
            BusinessMetricDB.metric_date == day,
        ).first()
        if metric is None:
            metric = BusinessMetricDB(metric_name=name, metric_date=day, created_at=self.clock.now())
            self.db.add(metric)
        metric.metric_value = value
        metric.metric_metadata = metadata

    # =========================================================================
    # READ MODELS
    # =========================================================================

    def get_revenue_stats(self, window_hours: int = 24) -> RevenueStats:
        since = self.clock.now() - timedelta(hours=window_hours)
        rows = self.db.query(
            RevenueCollectionDB.status,
            func.count(RevenueCollectionDB.id),
            func.sum(RevenueCollectionDB.amount),
        ).filter(
            RevenueCollectionDB.created_at >= since
        ).group_by(RevenueCollectionDB.status).all()

        stats = RevenueStats(window_hours=window_hours, currency=self.config.currency)
        for status, count, amount in rows:
            stats.total_collections += count
            if status in SUCCESSFUL_STATUSES:
                stats.successful_collections += count
                stats.total_revenue += _money(amount)
            elif status == CollectionStatus.FAILED:
                stats.failed_collections += count
            elif status == CollectionStatus.PENDING:
                stats.pending_collections += count

        if stats.successful_collections:
            stats.average_amount = (stats.total_revenue / stats.successful_collections).quantize(CENTS)
        return stats

    def get_revenue_trends(self, days: int = 7) -> List[RevenueTrendPoint]:
        """Daily series for the last `days` days, including days with no activity."""
        today = self.clock.now().replace(hour=0, minute=0, second=0, microsecond=0)
        start = today - timedelta(days=days - 1)
        buckets = self._daily_buckets(start)

        points = []
        for day in rrule(DAILY, dtstart=start, until=today):
            bucket = buckets.get(day.date(), _DailyBucket())
            points.append(RevenueTrendPoint(
                day=day.date(),
                revenue=bucket.revenue,
                collections=bucket.successful,
                failed=bucket.failed,
            ))
        return points
