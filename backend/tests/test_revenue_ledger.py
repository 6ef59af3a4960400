"""
Tests for the revenue collection ledger and the revenue monitor cycle.
"""
import pytest
from datetime import timedelta
from decimal import Decimal

from marketplace.exceptions import ApplicationNotFoundError, InvalidTransitionError, LedgerEntryNotFoundError
from marketplace.models import (
    AlertSeverity, AlertType, ApplicationDB, ApplicationStatus, BusinessMetricDB,
    CollectionStatus, RevenueCollectionDB, SystemAlertDB,
)
from marketplace.services.lifecycle.revenue_ledger import RevenueLedger
from marketplace.services.lifecycle.revenue_monitor import RevenueMonitor

from conftest import T0


@pytest.fixture
def ledger_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def ledger(ledger_session, clock, config):
    return RevenueLedger(ledger_session, clock, config)


def _entry(db, entry_id) -> RevenueCollectionDB:
    db.expire_all()
    return db.get(RevenueCollectionDB, entry_id)


# =============================================================================
# CREATION
# =============================================================================

class TestCreateEntry:

    def test_entry_starts_pending_with_fixed_fee(self, ledger, make_application):
        application_id = make_application()

        entry = ledger.create_entry(application_id, "bank-1")

        assert entry.status == CollectionStatus.PENDING
        assert entry.amount == Decimal("25.00")
        assert entry.currency == "SAR"
        assert entry.retry_count == 0

    def test_one_entry_per_bank_purchase(self, ledger, make_application):
        application_id = make_application()

        first = ledger.create_entry(application_id, "bank-1")
        again = ledger.create_entry(application_id, "bank-1")
        other = ledger.create_entry(application_id, "bank-2")

        assert first.id == again.id
        assert other.id != first.id

    def test_unknown_application_raises(self, ledger):
        with pytest.raises(ApplicationNotFoundError):
            ledger.create_entry(424242, "bank-1")

    def test_sync_bills_unbilled_purchases(self, ledger, ledger_session, make_application):
        application_id = make_application(
            status=ApplicationStatus.COMPLETED, purchases_count=2, purchased_by=["bank-1", "bank-2"],
        )
        ledger.create_entry(application_id, "bank-1")

        assert ledger.sync_purchase_entries() == 1
        assert ledger_session.query(RevenueCollectionDB).count() == 2
        assert ledger.sync_purchase_entries() == 0

    def test_new_auction_round_bills_the_same_bank_again(self, ledger, ledger_session, make_application, make_entry):
        application_id = make_application(
            status=ApplicationStatus.COMPLETED, purchases_count=1, purchased_by=["bank-1"], auction_round=2,
        )
        make_entry(application_id, "bank-1", auction_round=1)

        assert ledger.sync_purchase_entries() == 1

        rounds = sorted(
            e.auction_round for e in ledger_session.query(RevenueCollectionDB).filter_by(bank_user_id="bank-1")
        )
        assert rounds == [1, 2]
        assert ledger.create_entry(application_id, "bank-1").auction_round == 2
        assert ledger.sync_purchase_entries() == 0


# =============================================================================
# TIMEOUTS
# =============================================================================

class TestTimeouts:

    def test_pending_entry_times_out_after_an_hour(self, ledger, clock, make_application, make_entry, db):
        entry_id = make_entry(make_application())
        clock.set(T0 + timedelta(minutes=61))

        timed_out = ledger.mark_timed_out()
        ledger.db.commit()

        assert [e.id for e in timed_out] == [entry_id]
        entry = _entry(db, entry_id)
        assert entry.status == CollectionStatus.FAILED
        assert "timeout" in entry.failure_reason.lower()
        assert db.query(SystemAlertDB).filter_by(alert_type=AlertType.PAYMENT_FAILURE).count() == 1

    def test_recent_pending_entry_is_kept(self, ledger, clock, make_application, make_entry):
        make_entry(make_application())
        clock.set(T0 + timedelta(minutes=59))

        assert ledger.mark_timed_out() == []

    def test_revenue_cycle_leaves_timed_out_entry_failed(
        self, session_factory, clock, config, make_application, make_entry, db,
    ):
        entry_id = make_entry(make_application())
        clock.set(T0 + timedelta(minutes=61))

        result = RevenueMonitor(session_factory, clock, config).run_cycle()

        assert result["errors"] == 0
        assert result["jobs"]["timeouts"]["timed_out"] == 1
        entry = _entry(db, entry_id)
        assert entry.status == CollectionStatus.FAILED
        assert "timeout" in entry.failure_reason.lower()

        # Picked up for retry on the following cycle
        clock.advance(timedelta(minutes=5))
        RevenueMonitor(session_factory, clock, config).run_cycle()
        entry = _entry(db, entry_id)
        assert entry.status == CollectionStatus.PENDING
        assert entry.retry_count == 1


# =============================================================================
# VERIFICATION
# =============================================================================

class TestVerification:

    def test_matching_amount_is_verified_and_recognized(self, ledger, ledger_session, make_application):
        application_id = make_application()
        entry = ledger.create_entry(application_id, "bank-1")
        ledger.record_collection(entry.id, payment_reference="PAY-001")

        assert ledger.verify(entry) is True
        assert entry.status == CollectionStatus.VERIFIED
        assert entry.verified is True
        assert entry.verification_notes == "Amount verified"
        assert ledger_session.get(ApplicationDB, application_id).revenue_collected == Decimal("25.00")

    def test_mismatch_is_flagged_without_touching_amount(self, ledger, ledger_session, make_application):
        application_id = make_application()
        entry = ledger.create_entry(application_id, "bank-1", amount=Decimal("20.00"))
        ledger.record_collection(entry.id)

        assert ledger.verify(entry) is False
        assert entry.status == CollectionStatus.COLLECTED
        assert entry.verified is False
        assert entry.amount == Decimal("20.00")
        assert entry.verification_notes == "Amount mismatch: expected 25.00, got 20.00"
        assert ledger_session.get(ApplicationDB, application_id).revenue_collected == Decimal("0.00")

    def test_verify_collected_checks_each_entry_once(self, ledger, make_application):
        application_id = make_application()
        for bank in ("bank-1", "bank-2"):
            ledger.record_collection(ledger.create_entry(application_id, bank).id)

        assert ledger.verify_collected() == {"verified": 2, "mismatched": 0}
        assert ledger.verify_collected() == {"verified": 0, "mismatched": 0}

    def test_only_collected_entries_can_be_verified(self, ledger, make_application):
        entry = ledger.create_entry(make_application(), "bank-1")

        with pytest.raises(InvalidTransitionError):
            ledger.verify(entry)

    def test_record_collection_requires_pending(self, ledger, make_application, make_entry):
        entry_id = make_entry(make_application(), status=CollectionStatus.FAILED)

        with pytest.raises(InvalidTransitionError):
            ledger.record_collection(entry_id)

    def test_record_collection_unknown_entry(self, ledger):
        with pytest.raises(LedgerEntryNotFoundError):
            ledger.record_collection(777)


# =============================================================================
# RETRIES
# =============================================================================

class TestRetries:

    def test_entry_failing_three_times_is_never_retried_again(self, ledger, ledger_session, clock, make_application):
        entry = ledger.create_entry(make_application(), "bank-1")

        for attempt in range(1, 4):
            clock.advance(timedelta(minutes=61))
            assert ledger.mark_timed_out() == [entry]
            assert ledger.retry(entry) is True
            assert entry.retry_count == attempt

        clock.advance(timedelta(minutes=61))
        ledger.mark_timed_out()

        assert ledger.retry(entry) is False
        assert ledger.retry_failed() == {"retried": 0, "exhausted": 1}
        assert entry.status == CollectionStatus.FAILED

        alert = ledger_session.query(SystemAlertDB).filter_by(
            title="Revenue Collection Failed Permanently"
        ).one()
        assert alert.severity == AlertSeverity.HIGH
        assert alert.related_entity_id == str(entry.id)

        # Escalated exactly once
        assert ledger.escalate_exhausted() == 0

    def test_no_retry_outside_the_window(self, ledger, clock, make_application, make_entry):
        entry_id = make_entry(make_application(), status=CollectionStatus.FAILED)
        clock.set(T0 + timedelta(hours=25))

        entry = ledger.get_entry(entry_id)
        assert ledger.retry(entry) is False
        assert ledger.retry_failed() == {"retried": 0, "exhausted": 1}

    def test_retry_resets_to_pending(self, ledger, clock, make_application, make_entry):
        entry_id = make_entry(make_application(), status=CollectionStatus.FAILED)
        clock.set(T0 + timedelta(hours=2))

        assert ledger.retry_failed() == {"retried": 1, "exhausted": 0}
        entry = ledger.get_entry(entry_id)
        assert entry.status == CollectionStatus.PENDING
        assert entry.failure_reason is None
        assert entry.last_attempt_at == clock.now()


# =============================================================================
# ANALYTICS
# =============================================================================

def _seed_daily_collections(make_application, make_entry, per_day, spike_day=None, spike=0):
    application_id = make_application()
    for day in range(10):
        count = spike if day == spike_day else per_day
        for i in range(count):
            make_entry(
                application_id,
                bank_user_id=f"bank-{day}-{i}",
                status=CollectionStatus.VERIFIED,
                created_at=T0 - timedelta(days=day, hours=1),
            )


class TestAnalytics:

    def test_spike_day_is_flagged_once(self, ledger, ledger_session, make_application, make_entry):
        _seed_daily_collections(make_application, make_entry, per_day=2, spike_day=3, spike=20)

        anomalies = ledger.detect_anomalies()

        spike_date = (T0 - timedelta(days=3, hours=1)).date()
        assert {a.anomaly_type for a in anomalies} == {"high_revenue", "high_collections"}
        assert {a.day for a in anomalies} == {spike_date}

        alerts = ledger_session.query(SystemAlertDB).filter_by(alert_type=AlertType.REVENUE_ANOMALY).all()
        assert len(alerts) == 1
        assert alerts[0].related_entity_id == spike_date.isoformat()

        ledger.detect_anomalies()
        assert ledger_session.query(SystemAlertDB).filter_by(alert_type=AlertType.REVENUE_ANOMALY).count() == 1

    def test_flat_series_has_no_anomalies(self, ledger, make_application, make_entry):
        _seed_daily_collections(make_application, make_entry, per_day=3)

        assert ledger.detect_anomalies() == []

    def test_daily_analytics_are_upserted(self, ledger, ledger_session, make_application, make_entry):
        application_id = make_application()
        make_entry(application_id, "bank-1", status=CollectionStatus.VERIFIED, created_at=T0 - timedelta(hours=1))
        make_entry(application_id, "bank-2", status=CollectionStatus.FAILED, created_at=T0 - timedelta(hours=1))

        assert ledger.generate_daily_analytics() == 3
        ledger.generate_daily_analytics()

        metrics = {m.metric_name: m.metric_value for m in ledger_session.query(BusinessMetricDB).all()}
        assert metrics == {"daily_revenue": 25.0, "daily_collections": 1.0, "success_rate": 50.0}

    def test_revenue_stats_last_24_hours(self, ledger, make_application, make_entry):
        application_id = make_application()
        make_entry(application_id, "bank-1", status=CollectionStatus.VERIFIED, created_at=T0 - timedelta(hours=2))
        make_entry(application_id, "bank-2", status=CollectionStatus.COLLECTED, created_at=T0 - timedelta(hours=3))
        make_entry(application_id, "bank-3", status=CollectionStatus.FAILED, created_at=T0 - timedelta(hours=4))
        make_entry(application_id, "bank-4", status=CollectionStatus.PENDING, created_at=T0 - timedelta(minutes=5))
        make_entry(application_id, "bank-5", status=CollectionStatus.VERIFIED, created_at=T0 - timedelta(hours=30))

        stats = ledger.get_revenue_stats()

        assert stats.total_collections == 4
        assert stats.successful_collections == 2
        assert stats.failed_collections == 1
        assert stats.pending_collections == 1
        assert stats.total_revenue == Decimal("50.00")
        assert stats.average_amount == Decimal("25.00")

    def test_revenue_trends_fill_empty_days(self, ledger, make_application, make_entry):
        application_id = make_application()
        make_entry(application_id, "bank-1", status=CollectionStatus.VERIFIED, created_at=T0 - timedelta(hours=1))
        make_entry(application_id, "bank-2", status=CollectionStatus.VERIFIED, created_at=T0 - timedelta(days=2))

        points = ledger.get_revenue_trends(days=7)

        assert len(points) == 7
        assert points[-1].day == T0.date()
        assert points[-1].revenue == Decimal("25.00")
        assert points[-3].collections == 1
        assert points[-2].collections == 0
