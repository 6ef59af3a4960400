"""
Tests for the service facade, operator actions and the background job manager.
"""
import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from marketplace.exceptions import (
    ApplicationNotFoundError, InvalidTransitionError, LedgerEntryNotFoundError, UnknownCheckKindError,
)
from marketplace.models import (
    ActorType, AlertSeverity, AlertType, ApplicationDB, ApplicationStatus, BusinessMetricDB,
    RevenueCollectionDB, StatusAuditLogDB, SystemAlertDB, TransitionTrigger,
)
from marketplace.runtime import build_runtime
from marketplace.services.jobs import BackgroundJobManager, CHECK_KINDS

from conftest import T0


@pytest.fixture
def runtime(session_factory, clock, config):
    return build_runtime(session_factory=session_factory, clock=clock, config=config)


@pytest.fixture
def service(runtime):
    return runtime.service


def _application(db, application_id) -> ApplicationDB:
    db.expire_all()
    return db.get(ApplicationDB, application_id)


# =============================================================================
# COMPOSITION
# =============================================================================

def test_runtime_without_webhook_has_no_forwarder(runtime):
    assert runtime.forwarder is None
    assert runtime.job_manager.is_running is False
    assert set(runtime.job_manager.tasks) == {"status_transitions", "status_sweep", "revenue", "health"}


# =============================================================================
# STATUS READS
# =============================================================================

class TestGetStatus:

    def test_consistent_status_is_returned_as_is(self, service, make_application):
        application_id = make_application()

        result = service.get_status(application_id)

        assert result.status == ApplicationStatus.LIVE_AUCTION
        assert result.was_corrected is False

    def test_drift_is_corrected_before_returning(self, service, make_application, db):
        application_id = make_application(offers_count=2)

        result = service.get_status(application_id)

        assert result.status == ApplicationStatus.COMPLETED
        assert result.previous_status == ApplicationStatus.LIVE_AUCTION
        assert result.was_corrected is True
        assert _application(db, application_id).status == ApplicationStatus.COMPLETED
        assert result.to_dict()["status"] == "completed"

    def test_unknown_application(self, service):
        with pytest.raises(ApplicationNotFoundError):
            service.get_status(999)


# =============================================================================
# OPERATOR ACTIONS
# =============================================================================

class TestReactivate:

    def test_ignored_application_returns_to_auction(self, service, clock, make_application, db):
        application_id = make_application(
            status=ApplicationStatus.IGNORED,
            submitted_at=T0 - timedelta(days=3),
        )

        result = service.reactivate(application_id, operator_id="ops-7")

        assert result["status"] == "live_auction"
        application = _application(db, application_id)
        assert application.status == ApplicationStatus.LIVE_AUCTION
        assert application.auction_end_time == clock.now() + timedelta(hours=48)
        assert application.offer_selection_end_time is None
        assert application.offers_count == 0
        assert application.purchases_count == 0

        audit = db.query(StatusAuditLogDB).filter_by(application_id=application_id).one()
        assert audit.actor_type == ActorType.OPERATOR
        assert audit.actor_id == "ops-7"
        assert audit.trigger == TransitionTrigger.OPERATOR_ACTION
        assert (audit.from_status, audit.to_status) == ("ignored", "live_auction")

    def test_reactivated_application_stays_live_on_read(self, service, make_application):
        application_id = make_application(
            status=ApplicationStatus.IGNORED,
            submitted_at=T0 - timedelta(days=3),
        )
        service.reactivate(application_id, operator_id="ops-7")

        result = service.get_status(application_id)

        assert result.status == ApplicationStatus.LIVE_AUCTION
        assert result.was_corrected is False

    def test_only_ignored_applications_can_be_reactivated(self, service, make_application):
        application_id = make_application()

        with pytest.raises(InvalidTransitionError):
            service.reactivate(application_id, operator_id="ops-7")

    def test_unknown_application(self, service):
        with pytest.raises(ApplicationNotFoundError):
            service.reactivate(12345, operator_id="ops-7")


class TestReopen:

    def test_completed_application_reopens_with_purchases_cleared(self, service, make_application, db):
        application_id = make_application(
            status=ApplicationStatus.COMPLETED,
            offers_count=2,
            purchases_count=1,
            purchased_by=["bank-1"],
            offer_selection_end_time=T0 + timedelta(hours=10),
        )

        service.reopen(application_id, operator_id="ops-2", reason="Customer asked for more offers")

        application = _application(db, application_id)
        assert application.status == ApplicationStatus.LIVE_AUCTION
        assert application.offers_count == 0
        assert application.purchased_by == []
        assert application.offer_selection_end_time is None

        audit = db.query(StatusAuditLogDB).filter_by(application_id=application_id).one()
        assert audit.reason == "Customer asked for more offers"

    def test_repurchase_after_reopen_is_billed_again(self, runtime, service, clock, make_application, db):
        application_id = make_application(
            status=ApplicationStatus.COMPLETED,
            purchases_count=1,
            purchased_by=["bank-1"],
            offer_selection_end_time=T0 + timedelta(hours=10),
        )
        runtime.revenue_monitor.run_cycle()
        service.reopen(application_id, operator_id="ops-2")

        # The same bank buys again in the new auction
        db.query(ApplicationDB).filter_by(id=application_id).update(
            {ApplicationDB.purchases_count: 1, ApplicationDB.purchased_by: ["bank-1"]},
            synchronize_session=False,
        )
        db.commit()
        clock.advance(timedelta(hours=1))

        assert runtime.monitor.run_cycle()["transitioned"] == 1
        runtime.revenue_monitor.run_cycle()

        db.expire_all()
        entries = db.query(RevenueCollectionDB).filter_by(application_id=application_id).all()
        assert sorted((e.bank_user_id, e.auction_round) for e in entries) == [("bank-1", 1), ("bank-1", 2)]
        assert _application(db, application_id).auction_round == 2

    def test_live_application_cannot_be_reopened(self, service, make_application):
        with pytest.raises(InvalidTransitionError):
            service.reopen(make_application(), operator_id="ops-2")


class TestExtendDeadline:

    def test_auction_deadline_extends_from_current_deadline(self, service, make_application, db):
        application_id = make_application()

        result = service.extend_deadline(application_id, "auction", 24, operator_id="ops-1")

        assert result["new_deadline"] == (T0 + timedelta(hours=72)).isoformat()
        assert _application(db, application_id).auction_end_time == T0 + timedelta(hours=72)

        audit = db.query(StatusAuditLogDB).filter_by(application_id=application_id).one()
        assert audit.trigger == TransitionTrigger.DEADLINE_EXTENSION
        assert audit.from_status == audit.to_status == "live_auction"

    def test_passed_deadline_extends_from_now(self, service, clock, make_application, db):
        application_id = make_application(
            status=ApplicationStatus.COMPLETED,
            offers_count=1,
            offer_selection_end_time=T0 - timedelta(hours=1),
        )

        service.extend_deadline(application_id, "selection", 6, operator_id="ops-1")

        assert _application(db, application_id).offer_selection_end_time == clock.now() + timedelta(hours=6)

    @pytest.mark.parametrize("hours", [0, 169, -4])
    def test_extension_bounds(self, service, make_application, hours):
        with pytest.raises(ValueError):
            service.extend_deadline(make_application(), "auction", hours, operator_id="ops-1")

    def test_unknown_phase(self, service, make_application):
        with pytest.raises(ValueError):
            service.extend_deadline(make_application(), "payment", 4, operator_id="ops-1")

    def test_phase_must_match_status(self, service, make_application):
        with pytest.raises(InvalidTransitionError):
            service.extend_deadline(make_application(), "selection", 4, operator_id="ops-1")


# =============================================================================
# LEDGER THROUGH THE SERVICE
# =============================================================================

def test_record_collection_and_stats(service, make_application, make_entry):
    entry_id = make_entry(make_application(), created_at=T0 - timedelta(minutes=10))

    result = service.record_collection(entry_id, payment_reference="PAY-9")

    assert result == {"entry_id": entry_id, "status": "collected", "amount": "25.00"}
    stats = service.get_revenue_stats()
    assert stats.successful_collections == 1
    assert len(service.get_revenue_trends(days=3)) == 3


def test_record_collection_unknown_entry(service):
    with pytest.raises(LedgerEntryNotFoundError):
        service.record_collection(31337)


# =============================================================================
# JOBS
# =============================================================================

class TestManualChecks:

    def test_unknown_kind_is_rejected(self, service):
        with pytest.raises(UnknownCheckKindError):
            service.trigger_manual_check("payments")

    def test_status_transitions_check_runs_a_cycle(self, service, clock, make_application, db):
        application_id = make_application(submitted_at=T0 - timedelta(hours=49))

        result = service.trigger_manual_check("status_transitions")

        assert result["results"]["status_transitions"]["status"] == "success"
        assert _application(db, application_id).status == ApplicationStatus.IGNORED

    def test_all_reports_failures_per_check(self, session_factory, clock, config, runtime):
        failing_revenue = MagicMock()
        failing_revenue.run_cycle.side_effect = RuntimeError("ledger unavailable")
        manager = BackgroundJobManager(
            session_factory, clock, config, runtime.monitor, runtime.reconciler, failing_revenue,
        )

        result = manager.trigger_manual_check("all")

        assert set(result["results"]) == set(CHECK_KINDS) - {"all"}
        assert result["results"]["revenue"] == {"status": "error", "error": "ledger unavailable"}
        assert result["results"]["status_transitions"]["status"] == "success"
        assert result["results"]["health"]["status"] == "success"
        assert result["results"]["health"]["result"]["status"] == "degraded"


class TestHealthCheck:

    def test_healthy_when_nothing_failed(self, runtime, db):
        report = runtime.job_manager.perform_health_check()

        assert report["status"] == "healthy"
        metric = db.query(BusinessMetricDB).filter_by(metric_name="background_job_health").one()
        assert metric.metric_value == 1.0
        assert db.query(SystemAlertDB).count() == 0

    def test_failing_task_degrades_health_and_alerts_once(self, session_factory, clock, config, runtime, db):
        failing_revenue = MagicMock()
        failing_revenue.run_cycle.side_effect = RuntimeError("ledger unavailable")
        manager = BackgroundJobManager(
            session_factory, clock, config, runtime.monitor, runtime.reconciler, failing_revenue,
        )
        with pytest.raises(RuntimeError):
            manager.tasks["revenue"].run_once()

        report = manager.perform_health_check()
        manager.perform_health_check()

        assert report["status"] == "degraded"
        assert any("revenue" in issue for issue in report["issues"])

        metrics = db.query(BusinessMetricDB).filter_by(metric_name="background_job_health").all()
        assert [m.metric_value for m in metrics] == [0.0, 0.0]

        alert = db.query(SystemAlertDB).filter_by(alert_type=AlertType.SYSTEM_ERROR).one()
        assert alert.severity == AlertSeverity.HIGH

    def test_job_status_lists_every_task(self, runtime):
        status = runtime.job_manager.get_job_status()

        assert status["running"] is False
        assert set(status["jobs"]) == {"status_transitions", "status_sweep", "revenue", "health"}
        assert "alert_forwarder" not in status

    def test_restart_unknown_job(self, runtime):
        with pytest.raises(UnknownCheckKindError):
            runtime.job_manager.restart_job("nightly")
