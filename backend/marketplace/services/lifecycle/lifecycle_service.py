"""
Lifecycle Service

The engine's surface for the API layer. Status reads always go through
the reconciler first, so callers get either a validated status or an
explicit error.
"""
import logging
from typing import Callable, Optional, Dict, Any, List

from sqlalchemy.orm import Session

from ...clock import Clock
from ...config import EngineConfig
from ...database import configured_unit_of_work
from .operator_actions import OperatorActions
from .reconciler import ReconciliationResult, StatusReconciler
from .revenue_ledger import RevenueLedger, RevenueStats, RevenueTrendPoint
from .transition_monitor import StatusStat, TransitionMonitor, UrgentApplication

logger = logging.getLogger(__name__)


class LifecycleService:
    """Facade over reconciler, monitor, ledger, operator actions and jobs."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock,
        config: EngineConfig,
        reconciler: StatusReconciler,
        monitor: TransitionMonitor,
        job_manager,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.config = config
        self.reconciler = reconciler
        self.monitor = monitor
        self.job_manager = job_manager

    def _unit(self):
        return configured_unit_of_work(self.session_factory, self.config)

    # =========================================================================
    # READS
    # =========================================================================

    def get_status(self, application_id: int) -> ReconciliationResult:
        """Validated status. Drift is corrected before returning."""
        return self.reconciler.reconcile(application_id)

    def list_urgent(self) -> List[UrgentApplication]:
        return self.monitor.list_urgent()

    def get_monitoring_stats(self) -> List[StatusStat]:
        return self.monitor.get_monitoring_stats()

    def get_revenue_stats(self, window_hours: int = 24) -> RevenueStats:
        with self._unit() as db:
            return RevenueLedger(db, self.clock, self.config).get_revenue_stats(window_hours)

    def get_revenue_trends(self, days: int = 7) -> List[RevenueTrendPoint]:
        with self._unit() as db:
            return RevenueLedger(db, self.clock, self.config).get_revenue_trends(days)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def trigger_manual_check(self, kind: str) -> Dict[str, Any]:
        return self.job_manager.trigger_manual_check(kind)

    def record_collection(self, entry_id: int, payment_reference: Optional[str] = None) -> Dict[str, Any]:
        with self._unit() as db:
            entry = RevenueLedger(db, self.clock, self.config).record_collection(entry_id, payment_reference)
            return {"entry_id": entry.id, "status": entry.status.value, "amount": str(entry.amount)}

    def _operator_result(self, application) -> Dict[str, Any]:
        return {
            "application_id": application.id,
            "status": application.status.value,
            "auction_end_time": application.auction_end_time.isoformat() if application.auction_end_time else None,
        }

    def reactivate(self, application_id: int, operator_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        with self._unit() as db:
            application = OperatorActions(db, self.clock, self.config).reactivate(application_id, operator_id, reason)
            return self._operator_result(application)

    def reopen(self, application_id: int, operator_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        with self._unit() as db:
            application = OperatorActions(db, self.clock, self.config).reopen(application_id, operator_id, reason)
            return self._operator_result(application)

    def extend_deadline(
        self,
        application_id: int,
        phase: str,
        hours: int,
        operator_id: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self._unit() as db:
            deadline = OperatorActions(db, self.clock, self.config).extend_deadline(
                application_id, phase, hours, operator_id, reason
            )
        return {"application_id": application_id, "phase": phase, "new_deadline": deadline.isoformat()}
