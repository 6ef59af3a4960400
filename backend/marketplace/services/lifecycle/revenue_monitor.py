"""
Revenue Monitor

Periodic ledger maintenance. Runs:
1. Purchase sync (entries for completed applications missing one)
2. Retry of failed collections, escalation of exhausted ones
3. Pending timeouts
4. Verification of collected amounts
5. Daily revenue analytics
6. Anomaly detection

Retries run before timeouts so an entry that times out in this cycle
stays failed (and visible) until the next one.
"""
import logging
from typing import Callable, Dict, Any, List, Tuple

from sqlalchemy.orm import Session

from ...clock import Clock
from ...config import EngineConfig
from ...database import configured_unit_of_work
from .revenue_ledger import RevenueLedger

logger = logging.getLogger(__name__)


class RevenueMonitor:
    """
    Orchestrates one ledger maintenance cycle.

    Usage:
        monitor = RevenueMonitor(SessionLocal, SystemClock(), EngineConfig.load())
        result = monitor.run_cycle()
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Clock, config: EngineConfig):
        self.session_factory = session_factory
        self.clock = clock
        self.config = config

    def _steps(self) -> List[Tuple[str, Callable[[RevenueLedger], Any]]]:
        return [
            ("purchase_sync", lambda ledger: {"created": ledger.sync_purchase_entries()}),
            ("retries", lambda ledger: ledger.retry_failed()),
            ("timeouts", lambda ledger: {"timed_out": len(ledger.mark_timed_out())}),
            ("verification", lambda ledger: ledger.verify_collected()),
            ("analytics", lambda ledger: {"metrics_written": ledger.generate_daily_analytics()}),
            ("anomalies", lambda ledger: {"anomalies": len(ledger.detect_anomalies())}),
        ]

    def run_cycle(self) -> Dict[str, Any]:
        """Run every ledger step in its own unit of work."""
        results: Dict[str, Any] = {
            "run_date": self.clock.now().isoformat(),
            "jobs": {},
            "errors": 0,
        }

        for name, step in self._steps():
            try:
                with configured_unit_of_work(self.session_factory, self.config) as db:
                    outcome = step(RevenueLedger(db, self.clock, self.config))
                results["jobs"][name] = {"status": "success", **outcome}
                logger.debug(f"Revenue step {name} complete: {outcome}")
            except Exception as e:
                results["jobs"][name] = {"status": "error", "error": str(e)}
                results["errors"] += 1
                logger.error(f"Revenue step {name} failed: {e}")

        return results
