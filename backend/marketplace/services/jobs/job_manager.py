"""
Background Job Manager

Owns the periodic tasks of the lifecycle engine:

    status_transitions  - transition monitor cycle       (default 60s)
    status_sweep        - legacy normalization + reconcile (default 5 min)
    revenue             - revenue ledger maintenance      (default 5 min)
    health              - task health check               (default 5 min)

Constructed by the composition root with every dependency passed in.
"""
import logging
from datetime import timedelta
from typing import Callable, Dict, Any, Optional

from sqlalchemy.orm import Session

from ...clock import Clock
from ...config import EngineConfig
from ...database import configured_unit_of_work
from ...exceptions import UnknownCheckKindError
from ...models import AlertSeverity, AlertType, BusinessMetricDB
from ..lifecycle.alert_sink import AlertSink
from ..lifecycle.reconciler import StatusReconciler
from ..lifecycle.revenue_monitor import RevenueMonitor
from ..lifecycle.transition_monitor import TransitionMonitor
from .alert_forwarder import AlertForwarder
from .periodic_task import PeriodicTask

logger = logging.getLogger(__name__)

CHECK_KINDS = ("status_transitions", "revenue", "health", "all")

# A task is stale when it has not run for this many intervals
STALE_INTERVALS = 3


class BackgroundJobManager:
    """
    Starts, stops and reports on the engine's periodic tasks.

    Usage:
        manager = BackgroundJobManager(SessionLocal, clock, config, monitor, reconciler, revenue_monitor)
        manager.start()
        ...
        manager.stop()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock,
        config: EngineConfig,
        monitor: TransitionMonitor,
        reconciler: StatusReconciler,
        revenue_monitor: RevenueMonitor,
        forwarder: Optional[AlertForwarder] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.config = config
        self.forwarder = forwarder
        self._started = False

        self.tasks: Dict[str, PeriodicTask] = {
            "status_transitions": PeriodicTask(
                "status_transitions",
                lambda should_stop: monitor.run_cycle(should_stop=should_stop),
                config.status_check_interval_seconds,
                clock,
            ),
            "status_sweep": PeriodicTask(
                "status_sweep",
                lambda should_stop: reconciler.run_sweep(),
                config.sweep_interval_seconds,
                clock,
            ),
            "revenue": PeriodicTask(
                "revenue",
                lambda should_stop: revenue_monitor.run_cycle(),
                config.revenue_interval_seconds,
                clock,
            ),
            "health": PeriodicTask(
                "health",
                lambda should_stop: self.perform_health_check(),
                config.health_interval_seconds,
                clock,
                run_on_start=False,
            ),
        }

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        logger.info("Starting background job manager")
        for task in self.tasks.values():
            task.start()
        if self.forwarder is not None:
            self.forwarder.start()
        self._started = True

    def stop(self, timeout: float = 30.0) -> None:
        """Stop every task, letting in-flight units of work finish."""
        logger.info("Stopping background job manager")
        for task in self.tasks.values():
            task.request_stop()
        for task in self.tasks.values():
            task.stop(timeout=timeout)
        if self.forwarder is not None:
            self.forwarder.stop(timeout=timeout)
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    def restart_job(self, name: str) -> Dict[str, Any]:
        task = self.tasks.get(name)
        if task is None:
            raise UnknownCheckKindError(f"Unknown job: {name}")
        task.stop()
        task.start()
        logger.info(f"Restarted job {name}")
        return task.status()

    def get_job_status(self) -> Dict[str, Any]:
        status = {
            "running": self._started,
            "jobs": {name: task.status() for name, task in self.tasks.items()},
        }
        if self.forwarder is not None:
            status["alert_forwarder"] = {
                "running": self.forwarder.is_running,
                "forwarded": self.forwarder.forwarded,
                "failed": self.forwarder.failed,
            }
        return status

    # =========================================================================
    # HEALTH
    # =========================================================================

    def _task_issues(self, task: PeriodicTask) -> list:
        issues = []
        if self._started and not task.is_running:
            issues.append(f"{task.name}: not running")
        if task.consecutive_failures:
            issues.append(
                f"{task.name}: {task.consecutive_failures} consecutive failure(s), last error: {task.last_error}"
            )
        if self._started and task.last_run_at is not None:
            stale_after = timedelta(seconds=task.interval_seconds * STALE_INTERVALS)
            if self.clock.now() - task.last_run_at > stale_after:
                issues.append(f"{task.name}: no run since {task.last_run_at.isoformat()}")
        return issues

    def perform_health_check(self) -> Dict[str, Any]:
        """
        Check every task, store a background_job_health metric and raise a
        system_error alert when degraded.
        """
        issues = []
        for name, task in self.tasks.items():
            if name == "health":
                continue
            issues.extend(self._task_issues(task))
        if self._started and self.forwarder is not None and not self.forwarder.is_running:
            issues.append("alert_forwarder: not running")

        status = "healthy" if not issues else "degraded"
        now = self.clock.now()
        report = {
            "checked_at": now.isoformat(),
            "status": status,
            "issues": issues,
            "jobs": {name: task.status() for name, task in self.tasks.items() if name != "health"},
        }

        with configured_unit_of_work(self.session_factory, self.config) as db:
            db.add(BusinessMetricDB(
                metric_name="background_job_health",
                metric_value=1.0 if status == "healthy" else 0.0,
                metric_date=now.date(),
                metric_metadata={"status": status, "issues": issues},
                created_at=now,
            ))
            if issues:
                AlertSink(db, self.clock).raise_alert(
                    AlertType.SYSTEM_ERROR,
                    AlertSeverity.HIGH,
                    "Background Jobs Degraded",
                    "; ".join(issues),
                    related_entity_type="background_jobs",
                    related_entity_id="health",
                    cooldown=timedelta(minutes=self.config.alert_cooldown_minutes),
                )

        if issues:
            logger.warning(f"Background jobs degraded: {issues}")
        return report

    # =========================================================================
    # MANUAL CHECKS
    # =========================================================================

    def trigger_manual_check(self, kind: str) -> Dict[str, Any]:
        """
        Run checks on demand.

        kind is one of status_transitions, revenue, health or all.
        A failing check is reported in the result, not raised.
        """
        if kind not in CHECK_KINDS:
            raise UnknownCheckKindError(f"Unknown check kind: {kind}. Expected one of {', '.join(CHECK_KINDS)}")

        names = ["status_transitions", "revenue", "health"] if kind == "all" else [kind]
        results: Dict[str, Any] = {"kind": kind, "triggered_at": self.clock.now().isoformat(), "results": {}}
        for name in names:
            logger.info(f"Manual check triggered: {name}")
            try:
                results["results"][name] = {"status": "success", "result": self.tasks[name].run_once()}
            except Exception as e:
                logger.exception(f"Manual check {name} failed")
                results["results"][name] = {"status": "error", "error": str(e)}
        return results
