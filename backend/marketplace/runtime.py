"""
Composition root.

Builds every long-lived engine object with its dependencies passed in
explicitly. Nothing in the engine is a module-level singleton.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .clock import Clock, SystemClock
from .config import EngineConfig
from .services.jobs import AlertForwarder, BackgroundJobManager
from .services.lifecycle import (
    LifecycleService, RevenueMonitor, StatusReconciler, TransitionMonitor,
)

logger = logging.getLogger(__name__)


@dataclass
class EngineRuntime:
    config: EngineConfig
    clock: Clock
    monitor: TransitionMonitor
    reconciler: StatusReconciler
    revenue_monitor: RevenueMonitor
    job_manager: BackgroundJobManager
    service: LifecycleService
    forwarder: Optional[AlertForwarder] = None

    def start(self) -> None:
        self.job_manager.start()

    def stop(self, timeout: float = 30.0) -> None:
        self.job_manager.stop(timeout=timeout)


def build_runtime(
    session_factory: Optional[Callable[[], Session]] = None,
    clock: Optional[Clock] = None,
    config: Optional[EngineConfig] = None,
) -> EngineRuntime:
    """Wire the engine. Defaults are the production session factory, clock and env config."""
    if session_factory is None:
        from .database import SessionLocal
        session_factory = SessionLocal
    clock = clock or SystemClock()
    config = config or EngineConfig.load()

    monitor = TransitionMonitor(session_factory, clock, config)
    reconciler = StatusReconciler(session_factory, clock, config)
    revenue_monitor = RevenueMonitor(session_factory, clock, config)

    forwarder = None
    if config.forwarding_enabled:
        from .database import engine
        if engine.dialect.name == "postgresql":
            forwarder = AlertForwarder(engine, config)
        else:
            logger.warning("Alert forwarding requires PostgreSQL LISTEN/NOTIFY; forwarder disabled")

    job_manager = BackgroundJobManager(
        session_factory, clock, config, monitor, reconciler, revenue_monitor, forwarder,
    )
    service = LifecycleService(session_factory, clock, config, reconciler, monitor, job_manager)

    return EngineRuntime(
        config=config,
        clock=clock,
        monitor=monitor,
        reconciler=reconciler,
        revenue_monitor=revenue_monitor,
        job_manager=job_manager,
        service=service,
        forwarder=forwarder,
    )
