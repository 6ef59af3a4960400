"""
Application Lifecycle Engine

Exports:
- State machine: decide, implied_status, LifecycleStateMachine
- AlertSink: audit log and operator alerts
- RevenueLedger / RevenueMonitor: fee obligations per bank purchase
- StatusReconciler: drift detection and correction
- TransitionMonitor: deadline-driven transitions and urgency alerts
- OperatorActions / LifecycleService: operator and API surface
"""
from .state_machine import (
    STATE_CONFIG,
    ApplicationSnapshot,
    LifecycleStateMachine,
    Transition,
    decide,
    effective_auction_deadline,
    find_integrity_issue,
    implied_status,
)
from .alert_sink import AlertSink
from .revenue_ledger import Anomaly, RevenueLedger, RevenueStats, RevenueTrendPoint
from .transitions import TransitionExecutor
from .reconciler import ReconciliationResult, StatusReconciler
from .transition_monitor import StatusStat, TransitionMonitor, UrgentApplication
from .revenue_monitor import RevenueMonitor
from .operator_actions import OperatorActions
from .lifecycle_service import LifecycleService
