"""
Transition Executor

Applies one status transition inside the caller's unit of work:

1. Re-read the application row (locked where the dialect supports it)
2. Verify the persisted status still matches the expected pre-status
3. Conditional UPDATE ... WHERE status IN (aliases of expected status)
4. Append the audit entry
5. Phase side effects: deadlines, ledger entries, alerts

A mismatch at step 2 or 3 means another writer got there first. That
is a silent skip (returns False), never an error.
"""
import logging
from datetime import timedelta
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from ...clock import Clock
from ...config import EngineConfig
from ...exceptions import ApplicationNotFoundError, InvalidTransitionError
from ...models import (
    ActorType, AlertSeverity, AlertType, ApplicationDB, ApplicationStatus,
    LEGACY_STATUS_NAMES, TransitionTrigger, stored_names,
)
from .alert_sink import AlertSink
from .revenue_ledger import RevenueLedger
from .state_machine import LifecycleStateMachine, Transition

logger = logging.getLogger(__name__)

KNOWN_STATUS_NAMES = [status.value for status in ApplicationStatus] + LEGACY_STATUS_NAMES


def status_filter(expected: Optional[ApplicationStatus]):
    """WHERE clause matching every stored name of the expected status."""
    if expected is None:
        return ApplicationDB.status.notin_(KNOWN_STATUS_NAMES)
    return ApplicationDB.status.in_(stored_names(expected))


class TransitionExecutor:
    """
    Executes lifecycle transitions against the database.

    Shared by the monitor (scheduled transitions), the reconciler
    (automatic corrections) and operator actions.
    """

    def __init__(self, db: Session, clock: Clock, config: EngineConfig):
        self.db = db
        self.clock = clock
        self.config = config
        self.state_machine = LifecycleStateMachine()
        self.alerts = AlertSink(db, clock)
        self.ledger = RevenueLedger(db, clock, config)

    def load_for_update(self, application_id: int) -> ApplicationDB:
        """Fresh read of the application row, bypassing the identity map."""
        application = self.db.query(ApplicationDB).filter(
            ApplicationDB.id == application_id
        ).populate_existing().with_for_update().one_or_none()
        if application is None:
            raise ApplicationNotFoundError(application_id)
        return application

    def apply(
        self,
        transition: Transition,
        actor: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> bool:
        """
        Apply a transition. Returns False if the status moved underneath us.

        Raises InvalidTransitionError if the actor may not perform it.
        Corrections bypass the authority check: they write whatever the
        counters and deadlines imply.
        """
        application = self.load_for_update(transition.application_id)

        if application.status != transition.from_status:
            logger.info(
                f"Application {transition.application_id}: expected status "
                f"{getattr(transition.from_status, 'value', None)}, found "
                f"{getattr(application.status, 'value', None)}; skipping"
            )
            return False

        if transition.trigger != TransitionTrigger.AUTOMATIC_CORRECTION:
            allowed, reason = self.state_machine.can_transition(
                transition.from_status, transition.to_status, actor
            )
            if not allowed:
                raise InvalidTransitionError(reason)

        values = self._phase_values(application, transition)
        updated = self.db.query(ApplicationDB).filter(
            ApplicationDB.id == transition.application_id,
            status_filter(transition.from_status),
        ).update(values, synchronize_session=False)

        if updated != 1:
            logger.info(f"Application {transition.application_id}: concurrent status change, skipping")
            return False

        self.db.expire(application)

        self.alerts.record_transition(
            application_id=transition.application_id,
            from_status=transition.from_status,
            to_status=transition.to_status,
            reason=transition.reason,
            trigger=transition.trigger,
            actor=actor,
            actor_id=actor_id,
        )
        self._after_transition(application, transition)

        logger.info(
            f"Application {transition.application_id}: "
            f"{getattr(transition.from_status, 'value', None)} -> {transition.to_status.value} "
            f"({transition.trigger.value}: {transition.reason})"
        )
        return True

    # =========================================================================
    # PHASE SIDE EFFECTS
    # =========================================================================

    def _phase_values(self, application: ApplicationDB, transition: Transition) -> Dict[Any, Any]:
        now = self.clock.now()
        values: Dict[Any, Any] = {
            ApplicationDB.status: transition.to_status,
            ApplicationDB.updated_at: now,
        }

        if transition.to_status == ApplicationStatus.COMPLETED:
            # Close bidding and open the selection window
            if application.auction_end_time is None or application.auction_end_time > now:
                values[ApplicationDB.auction_end_time] = now
            values[ApplicationDB.offer_selection_end_time] = now + timedelta(
                hours=self.config.selection_window_hours
            )

        elif transition.to_status == ApplicationStatus.IGNORED:
            if application.auction_end_time is None:
                values[ApplicationDB.auction_end_time] = application.submitted_at + timedelta(
                    hours=self.config.auction_window_hours
                )
            values[ApplicationDB.offer_selection_end_time] = None

        elif transition.trigger == TransitionTrigger.OPERATOR_ACTION:
            # Re-entering the auction resets the window and purchase residue
            values[ApplicationDB.auction_end_time] = now + timedelta(hours=self.config.auction_window_hours)
            values[ApplicationDB.offer_selection_end_time] = None
            values[ApplicationDB.offers_count] = 0
            values[ApplicationDB.purchases_count] = 0
            values[ApplicationDB.purchased_by] = []
            # Fees from the previous round stay on the ledger; new purchases bill again
            values[ApplicationDB.auction_round] = ApplicationDB.auction_round + 1

        return values

    def _after_transition(self, application: ApplicationDB, transition: Transition) -> None:
        if transition.to_status == ApplicationStatus.COMPLETED:
            self.ledger.create_entries_for_purchases(application)

        elif transition.to_status == ApplicationStatus.IGNORED:
            self.alerts.raise_alert(
                AlertType.REVENUE_ANOMALY,
                AlertSeverity.MEDIUM,
                "Application Ignored",
                f"Application {application.id} received no offers before its auction ended",
                related_entity_type="application",
                related_entity_id=application.id,
            )
