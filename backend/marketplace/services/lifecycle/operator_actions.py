"""
Operator Actions

Explicit, audited operator interventions on an application's lifecycle.
These are the only way out of a terminal state.

AUTHORITY: OPERATOR - every method requires an operator id, and every
change lands in the status audit log with that id.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...clock import Clock
from ...config import EngineConfig
from ...exceptions import ConcurrencyConflictError, InvalidTransitionError
from ...models import ActorType, ApplicationDB, ApplicationStatus, TransitionTrigger
from .alert_sink import AlertSink
from .state_machine import Transition
from .transitions import TransitionExecutor, status_filter

logger = logging.getLogger(__name__)

MIN_EXTENSION_HOURS = 1
MAX_EXTENSION_HOURS = 168

DEADLINE_PHASES = {
    "auction": (ApplicationStatus.LIVE_AUCTION, "auction_end_time"),
    "selection": (ApplicationStatus.COMPLETED, "offer_selection_end_time"),
}


class OperatorActions:
    """Operator-initiated lifecycle changes inside the caller's unit of work."""

    def __init__(self, db: Session, clock: Clock, config: EngineConfig):
        self.db = db
        self.clock = clock
        self.config = config
        self.executor = TransitionExecutor(db, clock, config)

    def _return_to_auction(
        self,
        application_id: int,
        expected: ApplicationStatus,
        operator_id: str,
        reason: str,
    ) -> ApplicationDB:
        application = self.executor.load_for_update(application_id)
        if application.status != expected:
            current = application.status.value if application.status else "unrecognised"
            raise InvalidTransitionError(
                f"Application {application_id} is {current}, expected {expected.value}"
            )

        transition = Transition(
            application_id=application_id,
            from_status=expected,
            to_status=ApplicationStatus.LIVE_AUCTION,
            reason=reason,
            trigger=TransitionTrigger.OPERATOR_ACTION,
        )
        if not self.executor.apply(transition, actor=ActorType.OPERATOR, actor_id=operator_id):
            raise ConcurrencyConflictError(f"Application {application_id} changed while being updated")
        return self.executor.load_for_update(application_id)

    def reactivate(self, application_id: int, operator_id: str, reason: Optional[str] = None) -> ApplicationDB:
        """ignored -> live_auction with a fresh auction window."""
        return self._return_to_auction(
            application_id, ApplicationStatus.IGNORED, operator_id, reason or "Operator reactivation"
        )

    def reopen(self, application_id: int, operator_id: str, reason: Optional[str] = None) -> ApplicationDB:
        """completed -> live_auction with a fresh auction window."""
        return self._return_to_auction(
            application_id, ApplicationStatus.COMPLETED, operator_id, reason or "Operator re-opened auction"
        )

    def extend_deadline(
        self,
        application_id: int,
        phase: str,
        hours: int,
        operator_id: str,
        reason: Optional[str] = None,
    ) -> datetime:
        """
        Push the active phase's deadline out by `hours`.

        The extension counts from the current deadline, or from now if
        that deadline already passed. Returns the new deadline.
        """
        if phase not in DEADLINE_PHASES:
            raise ValueError(f"Unknown deadline phase: {phase}. Expected auction or selection")
        if not MIN_EXTENSION_HOURS <= hours <= MAX_EXTENSION_HOURS:
            raise ValueError(f"Extension must be between {MIN_EXTENSION_HOURS} and {MAX_EXTENSION_HOURS} hours")

        expected, field_name = DEADLINE_PHASES[phase]
        application = self.executor.load_for_update(application_id)
        if application.status != expected:
            current = application.status.value if application.status else "unrecognised"
            raise InvalidTransitionError(
                f"Cannot extend {phase} deadline: application {application_id} is {current}"
            )

        now = self.clock.now()
        current_deadline = getattr(application, field_name)
        if current_deadline is None and phase == "auction":
            current_deadline = application.submitted_at + timedelta(hours=self.config.auction_window_hours)
        base = current_deadline if current_deadline is not None and current_deadline > now else now
        new_deadline = base + timedelta(hours=hours)

        updated = self.db.query(ApplicationDB).filter(
            ApplicationDB.id == application_id,
            status_filter(expected),
        ).update(
            {getattr(ApplicationDB, field_name): new_deadline, ApplicationDB.updated_at: now},
            synchronize_session=False,
        )
        if updated != 1:
            raise ConcurrencyConflictError(f"Application {application_id} changed while being updated")
        self.db.expire(application)

        AlertSink(self.db, self.clock).record_transition(
            application_id=application_id,
            from_status=expected,
            to_status=expected,
            reason=reason or f"{phase.capitalize()} deadline extended by {hours}h to {new_deadline.isoformat()}",
            trigger=TransitionTrigger.DEADLINE_EXTENSION,
            actor=ActorType.OPERATOR,
            actor_id=operator_id,
        )
        logger.info(f"Application {application_id}: {phase} deadline extended to {new_deadline.isoformat()}")
        return new_deadline
