"""
Lifecycle State Machine

Pure decision logic for application status.
No I/O, no clock reads: every function takes `now` explicitly.

Canonical states:
    live_auction -> completed   (any offer or purchase, at any time)
    live_auction -> ignored     (auction deadline elapsed with no offers)
    ignored      -> live_auction (operator reactivation)
    completed    -> live_auction (operator re-open)

Offer presence always outranks a timeout: an application with offers is
never ignored, even if its deadline elapsed in the same instant.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Tuple

from ...models import ActorType, ApplicationDB, ApplicationStatus, TransitionTrigger


DEFAULT_AUCTION_WINDOW = timedelta(hours=48)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================
#
# AUTHORITY MODEL:
# - automatic_transitions: the monitor and reconciler may apply these
#   without anyone's confirmation.
# - operator_transitions: only an explicit operator action may apply these.
#
# =============================================================================

STATE_CONFIG = {
    ApplicationStatus.LIVE_AUCTION: {
        "description": "Open for bank purchases and offers",
        "automatic_transitions": [ApplicationStatus.COMPLETED, ApplicationStatus.IGNORED],
        "operator_transitions": [],
        "deadline_field": "auction_end_time",
    },
    ApplicationStatus.COMPLETED: {
        "description": "Offers or purchases received, business selecting",
        "automatic_transitions": [],
        "operator_transitions": [ApplicationStatus.LIVE_AUCTION],
        "deadline_field": "offer_selection_end_time",
    },
    ApplicationStatus.IGNORED: {
        "description": "Auction ended without any offers",
        "automatic_transitions": [],
        "operator_transitions": [ApplicationStatus.LIVE_AUCTION],
        "deadline_field": None,
    },
}


# =============================================================================
# SNAPSHOT / TRANSITION
# =============================================================================

@dataclass(frozen=True)
class ApplicationSnapshot:
    """Point-in-time view of the fields the decision rule reads."""
    application_id: int
    status: Optional[ApplicationStatus]
    submitted_at: datetime
    auction_end_time: Optional[datetime] = None
    offer_selection_end_time: Optional[datetime] = None
    offers_count: int = 0
    purchases_count: int = 0

    @classmethod
    def from_row(cls, application: ApplicationDB) -> "ApplicationSnapshot":
        return cls(
            application_id=application.id,
            status=application.status,
            submitted_at=application.submitted_at,
            auction_end_time=application.auction_end_time,
            offer_selection_end_time=application.offer_selection_end_time,
            offers_count=application.offers_count or 0,
            purchases_count=application.purchases_count or 0,
        )


@dataclass(frozen=True)
class Transition:
    """A due status change for one application."""
    application_id: int
    from_status: ApplicationStatus
    to_status: ApplicationStatus
    reason: str
    trigger: TransitionTrigger = TransitionTrigger.SCHEDULED_TRANSITION


# =============================================================================
# DECISION RULE
# =============================================================================

def effective_auction_deadline(
    snapshot: ApplicationSnapshot,
    auction_window: timedelta = DEFAULT_AUCTION_WINDOW,
) -> datetime:
    """Auction deadline, falling back to submitted_at + window when unset."""
    if snapshot.auction_end_time is not None:
        return snapshot.auction_end_time
    return snapshot.submitted_at + auction_window


def implied_status(
    snapshot: ApplicationSnapshot,
    now: datetime,
    auction_window: timedelta = DEFAULT_AUCTION_WINDOW,
) -> ApplicationStatus:
    """Status implied purely by counters and deadlines."""
    if snapshot.offers_count > 0 or snapshot.purchases_count > 0:
        return ApplicationStatus.COMPLETED
    if effective_auction_deadline(snapshot, auction_window) <= now:
        return ApplicationStatus.IGNORED
    return ApplicationStatus.LIVE_AUCTION


def _completion_reason(snapshot: ApplicationSnapshot) -> str:
    if snapshot.offers_count > 0:
        return f"{snapshot.offers_count} offer(s) received"
    return f"Purchased by {snapshot.purchases_count} bank(s)"


def decide(
    snapshot: ApplicationSnapshot,
    now: datetime,
    auction_window: timedelta = DEFAULT_AUCTION_WINDOW,
) -> Optional[Transition]:
    """
    Return the automatic transition due for this snapshot, if any.

    Only live_auction has automatic exits. Terminal and unrecognised
    states always return None; contradictions are reported separately
    by find_integrity_issue().
    """
    if snapshot.status != ApplicationStatus.LIVE_AUCTION:
        return None
    if snapshot.offers_count < 0 or snapshot.purchases_count < 0:
        return None

    target = implied_status(snapshot, now, auction_window)
    if target == ApplicationStatus.COMPLETED:
        reason = _completion_reason(snapshot)
    elif target == ApplicationStatus.IGNORED:
        reason = "Auction ended with no offers"
    else:
        return None

    return Transition(
        application_id=snapshot.application_id,
        from_status=ApplicationStatus.LIVE_AUCTION,
        to_status=target,
        reason=reason,
    )


def find_integrity_issue(
    snapshot: ApplicationSnapshot,
    now: datetime,
    auction_window: timedelta = DEFAULT_AUCTION_WINDOW,
) -> Optional[str]:
    """Describe a contradictory snapshot, or None when it is consistent."""
    if snapshot.status is None:
        return "Stored status is not a recognised lifecycle status"
    if snapshot.offers_count < 0 or snapshot.purchases_count < 0:
        return (
            f"Negative counters (offers={snapshot.offers_count}, "
            f"purchases={snapshot.purchases_count})"
        )
    if snapshot.status == ApplicationStatus.LIVE_AUCTION:
        return None

    expected = implied_status(snapshot, now, auction_window)
    if expected != snapshot.status:
        return (
            f"Status {snapshot.status.value} contradicts counters and deadlines "
            f"(implied {expected.value})"
        )
    return None


# =============================================================================
# STATE MACHINE
# =============================================================================

class LifecycleStateMachine:
    """
    Authority checks for lifecycle transitions.

    The monitor and reconciler apply automatic transitions; operator
    actions go through can_transition() with ActorType.OPERATOR.
    """

    def get_state_config(self, state: ApplicationStatus) -> Dict[str, Any]:
        """Get configuration for a state."""
        return STATE_CONFIG.get(state, {})

    def get_next_states(self, state: ApplicationStatus) -> List[ApplicationStatus]:
        config = self.get_state_config(state)
        return config.get("automatic_transitions", []) + config.get("operator_transitions", [])

    def is_terminal_state(self, state: ApplicationStatus) -> bool:
        """Terminal under automatic rules."""
        return len(self.get_state_config(state).get("automatic_transitions", [])) == 0

    def can_transition(
        self,
        from_state: ApplicationStatus,
        to_state: ApplicationStatus,
        actor: ActorType = ActorType.SYSTEM,
    ) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed for the given actor.

        Returns (allowed, reason)
        """
        config = self.get_state_config(from_state)
        key = "automatic_transitions" if actor == ActorType.SYSTEM else "operator_transitions"

        if to_state in config.get(key, []):
            return True, "Transition allowed"

        if to_state in self.get_next_states(from_state):
            return False, f"{from_state.value} -> {to_state.value} requires a different actor than {actor.value}"

        from_label = from_state.value if from_state else "unknown"
        return False, f"Cannot transition from {from_label} to {to_state.value}"

    def deadline_field(self, state: ApplicationStatus) -> Optional[str]:
        return self.get_state_config(state).get("deadline_field")
