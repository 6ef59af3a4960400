"""
Status Reconciler

Recomputes the status implied by counters and deadlines and corrects
persisted drift. Invoked inline by status reads and in batch by the
maintenance sweep; the monitor is only an optimization on top of it.

The monitor only looks at live rows, so contradictions it cannot see
(unrecognised status names, terminal states the counters disagree with)
are raised as data_integrity alerts here before they are corrected.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Callable, Optional, Dict, Any, List

from sqlalchemy import String, cast
from sqlalchemy.orm import Session

from ...clock import Clock
from ...config import EngineConfig
from ...database import configured_unit_of_work
from ...exceptions import ApplicationNotFoundError, ConcurrencyConflictError
from ...models import (
    ActorType, ApplicationDB, ApplicationStatus, LEGACY_STATUS_MAP,
    LEGACY_STATUS_NAMES, TransitionTrigger,
)
from .alert_sink import AlertSink
from .state_machine import ApplicationSnapshot, Transition, find_integrity_issue, implied_status
from .transitions import TransitionExecutor

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    """Outcome of validating one application's status."""
    application_id: int
    status: ApplicationStatus
    previous_status: Optional[ApplicationStatus]
    was_corrected: bool
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["previous_status"] = self.previous_status.value if self.previous_status else None
        return data


class StatusReconciler:
    """
    Validates and corrects application status.

    Safe to run concurrently with the monitor: every correction goes
    through TransitionExecutor's optimistic re-check. A lost race is
    re-evaluated from a fresh read, up to MAX_ATTEMPTS times.
    """

    MAX_ATTEMPTS = 3
    BATCH_SIZE = 500
    CORRECTION_REASON = "Automatic status validation correction"

    def __init__(self, session_factory: Callable[[], Session], clock: Clock, config: EngineConfig):
        self.session_factory = session_factory
        self.clock = clock
        self.config = config

    # =========================================================================
    # SINGLE APPLICATION
    # =========================================================================

    def reconcile(self, application_id: int) -> ReconciliationResult:
        """
        Validate one application's status, correcting it if it drifted.

        Raises ApplicationNotFoundError for unknown ids and
        ConcurrencyConflictError if the status keeps moving.
        """
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            with configured_unit_of_work(self.session_factory, self.config) as db:
                result = self._reconcile_in(db, application_id)
            if result is not None:
                return result
            logger.info(f"Application {application_id}: reconcile lost a race (attempt {attempt})")

        raise ConcurrencyConflictError(
            f"Application {application_id} status changed during {self.MAX_ATTEMPTS} reconcile attempts"
        )

    def _reconcile_in(self, db: Session, application_id: int) -> Optional[ReconciliationResult]:
        application = db.get(ApplicationDB, application_id)
        if application is None:
            raise ApplicationNotFoundError(application_id)

        snapshot = ApplicationSnapshot.from_row(application)
        now = self.clock.now()
        auction_window = timedelta(hours=self.config.auction_window_hours)
        expected = implied_status(snapshot, now, auction_window)

        # Unknown names and terminal states contradicted by counters are escalated, then corrected
        issue = find_integrity_issue(snapshot, now, auction_window)
        if issue:
            AlertSink(db, self.clock).report_integrity_issue(
                application_id, issue, cooldown=timedelta(minutes=self.config.alert_cooldown_minutes)
            )

        if snapshot.status == expected:
            return ReconciliationResult(
                application_id=application_id,
                status=expected,
                previous_status=snapshot.status,
                was_corrected=False,
                reason="Status is consistent",
            )

        stored_label = snapshot.status.value if snapshot.status else "unrecognised"
        reason = f"{self.CORRECTION_REASON}: stored {stored_label}, implied {expected.value}"
        transition = Transition(
            application_id=application_id,
            from_status=snapshot.status,
            to_status=expected,
            reason=reason,
            trigger=TransitionTrigger.AUTOMATIC_CORRECTION,
        )
        if not TransitionExecutor(db, self.clock, self.config).apply(transition):
            return None

        return ReconciliationResult(
            application_id=application_id,
            status=expected,
            previous_status=snapshot.status,
            was_corrected=True,
            reason=reason,
        )

    # =========================================================================
    # BATCH
    # =========================================================================

    def _application_ids(self) -> List[int]:
        ids: List[int] = []
        last_id = 0
        while True:
            with configured_unit_of_work(self.session_factory, self.config) as db:
                page = [
                    row[0] for row in db.query(ApplicationDB.id)
                    .filter(ApplicationDB.id > last_id)
                    .order_by(ApplicationDB.id)
                    .limit(self.BATCH_SIZE)
                ]
            if not page:
                return ids
            ids.extend(page)
            last_id = page[-1]

    def reconcile_all(self) -> Dict[str, Any]:
        """
        Validate every application.

        A failure on one application is recorded and the batch continues.
        """
        total = corrected = correct = 0
        errors = []
        corrections = []

        for application_id in self._application_ids():
            total += 1
            try:
                result = self.reconcile(application_id)
            except Exception as e:
                logger.exception(f"Reconcile failed for application {application_id}")
                errors.append({"application_id": application_id, "error": str(e)})
                continue

            if result.was_corrected:
                corrected += 1
                corrections.append(result.to_dict())
            else:
                correct += 1

        logger.info(
            f"Status reconciliation: {total} total, {corrected} corrected, "
            f"{correct} correct, {len(errors)} errors"
        )
        return {
            "run_date": self.clock.now().isoformat(),
            "total": total,
            "corrected": corrected,
            "correct": correct,
            "errors": len(errors),
            "details": {
                "corrections": corrections,
                "errors": errors,
            },
        }

    # =========================================================================
    # LEGACY VOCABULARY
    # =========================================================================

    def normalize_legacy_statuses(self) -> Dict[str, Any]:
        """Rewrite rows stored under a legacy status name to the canonical name."""
        with configured_unit_of_work(self.session_factory, self.config) as db:
            legacy_rows = db.query(
                ApplicationDB.id, cast(ApplicationDB.status, String(32))
            ).filter(
                ApplicationDB.status.in_(LEGACY_STATUS_NAMES)
            ).order_by(ApplicationDB.id).all()

        normalized = 0
        errors = []
        for application_id, stored in legacy_rows:
            canonical = LEGACY_STATUS_MAP[stored]
            try:
                with configured_unit_of_work(self.session_factory, self.config) as db:
                    updated = db.query(ApplicationDB).filter(
                        ApplicationDB.id == application_id,
                        ApplicationDB.status == stored,
                    ).update(
                        {ApplicationDB.status: canonical, ApplicationDB.updated_at: self.clock.now()},
                        synchronize_session=False,
                    )
                    if updated == 1:
                        AlertSink(db, self.clock).record_transition(
                            application_id=application_id,
                            from_status=stored,
                            to_status=canonical,
                            reason=f"Legacy status '{stored}' normalized to '{canonical.value}'",
                            trigger=TransitionTrigger.VOCABULARY_NORMALIZATION,
                            actor=ActorType.SYSTEM,
                        )
                        normalized += 1
            except Exception as e:
                logger.exception(f"Legacy status normalization failed for application {application_id}")
                errors.append({"application_id": application_id, "error": str(e)})

        if normalized:
            logger.info(f"Normalized {normalized} legacy application status value(s)")
        return {"normalized": normalized, "errors": len(errors), "details": errors}

    def run_sweep(self) -> Dict[str, Any]:
        """Maintenance sweep: normalize legacy names, then reconcile everything."""
        normalization = self.normalize_legacy_statuses()
        reconciliation = self.reconcile_all()
        return {"normalization": normalization, "reconciliation": reconciliation}
