"""
Audit & Alert Sink

Append-only writers for status audit entries and operator alerts.
Nothing here updates or deletes existing rows.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...clock import Clock
from ...models import (
    ActorType, AlertSeverity, AlertType, ApplicationStatus,
    StatusAuditLogDB, SystemAlertDB, TransitionTrigger,
)

logger = logging.getLogger(__name__)


def _status_label(status) -> Optional[str]:
    if status is None:
        return None
    if isinstance(status, ApplicationStatus):
        return status.value
    return str(status)


class AlertSink:
    """
    Writes audit entries and alerts inside the caller's unit of work.

    Rows are flushed, never committed here: the caller's transaction
    decides whether they persist together with the status change.
    """

    def __init__(self, db: Session, clock: Clock):
        self.db = db
        self.clock = clock

    # =========================================================================
    # AUDIT
    # =========================================================================

    def record_transition(
        self,
        application_id: int,
        from_status,
        to_status,
        reason: str,
        trigger: TransitionTrigger,
        actor: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> StatusAuditLogDB:
        """Append one status audit entry."""
        entry = StatusAuditLogDB(
            application_id=application_id,
            from_status=_status_label(from_status),
            to_status=_status_label(to_status),
            actor_type=actor,
            actor_id=actor_id,
            trigger=trigger,
            reason=reason,
            created_at=self.clock.now(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    # =========================================================================
    # ALERTS
    # =========================================================================

    def recent_alert_exists(
        self,
        alert_type: AlertType,
        related_entity_type: Optional[str],
        related_entity_id: Optional[str],
        window: timedelta,
    ) -> bool:
        """True when the same alert for the same entity was raised within the window."""
        since = self.clock.now() - window
        query = self.db.query(SystemAlertDB.id).filter(
            SystemAlertDB.alert_type == alert_type,
            SystemAlertDB.created_at >= since,
        )
        if related_entity_type is None:
            query = query.filter(SystemAlertDB.related_entity_type.is_(None))
        else:
            query = query.filter(SystemAlertDB.related_entity_type == related_entity_type)
        if related_entity_id is None:
            query = query.filter(SystemAlertDB.related_entity_id.is_(None))
        else:
            query = query.filter(SystemAlertDB.related_entity_id == str(related_entity_id))
        return query.first() is not None

    def raise_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        related_entity_type: Optional[str] = None,
        related_entity_id=None,
        cooldown: Optional[timedelta] = None,
    ) -> Optional[SystemAlertDB]:
        """
        Append an alert.

        With a cooldown, an alert of the same type for the same entity
        raised within that window suppresses this one; returns None then.
        """
        entity_id = str(related_entity_id) if related_entity_id is not None else None

        if cooldown is not None and self.recent_alert_exists(
            alert_type, related_entity_type, entity_id, cooldown
        ):
            logger.debug(f"Suppressed duplicate {alert_type.value} alert for {related_entity_type}:{entity_id}")
            return None

        alert = SystemAlertDB(
            alert_type=alert_type,
            severity=severity,
            title=title,
            message=message,
            related_entity_type=related_entity_type,
            related_entity_id=entity_id,
            created_at=self.clock.now(),
        )
        self.db.add(alert)
        self.db.flush()
        logger.info(f"Alert raised [{severity.value}] {alert_type.value}: {title}")
        return alert

    def report_integrity_issue(
        self,
        application_id: int,
        description: str,
        cooldown: Optional[timedelta] = None,
    ) -> Optional[SystemAlertDB]:
        """Escalate a contradictory application state for operator review."""
        logger.warning(f"Data integrity: application {application_id}: {description}")
        return self.raise_alert(
            AlertType.DATA_INTEGRITY,
            AlertSeverity.MEDIUM,
            "Application state inconsistency",
            f"Application {application_id}: {description}",
            related_entity_type="application",
            related_entity_id=application_id,
            cooldown=cooldown,
        )
