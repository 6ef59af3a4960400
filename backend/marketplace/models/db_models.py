"""
POS Marketplace - SQLAlchemy ORM Models
PostgreSQL database models for the application lifecycle engine
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum,
    Boolean, Date, Numeric, Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from ..database import Base
from .status_vocabulary import ApplicationStatus, LifecycleStatusType


def utcnow() -> datetime:
    """Naive UTC timestamp for column defaults."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_column(enum_cls, name: str) -> SQLEnum:
    """Store enum values (not member names) as VARCHAR."""
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# ENUMS
# =============================================================================

class OfferStatus(str, Enum):
    """Status of a bank's offer against an application."""
    SUBMITTED = "submitted"
    DEAL_WON = "deal_won"
    DEAL_LOST = "deal_lost"


class CollectionStatus(str, Enum):
    """Revenue collection entry lifecycle."""
    PENDING = "pending"
    COLLECTED = "collected"
    FAILED = "failed"
    VERIFIED = "verified"


class AlertType(str, Enum):
    """Operator-facing alert categories."""
    DEADLINE_APPROACHING = "deadline_approaching"
    PAYMENT_FAILURE = "payment_failure"
    SYSTEM_ERROR = "system_error"
    REVENUE_ANOMALY = "revenue_anomaly"
    DATA_INTEGRITY = "data_integrity"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ActorType(str, Enum):
    """Who caused a status change."""
    SYSTEM = "system"
    OPERATOR = "operator"


class TransitionTrigger(str, Enum):
    """Why a status audit entry was written."""
    SCHEDULED_TRANSITION = "scheduled_transition"
    AUTOMATIC_CORRECTION = "automatic_correction"
    OPERATOR_ACTION = "operator_action"
    DEADLINE_EXTENSION = "deadline_extension"
    VOCABULARY_NORMALIZATION = "vocabulary_normalization"


# =============================================================================
# APPLICATIONS AND OFFERS
# =============================================================================

class ApplicationDB(Base):
    """
    A business's financing application.

    Rows are created by the submission API. Status and deadlines are
    owned by the lifecycle engine; counters are owned by the offer and
    purchase APIs.
    """
    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_user_id = Column(String(64), nullable=False, index=True)
    status = Column(LifecycleStatusType(), nullable=False, default=ApplicationStatus.LIVE_AUCTION)

    submitted_at = Column(DateTime, nullable=False, default=utcnow)
    auction_end_time = Column(DateTime, nullable=True)
    offer_selection_end_time = Column(DateTime, nullable=True)

    offers_count = Column(Integer, nullable=False, default=0)
    purchases_count = Column(Integer, nullable=False, default=0)
    purchased_by = Column(JSON, nullable=False, default=list)  # bank user ids
    auction_round = Column(Integer, nullable=False, default=1)  # bumped on operator re-entry

    revenue_collected = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    offers = relationship("OfferDB", back_populates="application")
    collections = relationship("RevenueCollectionDB", back_populates="application")

    __table_args__ = (
        Index("idx_applications_status_auction_end", "status", "auction_end_time"),
        Index("idx_applications_status_selection_end", "status", "offer_selection_end_time"),
    )


class OfferDB(Base):
    """A bank's offer. Never deleted, only status-transitioned."""
    __tablename__ = "application_offers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False, index=True)
    bank_user_id = Column(String(64), nullable=False)
    terms = Column(JSON, nullable=True)
    status = Column(_enum_column(OfferStatus, "offer_status"), nullable=False, default=OfferStatus.SUBMITTED)
    submitted_at = Column(DateTime, nullable=False, default=utcnow)
    status_updated_at = Column(DateTime, nullable=True)

    application = relationship("ApplicationDB", back_populates="offers")


# =============================================================================
# REVENUE LEDGER
# =============================================================================

class RevenueCollectionDB(Base):
    """One fee obligation created by a bank purchase."""
    __tablename__ = "revenue_collections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False, index=True)
    bank_user_id = Column(String(64), nullable=False)
    auction_round = Column(Integer, nullable=False, default=1)
    amount = Column(Numeric(10, 2), nullable=False, default=Decimal("25.00"))
    currency = Column(String(3), nullable=False, default="SAR")
    status = Column(
        _enum_column(CollectionStatus, "collection_status"),
        nullable=False,
        default=CollectionStatus.PENDING,
        index=True,
    )

    retry_count = Column(Integer, nullable=False, default=0)
    failure_reason = Column(Text, nullable=True)
    payment_reference = Column(String(128), nullable=True)

    verified = Column(Boolean, nullable=True)
    verification_notes = Column(Text, nullable=True)
    verified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    last_attempt_at = Column(DateTime, nullable=False, default=utcnow)
    collected_at = Column(DateTime, nullable=True)
    escalated_at = Column(DateTime, nullable=True)  # retry-exhausted alert raised
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    application = relationship("ApplicationDB", back_populates="collections")

    __table_args__ = (
        UniqueConstraint(
            "application_id", "auction_round", "bank_user_id", name="uq_revenue_collection_purchase"
        ),
    )


# =============================================================================
# AUDIT AND ALERTS (APPEND-ONLY)
# =============================================================================

class StatusAuditLogDB(Base):
    """Immutable record of an application status change."""
    __tablename__ = "application_status_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False, index=True)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=False)
    actor_type = Column(_enum_column(ActorType, "actor_type"), nullable=False)
    actor_id = Column(String(64), nullable=True)
    trigger = Column(_enum_column(TransitionTrigger, "transition_trigger"), nullable=False)
    reason = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class SystemAlertDB(Base):
    """Operator-facing alert. Written here, read by the admin dashboard."""
    __tablename__ = "system_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_type = Column(_enum_column(AlertType, "alert_type"), nullable=False)
    severity = Column(_enum_column(AlertSeverity, "alert_severity"), nullable=False, default=AlertSeverity.MEDIUM)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    related_entity_type = Column(String(50), nullable=True)
    related_entity_id = Column(String(64), nullable=True)
    is_resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_system_alerts_dedupe", "alert_type", "related_entity_type", "related_entity_id", "created_at"),
    )


class BusinessMetricDB(Base):
    """Daily revenue analytics and job health snapshots."""
    __tablename__ = "business_intelligence_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    metric_name = Column(String(64), nullable=False, index=True)
    metric_value = Column(Float, nullable=False)
    metric_date = Column(Date, nullable=False)
    metric_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
