"""
Internal Lifecycle API Routes

Operator and system endpoints for the application lifecycle engine:
validated status reads, urgency lists, manual checks, monitoring and
revenue stats, and audited operator actions.

All endpoints require the X-Internal-Key header.
"""
from contextlib import contextmanager
from datetime import date, datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Header, Request
from pydantic import BaseModel, Field

from ..config import INTERNAL_API_KEY
from ..exceptions import (
    ApplicationNotFoundError, ConcurrencyConflictError, InvalidTransitionError,
    LedgerEntryNotFoundError, TransactionBudgetExceededError, TransientDatastoreError,
    UnknownCheckKindError,
)
from ..services.lifecycle import LifecycleService


router = APIRouter(prefix="/internal", tags=["lifecycle"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for lifecycle endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


def get_lifecycle_service(request: Request) -> LifecycleService:
    return request.app.state.engine.service


@contextmanager
def lifecycle_errors():
    """Translate engine errors into HTTP responses."""
    try:
        yield
    except (ApplicationNotFoundError, LedgerEntryNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidTransitionError, UnknownCheckKindError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConcurrencyConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (TransientDatastoreError, TransactionBudgetExceededError) as e:
        raise HTTPException(status_code=503, detail=str(e))


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class ValidatedStatusResponse(BaseModel):
    application_id: int
    status: str
    previous_status: Optional[str] = None
    was_corrected: bool
    reason: str


class UrgentApplicationResponse(BaseModel):
    application_id: int
    status: str
    urgency_level: str
    deadline: datetime
    minutes_remaining: float
    offers_count: int
    purchases_count: int


class StatusStatResponse(BaseModel):
    status: str
    count: int
    average_age_hours: float


class RevenueStatsResponse(BaseModel):
    window_hours: int
    total_collections: int
    successful_collections: int
    failed_collections: int
    pending_collections: int
    total_revenue: str
    average_amount: str
    currency: str


class RevenueTrendResponse(BaseModel):
    day: date
    revenue: str
    collections: int
    failed: int


class OperatorActionRequest(BaseModel):
    operator_id: str
    reason: Optional[str] = None


class ExtendDeadlineRequest(OperatorActionRequest):
    phase: str = Field(..., description="auction or selection")
    hours: int


class RecordCollectionRequest(BaseModel):
    payment_reference: Optional[str] = None


# =============================================================================
# READ ENDPOINTS
# =============================================================================

@router.get("/applications/{application_id}/status", response_model=ValidatedStatusResponse)
def get_application_status(
    application_id: int,
    service: LifecycleService = Depends(get_lifecycle_service),
    _: bool = Depends(verify_internal_key),
):
    """
    Validated application status.

    Runs the reconciler first; drift is corrected and reported.
    """
    with lifecycle_errors():
        result = service.get_status(application_id)
    return ValidatedStatusResponse(**result.to_dict())


@router.get("/urgent", response_model=List[UrgentApplicationResponse])
def list_urgent_applications(
    service: LifecycleService = Depends(get_lifecycle_service),
    _: bool = Depends(verify_internal_key),
):
    """Applications whose active deadline falls inside the alert horizon."""
    with lifecycle_errors():
        urgent = service.list_urgent()
    return [
        UrgentApplicationResponse(
            application_id=u.application_id,
            status=u.status.value,
            urgency_level=u.urgency_level,
            deadline=u.deadline,
            minutes_remaining=u.minutes_remaining,
            offers_count=u.offers_count,
            purchases_count=u.purchases_count,
        )
        for u in urgent
    ]


@router.get("/monitoring-stats", response_model=List[StatusStatResponse])
def get_monitoring_stats(
    service: LifecycleService = Depends(get_lifecycle_service),
    _: bool = Depends(verify_internal_key),
):
    with lifecycle_errors():
        stats = service.get_monitoring_stats()
    return [StatusStatResponse(status=s.status, count=s.count, average_age_hours=s.average_age_hours) for s in stats]


@router.get("/revenue/stats", response_model=RevenueStatsResponse)
def get_revenue_stats(
    window_hours: int = 24,
    service: LifecycleService = Depends(get_lifecycle_service),
    _: bool = Depends(verify_internal_key),
):
    with lifecycle_errors():
        stats = service.get_revenue_stats(window_hours)
    return RevenueStatsResponse(
        window_hours=stats.window_hours,
        total_collections=stats.total_collections,
        successful_collections=stats.successful_collections,
        failed_collections=stats.failed_collections,
        pending_collections=stats.pending_collections,
        total_revenue=str(stats.total_revenue),
        average_amount=str(stats.average_amount),
        currency=stats.currency,
    )


@router.get("/revenue/trends", response_model=List[RevenueTrendResponse])
def get_revenue_trends(
    days: int = 7,
    service: LifecycleService = Depends(get_lifecycle_service),
    _: bool = Depends(verify_internal_key),
):
    with lifecycle_errors():
        points = service.get_revenue_trends(days)
    return [
        RevenueTrendResponse(day=p.day, revenue=str(p.revenue), collections=p.collections, failed=p.failed)
        for p in points
    ]


@router.get("/jobs", response_model=dict)
def get_job_status(
    request: Request,
    _: bool = Depends(verify_internal_key),
):
    return request.app.state.engine.job_manager.get_job_status()


# =============================================================================
# MANUAL CHECKS (OPERATOR-INVOKED)
# =============================================================================

@router.post("/checks/{kind}", response_model=dict)
def trigger_manual_check(
    kind: str,
    service: LifecycleService = Depends(get_lifecycle_service),
    _: bool = Depends(verify_internal_key),
):
    """
    Run checks on demand.

    kind: status_transitions | revenue | health | all
    """
    with lifecycle_errors():
        return service.trigger_manual_check(kind)


# =============================================================================
# OPERATOR ACTIONS (AUDITED)
# =============================================================================

@router.post("/applications/{application_id}/reactivate", response_model=dict)
def reactivate_application(
    application_id: int,
    body: OperatorActionRequest,
    service: LifecycleService = Depends(get_lifecycle_service),
    _: bool = Depends(verify_internal_key),
):
    """Return an ignored application to the auction with a fresh 48h window."""
    with lifecycle_errors():
        return service.reactivate(application_id, body.operator_id, body.reason)


@router.post("/applications/{application_id}/reopen", response_model=dict)
def reopen_application(
    application_id: int,
    body: OperatorActionRequest,
    service: LifecycleService = Depends(get_lifecycle_service),
    _: bool = Depends(verify_internal_key),
):
    """Return a completed application to the auction with a fresh 48h window."""
    with lifecycle_errors():
        return service.reopen(application_id, body.operator_id, body.reason)


@router.post("/applications/{application_id}/extend-deadline", response_model=dict)
def extend_application_deadline(
    application_id: int,
    body: ExtendDeadlineRequest,
    service: LifecycleService = Depends(get_lifecycle_service),
    _: bool = Depends(verify_internal_key),
):
    with lifecycle_errors():
        return service.extend_deadline(application_id, body.phase, body.hours, body.operator_id, body.reason)


@router.post("/revenue/{entry_id}/collected", response_model=dict)
def record_revenue_collection(
    entry_id: int,
    body: RecordCollectionRequest,
    service: LifecycleService = Depends(get_lifecycle_service),
    _: bool = Depends(verify_internal_key),
):
    """Payment provider confirmed the fee for one purchase."""
    with lifecycle_errors():
        return service.record_collection(entry_id, body.payment_reference)
