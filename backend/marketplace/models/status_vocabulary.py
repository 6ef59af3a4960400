"""
Status vocabulary mapping.

The engine decides only in the canonical three-state vocabulary
(live_auction / completed / ignored). Rows written by the older
six-state flow may still carry legacy names; they are translated here,
at the persistence boundary, and nowhere else.
"""
import logging
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)


class ApplicationStatus(str, Enum):
    """Canonical application lifecycle states."""
    LIVE_AUCTION = "live_auction"
    COMPLETED = "completed"
    IGNORED = "ignored"


# Legacy stored name -> canonical status
LEGACY_STATUS_MAP: Dict[str, ApplicationStatus] = {
    "submitted": ApplicationStatus.LIVE_AUCTION,
    "pending_offers": ApplicationStatus.LIVE_AUCTION,
    "offer_received": ApplicationStatus.COMPLETED,
    "purchased": ApplicationStatus.COMPLETED,
    "deal_expired": ApplicationStatus.COMPLETED,
    "approved_leads": ApplicationStatus.COMPLETED,
    "abandoned": ApplicationStatus.IGNORED,
    "archived": ApplicationStatus.IGNORED,
}

LEGACY_STATUS_NAMES: List[str] = sorted(LEGACY_STATUS_MAP)


def to_canonical(stored: Optional[str]) -> Optional[ApplicationStatus]:
    """Translate a stored status name. Returns None for unknown names."""
    if stored is None:
        return None
    try:
        return ApplicationStatus(stored)
    except ValueError:
        pass
    canonical = LEGACY_STATUS_MAP.get(stored)
    if canonical is None:
        logger.warning(f"Unknown stored application status '{stored}'")
    return canonical


def stored_names(status: ApplicationStatus) -> List[str]:
    """Every stored name that reads back as the given canonical status."""
    return [status.value] + [name for name, canonical in LEGACY_STATUS_MAP.items() if canonical == status]


def is_legacy_name(stored: Optional[str]) -> bool:
    return stored in LEGACY_STATUS_MAP


class LifecycleStatusType(TypeDecorator):
    """
    Status column type.

    Reads translate legacy names to ApplicationStatus. Writes store the
    canonical value; raw strings pass through unchanged so that filters
    can match legacy aliases (see stored_names()).
    """
    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, ApplicationStatus):
            return value.value
        return str(value)

    def process_result_value(self, value, dialect):
        return to_canonical(value)
