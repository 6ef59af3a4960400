from .status_vocabulary import (
    ApplicationStatus,
    LEGACY_STATUS_MAP,
    LEGACY_STATUS_NAMES,
    LifecycleStatusType,
    is_legacy_name,
    stored_names,
    to_canonical,
)
from .db_models import (
    ActorType,
    AlertSeverity,
    AlertType,
    ApplicationDB,
    BusinessMetricDB,
    CollectionStatus,
    OfferDB,
    OfferStatus,
    RevenueCollectionDB,
    StatusAuditLogDB,
    SystemAlertDB,
    TransitionTrigger,
    utcnow,
)
