# payments_mirror package
__version__ = "0.1.0"

from .errors import PaymentsMirrorError
from .mode import ModeName, ModeCredentials, ModeContext, ModeState
from .config import Settings
from .database import (
    Payment,
    Refund,
    NotificationEvent,
    PaymentStatus,
    RefundStatus,
    RefundReason,
    PaymentRecord,
    RefundRecord,
    NotificationEventRecord,
    LedgerStore,
    DatabaseManager,
)

# Reconciliation exports
from .reconciliation import (
    ReconciliationService,
    CreatedPayment,
    PaymentDetails,
    IngestOutcome,
    IngestResult,
    SyncResult,
    build_service,
)
