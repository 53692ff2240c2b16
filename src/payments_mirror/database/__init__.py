"""Database module for the local payment ledger."""

from .models import (
    Payment,
    Refund,
    NotificationEvent,
    Base,
    PaymentStatus,
    RefundStatus,
    RefundReason,
    BALANCE_CONSUMING_REFUND_STATUSES,
)
from .records import (
    PaymentRecord,
    RefundRecord,
    NotificationEventRecord,
)
from .session import (
    DEFAULT_DATABASE_URL,
    get_database_url,
    create_async_engine,
    get_async_session_factory,
    create_tables,
    DatabaseManager,
)
from .repository import (
    PaymentRepository,
    RefundRepository,
    NotificationEventRepository,
)
from .store import LedgerStore

__all__ = [
    # Models
    "Payment",
    "Refund",
    "NotificationEvent",
    "Base",
    "PaymentStatus",
    "RefundStatus",
    "RefundReason",
    "BALANCE_CONSUMING_REFUND_STATUSES",
    # Read models
    "PaymentRecord",
    "RefundRecord",
    "NotificationEventRecord",
    # Session management
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_async_engine",
    "get_async_session_factory",
    "create_tables",
    "DatabaseManager",
    # Repositories
    "PaymentRepository",
    "RefundRepository",
    "NotificationEventRepository",
    # Store
    "LedgerStore",
]
