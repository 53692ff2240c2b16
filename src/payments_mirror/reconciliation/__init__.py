"""Reconciliation between the provider and the local ledger.

This module keeps locally mirrored payments, refunds and notification
events in agreement with the payment provider.

Features:
- Create payment intents and refunds and record them locally
- Refresh a payment's status from the provider
- Ingest signed webhook notifications exactly once per event id
- Import provider history of the active mode
- Clear payments abandoned before checkout
"""

from .models import (
    ClearResult,
    CreatedPayment,
    PaymentDetails,
    IngestOutcome,
    IngestResult,
    SyncResult,
)
from .service import ReconciliationService, build_service

__all__ = [
    # Models
    "ClearResult",
    "CreatedPayment",
    "PaymentDetails",
    "IngestOutcome",
    "IngestResult",
    "SyncResult",
    # Core Components
    "ReconciliationService",
    "build_service",
]
