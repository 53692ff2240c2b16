"""Read models handed out by the ledger store.

Callers never see ORM instances; every store method returns one of these
copies, so nothing outside the store can mutate a row.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class PaymentRecord(BaseModel):
    """Snapshot of a row in ``payments``."""
    id: int = Field(..., description="Local sequence number")
    external_payment_id: str = Field(..., description="Provider payment intent id")
    amount_minor_units: int = Field(..., description="Amount in the currency's smallest unit")
    currency: str = Field(..., description="Lowercase ISO currency code")
    status: str
    customer_email: Optional[str] = None
    description: Optional[str] = None
    card_last4: Optional[str] = None
    payment_method_brand: Optional[str] = None
    provider_fee_minor_units: Optional[int] = None
    is_live_mode: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RefundRecord(BaseModel):
    """Snapshot of a row in ``refunds``."""
    id: int = Field(..., description="Local sequence number")
    external_refund_id: str = Field(..., description="Provider refund id")
    payment_id: int = Field(..., description="Local id of the refunded payment")
    external_payment_id: str
    amount_minor_units: int
    currency: str
    reason: str
    status: str
    notes: Optional[str] = None
    is_live_mode: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class NotificationEventRecord(BaseModel):
    """Snapshot of a row in ``notification_events``."""
    id: int
    external_event_id: str = Field(..., description="Provider event id")
    event_type: str
    raw_payload: str
    processed: bool
    is_live_mode: bool
    created_at: datetime

    class Config:
        from_attributes = True
