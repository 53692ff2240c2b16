"""Result models returned by the reconciliation engine."""

import enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

from ..database.records import PaymentRecord, RefundRecord
from ..mode import ModeName


class CreatedPayment(BaseModel):
    """Outcome of creating a payment intent and its local record."""
    payment: PaymentRecord
    client_secret: Optional[str] = Field(None, description="Secret the checkout widget confirms with")
    publishable_key: Optional[str] = Field(None, description="Publishable key of the mode the intent lives in")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class PaymentDetails(BaseModel):
    """A payment with its refunds and what is left to refund."""
    payment: PaymentRecord
    refunds: List[RefundRecord] = Field(default_factory=list)
    refundable_balance: int = Field(..., description="Remaining refundable amount in minor units")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class IngestOutcome(str, enum.Enum):
    """How a notification delivery was handled."""
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    RETRIED = "retried"


class IngestResult(BaseModel):
    """Outcome of ingesting one notification."""
    event_id: str
    event_type: str
    outcome: IngestOutcome
    is_live_mode: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class SyncResult(BaseModel):
    """Counts of records created by a historical sync."""
    mode: ModeName
    payments_created: int = Field(default=0)
    refunds_created: int = Field(default=0)
    refunds_skipped: int = Field(default=0, description="Refunds whose parent payment is unknown locally or unpaid")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class ClearResult(BaseModel):
    """Abandoned payments removed from one mode."""
    mode: ModeName
    cleared: int = Field(default=0)

    @property
    def message(self) -> str:
        return f"Cleared {self.cleared} {self.mode.value} payments"

    def to_dict(self) -> Dict[str, Any]:
        return {**self.model_dump(mode="json"), "message": self.message}
