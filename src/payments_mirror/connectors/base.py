from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional, Iterator
from pydantic import BaseModel

from ..mode import ModeContext
from .events import ProviderEvent

MAX_PAGE_SIZE = 100


# Canonical models
class CreatedIntent(BaseModel):
    external_id: str
    client_secret: Optional[str] = None
    status: str


class ProviderPaymentSnapshot(BaseModel):
    external_id: str
    status: str  # requires_payment_method|requires_action|processing|succeeded|failed|canceled
    amount_minor_units: int
    currency: str
    livemode: bool = False
    description: Optional[str] = None
    customer_email: Optional[str] = None
    card_last4: Optional[str] = None
    payment_method_brand: Optional[str] = None
    fee_minor_units: Optional[int] = None
    created_at: Optional[datetime] = None


class ProviderRefundSnapshot(BaseModel):
    external_refund_id: str
    external_payment_id: Optional[str] = None
    status: str  # processing|succeeded|failed|canceled
    amount_minor_units: int
    currency: str
    reason: Optional[str] = None
    notes: Optional[str] = None
    livemode: bool = False
    created_at: Optional[datetime] = None


class ProviderGateway(ABC):
    """
    Provider adapter bound to one mode context. Translates local intent into
    provider calls and normalises amounts and errors; never stores anything
    and never retries.
    """

    def __init__(self, context: ModeContext):
        self.context = context

    @abstractmethod
    def create_payment_intent(
        self,
        amount_minor_units: int,
        currency: str,
        description: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CreatedIntent:
        raise NotImplementedError

    @abstractmethod
    def retrieve_payment_intent(self, external_id: str) -> ProviderPaymentSnapshot:
        raise NotImplementedError

    @abstractmethod
    def create_refund(
        self,
        external_payment_id: str,
        amount_minor_units: Optional[int],
        reason: str,
        notes: Optional[str] = None,
    ) -> ProviderRefundSnapshot:
        """
        Refund a payment; ``amount_minor_units=None`` refunds the full remaining
        balance. Raises RefundRejectedError when the provider reports the
        payment as not refundable.
        """
        raise NotImplementedError

    @abstractmethod
    def retrieve_refund(self, external_refund_id: str) -> ProviderRefundSnapshot:
        raise NotImplementedError

    @abstractmethod
    def list_payment_intents(self, page_size: int = MAX_PAGE_SIZE) -> Iterator[ProviderPaymentSnapshot]:
        """Lazy, one-pass listing. Calling again issues a fresh provider query."""
        raise NotImplementedError

    @abstractmethod
    def list_refunds(self, page_size: int = MAX_PAGE_SIZE) -> Iterator[ProviderRefundSnapshot]:
        raise NotImplementedError

    @abstractmethod
    def verify_and_parse_notification(
        self,
        raw_body: bytes,
        signature_header: str,
        shared_secret: str,
    ) -> ProviderEvent:
        """
        Verify a webhook signature and decode the body. Raises
        SignatureInvalidError when the body cannot be trusted.
        """
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        """Reported by the /health route for the active mode. Makes no provider call."""
        return {"ok": True, "mode": self.context.name.value}
