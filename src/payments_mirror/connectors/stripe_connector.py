import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

import stripe

from ..errors import ProviderRequestError, RefundRejectedError
from ..money import ensure_minor_units
from .base import (
    MAX_PAGE_SIZE,
    CreatedIntent,
    ProviderGateway,
    ProviderPaymentSnapshot,
    ProviderRefundSnapshot,
)
from .events import ProviderEvent, decode_event, verify_signature

logger = logging.getLogger(__name__)

# Provider error codes meaning "this payment cannot be refunded (further)".
REFUND_REJECTION_CODES = frozenset([
    "charge_already_refunded",
    "amount_too_large",
    "payment_intent_unexpected_state",
    "charge_disputed",
    "charge_not_refundable",
])

PAYMENT_STATUS_MAP = {
    "requires_payment_method": "requires_payment_method",
    "requires_confirmation": "requires_payment_method",
    "requires_action": "requires_action",
    "processing": "processing",
    "requires_capture": "processing",
    "succeeded": "succeeded",
    "canceled": "canceled",
}

REFUND_STATUS_MAP = {
    "pending": "processing",
    "requires_action": "processing",
    "succeeded": "succeeded",
    "failed": "failed",
    "canceled": "canceled",
}

REFUND_REASONS = frozenset(["requested_by_customer", "duplicate", "fraudulent"])


def _get(obj: Any, name: str) -> Any:
    """Attribute lookup tolerant of missing keys and unexpanded ids."""
    if obj is None or isinstance(obj, str):
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    return None


def _provider_error(operation: str, error: "stripe.StripeError") -> ProviderRequestError:
    """Wrap a stripe-python exception, keeping the provider's code and message."""
    code = getattr(error, "code", None) or type(error).__name__
    logger.error(f"Stripe {operation} failed: {code}: {error}")
    return ProviderRequestError(
        code=code,
        message=str(getattr(error, "user_message", None) or error),
        http_status=getattr(error, "http_status", None),
    )


@contextmanager
def _provider_errors(operation: str):
    try:
        yield
    except stripe.StripeError as e:
        raise _provider_error(operation, e) from e


def map_payment_status(payment_intent: Any) -> str:
    """Map a PaymentIntent's status onto the local status set.

    Stripe leaves a failed attempt in ``requires_payment_method`` with a
    ``last_payment_error``; that combination is reported as ``failed``.
    """
    status = _get(payment_intent, "status")
    if status == "requires_payment_method" and _get(payment_intent, "last_payment_error"):
        return "failed"
    return PAYMENT_STATUS_MAP.get(status, status)


def map_refund_status(status: Optional[str]) -> str:
    return REFUND_STATUS_MAP.get(status or "pending", status)


class StripeGateway(ProviderGateway):
    """
    Stripe gateway using stripe-python PaymentIntents and Refunds. The secret
    key travels with every request instead of living in ``stripe.api_key``, so
    gateways bound to different modes can be used side by side.
    """

    def __init__(self, context):
        super().__init__(context)
        self._api_key = context.credentials.secret_key

    def _to_payment_snapshot(self, payment_intent: Any) -> ProviderPaymentSnapshot:
        charge = _get(payment_intent, "latest_charge")
        card = _get(_get(charge, "payment_method_details"), "card")
        balance_transaction = _get(charge, "balance_transaction")
        metadata = _get(payment_intent, "metadata") or {}
        customer_email = _get(payment_intent, "receipt_email") or _get(metadata, "customer_email") or None
        return ProviderPaymentSnapshot(
            external_id=payment_intent.id,
            status=map_payment_status(payment_intent),
            amount_minor_units=payment_intent.amount,
            currency=payment_intent.currency.lower(),
            livemode=bool(_get(payment_intent, "livemode")),
            description=_get(payment_intent, "description"),
            customer_email=customer_email,
            card_last4=_get(card, "last4"),
            payment_method_brand=_get(card, "brand"),
            fee_minor_units=_get(balance_transaction, "fee"),
            created_at=_timestamp(_get(payment_intent, "created")),
        )

    def _to_refund_snapshot(self, refund: Any) -> ProviderRefundSnapshot:
        payment_intent = _get(refund, "payment_intent")
        if not isinstance(payment_intent, str):
            payment_intent = _get(payment_intent, "id")
        reason = _get(refund, "reason")
        return ProviderRefundSnapshot(
            external_refund_id=refund.id,
            external_payment_id=payment_intent,
            status=map_refund_status(_get(refund, "status")),
            amount_minor_units=refund.amount,
            currency=refund.currency.lower(),
            reason=reason if reason in REFUND_REASONS else "requested_by_customer",
            notes=_get(_get(refund, "metadata"), "notes") or None,
            livemode=self.context.is_live,
            created_at=_timestamp(_get(refund, "created")),
        )

    def create_payment_intent(
        self,
        amount_minor_units: int,
        currency: str,
        description: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CreatedIntent:
        amount = ensure_minor_units(amount_minor_units)
        params = {
            "amount": amount,
            "currency": currency.lower(),
            "description": description or "Payment",
            "automatic_payment_methods": {"enabled": True},
            "metadata": {"customer_email": customer_email or ""},
        }
        if customer_email:
            params["receipt_email"] = customer_email
        with _provider_errors("create payment intent"):
            pi = stripe.PaymentIntent.create(api_key=self._api_key, **params)
        logger.info(f"Created PaymentIntent {pi.id} for {amount} {currency} ({self.context.name.value} mode)")
        return CreatedIntent(
            external_id=pi.id,
            client_secret=_get(pi, "client_secret"),
            status=map_payment_status(pi),
        )

    def retrieve_payment_intent(self, external_id: str) -> ProviderPaymentSnapshot:
        with _provider_errors("retrieve payment intent"):
            pi = stripe.PaymentIntent.retrieve(
                external_id,
                api_key=self._api_key,
                expand=["latest_charge.balance_transaction"],
            )
        return self._to_payment_snapshot(pi)

    def create_refund(
        self,
        external_payment_id: str,
        amount_minor_units: Optional[int],
        reason: str,
        notes: Optional[str] = None,
    ) -> ProviderRefundSnapshot:
        params = {
            "payment_intent": external_payment_id,
            "reason": reason,
            "metadata": {"notes": notes or ""},
        }
        if amount_minor_units is not None:
            params["amount"] = ensure_minor_units(amount_minor_units)
        try:
            refund = stripe.Refund.create(api_key=self._api_key, **params)
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            if isinstance(e, stripe.InvalidRequestError) and code in REFUND_REJECTION_CODES:
                logger.warning(f"Stripe rejected refund of {external_payment_id}: {code}")
                raise RefundRejectedError(str(getattr(e, "user_message", None) or e), code=code) from e
            raise _provider_error("create refund", e) from e
        logger.info(f"Created refund {refund.id} on {external_payment_id} for {refund.amount}")
        return self._to_refund_snapshot(refund)

    def retrieve_refund(self, external_refund_id: str) -> ProviderRefundSnapshot:
        with _provider_errors("retrieve refund"):
            refund = stripe.Refund.retrieve(external_refund_id, api_key=self._api_key)
        return self._to_refund_snapshot(refund)

    def list_payment_intents(self, page_size: int = MAX_PAGE_SIZE) -> Iterator[ProviderPaymentSnapshot]:
        with _provider_errors("list payment intents"):
            page = stripe.PaymentIntent.list(
                api_key=self._api_key,
                limit=min(page_size, MAX_PAGE_SIZE),
                expand=["data.latest_charge.balance_transaction"],
            )
            for pi in page.auto_paging_iter():
                yield self._to_payment_snapshot(pi)

    def list_refunds(self, page_size: int = MAX_PAGE_SIZE) -> Iterator[ProviderRefundSnapshot]:
        with _provider_errors("list refunds"):
            page = stripe.Refund.list(api_key=self._api_key, limit=min(page_size, MAX_PAGE_SIZE))
            for refund in page.auto_paging_iter():
                yield self._to_refund_snapshot(refund)

    def verify_and_parse_notification(
        self,
        raw_body: bytes,
        signature_header: str,
        shared_secret: str,
    ) -> ProviderEvent:
        body = verify_signature(raw_body, signature_header, shared_secret)
        return decode_event(body)
