"""Decoding of provider notification bodies into a closed set of variants.

Dispatch in the reconciliation engine works on these types rather than on
event-type strings, so every known kind is handled explicitly and anything
else ends up as ``UnknownEvent``.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union

import stripe
from pydantic import BaseModel, Field

from ..errors import InvalidEventPayloadError, SignatureInvalidError

logger = logging.getLogger(__name__)

# Seconds a signed timestamp stays valid, matching stripe's default.
SIGNATURE_TOLERANCE = 300


class ProviderEvent(BaseModel):
    """Fields common to every decoded notification."""
    event_id: str = Field(..., description="Provider event id, the ingestion idempotency key")
    event_type: str = Field(..., description="Provider event type tag")
    livemode: bool = Field(default=False, description="Credential set that produced the event")
    created: Optional[datetime] = None
    raw_payload: str = Field(..., description="Body exactly as delivered")


class PaymentSucceeded(ProviderEvent):
    kind: Literal["payment_succeeded"] = "payment_succeeded"
    payment_intent_id: str


class PaymentFailed(ProviderEvent):
    kind: Literal["payment_failed"] = "payment_failed"
    payment_intent_id: str


class RefundCreated(ProviderEvent):
    kind: Literal["refund_created"] = "refund_created"
    refund_id: str
    payment_intent_id: Optional[str] = None


class RefundUpdated(ProviderEvent):
    kind: Literal["refund_updated"] = "refund_updated"
    refund_id: str
    payment_intent_id: Optional[str] = None


class UnknownEvent(ProviderEvent):
    kind: Literal["unknown"] = "unknown"


DecodedEvent = Union[PaymentSucceeded, PaymentFailed, RefundCreated, RefundUpdated, UnknownEvent]

PAYMENT_EVENT_TYPES = {
    "payment_intent.succeeded": PaymentSucceeded,
    "payment_intent.payment_failed": PaymentFailed,
}

REFUND_EVENT_TYPES = {
    "refund.created": RefundCreated,
    "refund.updated": RefundUpdated,
    "charge.refund.updated": RefundUpdated,
}


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    return None


def decode_event(raw_payload: Union[str, bytes]) -> DecodedEvent:
    """Decode a verified notification body.

    Raises:
        InvalidEventPayloadError: If the body is not a provider event object.
    """
    if isinstance(raw_payload, bytes):
        try:
            raw_payload = raw_payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidEventPayloadError("Notification body is not valid UTF-8") from e
    try:
        payload: Dict[str, Any] = json.loads(raw_payload)
    except json.JSONDecodeError as e:
        raise InvalidEventPayloadError(f"Notification body is not valid JSON: {e}") from e

    if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
        raise InvalidEventPayloadError("Notification body is missing 'id' or 'type'")

    event_type = payload["type"]
    data_object = (payload.get("data") or {}).get("object") or {}
    common = {
        "event_id": payload["id"],
        "event_type": event_type,
        "livemode": bool(payload.get("livemode", False)),
        "created": _timestamp(payload.get("created")),
        "raw_payload": raw_payload,
    }

    if event_type in PAYMENT_EVENT_TYPES:
        if not data_object.get("id"):
            raise InvalidEventPayloadError(f"{event_type} event {payload['id']} has no payment intent id")
        return PAYMENT_EVENT_TYPES[event_type](payment_intent_id=data_object["id"], **common)

    if event_type in REFUND_EVENT_TYPES:
        if not data_object.get("id"):
            raise InvalidEventPayloadError(f"{event_type} event {payload['id']} has no refund id")
        payment_intent = data_object.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        return REFUND_EVENT_TYPES[event_type](
            refund_id=data_object["id"],
            payment_intent_id=payment_intent,
            **common,
        )

    return UnknownEvent(**common)


def verify_signature(
    raw_body: Union[str, bytes],
    signature_header: str,
    shared_secret: str,
    tolerance: int = SIGNATURE_TOLERANCE,
) -> str:
    """Check a ``Stripe-Signature`` header with the provider SDK.

    Returns:
        The body as text, ready for decoding.

    Raises:
        SignatureInvalidError: If the header is missing, malformed or does not match.
    """
    if isinstance(raw_body, bytes):
        try:
            raw_body = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureInvalidError("Notification body is not valid UTF-8") from e
    if not signature_header:
        raise SignatureInvalidError("Missing signature header")
    if not shared_secret:
        raise SignatureInvalidError("No webhook secret configured")
    try:
        stripe.WebhookSignature.verify_header(raw_body, signature_header, shared_secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalidError(f"Webhook signature verification failed: {e}") from e
    return raw_body
