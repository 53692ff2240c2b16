"""Simulator gateway for exercising the mirror without real provider calls."""

import json
import time
import uuid
import logging
import threading
from typing import Dict, Any, Iterator, List, Optional
from dataclasses import dataclass, field
from datetime import datetime

from ..errors import ProviderRequestError, RefundRejectedError
from ..mode import ModeContext
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


@dataclass
class SimulatedPaymentIntent:
    """In-memory representation of a provider payment intent."""
    id: str
    amount: int
    currency: str
    status: str
    livemode: bool
    client_secret: str
    description: Optional[str] = None
    customer_email: Optional[str] = None
    card_last4: Optional[str] = None
    brand: Optional[str] = None
    fee: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SimulatedRefund:
    """In-memory representation of a provider refund."""
    id: str
    payment_intent: str
    amount: int
    currency: str
    status: str
    reason: str
    livemode: bool
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    refund_status: str = "succeeded"  # status new refunds are reported with
    fee_rate_bps: int = 150  # provider fee in basis points
    fee_fixed: int = 20  # fixed provider fee in minor units
    delay_ms: int = 0  # simulated response delay in ms


class SimulatedProvider:
    """
    Process-local stand-in for the provider platform. Test and live data are
    kept apart exactly as separate API keys would keep them apart.

    The checkout widget is simulated with ``complete_payment`` and
    ``require_action``; refunds made outside this tool with
    ``refund_externally``.
    """

    def __init__(self, config: Optional[SimulatorConfig] = None):
        self.config = config or SimulatorConfig()
        self._intents: Dict[bool, Dict[str, SimulatedPaymentIntent]] = {False: {}, True: {}}
        self._refunds: Dict[bool, Dict[str, SimulatedRefund]] = {False: {}, True: {}}
        self._pending_errors: Dict[str, Exception] = {}
        self._lock = threading.RLock()
        logger.info("SimulatedProvider initialized")

    def gateway(self, context: ModeContext) -> "SimulatorGateway":
        """Gateway factory bound to this simulated provider."""
        return SimulatorGateway(context, self)

    __call__ = gateway

    def _generate_id(self, prefix: str) -> str:
        return f"{prefix}_sim_{uuid.uuid4().hex[:24]}"

    def _apply_delay(self) -> None:
        if self.config.delay_ms > 0:
            time.sleep(self.config.delay_ms / 1000.0)

    def _raise_pending(self, operation: str) -> None:
        error = self._pending_errors.pop(operation, None)
        if error is not None:
            raise error

    def _find_intent(self, external_id: str) -> SimulatedPaymentIntent:
        for intents in self._intents.values():
            if external_id in intents:
                return intents[external_id]
        raise KeyError(external_id)

    def _refunded_total(self, livemode: bool, payment_intent: str) -> int:
        return sum(
            r.amount for r in self._refunds[livemode].values()
            if r.payment_intent == payment_intent and r.status in ("succeeded", "processing")
        )

    # Operator-side helpers

    def fail_next(self, operation: str, error: Optional[Exception] = None) -> None:
        """Make the next call of ``operation`` (e.g. ``"create_refund"``) raise."""
        self._pending_errors[operation] = error or ProviderRequestError(
            code="api_error", message=f"Simulated failure of {operation}", http_status=500
        )

    def complete_payment(
        self,
        external_id: str,
        succeed: bool = True,
        card_last4: str = "4242",
        brand: str = "visa",
    ) -> SimulatedPaymentIntent:
        """Drive an intent to a terminal state, as the checkout widget would."""
        with self._lock:
            intent = self._find_intent(external_id)
            if succeed:
                intent.status = "succeeded"
                intent.card_last4 = card_last4
                intent.brand = brand
                intent.fee = intent.amount * self.config.fee_rate_bps // 10000 + self.config.fee_fixed
            else:
                intent.status = "failed"
            return intent

    def require_action(self, external_id: str) -> SimulatedPaymentIntent:
        """Put an intent into a pending 3-D Secure challenge."""
        return self.set_status(external_id, "requires_action")

    def set_status(self, external_id: str, status: str) -> SimulatedPaymentIntent:
        with self._lock:
            intent = self._find_intent(external_id)
            intent.status = status
            return intent

    def set_refund_status(self, external_refund_id: str, status: str) -> SimulatedRefund:
        """Move a refund along, e.g. from ``processing`` to ``succeeded``."""
        with self._lock:
            for refunds in self._refunds.values():
                if external_refund_id in refunds:
                    refunds[external_refund_id].status = status
                    return refunds[external_refund_id]
            raise KeyError(external_refund_id)

    def refund_externally(self, external_id: str, amount: Optional[int] = None, reason: str = "requested_by_customer") -> SimulatedRefund:
        """Refund directly at the provider, bypassing this tool."""
        intent = self._find_intent(external_id)
        return self._create_refund(intent.livemode, external_id, amount, reason, None)

    def get_payment_intent(self, external_id: str) -> Optional[SimulatedPaymentIntent]:
        with self._lock:
            try:
                return self._find_intent(external_id)
            except KeyError:
                return None

    def build_event_body(
        self,
        event_type: str,
        data_object: Dict[str, Any],
        livemode: bool = False,
        event_id: Optional[str] = None,
    ) -> str:
        """Serialise a provider-shaped notification body."""
        return json.dumps({
            "id": event_id or self._generate_id("evt"),
            "object": "event",
            "type": event_type,
            "livemode": livemode,
            "created": int(time.time()),
            "data": {"object": data_object},
        })

    def clear(self) -> None:
        """Drop all simulated state (for test cleanup)."""
        with self._lock:
            for store in (self._intents, self._refunds):
                for records in store.values():
                    records.clear()
            self._pending_errors.clear()

    # Provider-side operations used by SimulatorGateway

    def _create_intent(self, livemode: bool, amount: int, currency: str, description, customer_email) -> SimulatedPaymentIntent:
        with self._lock:
            self._raise_pending("create_payment_intent")
            intent_id = self._generate_id("pi")
            intent = SimulatedPaymentIntent(
                id=intent_id,
                amount=amount,
                currency=currency.lower(),
                status="requires_payment_method",
                livemode=livemode,
                client_secret=f"{intent_id}_secret_{uuid.uuid4().hex[:12]}",
                description=description or "Payment",
                customer_email=customer_email,
            )
            self._intents[livemode][intent_id] = intent
            return intent

    def _retrieve_intent(self, livemode: bool, external_id: str) -> SimulatedPaymentIntent:
        with self._lock:
            self._raise_pending("retrieve_payment_intent")
            intent = self._intents[livemode].get(external_id)
            if intent is None:
                raise ProviderRequestError(
                    code="resource_missing",
                    message=f"No such payment_intent: '{external_id}'",
                    http_status=404,
                )
            return intent

    def _create_refund(self, livemode: bool, external_id: str, amount: Optional[int], reason: str, notes: Optional[str]) -> SimulatedRefund:
        with self._lock:
            self._raise_pending("create_refund")
            intent = self._intents[livemode].get(external_id)
            if intent is None:
                raise ProviderRequestError(
                    code="resource_missing",
                    message=f"No such payment_intent: '{external_id}'",
                    http_status=404,
                )
            if intent.status != "succeeded":
                raise RefundRejectedError(
                    f"PaymentIntent {external_id} has status {intent.status} and cannot be refunded",
                    code="payment_intent_unexpected_state",
                )
            remaining = intent.amount - self._refunded_total(livemode, external_id)
            if remaining <= 0:
                raise RefundRejectedError(
                    f"Charge for {external_id} has already been refunded.",
                    code="charge_already_refunded",
                )
            if amount is None:
                amount = remaining
            elif amount > remaining:
                raise RefundRejectedError(
                    f"Refund amount ({amount}) is greater than unrefunded amount on charge ({remaining})",
                    code="amount_too_large",
                )
            refund = SimulatedRefund(
                id=self._generate_id("re"),
                payment_intent=external_id,
                amount=amount,
                currency=intent.currency,
                status=self.config.refund_status,
                reason=reason,
                livemode=livemode,
                notes=notes,
            )
            self._refunds[livemode][refund.id] = refund
            return refund

    def _retrieve_refund(self, livemode: bool, external_refund_id: str) -> SimulatedRefund:
        with self._lock:
            self._raise_pending("retrieve_refund")
            refund = self._refunds[livemode].get(external_refund_id)
            if refund is None:
                raise ProviderRequestError(
                    code="resource_missing",
                    message=f"No such refund: '{external_refund_id}'",
                    http_status=404,
                )
            return refund

    def _snapshot_intents(self, livemode: bool) -> List[SimulatedPaymentIntent]:
        with self._lock:
            self._raise_pending("list_payment_intents")
            return sorted(self._intents[livemode].values(), key=lambda i: i.created_at, reverse=True)

    def _snapshot_refunds(self, livemode: bool) -> List[SimulatedRefund]:
        with self._lock:
            self._raise_pending("list_refunds")
            return sorted(self._refunds[livemode].values(), key=lambda r: r.created_at, reverse=True)


class SimulatorGateway(ProviderGateway):
    """ProviderGateway over a SimulatedProvider, scoped to one mode."""

    def __init__(self, context: ModeContext, provider: SimulatedProvider):
        super().__init__(context)
        self.provider = provider

    def _payment_snapshot(self, intent: SimulatedPaymentIntent) -> ProviderPaymentSnapshot:
        return ProviderPaymentSnapshot(
            external_id=intent.id,
            status=intent.status,
            amount_minor_units=intent.amount,
            currency=intent.currency,
            livemode=intent.livemode,
            description=intent.description,
            customer_email=intent.customer_email,
            card_last4=intent.card_last4,
            payment_method_brand=intent.brand,
            fee_minor_units=intent.fee,
            created_at=intent.created_at,
        )

    def _refund_snapshot(self, refund: SimulatedRefund) -> ProviderRefundSnapshot:
        return ProviderRefundSnapshot(
            external_refund_id=refund.id,
            external_payment_id=refund.payment_intent,
            status=refund.status,
            amount_minor_units=refund.amount,
            currency=refund.currency,
            reason=refund.reason,
            notes=refund.notes,
            livemode=refund.livemode,
            created_at=refund.created_at,
        )

    def create_payment_intent(
        self,
        amount_minor_units: int,
        currency: str,
        description: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CreatedIntent:
        self.provider._apply_delay()
        amount = ensure_minor_units(amount_minor_units)
        intent = self.provider._create_intent(self.context.is_live, amount, currency, description, customer_email)
        return CreatedIntent(external_id=intent.id, client_secret=intent.client_secret, status=intent.status)

    def retrieve_payment_intent(self, external_id: str) -> ProviderPaymentSnapshot:
        self.provider._apply_delay()
        return self._payment_snapshot(self.provider._retrieve_intent(self.context.is_live, external_id))

    def create_refund(
        self,
        external_payment_id: str,
        amount_minor_units: Optional[int],
        reason: str,
        notes: Optional[str] = None,
    ) -> ProviderRefundSnapshot:
        self.provider._apply_delay()
        if amount_minor_units is not None:
            ensure_minor_units(amount_minor_units)
        refund = self.provider._create_refund(
            self.context.is_live, external_payment_id, amount_minor_units, reason, notes
        )
        return self._refund_snapshot(refund)

    def retrieve_refund(self, external_refund_id: str) -> ProviderRefundSnapshot:
        self.provider._apply_delay()
        return self._refund_snapshot(self.provider._retrieve_refund(self.context.is_live, external_refund_id))

    def list_payment_intents(self, page_size: int = MAX_PAGE_SIZE) -> Iterator[ProviderPaymentSnapshot]:
        for intent in self.provider._snapshot_intents(self.context.is_live):
            yield self._payment_snapshot(intent)

    def list_refunds(self, page_size: int = MAX_PAGE_SIZE) -> Iterator[ProviderRefundSnapshot]:
        for refund in self.provider._snapshot_refunds(self.context.is_live):
            yield self._refund_snapshot(refund)

    def verify_and_parse_notification(
        self,
        raw_body: bytes,
        signature_header: str,
        shared_secret: str,
    ) -> ProviderEvent:
        body = verify_signature(raw_body, signature_header, shared_secret)
        return decode_event(body)

    def health_check(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "provider": "simulator",
            "mode": self.context.name.value,
            "payment_intent_count": len(self.provider._intents[self.context.is_live]),
        }
