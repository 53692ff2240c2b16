"""Reconciliation engine: every write path into the local ledger."""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..connectors import (
    MAX_PAGE_SIZE,
    GatewayFactory,
    ProviderGateway,
    ProviderPaymentSnapshot,
    ProviderRefundSnapshot,
    SimulatedProvider,
    DecodedEvent,
    PaymentSucceeded,
    PaymentFailed,
    RefundCreated,
    RefundUpdated,
    get_gateway_factory,
)
from ..database import (
    LedgerStore,
    PaymentRecord,
    RefundRecord,
    PaymentStatus,
    RefundReason,
)
from ..errors import (
    AmountTooSmallError,
    CredentialsMissingError,
    DuplicateRecordError,
    InvalidRefundReasonError,
    NotFoundError,
    ProviderRequestError,
    RefundExceedsBalanceError,
    RefundRejectedError,
    SignatureInvalidError,
)
from ..mode import ModeContext, ModeName, ModeState, parse_mode_name
from ..money import (
    DEFAULT_CURRENCY,
    ensure_minor_units,
    minimum_charge_amount,
    normalize_currency,
)
from .models import (
    ClearResult,
    CreatedPayment,
    PaymentDetails,
    IngestOutcome,
    IngestResult,
    SyncResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EXHAUSTED = object()

REFUND_REASON_VALUES = frozenset(reason.value for reason in RefundReason)


def _payment_key(external_payment_id: str) -> str:
    return f"payment:{external_payment_id}"


def _refund_key(external_refund_id: str) -> str:
    return f"refund:{external_refund_id}"


def _event_key(external_event_id: str) -> str:
    return f"event:{external_event_id}"


class ReconciliationService:
    """Keeps the local ledger in agreement with the payment provider.

    The provider is authoritative for every status. Operations on an existing
    record use the credentials of the mode the record was created under; new
    intents and bulk syncs use the mode active when the call starts.

    Example:
        service = ReconciliationService(store, modes, get_gateway_factory("stripe"))
        created = await service.create_payment(150, "gbp")
        await service.reconcile_payment_status(created.payment.external_payment_id)
    """

    def __init__(
        self,
        store: LedgerStore,
        modes: ModeState,
        gateway_factory: GatewayFactory,
        provider_timeout: float = 30.0,
        minimum_amounts: Optional[dict] = None,
        sync_page_size: int = MAX_PAGE_SIZE,
    ):
        """Initialize the reconciliation service.

        Args:
            store: Ledger store all records are written through.
            modes: Process-wide mode state.
            gateway_factory: Builds a provider gateway bound to a mode context.
            provider_timeout: Seconds before a provider call is abandoned.
            minimum_amounts: Per-currency minimum charge overrides.
            sync_page_size: Page size for historical listing.
        """
        self.store = store
        self.modes = modes
        self.gateway_factory = gateway_factory
        self.provider_timeout = provider_timeout
        self.minimum_amounts = minimum_amounts
        self.sync_page_size = sync_page_size

    # Provider plumbing

    def _gateway(self, context: ModeContext) -> ProviderGateway:
        if not context.has_credentials:
            raise CredentialsMissingError(context.name.value)
        return self.gateway_factory(context)

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking gateway call in a worker thread under the provider timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args),
                timeout=self.provider_timeout,
            )
        except asyncio.TimeoutError:
            name = getattr(func, "__name__", repr(func))
            logger.error(f"Provider call {name} timed out after {self.provider_timeout}s")
            raise ProviderRequestError(
                code="timeout",
                message=f"Provider call {name} did not complete within {self.provider_timeout}s",
            ) from None

    async def _iterate(self, iterator: Iterable[T]) -> AsyncIterator[T]:
        """Drain a lazy gateway listing one item at a time off the event loop."""
        iterator = iter(iterator)
        while True:
            item = await self._call(next, iterator, _EXHAUSTED)
            if item is _EXHAUSTED:
                return
            yield item

    def _context_of(self, record: Union[PaymentRecord, RefundRecord]) -> ModeContext:
        return self.modes.context_for(is_live=record.is_live_mode)

    def provider_health(self) -> Dict[str, Any]:
        """Health of the gateway for the active mode."""
        context = self.modes.active
        if not context.has_credentials:
            return {"ok": False, "mode": context.name.value, "error": "credentials missing"}
        return self.gateway_factory(context).health_check()

    # Payments

    async def create_payment(
        self,
        amount: int,
        currency: str = DEFAULT_CURRENCY,
        description: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CreatedPayment:
        """Create a provider payment intent and its local record.

        Not idempotent: every call creates a new intent.

        Args:
            amount: Amount in minor units.
            currency: Three-letter currency code.
            description: Optional description.
            customer_email: Optional customer email.

        Returns:
            CreatedPayment with the stored record, client secret and the
            publishable key of the mode the intent was created in.

        Raises:
            InvalidAmountError: If amount is not an integer.
            InvalidCurrencyError: If currency is not a three-letter code.
            AmountTooSmallError: If amount is below the currency minimum.
            CredentialsMissingError: If the active mode has no secret key.
            ProviderRequestError: If the provider call fails.
        """
        amount = ensure_minor_units(amount)
        currency = normalize_currency(currency)
        minimum = minimum_charge_amount(currency, self.minimum_amounts)
        if amount < minimum:
            raise AmountTooSmallError(amount, minimum, currency)

        context = self.modes.active
        gateway = self._gateway(context)
        intent = await self._call(
            gateway.create_payment_intent, amount, currency, description, customer_email
        )

        async with self.store.record_lock(_payment_key(intent.external_id)):
            try:
                payment = await self.store.create_payment(
                    external_payment_id=intent.external_id,
                    amount_minor_units=amount,
                    currency=currency,
                    status=intent.status,
                    is_live_mode=context.is_live,
                    description=description,
                    customer_email=customer_email,
                )
            except DuplicateRecordError:
                # A concurrent sync already mirrored the new intent
                payment = await self.store.get_payment_by_external_id(intent.external_id)

        logger.info(
            f"Created payment {payment.external_payment_id} for {amount} {currency} "
            f"in {context.name.value} mode"
        )
        return CreatedPayment(
            payment=payment,
            client_secret=intent.client_secret,
            publishable_key=context.credentials.publishable_key or None,
        )

    async def _apply_payment_snapshot(
        self,
        payment: PaymentRecord,
        snapshot: ProviderPaymentSnapshot,
    ) -> PaymentRecord:
        changes = {"status": snapshot.status}
        if (
            snapshot.status == PaymentStatus.SUCCEEDED.value
            and payment.status != PaymentStatus.SUCCEEDED.value
        ):
            derived = {
                "card_last4": snapshot.card_last4,
                "payment_method_brand": snapshot.payment_method_brand,
                "provider_fee_minor_units": snapshot.fee_minor_units,
            }
            changes.update({k: v for k, v in derived.items() if v is not None})
        return await self.store.update_payment(payment.id, changes)

    async def reconcile_payment_status(self, external_payment_id: str) -> PaymentRecord:
        """Overwrite a payment's local status with the provider's.

        Card details and fee are captured on the first transition to
        ``succeeded``. Reconciling an unchanged payment only bumps
        ``updated_at``.

        Raises:
            NotFoundError: If the payment is unknown locally.
        """
        async with self.store.record_lock(_payment_key(external_payment_id)):
            payment = await self.store.get_payment_by_external_id(external_payment_id)
            if payment is None:
                raise NotFoundError("Payment", external_payment_id)

            gateway = self._gateway(self._context_of(payment))
            snapshot = await self._call(gateway.retrieve_payment_intent, external_payment_id)
            return await self._apply_payment_snapshot(payment, snapshot)

    async def get_refundable_balance(self, external_payment_id: str) -> int:
        """Amount still refundable on a payment, in minor units."""
        payment = await self.store.get_payment_by_external_id(external_payment_id)
        if payment is None:
            raise NotFoundError("Payment", external_payment_id)
        return await self._refundable_balance(payment)

    async def _refundable_balance(self, payment: PaymentRecord) -> int:
        if payment.status != PaymentStatus.SUCCEEDED.value:
            return 0
        committed = await self.store.get_committed_refund_total(payment.id)
        return max(payment.amount_minor_units - committed, 0)

    async def get_payment_details(self, external_payment_id: str) -> PaymentDetails:
        payment = await self.store.get_payment_by_external_id(external_payment_id)
        if payment is None:
            raise NotFoundError("Payment", external_payment_id)
        return PaymentDetails(
            payment=payment,
            refunds=await self.store.get_refunds_for_payment(payment.id),
            refundable_balance=await self._refundable_balance(payment),
        )

    async def list_payments(
        self,
        limit: int = 50,
        offset: int = 0,
        mode: Union[str, ModeName, None] = None,
    ) -> List[PaymentRecord]:
        is_live_mode = None if mode is None else parse_mode_name(mode) == ModeName.LIVE
        return await self.store.list_payments(limit, offset, is_live_mode)

    async def clear_abandoned_payments(self) -> ClearResult:
        """Delete payments of the active mode that never got a payment method.

        Only payments still in ``requires_payment_method`` with no refunds are
        removed. Provider intents and notification events are left alone.
        """
        context = self.modes.active
        result = ClearResult(mode=context.name)
        for payment in await self.store.list_abandoned_payments(context.is_live):
            async with self.store.record_lock(_payment_key(payment.external_payment_id)):
                if await self.store.delete_abandoned_payment(payment.id):
                    result.cleared += 1
        logger.info(f"{result.message} from the local ledger")
        return result

    # Refunds

    async def create_refund(
        self,
        external_payment_id: str,
        amount: Optional[int] = None,
        reason: str = RefundReason.REQUESTED_BY_CUSTOMER.value,
        notes: Optional[str] = None,
    ) -> RefundRecord:
        """Refund a succeeded payment, fully or partially.

        The local balance check is advisory. The provider performs the
        authoritative check and its rejection is surfaced unchanged.

        Args:
            external_payment_id: Provider payment intent id.
            amount: Minor units to refund. None refunds the remaining balance.
            reason: One of the provider's refund reasons.
            notes: Optional operator notes.

        Returns:
            The stored refund.

        Raises:
            NotFoundError: If the payment is unknown locally.
            RefundRejectedError: If the payment has not succeeded, or the
                provider refuses the refund.
            RefundExceedsBalanceError: If amount is not within the remaining balance.
        """
        if reason not in REFUND_REASON_VALUES:
            raise InvalidRefundReasonError(reason, REFUND_REASON_VALUES)
        if amount is not None:
            amount = ensure_minor_units(amount)

        async with self.store.record_lock(_payment_key(external_payment_id)):
            payment = await self.store.get_payment_by_external_id(external_payment_id)
            if payment is None:
                raise NotFoundError("Payment", external_payment_id)
            if payment.status != PaymentStatus.SUCCEEDED.value:
                raise RefundRejectedError(
                    f"Payment {external_payment_id} has status {payment.status}; "
                    f"only succeeded payments can be refunded",
                    code="payment_not_succeeded",
                )

            remaining = await self._refundable_balance(payment)
            if amount is None:
                if remaining <= 0:
                    raise RefundExceedsBalanceError(None, remaining)
            elif amount <= 0 or amount > remaining:
                raise RefundExceedsBalanceError(amount, remaining)

            gateway = self._gateway(self._context_of(payment))
            snapshot = await self._call(
                gateway.create_refund, external_payment_id, amount, reason, notes
            )

            async with self.store.record_lock(_refund_key(snapshot.external_refund_id)):
                refund, _ = await self._store_refund(payment, snapshot, reason=reason, notes=notes)

        logger.info(
            f"Refunded {refund.amount_minor_units} {refund.currency} of payment "
            f"{external_payment_id} as {refund.external_refund_id} ({refund.status})"
        )
        return refund

    async def _store_refund(
        self,
        payment: PaymentRecord,
        snapshot: ProviderRefundSnapshot,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Tuple[RefundRecord, bool]:
        """Insert a refund under ``payment``, or refresh the status if it already exists.

        Must be called holding the refund's record lock.

        Returns:
            The refund and whether it was newly created.
        """
        existing = await self.store.get_refund_by_external_id(snapshot.external_refund_id)
        if existing is None:
            try:
                refund = await self.store.create_refund(
                    external_refund_id=snapshot.external_refund_id,
                    payment_id=payment.id,
                    external_payment_id=payment.external_payment_id,
                    amount_minor_units=snapshot.amount_minor_units,
                    currency=snapshot.currency,
                    reason=snapshot.reason or reason or RefundReason.REQUESTED_BY_CUSTOMER.value,
                    status=snapshot.status,
                    notes=snapshot.notes or notes,
                    is_live_mode=payment.is_live_mode,
                )
                return refund, True
            except DuplicateRecordError:
                logger.info(f"Refund {snapshot.external_refund_id} was stored by another writer")
                existing = await self.store.get_refund_by_external_id(snapshot.external_refund_id)
        refund = await self.store.update_refund(existing.id, {"status": snapshot.status})
        return refund, False

    async def list_refunds(
        self,
        limit: int = 50,
        offset: int = 0,
        mode: Union[str, ModeName, None] = None,
    ) -> List[RefundRecord]:
        is_live_mode = None if mode is None else parse_mode_name(mode) == ModeName.LIVE
        return await self.store.list_refunds(limit, offset, is_live_mode)

    # Notifications

    def _verify_notification(self, raw_body: Union[str, bytes], signature_header: str) -> DecodedEvent:
        secrets = self.modes.webhook_secrets()
        if not secrets:
            logger.warning("Rejected notification: no webhook secret configured")
            raise SignatureInvalidError("No webhook secret configured")

        failure: Optional[SignatureInvalidError] = None
        for mode, secret in secrets.items():
            gateway = self.gateway_factory(self.modes.context_for(mode))
            try:
                return gateway.verify_and_parse_notification(raw_body, signature_header, secret)
            except SignatureInvalidError as e:
                failure = e
        logger.warning(f"Rejected notification: {failure.message}")
        raise failure

    async def ingest_notification_event(
        self,
        raw_body: Union[str, bytes],
        signature_header: str,
    ) -> IngestResult:
        """Verify, record and apply one provider notification.

        The event row is written before its effect is applied and flagged
        processed afterwards. A redelivery of a processed event is ignored;
        a redelivery of an event whose effect failed applies it again.

        Raises:
            SignatureInvalidError: If the body is not signed by a configured secret.
            InvalidEventPayloadError: If the verified body cannot be decoded.
        """
        event = self._verify_notification(raw_body, signature_header)

        async with self.store.record_lock(_event_key(event.event_id)):
            existing = await self.store.get_event(event.event_id)
            if existing is not None and existing.processed:
                logger.info(f"Ignoring duplicate delivery of event {event.event_id} ({event.event_type})")
                return IngestResult(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    outcome=IngestOutcome.DUPLICATE,
                    is_live_mode=existing.is_live_mode,
                )

            outcome = IngestOutcome.PROCESSED
            if existing is None:
                created = await self.store.create_event(
                    external_event_id=event.event_id,
                    event_type=event.event_type,
                    raw_payload=event.raw_payload,
                    is_live_mode=event.livemode,
                )
                if created is None:
                    outcome = IngestOutcome.RETRIED
            else:
                outcome = IngestOutcome.RETRIED
            if outcome == IngestOutcome.RETRIED:
                logger.warning(f"Re-applying event {event.event_id} left unprocessed by an earlier attempt")

            await self._apply_event(event)
            await self.store.mark_event_processed(event.event_id)

        logger.info(f"Processed event {event.event_id} ({event.event_type}): {outcome.value}")
        return IngestResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=outcome,
            is_live_mode=event.livemode,
        )

    async def _apply_event(self, event: DecodedEvent) -> None:
        if isinstance(event, (PaymentSucceeded, PaymentFailed)):
            await self._apply_payment_event(event)
        elif isinstance(event, (RefundCreated, RefundUpdated)):
            await self._apply_refund_event(event)
        else:
            logger.info(f"No action for {event.event_type} event {event.event_id}")

    async def _apply_payment_event(self, event: Union[PaymentSucceeded, PaymentFailed]) -> None:
        async with self.store.record_lock(_payment_key(event.payment_intent_id)):
            payment = await self.store.get_payment_by_external_id(event.payment_intent_id)
            if payment is None:
                logger.info(
                    f"Event {event.event_id} references unknown payment "
                    f"{event.payment_intent_id}; skipping"
                )
                return
            if payment.is_live_mode != event.livemode:
                logger.warning(
                    f"Event {event.event_id} livemode={event.livemode} does not match payment "
                    f"{payment.external_payment_id} livemode={payment.is_live_mode}; skipping"
                )
                return

            # Re-fetch instead of trusting the event body so late deliveries cannot regress status
            gateway = self._gateway(self._context_of(payment))
            snapshot = await self._call(gateway.retrieve_payment_intent, payment.external_payment_id)
            await self._apply_payment_snapshot(payment, snapshot)

    async def _apply_refund_event(self, event: Union[RefundCreated, RefundUpdated]) -> None:
        existing = await self.store.get_refund_by_external_id(event.refund_id)
        if existing is not None and existing.is_live_mode != event.livemode:
            logger.warning(
                f"Event {event.event_id} livemode={event.livemode} does not match refund "
                f"{existing.external_refund_id}; skipping"
            )
            return

        gateway = self._gateway(self.modes.context_for(is_live=event.livemode))
        parent_id = existing.external_payment_id if existing is not None else event.payment_intent_id
        if not parent_id:
            parent_id = (await self._call(gateway.retrieve_refund, event.refund_id)).external_payment_id
        if not parent_id:
            logger.info(f"Event {event.event_id} refund {event.refund_id} has no payment; skipping")
            return

        # Same lock order as create_refund: payment, then refund
        async with self.store.record_lock(_payment_key(parent_id)):
            async with self.store.record_lock(_refund_key(event.refund_id)):
                snapshot = await self._call(gateway.retrieve_refund, event.refund_id)
                existing = await self.store.get_refund_by_external_id(event.refund_id)
                if existing is not None:
                    await self.store.update_refund(existing.id, {"status": snapshot.status})
                    return

                payment = await self.store.get_payment_by_external_id(parent_id)
                if payment is None or payment.is_live_mode != event.livemode:
                    logger.info(
                        f"Event {event.event_id} references refund {event.refund_id} of unknown "
                        f"payment {parent_id}; skipping"
                    )
                    return
                payment = await self._settle_refund_parent(payment)
                if payment is None:
                    return
                await self._store_refund(payment, snapshot)

    async def _settle_refund_parent(self, payment: PaymentRecord) -> Optional[PaymentRecord]:
        """Reconcile the parent of an incoming refund if it has not succeeded locally.

        Must be called holding the payment's record lock.

        Returns:
            The succeeded payment, or None if the provider does not report it succeeded.
        """
        if payment.status == PaymentStatus.SUCCEEDED.value:
            return payment
        gateway = self._gateway(self._context_of(payment))
        snapshot = await self._call(gateway.retrieve_payment_intent, payment.external_payment_id)
        payment = await self._apply_payment_snapshot(payment, snapshot)
        if payment.status != PaymentStatus.SUCCEEDED.value:
            logger.warning(
                f"Payment {payment.external_payment_id} has status {payment.status}; "
                f"not storing refunds against it"
            )
            return None
        return payment

    # Historical sync

    async def sync_historical_data(self) -> SyncResult:
        """Mirror provider history of the active mode into the ledger.

        Only ids missing locally are created, so a second run with no new
        provider activity creates nothing.
        """
        context = self.modes.active
        gateway = self._gateway(context)
        result = SyncResult(mode=context.name)
        logger.info(f"Starting historical sync in {context.name.value} mode")

        async for snapshot in self._iterate(gateway.list_payment_intents(self.sync_page_size)):
            if snapshot.livemode != context.is_live:
                logger.warning(f"Sync skipped payment {snapshot.external_id} from the other mode")
                continue
            async with self.store.record_lock(_payment_key(snapshot.external_id)):
                if await self.store.get_payment_by_external_id(snapshot.external_id) is not None:
                    continue
                try:
                    await self.store.create_payment(
                        external_payment_id=snapshot.external_id,
                        amount_minor_units=snapshot.amount_minor_units,
                        currency=snapshot.currency,
                        status=snapshot.status,
                        is_live_mode=context.is_live,
                        description=snapshot.description,
                        customer_email=snapshot.customer_email,
                        card_last4=snapshot.card_last4,
                        payment_method_brand=snapshot.payment_method_brand,
                        provider_fee_minor_units=snapshot.fee_minor_units,
                    )
                except DuplicateRecordError:
                    continue
                result.payments_created += 1

        async for snapshot in self._iterate(gateway.list_refunds(self.sync_page_size)):
            parent_id = snapshot.external_payment_id
            if not parent_id:
                logger.debug(f"Sync skipped refund {snapshot.external_refund_id} with no payment")
                result.refunds_skipped += 1
                continue
            async with self.store.record_lock(_payment_key(parent_id)):
                async with self.store.record_lock(_refund_key(snapshot.external_refund_id)):
                    if await self.store.get_refund_by_external_id(snapshot.external_refund_id) is not None:
                        continue
                    payment = await self.store.get_payment_by_external_id(parent_id)
                    if payment is None or payment.is_live_mode != context.is_live:
                        logger.debug(
                            f"Sync skipped refund {snapshot.external_refund_id} of unknown "
                            f"payment {parent_id}"
                        )
                        result.refunds_skipped += 1
                        continue
                    payment = await self._settle_refund_parent(payment)
                    if payment is None:
                        result.refunds_skipped += 1
                        continue
                    _, created = await self._store_refund(payment, snapshot)
                    if created:
                        result.refunds_created += 1

        logger.info(
            f"Historical sync in {context.name.value} mode complete: "
            f"{result.payments_created} payments, {result.refunds_created} refunds created, "
            f"{result.refunds_skipped} refunds skipped"
        )
        return result


def build_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    simulator: Optional[SimulatedProvider] = None,
) -> ReconciliationService:
    """Wire a ReconciliationService from settings and a session factory."""
    modes = ModeState(settings.credentials_by_mode(), initial=settings.default_mode)
    return ReconciliationService(
        store=LedgerStore(session_factory),
        modes=modes,
        gateway_factory=get_gateway_factory(settings.provider, simulator),
        provider_timeout=settings.provider_timeout,
        sync_page_size=settings.sync_page_size,
    )
