"""Repository layer for ledger persistence operations."""

import logging
from typing import Optional, Dict, Any, List

from sqlalchemy import select, func, and_, delete
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Payment,
    PaymentStatus,
    Refund,
    NotificationEvent,
    BALANCE_CONSUMING_REFUND_STATUSES,
    utcnow,
)

logger = logging.getLogger(__name__)

# Columns that may change after insert. Everything else (ids, external ids,
# is_live_mode, created_at) is fixed for the lifetime of the row.
PAYMENT_MUTABLE_FIELDS = frozenset([
    "status",
    "customer_email",
    "description",
    "card_last4",
    "payment_method_brand",
    "provider_fee_minor_units",
])

REFUND_MUTABLE_FIELDS = frozenset([
    "status",
    "amount_minor_units",
    "reason",
    "notes",
])


def _check_changes(kind: str, changes: Dict[str, Any], allowed: frozenset) -> None:
    rejected = sorted(set(changes) - allowed)
    if rejected:
        raise ValueError(f"Cannot update {kind} field(s): {', '.join(rejected)}")


class PaymentRepository:
    """Repository for Payment CRUD operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        external_payment_id: str,
        amount_minor_units: int,
        currency: str,
        status: str,
        is_live_mode: bool,
        customer_email: Optional[str] = None,
        description: Optional[str] = None,
        card_last4: Optional[str] = None,
        payment_method_brand: Optional[str] = None,
        provider_fee_minor_units: Optional[int] = None,
    ) -> Payment:
        """Create a new payment record.

        Args:
            external_payment_id: Provider payment intent id.
            amount_minor_units: Amount in minor units.
            currency: Three-letter currency code.
            status: Provider-reported status.
            is_live_mode: Mode the intent was created under.
            customer_email: Optional customer email.
            description: Optional description.
            card_last4: Optional card last four digits.
            payment_method_brand: Optional card brand.
            provider_fee_minor_units: Optional provider fee.

        Returns:
            Created Payment instance.
        """
        now = utcnow()
        payment = Payment(
            external_payment_id=external_payment_id,
            amount_minor_units=amount_minor_units,
            currency=currency.lower(),
            status=status,
            is_live_mode=is_live_mode,
            customer_email=customer_email,
            description=description,
            card_last4=card_last4,
            payment_method_brand=payment_method_brand,
            provider_fee_minor_units=provider_fee_minor_units,
            created_at=now,
            updated_at=now,
        )
        self.session.add(payment)
        await self.session.flush()

        logger.info(
            f"Created payment {payment.id} ({external_payment_id}) with status {status}, "
            f"live={is_live_mode}"
        )
        return payment

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.id == payment_id)
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_payment_id: str) -> Optional[Payment]:
        """Get a payment by provider payment intent id.

        Args:
            external_payment_id: Provider's identifier.

        Returns:
            Payment instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(Payment).where(Payment.external_payment_id == external_payment_id)
        )
        return result.scalar_one_or_none()

    async def update(self, payment: Payment, changes: Dict[str, Any]) -> Payment:
        """Apply ``changes`` and bump ``updated_at``.

        Raises:
            ValueError: If ``changes`` touches an immutable or unknown column.
        """
        _check_changes("payment", changes, PAYMENT_MUTABLE_FIELDS)
        previous_status = payment.status
        for name, value in changes.items():
            setattr(payment, name, value)
        payment.updated_at = utcnow()
        await self.session.flush()

        if payment.status != previous_status:
            logger.info(f"Payment {payment.id} status {previous_status} -> {payment.status}")
        return payment

    async def list(
        self,
        limit: int = 50,
        offset: int = 0,
        is_live_mode: Optional[bool] = None,
    ) -> List[Payment]:
        """List payments newest first, ties broken by descending id.

        Args:
            limit: Maximum number of results.
            offset: Offset for pagination.
            is_live_mode: Restrict to one mode when given.

        Returns:
            List of Payment instances.
        """
        query = select(Payment)
        if is_live_mode is not None:
            query = query.where(Payment.is_live_mode == is_live_mode)
        result = await self.session.execute(
            query
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    @staticmethod
    def _abandoned():
        return and_(
            Payment.status == PaymentStatus.REQUIRES_PAYMENT_METHOD.value,
            ~Payment.refunds.any(),
        )

    async def list_abandoned(self, is_live_mode: bool) -> List[Payment]:
        """Payments of one mode still awaiting a payment method and without refunds."""
        result = await self.session.execute(
            select(Payment)
            .where(Payment.is_live_mode == is_live_mode, self._abandoned())
            .order_by(Payment.id)
        )
        return list(result.scalars().all())

    async def delete_if_abandoned(self, payment_id: int) -> bool:
        """Delete a payment only if it is still abandoned.

        Returns:
            True if the row was deleted.
        """
        result = await self.session.execute(
            delete(Payment)
            .where(Payment.id == payment_id, self._abandoned())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Deleted abandoned payment {payment_id}")
        return bool(result.rowcount)


class RefundRepository:
    """Repository for Refund CRUD operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        external_refund_id: str,
        payment_id: int,
        external_payment_id: str,
        amount_minor_units: int,
        currency: str,
        reason: str,
        status: str,
        is_live_mode: bool,
        notes: Optional[str] = None,
    ) -> Refund:
        """Create a new refund record.

        Returns:
            Created Refund instance.
        """
        now = utcnow()
        refund = Refund(
            external_refund_id=external_refund_id,
            payment_id=payment_id,
            external_payment_id=external_payment_id,
            amount_minor_units=amount_minor_units,
            currency=currency.lower(),
            reason=reason,
            status=status,
            notes=notes,
            is_live_mode=is_live_mode,
            created_at=now,
            updated_at=now,
        )
        self.session.add(refund)
        await self.session.flush()

        logger.info(
            f"Created refund {refund.id} ({external_refund_id}) of {amount_minor_units} "
            f"on payment {payment_id} with status {status}"
        )
        return refund

    async def get_by_id(self, refund_id: int) -> Optional[Refund]:
        result = await self.session.execute(
            select(Refund).where(Refund.id == refund_id)
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_refund_id: str) -> Optional[Refund]:
        result = await self.session.execute(
            select(Refund).where(Refund.external_refund_id == external_refund_id)
        )
        return result.scalar_one_or_none()

    async def list_for_payment(self, payment_id: int) -> List[Refund]:
        """Refunds of one payment, oldest first."""
        result = await self.session.execute(
            select(Refund)
            .where(Refund.payment_id == payment_id)
            .order_by(Refund.created_at, Refund.id)
        )
        return list(result.scalars().all())

    async def committed_total(self, payment_id: int) -> int:
        """Sum of refund amounts that count against the payment's balance."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(Refund.amount_minor_units), 0)).where(
                and_(
                    Refund.payment_id == payment_id,
                    Refund.status.in_(BALANCE_CONSUMING_REFUND_STATUSES),
                )
            )
        )
        return int(result.scalar_one())

    async def update(self, refund: Refund, changes: Dict[str, Any]) -> Refund:
        """Apply ``changes`` and bump ``updated_at``.

        Raises:
            ValueError: If ``changes`` touches an immutable or unknown column.
        """
        _check_changes("refund", changes, REFUND_MUTABLE_FIELDS)
        previous_status = refund.status
        for name, value in changes.items():
            setattr(refund, name, value)
        refund.updated_at = utcnow()
        await self.session.flush()

        if refund.status != previous_status:
            logger.info(f"Refund {refund.id} status {previous_status} -> {refund.status}")
        return refund

    async def list(
        self,
        limit: int = 50,
        offset: int = 0,
        is_live_mode: Optional[bool] = None,
    ) -> List[Refund]:
        """List refunds newest first, ties broken by descending id."""
        query = select(Refund)
        if is_live_mode is not None:
            query = query.where(Refund.is_live_mode == is_live_mode)
        result = await self.session.execute(
            query
            .order_by(Refund.created_at.desc(), Refund.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())


class NotificationEventRepository:
    """Repository for NotificationEvent operations. Events are never deleted."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        external_event_id: str,
        event_type: str,
        raw_payload: str,
        is_live_mode: bool,
        processed: bool = False,
    ) -> NotificationEvent:
        event = NotificationEvent(
            external_event_id=external_event_id,
            event_type=event_type,
            raw_payload=raw_payload,
            is_live_mode=is_live_mode,
            processed=processed,
            created_at=utcnow(),
        )
        self.session.add(event)
        await self.session.flush()

        logger.debug(f"Recorded notification event {external_event_id} ({event_type})")
        return event

    async def get_by_external_id(self, external_event_id: str) -> Optional[NotificationEvent]:
        result = await self.session.execute(
            select(NotificationEvent).where(
                NotificationEvent.external_event_id == external_event_id
            )
        )
        return result.scalar_one_or_none()

    async def mark_processed(self, event: NotificationEvent) -> NotificationEvent:
        event.processed = True
        await self.session.flush()
        return event
