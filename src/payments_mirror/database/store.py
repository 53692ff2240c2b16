"""Ledger store: the only component that mutates payment, refund and event rows."""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import DuplicateRecordError, NotFoundError
from .records import NotificationEventRecord, PaymentRecord, RefundRecord
from .repository import (
    NotificationEventRepository,
    PaymentRepository,
    RefundRepository,
)

logger = logging.getLogger(__name__)


class LedgerStore:
    """
    Durable keyed store of payments, refunds and notification events.

    Each method runs in its own transaction that commits before the method
    returns. Results are pydantic copies of the committed rows.

    Example:
        store = LedgerStore(db_manager.session_factory)
        payment = await store.create_payment(
            external_payment_id="pi_123",
            amount_minor_units=1500,
            currency="gbp",
            status="requires_payment_method",
            is_live_mode=False,
        )
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def record_lock(self, key: str) -> asyncio.Lock:
        """Return the lock guarding read-modify-write sequences on ``key``.

        The same lock object is handed out for as long as anyone holds it.
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # Payments

    async def create_payment(self, **fields: Any) -> PaymentRecord:
        """Insert a payment row.

        Raises:
            DuplicateRecordError: If the external payment id already exists.
        """
        try:
            async with self._transaction() as session:
                payment = await PaymentRepository(session).create(**fields)
                return PaymentRecord.model_validate(payment)
        except IntegrityError as e:
            raise DuplicateRecordError(
                f"Payment {fields.get('external_payment_id')!r} already exists"
            ) from e

    async def get_payment_by_external_id(self, external_payment_id: str) -> Optional[PaymentRecord]:
        async with self._transaction() as session:
            payment = await PaymentRepository(session).get_by_external_id(external_payment_id)
            return PaymentRecord.model_validate(payment) if payment else None

    async def update_payment(self, payment_id: int, changes: Dict[str, Any]) -> PaymentRecord:
        """Apply ``changes`` to a payment row.

        Args:
            payment_id: Local id of the payment.
            changes: Column name to new value.

        Returns:
            The updated payment.

        Raises:
            NotFoundError: If no payment has this id.
            ValueError: If a change targets an immutable or unknown column.
        """
        async with self._transaction() as session:
            repo = PaymentRepository(session)
            payment = await repo.get_by_id(payment_id)
            if payment is None:
                raise NotFoundError("Payment", payment_id)
            payment = await repo.update(payment, changes)
            return PaymentRecord.model_validate(payment)

    async def list_payments(
        self,
        limit: int = 50,
        offset: int = 0,
        is_live_mode: Optional[bool] = None,
    ) -> List[PaymentRecord]:
        async with self._transaction() as session:
            payments = await PaymentRepository(session).list(limit, offset, is_live_mode)
            return [PaymentRecord.model_validate(p) for p in payments]

    async def list_abandoned_payments(self, is_live_mode: bool) -> List[PaymentRecord]:
        async with self._transaction() as session:
            payments = await PaymentRepository(session).list_abandoned(is_live_mode)
            return [PaymentRecord.model_validate(p) for p in payments]

    async def delete_abandoned_payment(self, payment_id: int) -> bool:
        """Delete a payment that still awaits a payment method and has no refunds.

        Returns:
            False if the payment is gone or no longer abandoned.
        """
        async with self._transaction() as session:
            return await PaymentRepository(session).delete_if_abandoned(payment_id)

    # Refunds

    async def create_refund(self, **fields: Any) -> RefundRecord:
        """Insert a refund row under an existing payment.

        ``is_live_mode`` and ``external_payment_id`` are copied from the parent
        payment when not given.

        Raises:
            NotFoundError: If ``payment_id`` does not reference a payment.
            DuplicateRecordError: If the external refund id already exists.
        """
        try:
            async with self._transaction() as session:
                payment = await PaymentRepository(session).get_by_id(fields["payment_id"])
                if payment is None:
                    raise NotFoundError("Payment", fields["payment_id"])
                fields.setdefault("is_live_mode", payment.is_live_mode)
                fields.setdefault("external_payment_id", payment.external_payment_id)
                refund = await RefundRepository(session).create(**fields)
                return RefundRecord.model_validate(refund)
        except IntegrityError as e:
            raise DuplicateRecordError(
                f"Refund {fields.get('external_refund_id')!r} already exists"
            ) from e

    async def get_refund_by_external_id(self, external_refund_id: str) -> Optional[RefundRecord]:
        async with self._transaction() as session:
            refund = await RefundRepository(session).get_by_external_id(external_refund_id)
            return RefundRecord.model_validate(refund) if refund else None

    async def get_refunds_for_payment(self, payment_id: int) -> List[RefundRecord]:
        async with self._transaction() as session:
            refunds = await RefundRepository(session).list_for_payment(payment_id)
            return [RefundRecord.model_validate(r) for r in refunds]

    async def get_committed_refund_total(self, payment_id: int) -> int:
        """Total of succeeded and in-flight refunds against a payment."""
        async with self._transaction() as session:
            return await RefundRepository(session).committed_total(payment_id)

    async def update_refund(self, refund_id: int, changes: Dict[str, Any]) -> RefundRecord:
        """Apply ``changes`` to a refund row.

        Raises:
            NotFoundError: If no refund has this id.
            ValueError: If a change targets an immutable or unknown column.
        """
        async with self._transaction() as session:
            repo = RefundRepository(session)
            refund = await repo.get_by_id(refund_id)
            if refund is None:
                raise NotFoundError("Refund", refund_id)
            refund = await repo.update(refund, changes)
            return RefundRecord.model_validate(refund)

    async def list_refunds(
        self,
        limit: int = 50,
        offset: int = 0,
        is_live_mode: Optional[bool] = None,
    ) -> List[RefundRecord]:
        async with self._transaction() as session:
            refunds = await RefundRepository(session).list(limit, offset, is_live_mode)
            return [RefundRecord.model_validate(r) for r in refunds]

    # Notification events

    async def create_event(self, **fields: Any) -> Optional[NotificationEventRecord]:
        """Record a notification event.

        Returns:
            The new event, or None if the external event id was already recorded.
        """
        try:
            async with self._transaction() as session:
                repo = NotificationEventRepository(session)
                if await repo.get_by_external_id(fields["external_event_id"]) is not None:
                    return None
                event = await repo.create(**fields)
                return NotificationEventRecord.model_validate(event)
        except IntegrityError:
            logger.info(f"Event {fields['external_event_id']} recorded concurrently")
            return None

    async def get_event(self, external_event_id: str) -> Optional[NotificationEventRecord]:
        async with self._transaction() as session:
            event = await NotificationEventRepository(session).get_by_external_id(external_event_id)
            return NotificationEventRecord.model_validate(event) if event else None

    async def mark_event_processed(self, external_event_id: str) -> NotificationEventRecord:
        """Flag an event as fully applied.

        Raises:
            NotFoundError: If the event was never recorded.
        """
        async with self._transaction() as session:
            repo = NotificationEventRepository(session)
            event = await repo.get_by_external_id(external_event_id)
            if event is None:
                raise NotFoundError("Event", external_event_id)
            event = await repo.mark_processed(event)
            return NotificationEventRecord.model_validate(event)
