"""
Order, payment and receipt stores.

Each call opens its own short-lived session so concurrent workers never
share one. Every payment status change is a single conditional UPDATE:

    UPDATE payments SET status = :new ... WHERE id = :id AND status = :expected

Zero matched rows means another writer got there first (StaleStateError).
"""
import uuid
from decimal import Decimal
from typing import Any, List, Optional

import structlog
from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from payment_verification.core.exceptions import StaleStateError
from payment_verification.database.models import (
    Order,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Receipt,
)

logger = structlog.get_logger(__name__)


def _as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class OrderRepository:
    """Read-only access to orders owned by the ordering flow."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_by_id(self, order_id: str | uuid.UUID) -> Optional[Order]:
        try:
            key = _as_uuid(order_id)
        except ValueError:
            return None
        async with self._session_factory() as db:
            return await db.get(Order, key)

    async def find_by_id_with_items(self, order_id: str | uuid.UUID) -> Optional[Order]:
        """Load an order together with its line items and customer."""
        stmt = (
            select(Order)
            .where(Order.id == _as_uuid(order_id))
            .options(selectinload(Order.items), selectinload(Order.customer))
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()


class PaymentRepository:
    """Payment store with compare-and-swap status updates."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(
        self,
        order_id: str | uuid.UUID,
        amount: Decimal,
        payment_method: PaymentMethod | str,
        payment_reference: Optional[str] = None,
        external_transaction_id: Optional[str] = None,
    ) -> Payment:
        """
        Insert a pending payment.

        Raises:
            IntegrityError: If the reference is already taken
        """
        payment = Payment(
            id=uuid.uuid4(),
            order_id=_as_uuid(order_id),
            amount=amount,
            payment_method=PaymentMethod(payment_method).value,
            payment_reference=payment_reference,
            external_transaction_id=external_transaction_id,
            status=PaymentStatus.PENDING.value,
        )
        async with self._session_factory() as db:
            async with db.begin():
                db.add(payment)

        logger.info(
            "payment_record_created",
            payment_id=str(payment.id),
            order_id=str(payment.order_id),
            payment_reference=payment_reference,
        )
        return payment

    async def get_by_id(self, payment_id: str | uuid.UUID) -> Optional[Payment]:
        try:
            key = _as_uuid(payment_id)
        except ValueError:
            return None
        async with self._session_factory() as db:
            return await db.get(Payment, key)

    async def get_by_reference(self, payment_reference: str) -> Optional[Payment]:
        return await self._first(Payment.payment_reference == payment_reference)

    async def get_by_external_transaction_id(
        self, external_transaction_id: str
    ) -> Optional[Payment]:
        return await self._first(Payment.external_transaction_id == external_transaction_id)

    async def find_by_order_id(self, order_id: str | uuid.UUID) -> List[Payment]:
        """All payments for an order, newest first."""
        stmt = (
            select(Payment)
            .where(Payment.order_id == _as_uuid(order_id))
            .order_by(Payment.created_at.desc())
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def reference_exists(self, payment_reference: str) -> bool:
        stmt = select(exists().where(Payment.payment_reference == payment_reference))
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return bool(result.scalar())

    async def transition(
        self,
        payment_id: str | uuid.UUID,
        expected_status: PaymentStatus,
        new_status: PaymentStatus,
        **values: Any,
    ) -> Payment:
        """
        Move a payment from expected_status to new_status atomically.

        Args:
            payment_id: Payment ID
            expected_status: Status the row must still have
            new_status: Status to write
            **values: Extra columns to write in the same statement

        Returns:
            Payment: The updated row

        Raises:
            StaleStateError: If the row no longer has expected_status
        """
        key = _as_uuid(payment_id)
        stmt = (
            update(Payment)
            .where(Payment.id == key, Payment.status == expected_status.value)
            .values(status=new_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(stmt)
                if result.rowcount != 1:
                    raise StaleStateError(str(key), expected_status.value, new_status.value)
            payment = await db.get(Payment, key, populate_existing=True)

        logger.info(
            "payment_status_updated",
            payment_id=str(key),
            from_status=expected_status.value,
            to_status=new_status.value,
        )
        return payment

    async def _first(self, *criteria: Any) -> Optional[Payment]:
        stmt = select(Payment).where(*criteria).limit(1)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()


class ReceiptRepository:
    """Persistent payment -> receipt index."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_by_payment_id(self, payment_id: str | uuid.UUID) -> Optional[Receipt]:
        try:
            key = _as_uuid(payment_id)
        except ValueError:
            return None
        stmt = select(Receipt).where(Receipt.payment_id == key)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def save(self, receipt: Receipt) -> Receipt:
        """
        Store a receipt, keeping the first one written for a payment.

        A duplicate job run that loses the insert race gets the stored receipt back.
        """
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    db.add(receipt)
        except IntegrityError:
            existing = await self.get_by_payment_id(receipt.payment_id)
            if existing is None:
                raise
            logger.info(
                "receipt_already_stored",
                payment_id=str(receipt.payment_id),
                receipt_id=existing.id,
            )
            return existing

        logger.info(
            "receipt_stored",
            receipt_id=receipt.id,
            payment_id=str(receipt.payment_id),
        )
        return receipt
