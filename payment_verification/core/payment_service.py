"""
Payment lifecycle manager.

Owns the payment state machine:

    pending  -> verified | failed
    verified -> refunded

failed and refunded are terminal. Every transition is a compare-and-swap on
the status column, so two concurrent verifications of the same payment can
never both succeed; the loser gets a rejection that reflects the winner.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError

from payment_verification.config import PaymentConfig
from payment_verification.core.exceptions import (
    InvalidTransitionError,
    OrderNotFoundError,
    OrderNotPayableError,
    PaymentNotFoundError,
    ReceiptNotAllowedError,
    ReferenceExhaustedError,
    StaleStateError,
    UnsupportedReceiptFormatError,
)
from payment_verification.core.receipts import (
    ReceiptData,
    ReceiptLineItem,
    ReceiptRenderer,
    TextReceiptRenderer,
    generate_receipt_id,
    generate_receipt_number,
)
from payment_verification.core.reference import ReferenceGenerator
from payment_verification.core.verification import ExpectedPayment
from payment_verification.database.models import (
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Receipt,
    utcnow,
)
from payment_verification.database.repositories import (
    OrderRepository,
    PaymentRepository,
    ReceiptRepository,
)
from payment_verification.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.VERIFIED, PaymentStatus.FAILED}),
    PaymentStatus.VERIFIED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

PAYABLE_ORDER_STATUSES = frozenset({OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value})

# status -> (reason code, message) for payments that can no longer be verified
_NOT_VERIFIABLE: Dict[str, Tuple[str, str]] = {
    PaymentStatus.VERIFIED.value: ("already_verified", "Payment is already verified"),
    PaymentStatus.FAILED.value: ("payment_failed", "Cannot verify a failed payment"),
    PaymentStatus.REFUNDED.value: ("payment_refunded", "Cannot verify a refunded payment"),
}


def can_transition(from_status: PaymentStatus | str, to_status: PaymentStatus | str) -> bool:
    return PaymentStatus(to_status) in ALLOWED_TRANSITIONS[PaymentStatus(from_status)]


@dataclass(frozen=True)
class PaymentInstructions:
    """What the customer is told to do to pay for an order."""

    order_id: str
    payment_reference: str
    amount: Decimal
    payment_method: str
    account_details: Dict[str, Any]
    expires_at: datetime
    instructions: Tuple[str, ...]


@dataclass(frozen=True)
class PaymentVerificationRequest:
    """
    A claim that a payment was made.

    At least one of payment_id, payment_reference or external_transaction_id
    must be set; they are tried in that order.
    """

    payment_id: Optional[str] = None
    payment_reference: Optional[str] = None
    external_transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    verification_data: Mapping[str, Any] = field(default_factory=dict)

    def lookup_key(self) -> str:
        return (
            self.payment_id
            or self.payment_reference
            or self.external_transaction_id
            or "<no identifier>"
        )


@dataclass(frozen=True)
class PaymentVerificationResult:
    success: bool
    payment: Optional[Payment]
    message: str
    reason: str
    details: Mapping[str, Any] = field(default_factory=dict)


class PaymentService:
    """
    Payment lifecycle operations.

    Business details, bank account and card processor come from the
    PaymentConfig passed in; nothing is read from module-level state.
    """

    def __init__(
        self,
        orders: OrderRepository,
        payments: PaymentRepository,
        receipts: ReceiptRepository,
        config: PaymentConfig,
        reference_generator: Optional[ReferenceGenerator] = None,
        renderers: Optional[Mapping[str, ReceiptRenderer]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orders = orders
        self.payments = payments
        self.receipts = receipts
        self.config = config
        self.reference_generator = reference_generator or ReferenceGenerator(payments)
        self.renderers: Dict[str, ReceiptRenderer] = dict(
            renderers or {TextReceiptRenderer.format: TextReceiptRenderer()}
        )
        self._clock = clock

    # ------------------------------------------------------------------
    # Instructions and creation
    # ------------------------------------------------------------------

    def calculate_expiry(self, timeout_minutes: Optional[int] = None) -> datetime:
        minutes = timeout_minutes if timeout_minutes is not None else self.config.timeout_minutes
        return self._clock() + timedelta(minutes=minutes)

    async def issue_instructions(
        self, order_id: str, payment_method: PaymentMethod | str
    ) -> PaymentInstructions:
        """
        Build payment instructions for an order.

        Allocates a reference but writes nothing; the payment row is created
        later by create_payment or on first verification.

        Raises:
            OrderNotFoundError: If the order does not exist
            OrderNotPayableError: If the order is not pending or confirmed
            ReferenceExhaustedError: If no unique reference could be allocated
        """
        method = PaymentMethod(payment_method)
        order = await self.orders.find_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))
        if order.status not in PAYABLE_ORDER_STATUSES:
            raise OrderNotPayableError(str(order_id), order.status)

        reference = await self.reference_generator.generate(str(order.id))
        amount = Decimal(order.total_amount)
        account_details = self._account_details(method)

        instructions = PaymentInstructions(
            order_id=str(order.id),
            payment_reference=reference,
            amount=amount,
            payment_method=method.value,
            account_details=account_details,
            expires_at=self.calculate_expiry(),
            instructions=self._instruction_lines(method, amount, reference),
        )
        logger.info(
            "payment_instructions_issued",
            order_id=str(order.id),
            payment_method=method.value,
            payment_reference=reference,
            expires_at=instructions.expires_at.isoformat(),
        )
        return instructions

    def _account_details(self, method: PaymentMethod) -> Dict[str, Any]:
        if method is PaymentMethod.BANK_TRANSFER:
            return {"bank_transfer": self.config.bank_account.model_dump()}
        if method is PaymentMethod.CARD:
            return {"card": self.config.card_processor.model_dump()}
        return {}

    def _instruction_lines(
        self, method: PaymentMethod, amount: Decimal, reference: str
    ) -> Tuple[str, ...]:
        display_amount = f"{self.config.currency_symbol}{amount:,.2f}"

        if method is PaymentMethod.BANK_TRANSFER:
            bank = self.config.bank_account
            lines = [
                f"Please transfer {display_amount} to the following bank account:",
                f"Bank: {bank.bank_name}",
                f"Account Name: {bank.account_name}",
                f"Account Number: {bank.account_number}",
            ]
            if bank.routing_number:
                lines.append(f"Routing Number: {bank.routing_number}")
            lines.extend(
                [
                    f"Payment Reference: {reference}",
                    "IMPORTANT: Include the payment reference in your transfer description.",
                ]
            )
            return tuple(lines)

        if method is PaymentMethod.CARD:
            return (
                f"Please complete your card payment of {display_amount}:",
                f"Payment Reference: {reference}",
                "You will be redirected to our secure payment processor.",
            )

        return (
            f"Payment of {display_amount} required.",
            f"Payment Reference: {reference}",
        )

    async def create_payment(
        self,
        order_id: str,
        payment_method: PaymentMethod | str,
        external_transaction_id: Optional[str] = None,
        payment_reference: Optional[str] = None,
    ) -> Payment:
        """
        Create a pending payment for an order, or return the one already pending.

        payment_reference is the reference handed out by issue_instructions;
        it is stored as given unless another payment already holds it, in
        which case a fresh one is generated.

        Raises:
            OrderNotFoundError: If the order does not exist
            ReferenceExhaustedError: If every reference candidate collided
        """
        method = PaymentMethod(payment_method)
        order = await self.orders.find_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))

        for existing in await self.payments.find_by_order_id(order.id):
            if existing.status == PaymentStatus.PENDING.value:
                logger.info(
                    "pending_payment_reused",
                    order_id=str(order.id),
                    payment_id=str(existing.id),
                )
                return existing

        max_attempts = self.reference_generator.max_attempts
        for attempt in range(1, max_attempts + 1):
            if attempt == 1 and payment_reference:
                reference = payment_reference
            else:
                reference = await self.reference_generator.generate(str(order.id))
            try:
                payment = await self.payments.create(
                    order_id=order.id,
                    amount=Decimal(order.total_amount),
                    payment_method=method,
                    payment_reference=reference,
                    external_transaction_id=external_transaction_id,
                )
            except IntegrityError:
                # Only a reference clash is ours to retry
                if not await self.payments.reference_exists(reference):
                    raise
                metrics.record_reference_collision()
                logger.warning(
                    "payment_reference_taken_at_insert",
                    order_id=str(order.id),
                    payment_reference=reference,
                    attempt=attempt,
                )
                continue

            logger.info(
                "payment_created",
                payment_id=str(payment.id),
                order_id=str(order.id),
                amount=str(payment.amount),
                payment_method=method.value,
                payment_reference=reference,
            )
            return payment

        raise ReferenceExhaustedError(str(order.id), max_attempts)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_payment(self, payment_id: str) -> Payment:
        payment = await self.payments.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment

    async def get_payment_by_reference(self, payment_reference: str) -> Optional[Payment]:
        return await self.payments.get_by_reference(payment_reference)

    def expected_payment_for(self, payment: Payment) -> ExpectedPayment:
        """What a genuine transfer receipt for this payment should show."""
        return ExpectedPayment(
            reference=payment.payment_reference or "",
            amount=Decimal(payment.amount),
            account_number=self.config.bank_account.account_number,
            bank_name=self.config.bank_account.bank_name,
        )

    async def _find_payment_for_verification(
        self, request: PaymentVerificationRequest
    ) -> Optional[Payment]:
        if request.payment_id:
            payment = await self.payments.get_by_id(request.payment_id)
            if payment is not None:
                return payment
        if request.payment_reference:
            payment = await self.payments.get_by_reference(request.payment_reference)
            if payment is not None:
                return payment
        if request.external_transaction_id:
            return await self.payments.get_by_external_transaction_id(
                request.external_transaction_id
            )
        return None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def verify_payment(
        self, request: PaymentVerificationRequest
    ) -> PaymentVerificationResult:
        """
        Verify a payment.

        Rejections (already verified, failed, refunded, amount mismatch,
        lost race) come back as an unsuccessful result and leave the
        payment untouched.

        Raises:
            PaymentNotFoundError: If no identifier resolves to a payment
        """
        payment = await self._find_payment_for_verification(request)
        if payment is None:
            logger.warning("payment_verification_not_found", lookup=request.lookup_key())
            raise PaymentNotFoundError(request.lookup_key())

        if payment.status in _NOT_VERIFIABLE:
            reason, message = _NOT_VERIFIABLE[payment.status]
            return self._rejected(payment, reason, message)

        if request.amount is not None:
            claimed = Decimal(str(request.amount))
            if claimed != Decimal(payment.amount):
                return self._rejected(
                    payment,
                    "amount_mismatch",
                    f"Payment amount mismatch. Expected {Decimal(payment.amount):.2f}, "
                    f"received {claimed:.2f}",
                )

        values: Dict[str, Any] = {"verified_at": self._clock()}
        if request.external_transaction_id:
            values["external_transaction_id"] = request.external_transaction_id

        try:
            verified = await self.payments.transition(
                payment.id, PaymentStatus.PENDING, PaymentStatus.VERIFIED, **values
            )
        except StaleStateError:
            metrics.record_stale_state(PaymentStatus.VERIFIED.value)
            current = await self.payments.get_by_id(payment.id)
            logger.warning(
                "payment_verification_lost_race",
                payment_id=str(payment.id),
                current_status=current.status if current else None,
            )
            reason, message = _NOT_VERIFIABLE.get(
                current.status if current else "",
                ("stale_state", "Payment was updated by another request"),
            )
            return self._rejected(current or payment, reason, message)

        metrics.record_transition(PaymentStatus.PENDING.value, PaymentStatus.VERIFIED.value)
        logger.info(
            "payment_verified",
            payment_id=str(verified.id),
            order_id=str(verified.order_id),
            payment_reference=verified.payment_reference,
            external_transaction_id=verified.external_transaction_id,
        )
        return PaymentVerificationResult(
            success=True,
            payment=verified,
            message="Payment verified successfully",
            reason="verified",
            details=dict(request.verification_data),
        )

    def _rejected(self, payment: Payment, reason: str, message: str) -> PaymentVerificationResult:
        metrics.record_verification_rejection(reason)
        logger.info(
            "payment_verification_rejected",
            payment_id=str(payment.id),
            status=payment.status,
            reason=reason,
        )
        return PaymentVerificationResult(
            success=False, payment=payment, message=message, reason=reason
        )

    async def mark_failed(self, payment_id: str, reason: str) -> Payment:
        """
        Move a pending payment to failed.

        Raises:
            PaymentNotFoundError: If the payment does not exist
            InvalidTransitionError: If the payment is not pending
            StaleStateError: If the payment changed concurrently
        """
        return await self._transition(
            payment_id, PaymentStatus.FAILED, failure_reason=reason
        )

    async def refund(self, payment_id: str, reason: Optional[str] = None) -> Payment:
        """
        Move a verified payment to refunded.

        verified_at is cleared; it is only ever set on verified payments.

        Raises:
            PaymentNotFoundError: If the payment does not exist
            InvalidTransitionError: If the payment is not verified
            StaleStateError: If the payment changed concurrently
        """
        values: Dict[str, Any] = {"verified_at": None}
        if reason:
            values["failure_reason"] = reason
        return await self._transition(payment_id, PaymentStatus.REFUNDED, **values)

    async def _transition(
        self, payment_id: str, new_status: PaymentStatus, **values: Any
    ) -> Payment:
        payment = await self.get_payment(payment_id)
        current = PaymentStatus(payment.status)
        if not can_transition(current, new_status):
            raise InvalidTransitionError(str(payment.id), current.value, new_status.value)

        try:
            updated = await self.payments.transition(payment.id, current, new_status, **values)
        except StaleStateError:
            metrics.record_stale_state(new_status.value)
            raise

        metrics.record_transition(current.value, new_status.value)
        logger.info(
            f"payment_{new_status.value}",
            payment_id=str(updated.id),
            order_id=str(updated.order_id),
            reason=values.get("failure_reason"),
        )
        return updated

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def generate_receipt(self, payment_id: str, fmt: str = "text") -> Receipt:
        """
        Generate and store the receipt for a verified payment.

        Returns the stored receipt unchanged if one already exists, so a
        re-delivered job never produces a second receipt.

        Raises:
            PaymentNotFoundError: If the payment does not exist
            ReceiptNotAllowedError: If the payment is not verified
            OrderNotFoundError: If the payment's order is gone
            UnsupportedReceiptFormatError: If no renderer handles fmt
        """
        renderer = self.renderers.get(fmt)
        if renderer is None:
            raise UnsupportedReceiptFormatError(fmt)

        payment = await self.get_payment(payment_id)
        if payment.status != PaymentStatus.VERIFIED.value:
            raise ReceiptNotAllowedError(str(payment.id), payment.status)

        existing = await self.receipts.get_by_payment_id(payment.id)
        if existing is not None:
            logger.info(
                "receipt_reused",
                payment_id=str(payment.id),
                receipt_id=existing.id,
            )
            return existing

        order = await self.orders.find_by_id_with_items(payment.order_id)
        if order is None:
            raise OrderNotFoundError(str(payment.order_id))

        data = ReceiptData(
            receipt_id=generate_receipt_id(),
            receipt_number=generate_receipt_number(str(order.id)),
            payment_id=str(payment.id),
            order_id=str(order.id),
            customer_name=order.customer.name if order.customer else None,
            customer_phone=order.customer.phone_number if order.customer else None,
            items=tuple(
                ReceiptLineItem(
                    name=item.product_name or "Unknown Product",
                    quantity=item.quantity,
                    unit_price=Decimal(item.unit_price),
                    total_price=Decimal(item.total_price),
                )
                for item in order.items
            ),
            subtotal=Decimal(order.subtotal_amount),
            tax=Decimal(order.tax_amount),
            total=Decimal(order.total_amount),
            payment_method=payment.payment_method,
            payment_reference=payment.payment_reference or "",
            amount=Decimal(payment.amount),
            verified_at=payment.verified_at,
            business=self.config.business,
            generated_at=self._clock(),
            external_transaction_id=payment.external_transaction_id,
            currency_symbol=self.config.currency_symbol,
        )

        receipt = Receipt(
            id=data.receipt_id,
            receipt_number=data.receipt_number,
            payment_id=payment.id,
            order_id=order.id,
            format=renderer.format,
            content=renderer.render(data),
        )
        stored = await self.receipts.save(receipt)

        logger.info(
            "receipt_generated",
            payment_id=str(payment.id),
            receipt_id=stored.id,
            receipt_number=stored.receipt_number,
        )
        return stored

    async def get_receipt_by_payment_id(self, payment_id: str) -> Optional[Receipt]:
        receipt = await self.receipts.get_by_payment_id(payment_id)
        if receipt is None:
            logger.info("receipt_not_found", payment_id=str(payment_id))
        return receipt
