"""
Exception classes for the payment verification engine.

Every exception carries:
- an error code (for the conversational layer to branch on)
- a user message (safe to show to customers)
- a retryable flag (read by the job orchestrator)

Validation and state errors are surfaced to the caller and never retried.
Extraction errors are transient and retried by the owning queue.
"""

from typing import Any, Dict, Optional


class PaymentEngineError(Exception):
    """Base exception for all payment engine errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str,
        user_message: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.user_message = user_message or "We could not process your payment. Please try again."
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Flat structured form, logged when a job fails on this error."""
        return {
            "error_code": self.error_code,
            "error_type": self.__class__.__name__,
            "retryable": self.retryable,
            "user_message": self.user_message,
            **self.metadata,
        }


# ============================================================================
# NOT FOUND
# ============================================================================

class NotFoundError(PaymentEngineError):
    """An order or payment could not be resolved."""


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str, **kwargs: Any):
        super().__init__(
            message=f"Order with ID {order_id} not found",
            error_code="order_not_found",
            user_message="We could not find that order.",
            order_id=order_id,
            **kwargs,
        )


class PaymentNotFoundError(NotFoundError):
    def __init__(self, lookup: str, **kwargs: Any):
        super().__init__(
            message=f"Payment not found: {lookup}",
            error_code="payment_not_found",
            user_message="We could not find a payment matching those details.",
            lookup=lookup,
            **kwargs,
        )


# ============================================================================
# INVALID STATE
# ============================================================================

class InvalidStateError(PaymentEngineError):
    """The requested operation is not valid for the current state."""


class OrderNotPayableError(InvalidStateError):
    """Order is not pending or confirmed."""

    def __init__(self, order_id: str, status: str, **kwargs: Any):
        super().__init__(
            message=f"Order {order_id} is not in a payable state. Current status: {status}",
            error_code="order_not_payable",
            user_message="This order can no longer be paid for.",
            order_id=order_id,
            status=status,
            **kwargs,
        )


class InvalidTransitionError(InvalidStateError):
    """Payment status transition not allowed by the state machine."""

    def __init__(self, payment_id: str, from_status: str, to_status: str, **kwargs: Any):
        super().__init__(
            message=f"Payment {payment_id} cannot move from {from_status} to {to_status}",
            error_code="invalid_payment_transition",
            user_message="This payment cannot be updated in its current state.",
            payment_id=payment_id,
            from_status=from_status,
            to_status=to_status,
            **kwargs,
        )
        self.from_status = from_status
        self.to_status = to_status


class StaleStateError(InvalidStateError):
    """
    A conditional status update matched zero rows.

    Another writer changed the payment between read and write.
    """

    def __init__(self, payment_id: str, expected_status: str, to_status: str, **kwargs: Any):
        super().__init__(
            message=(
                f"Payment {payment_id} was no longer {expected_status} "
                f"when moving to {to_status}"
            ),
            error_code="stale_payment_state",
            user_message="This payment was updated by another request.",
            payment_id=payment_id,
            expected_status=expected_status,
            to_status=to_status,
            **kwargs,
        )
        self.expected_status = expected_status
        self.to_status = to_status


# ============================================================================
# REFERENCE / EXTRACTION
# ============================================================================

class ReferenceExhaustedError(PaymentEngineError):
    """
    No unique payment reference found within the attempt bound.

    Repeated collisions point at a broken uniqueness index, so this is fatal.
    """

    def __init__(self, order_id: str, attempts: int, **kwargs: Any):
        super().__init__(
            message=(
                f"Failed to generate unique payment reference for order {order_id} "
                f"after {attempts} attempts"
            ),
            error_code="reference_exhausted",
            order_id=order_id,
            attempts=attempts,
            **kwargs,
        )


class ExtractionFailedError(PaymentEngineError):
    """OCR provider call failed. Transient: retried by the job orchestrator."""

    retryable = True

    def __init__(self, provider: str, reason: str, **kwargs: Any):
        super().__init__(
            message=f"OCR processing failed ({provider}): {reason}",
            error_code="extraction_failed",
            user_message="We could not read your receipt right now. We will try again shortly.",
            provider=provider,
            **kwargs,
        )
        self.provider = provider


class ReceiptNotAllowedError(InvalidStateError):
    """Receipts are only issued for verified payments."""

    def __init__(self, payment_id: str, status: str, **kwargs: Any):
        super().__init__(
            message=f"Receipt can only be generated for verified payments ({payment_id} is {status})",
            error_code="receipt_requires_verified_payment",
            user_message="A receipt is available once your payment has been verified.",
            payment_id=payment_id,
            status=status,
            **kwargs,
        )


class UnsupportedReceiptFormatError(PaymentEngineError):
    def __init__(self, fmt: str, **kwargs: Any):
        super().__init__(
            message=f"No receipt renderer for format: {fmt}",
            error_code="unsupported_receipt_format",
            fmt=fmt,
            **kwargs,
        )
