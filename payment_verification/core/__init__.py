"""Core payment verification logic."""
from .exceptions import (
    ExtractionFailedError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    OrderNotFoundError,
    OrderNotPayableError,
    PaymentEngineError,
    PaymentNotFoundError,
    ReceiptNotAllowedError,
    ReferenceExhaustedError,
    StaleStateError,
    UnsupportedReceiptFormatError,
)
from .verification import (
    ExpectedPayment,
    VerificationResult,
    format_verification_issues,
    verify_receipt_text,
)

__all__ = [
    "ExpectedPayment",
    "ExtractionFailedError",
    "InvalidStateError",
    "InvalidTransitionError",
    "NotFoundError",
    "OrderNotFoundError",
    "OrderNotPayableError",
    "PaymentEngineError",
    "PaymentNotFoundError",
    "ReceiptNotAllowedError",
    "ReferenceExhaustedError",
    "StaleStateError",
    "UnsupportedReceiptFormatError",
    "VerificationResult",
    "format_verification_issues",
    "verify_receipt_text",
]
