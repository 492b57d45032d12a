"""
Receipt verification engine.

Turns OCR text from a bank receipt into a confidence-scored verdict against
the payment we expect. Pure and deterministic: same text and expectation,
same result.

Scoring:
    reference found   +40
    amount found      +30
    account found     +20
    success phrase    +10
    failure phrase    -50   (floor at 0)

A receipt is verified only when confidence >= 70, no failure phrase is
present, and both reference and amount matched. Account and phrase matches
can never stand in for a missing reference or amount.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

VERIFICATION_THRESHOLD = 70

REFERENCE_WEIGHT = 40
AMOUNT_WEIGHT = 30
ACCOUNT_WEIGHT = 20
SUCCESS_WEIGHT = 10
FAILURE_PENALTY = 50

PARTIAL_REFERENCE_LENGTH = 8
AMOUNT_TOLERANCE = Decimal("1")

SUCCESS_PHRASES: Tuple[str, ...] = (
    "successful",
    "success",
    "completed",
    "complete",
    "confirmed",
    "confirm",
    "approved",
    "approve",
    "sent",
    "transferred",
    "processed",
    "done",
    "credited",
    "debited",
    "transaction successful",
    "payment successful",
)

FAILURE_PHRASES: Tuple[str, ...] = (
    "failed",
    "failure",
    "declined",
    "rejected",
    "cancelled",
    "canceled",
    "insufficient",
    "error",
    "unsuccessful",
    "not successful",
    "invalid",
    "expired",
    "timeout",
    "unable to process",
)

AMOUNT_PATTERNS: Tuple[re.Pattern[str], ...] = (
    # ₦5,000.00, ₦5000, NGN 5000, Amount: ₦5000, Amount: 5000
    re.compile(r"(?:₦|ngn|naira|amount:?)\s*(\d{1,3}(?:,\d{3})*(?:\.\d{2})?)", re.IGNORECASE),
    # 5,000.00, 5000.00
    re.compile(r"(\d{1,3}(?:,\d{3})*\.\d{2})"),
    # 5,000
    re.compile(r"\b(\d{1,3}(?:,\d{3})*)\b"),
)

EMPTY_TEXT_ISSUE = "No text could be extracted from the image"


@dataclass(frozen=True)
class ExpectedPayment:
    """What a genuine receipt for this payment should show."""

    reference: str
    amount: Decimal
    account_number: str
    bank_name: Optional[str] = None


@dataclass(frozen=True)
class VerificationDetails:
    reference_found: bool
    amount_found: bool
    account_found: bool
    success_found: bool
    extracted_text: str
    issues: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    confidence: int
    details: VerificationDetails

    def to_dict(self) -> dict:
        return {
            "verified": self.verified,
            "confidence": self.confidence,
            "details": {
                "reference_found": self.details.reference_found,
                "amount_found": self.details.amount_found,
                "account_found": self.details.account_found,
                "success_found": self.details.success_found,
                "extracted_text": self.details.extracted_text,
                "issues": list(self.details.issues),
            },
        }


def empty_text_result() -> VerificationResult:
    return VerificationResult(
        verified=False,
        confidence=0,
        details=VerificationDetails(
            reference_found=False,
            amount_found=False,
            account_found=False,
            success_found=False,
            extracted_text="",
            issues=(EMPTY_TEXT_ISSUE,),
        ),
    )


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text.lower())


def find_payment_reference(text: str, reference: str) -> bool:
    """
    Exact match with hyphens and spaces stripped, else the first 8 characters.

    The prefix fallback tolerates OCR dropping characters at the tail.
    """
    normalized_reference = re.sub(r"[-\s]", "", reference.lower())
    normalized_text = re.sub(r"[-\s]", "", text)

    if not normalized_reference:
        return False
    if normalized_reference in normalized_text:
        return True

    if len(normalized_reference) >= PARTIAL_REFERENCE_LENGTH:
        return normalized_reference[:PARTIAL_REFERENCE_LENGTH] in normalized_text

    return False


def amount_forms(amount: Decimal) -> Tuple[str, str, str]:
    """Plain, two-decimal and thousands-grouped renderings of an amount."""
    normalized = amount.normalize()
    if normalized == normalized.to_integral_value():
        normalized = normalized.quantize(Decimal("1"))
    plain = f"{normalized:f}"
    two_decimals = f"{amount:.2f}"
    grouped = f"{normalized:,f}"
    return plain, two_decimals, grouped


def _parse_amount(raw: str) -> Optional[Decimal]:
    try:
        return Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None


def find_amount(text: str, expected_amount: Decimal) -> bool:
    """
    Containment of a known rendering, else any captured number within ±1.

    OCR commonly misreads a trailing digit, hence the tolerance.
    """
    if any(form in text for form in amount_forms(expected_amount)):
        return True

    for pattern in AMOUNT_PATTERNS:
        for match in pattern.finditer(text):
            amount = _parse_amount(match.group(1))
            if amount is not None and abs(amount - expected_amount) <= AMOUNT_TOLERANCE:
                return True

    return False


def find_account_number(text: str, account_number: str) -> bool:
    normalized_account = re.sub(r"\s", "", account_number)
    if not normalized_account:
        return False
    return normalized_account.lower() in re.sub(r"\s", "", text)


def find_success_indicators(text: str) -> bool:
    return any(phrase in text for phrase in SUCCESS_PHRASES)


def find_failure_indicators(text: str) -> bool:
    return any(phrase in text for phrase in FAILURE_PHRASES)


def verify_receipt_text(extracted_text: str, expected: ExpectedPayment) -> VerificationResult:
    """
    Verify extracted receipt text against the expected payment.

    Args:
        extracted_text: Raw OCR output
        expected: Expected payment facts

    Returns:
        VerificationResult: Verdict, confidence and per-check details
    """
    if not extracted_text or not extracted_text.strip():
        return empty_text_result()

    text = normalize_text(extracted_text)
    amount = Decimal(str(expected.amount))
    issues = []

    reference_found = find_payment_reference(text, expected.reference)
    if not reference_found:
        issues.append(f'Payment reference "{expected.reference}" not found')

    amount_found = find_amount(text, amount)
    if not amount_found:
        issues.append(f'Amount "{amount_forms(amount)[0]}" not found')

    account_found = find_account_number(text, expected.account_number)
    if not account_found:
        issues.append(f'Account number "{expected.account_number}" not found')

    success_found = find_success_indicators(text)
    if not success_found:
        issues.append("No success confirmation found in receipt")

    failure_found = find_failure_indicators(text)
    if failure_found:
        issues.append("Receipt shows transaction failure")

    confidence = 0
    if reference_found:
        confidence += REFERENCE_WEIGHT
    if amount_found:
        confidence += AMOUNT_WEIGHT
    if account_found:
        confidence += ACCOUNT_WEIGHT
    if success_found:
        confidence += SUCCESS_WEIGHT
    if failure_found:
        confidence -= FAILURE_PENALTY
    confidence = max(0, confidence)

    verified = (
        confidence >= VERIFICATION_THRESHOLD
        and not failure_found
        and reference_found
        and amount_found
    )

    return VerificationResult(
        verified=verified,
        confidence=confidence,
        details=VerificationDetails(
            reference_found=reference_found,
            amount_found=amount_found,
            account_found=account_found,
            success_found=success_found,
            extracted_text=extracted_text,
            issues=tuple(issues),
        ),
    )


def format_verification_issues(result: VerificationResult) -> str:
    """Numbered issue list for display to the customer."""
    if not result.details.issues:
        return "Receipt verification completed successfully."

    return "\n".join(
        f"{index}. {issue}" for index, issue in enumerate(result.details.issues, start=1)
    )
