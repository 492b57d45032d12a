"""
Unit tests for the receipt verification engine.
"""
from decimal import Decimal

import pytest

from payment_verification.core.verification import (
    EMPTY_TEXT_ISSUE,
    ExpectedPayment,
    amount_forms,
    find_account_number,
    find_amount,
    find_payment_reference,
    format_verification_issues,
    normalize_text,
    verify_receipt_text,
)

EXPECTED = ExpectedPayment(
    reference="PAY-O123-ABC123-XYZ456",
    amount=Decimal("5000"),
    account_number="1234567890",
)


@pytest.mark.unit
class TestVerifyReceiptText:
    """Test suite for verify_receipt_text."""

    def test_exact_receipt_scores_full_confidence(self) -> None:
        text = (
            "Transfer successful\n"
            "Amount: 5000 (₦5,000.00)\n"
            "Account: 1234567890\n"
            "Reference: PAY-O123-ABC123-XYZ456"
        )

        result = verify_receipt_text(text, EXPECTED)

        assert result.verified is True
        assert result.confidence == 100
        assert result.details.issues == ()

    def test_bank_alert_without_account_is_verified(self) -> None:
        text = (
            "TRANSFER SUCCESSFUL\n"
            "Amount: 5000.00\n"
            "Reference: PAY-O123-ABC123-XYZ456"
        )

        result = verify_receipt_text(text, EXPECTED)

        assert result.verified is True
        assert result.confidence >= 70
        assert result.details.account_found is False

    def test_wrong_reference_is_rejected(self) -> None:
        text = (
            "TRANSFER SUCCESSFUL\n"
            "Amount: 5000.00\n"
            "Account: 1234567890\n"
            "Reference: WRONG-REFERENCE-123"
        )

        result = verify_receipt_text(text, EXPECTED)

        assert result.verified is False
        assert result.details.reference_found is False
        assert 'Payment reference "PAY-O123-ABC123-XYZ456" not found' in result.details.issues

    def test_missing_reference_cannot_be_outscored(self) -> None:
        text = "Transfer successful. Amount: 5000.00. Account: 1234567890"

        result = verify_receipt_text(text, EXPECTED)

        assert result.confidence == 60
        assert result.verified is False

    def test_missing_amount_is_rejected_even_with_high_confidence(self) -> None:
        text = (
            "Transfer successful\n"
            "Amount: ₦7,250.00\n"
            "Account: 1234567890\n"
            "Reference: PAY-O123-ABC123-XYZ456"
        )

        result = verify_receipt_text(text, EXPECTED)

        assert result.confidence == 70
        assert result.details.amount_found is False
        assert result.verified is False

    @pytest.mark.parametrize("phrase", ["declined", "insufficient funds", "Transaction failed"])
    def test_failure_phrase_forces_rejection(self, phrase: str) -> None:
        text = (
            f"Transfer successful {phrase}\n"
            "Amount: ₦5,000.00\n"
            "Account: 1234567890\n"
            "Reference: PAY-O123-ABC123-XYZ456"
        )

        result = verify_receipt_text(text, EXPECTED)

        assert result.verified is False
        assert result.confidence < 70
        assert result.details.issues[-1] == "Receipt shows transaction failure"

    def test_confidence_never_negative(self) -> None:
        result = verify_receipt_text("Payment declined", EXPECTED)

        assert result.confidence == 0
        assert result.verified is False

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_empty_text_short_circuits(self, text: str) -> None:
        result = verify_receipt_text(text, EXPECTED)

        assert result.verified is False
        assert result.confidence == 0
        assert result.details.issues == (EMPTY_TEXT_ISSUE,)

    def test_issues_follow_check_order(self) -> None:
        result = verify_receipt_text("Payment declined", EXPECTED)

        assert result.details.issues == (
            'Payment reference "PAY-O123-ABC123-XYZ456" not found',
            'Amount "5000" not found',
            'Account number "1234567890" not found',
            "No success confirmation found in receipt",
            "Receipt shows transaction failure",
        )

    def test_extracted_text_is_kept_verbatim(self) -> None:
        text = "Reference:  PAY-O123-ABC123-XYZ456"

        result = verify_receipt_text(text, EXPECTED)

        assert result.details.extracted_text == text


@pytest.mark.unit
class TestMatchers:
    """Test suite for the individual matchers."""

    @pytest.mark.parametrize(
        "text",
        ["₦5,000.00", "NGN 5000", "5000.00", "5,000", "Amount: ₦5000"],
    )
    def test_amount_representations(self, text: str) -> None:
        assert find_amount(normalize_text(text), Decimal("5000")) is True

    @pytest.mark.parametrize("text", ["NGN 4,999", "Amount: 5,001.00", "₦4,999.50"])
    def test_amount_within_tolerance(self, text: str) -> None:
        assert find_amount(normalize_text(text), Decimal("5000")) is True

    @pytest.mark.parametrize("text", ["NGN 4500", "Amount: ₦7,000.00", "no amount here"])
    def test_amount_outside_tolerance(self, text: str) -> None:
        assert find_amount(normalize_text(text), Decimal("5000")) is False

    def test_amount_forms(self) -> None:
        assert amount_forms(Decimal("5000.00")) == ("5000", "5000.00", "5,000")
        assert amount_forms(Decimal("1250.50")) == ("1250.5", "1250.50", "1,250.5")

    def test_reference_ignores_hyphens_and_spaces(self) -> None:
        text = normalize_text("ref pay o123 abc123 xyz456")

        assert find_payment_reference(text, "PAY-O123-ABC123-XYZ456") is True

    def test_reference_matches_truncated_prefix(self) -> None:
        # OCR dropped the tail; the first 8 normalised characters survive
        text = normalize_text("Narration: PAY-O123-A")

        assert find_payment_reference(text, "PAY-O123-ABC123-XYZ456") is True

    def test_short_reference_requires_exact_match(self) -> None:
        assert find_payment_reference(normalize_text("pay-1"), "PAY-12") is False

    def test_account_number_ignores_spacing(self) -> None:
        assert find_account_number(normalize_text("acct: 1234 567 890"), "1234567890") is True

    def test_blank_account_number_never_matches(self) -> None:
        assert find_account_number(normalize_text("transfer successful"), " ") is False


@pytest.mark.unit
class TestFormatVerificationIssues:
    def test_no_issues(self) -> None:
        text = (
            "Transfer successful ₦5,000.00 1234567890 PAY-O123-ABC123-XYZ456"
        )
        result = verify_receipt_text(text, EXPECTED)

        assert format_verification_issues(result) == "Receipt verification completed successfully."

    def test_numbered_issues(self) -> None:
        result = verify_receipt_text("", EXPECTED)

        assert format_verification_issues(result) == f"1. {EMPTY_TEXT_ISSUE}"
