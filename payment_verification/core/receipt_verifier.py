"""Receipt image verification: OCR extraction followed by the verification engine."""
from typing import Optional

import structlog

from payment_verification.core.extraction import TextExtractor
from payment_verification.core.verification import (
    ExpectedPayment,
    VerificationResult,
    empty_text_result,
    verify_receipt_text,
)
from payment_verification.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReceiptVerifier:
    """Verifies a bank receipt image against an expected payment."""

    def __init__(self, extractor: TextExtractor):
        self.extractor = extractor

    async def verify_receipt_image(
        self,
        image: bytes,
        expected: ExpectedPayment,
        provider: Optional[str] = None,
    ) -> VerificationResult:
        """
        Extract text from the image and verify it.

        Raises:
            ExtractionFailedError: If OCR fails; retried by the caller's queue
        """
        logger.info("receipt_verification_started", reference=expected.reference)

        ocr_result = await self.extractor.extract(image, provider=provider)

        if not ocr_result.text or not ocr_result.text.strip():
            result = empty_text_result()
            metrics.record_receipt_verification("empty", result.confidence)
            logger.warning("receipt_verification_no_text", reference=expected.reference)
            return result

        result = verify_receipt_text(ocr_result.text, expected)
        metrics.record_receipt_verification(
            "verified" if result.verified else "rejected", result.confidence
        )
        logger.info(
            "receipt_verification_completed",
            reference=expected.reference,
            verified=result.verified,
            confidence=result.confidence,
            ocr_confidence=round(ocr_result.confidence, 2),
            issues=list(result.details.issues),
        )
        return result
