"""
Queue handlers.

Every handler is idempotent by payment id so an at-least-once re-delivery
is harmless:

- message-retry:        deliver a message through the MessageSender
- payment-verification: verify a receipt image (OCR + engine) or a claimed
                        reference, then run the lifecycle verification
- receipt-generation:   generate the receipt, optionally queue it as a message

A verified payment chains into receipt generation from the verification
queue's completion hook.
"""
import base64
from decimal import Decimal
from typing import Any, Dict

import structlog

from payment_verification.core.exceptions import PaymentNotFoundError
from payment_verification.core.payment_service import (
    PaymentService,
    PaymentVerificationRequest,
)
from payment_verification.core.receipt_verifier import ReceiptVerifier
from payment_verification.core.verification import format_verification_issues
from payment_verification.database.models import Payment, PaymentMethod
from payment_verification.integrations.messaging import MessageSender, OutboundMessage
from payment_verification.workers.job_store import Job
from payment_verification.workers.orchestrator import (
    MESSAGE_RETRY,
    PAYMENT_VERIFICATION,
    RECEIPT_GENERATION,
    JobOrchestrator,
)

logger = structlog.get_logger(__name__)


class PaymentJobProcessors:
    """Handlers and hooks for the three queues."""

    def __init__(
        self,
        payment_service: PaymentService,
        receipt_verifier: ReceiptVerifier,
        message_sender: MessageSender,
        orchestrator: JobOrchestrator,
    ):
        self.payment_service = payment_service
        self.receipt_verifier = receipt_verifier
        self.message_sender = message_sender
        self.orchestrator = orchestrator

    def register(self) -> None:
        self.orchestrator.register(
            MESSAGE_RETRY,
            self.handle_message_retry,
            on_completed=self.on_message_completed,
            on_failed=self.on_message_failed,
        )
        self.orchestrator.register(
            PAYMENT_VERIFICATION,
            self.handle_payment_verification,
            on_completed=self.on_verification_completed,
            on_failed=self.on_verification_failed,
        )
        self.orchestrator.register(
            RECEIPT_GENERATION,
            self.handle_receipt_generation,
            on_completed=self.on_receipt_completed,
            on_failed=self.on_receipt_failed,
        )

    # ------------------------------------------------------------------
    # message-retry
    # ------------------------------------------------------------------

    async def handle_message_retry(self, payload: Dict[str, Any], attempt: int) -> Dict[str, Any]:
        message = OutboundMessage.from_payload(payload)
        logger.info(
            "message_retry_processing",
            to=message.to,
            message_type=message.message_type,
            retry_count=message.retry_count,
            attempt=attempt,
        )
        await self.message_sender.send(message)
        return {"delivered": True, "to": message.to}

    async def on_message_completed(self, job: Job, result: Dict[str, Any]) -> None:
        logger.info(
            "message_retry_job_completed",
            job_id=job.id,
            to=job.payload.get("to"),
            attempts=job.attempts_made,
        )

    async def on_message_failed(self, job: Job, error: BaseException) -> None:
        logger.error(
            "message_retry_job_failed_permanently",
            job_id=job.id,
            to=job.payload.get("to"),
            attempts=job.attempts_made,
            error=str(error),
        )

    # ------------------------------------------------------------------
    # payment-verification
    # ------------------------------------------------------------------

    async def handle_payment_verification(
        self, payload: Dict[str, Any], attempt: int
    ) -> Dict[str, Any]:
        """
        Verify a payment from a receipt image or a claimed reference.

        Payload keys: payment_id or payment_reference, optional order_id,
        payment_method, external_transaction_id, amount, customer_phone,
        image_base64 and ocr_provider. An issued reference with an order_id
        but no payment row yet gets its pending payment created here.

        Raises:
            PaymentNotFoundError: Permanent; the job fails without retrying
            ExtractionFailedError: Transient; the queue retries it
        """
        log = logger.bind(
            payment_id=payload.get("payment_id"),
            payment_reference=payload.get("payment_reference"),
            attempt=attempt,
        )
        log.info("payment_verification_processing")

        await self._ensure_issued_payment(payload)
        image_base64 = payload.get("image_base64")

        if image_base64:
            payment = await self._resolve_payment(payload)
            receipt_result = await self.receipt_verifier.verify_receipt_image(
                base64.b64decode(image_base64),
                self.payment_service.expected_payment_for(payment),
                provider=payload.get("ocr_provider"),
            )
            if not receipt_result.verified:
                log.warning(
                    "receipt_not_verified",
                    confidence=receipt_result.confidence,
                    issues=list(receipt_result.details.issues),
                )
                return self._outcome(
                    payload,
                    verified=False,
                    payment_id=str(payment.id),
                    order_id=str(payment.order_id),
                    reason="receipt_rejected",
                    message=format_verification_issues(receipt_result),
                    confidence=receipt_result.confidence,
                )
            request = PaymentVerificationRequest(
                payment_id=str(payment.id),
                external_transaction_id=payload.get("external_transaction_id"),
                verification_data={
                    "source": "receipt_image",
                    "confidence": receipt_result.confidence,
                },
            )
        else:
            amount = payload.get("amount")
            request = PaymentVerificationRequest(
                payment_id=payload.get("payment_id"),
                payment_reference=payload.get("payment_reference"),
                external_transaction_id=payload.get("external_transaction_id"),
                amount=Decimal(str(amount)) if amount is not None else None,
                verification_data={"source": "claimed_reference"},
            )

        result = await self.payment_service.verify_payment(request)
        # A re-delivered job finds the payment already verified; the receipt
        # chain still has to run
        verified = result.success or result.reason == "already_verified"

        return self._outcome(
            payload,
            verified=verified,
            payment_id=str(result.payment.id) if result.payment else None,
            order_id=str(result.payment.order_id) if result.payment else None,
            reason=result.reason,
            message=result.message,
            confidence=result.details.get("confidence"),
        )

    async def _ensure_issued_payment(self, payload: Dict[str, Any]) -> None:
        """Create the pending row for an issued reference seen for the first time."""
        reference = payload.get("payment_reference")
        if payload.get("payment_id") or not reference or not payload.get("order_id"):
            return
        if await self.payment_service.get_payment_by_reference(reference) is not None:
            return
        await self.payment_service.create_payment(
            payload["order_id"],
            payload.get("payment_method") or PaymentMethod.BANK_TRANSFER,
            payment_reference=reference,
        )

    async def _resolve_payment(self, payload: Dict[str, Any]) -> Payment:
        if payload.get("payment_id"):
            return await self.payment_service.get_payment(payload["payment_id"])
        payment = await self.payment_service.get_payment_by_reference(
            payload.get("payment_reference") or ""
        )
        if payment is None:
            raise PaymentNotFoundError(payload.get("payment_reference") or "<no identifier>")
        return payment

    @staticmethod
    def _outcome(payload: Dict[str, Any], **values: Any) -> Dict[str, Any]:
        return {"customer_phone": payload.get("customer_phone"), **values}

    async def on_verification_completed(self, job: Job, result: Dict[str, Any]) -> None:
        logger.info(
            "payment_verification_job_completed",
            job_id=job.id,
            payment_id=result.get("payment_id"),
            verified=result.get("verified"),
            attempts=job.attempts_made,
        )
        if not result.get("verified"):
            return

        await self.orchestrator.add_receipt_generation_to_queue(
            {
                "payment_id": result["payment_id"],
                "order_id": result.get("order_id"),
                "customer_phone": result.get("customer_phone"),
                "send_message": bool(result.get("customer_phone")),
            }
        )

    async def on_verification_failed(self, job: Job, error: BaseException) -> None:
        logger.error(
            "payment_verification_job_failed_permanently",
            job_id=job.id,
            payment_id=job.payload.get("payment_id"),
            payment_reference=job.payload.get("payment_reference"),
            attempts=job.attempts_made,
            error=str(error),
        )

    # ------------------------------------------------------------------
    # receipt-generation
    # ------------------------------------------------------------------

    async def handle_receipt_generation(
        self, payload: Dict[str, Any], attempt: int
    ) -> Dict[str, Any]:
        receipt = await self.payment_service.generate_receipt(
            payload["payment_id"], fmt=payload.get("format", "text")
        )

        customer_phone = payload.get("customer_phone")
        if payload.get("send_message") and customer_phone:
            await self.orchestrator.add_message_to_queue(
                {
                    "to": customer_phone,
                    "content": receipt.content,
                    "message_type": "text",
                }
            )

        return {
            "receipt_id": receipt.id,
            "receipt_number": receipt.receipt_number,
            "payment_id": payload["payment_id"],
        }

    async def on_receipt_completed(self, job: Job, result: Dict[str, Any]) -> None:
        logger.info(
            "receipt_generation_job_completed",
            job_id=job.id,
            payment_id=result.get("payment_id"),
            receipt_number=result.get("receipt_number"),
            attempts=job.attempts_made,
        )

    async def on_receipt_failed(self, job: Job, error: BaseException) -> None:
        logger.error(
            "receipt_generation_job_failed_permanently",
            job_id=job.id,
            payment_id=job.payload.get("payment_id"),
            attempts=job.attempts_made,
            error=str(error),
        )
