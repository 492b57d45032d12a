"""
End-to-end tests for the queue handlers: verification chains into receipt
generation, which chains into a customer message.
"""
import base64
import json
from typing import Any, Dict, List

import httpx
import pytest
import pytest_asyncio

from payment_verification.config import Settings
from payment_verification.core.extraction import TextExtractor
from payment_verification.core.payment_service import PaymentService
from payment_verification.core.receipt_verifier import ReceiptVerifier
from payment_verification.database.models import Order, PaymentStatus
from payment_verification.database.repositories import PaymentRepository
from payment_verification.integrations.messaging import MessageSender, OutboundMessage
from payment_verification.workers.job_store import Job
from payment_verification.workers.orchestrator import (
    MESSAGE_RETRY,
    PAYMENT_VERIFICATION,
    RECEIPT_GENERATION,
    JobOrchestrator,
)
from payment_verification.workers.processors import PaymentJobProcessors

from .conftest import RECEIPT_TEXT, FakeOCRProvider, fast_configs

CUSTOMER_PHONE = "+2348011112222"


class Pipeline:
    """Wired orchestrator plus the doubles it talks to."""

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        ocr: FakeOCRProvider,
        sent: List[Dict[str, Any]],
        failures: List[Job],
    ):
        self.orchestrator = orchestrator
        self.ocr = ocr
        self.sent = sent
        self.failures = failures


@pytest_asyncio.fixture
async def pipeline(test_settings: Settings, payment_service: PaymentService):
    sent: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "sent"})

    ocr = FakeOCRProvider()
    orchestrator = JobOrchestrator(configs=fast_configs())
    processors = PaymentJobProcessors(
        payment_service=payment_service,
        receipt_verifier=ReceiptVerifier(
            TextExtractor(test_settings, providers={"tesseract": ocr})
        ),
        message_sender=MessageSender(
            api_url="https://messaging.example.com/send",
            api_token="token",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        ),
        orchestrator=orchestrator,
    )
    processors.register()

    failures: List[Job] = []

    async def record_failure(job: Job, error: BaseException) -> None:
        failures.append(job)
        await processors.on_verification_failed(job, error)

    orchestrator.register(
        PAYMENT_VERIFICATION,
        processors.handle_payment_verification,
        on_completed=processors.on_verification_completed,
        on_failed=record_failure,
    )

    await orchestrator.start()
    yield Pipeline(orchestrator, ocr, sent, failures)
    await orchestrator.stop()
    await processors.message_sender.close()


class TestVerificationChain:
    """Test suite for the verification -> receipt -> message chain."""

    async def test_claimed_reference_produces_receipt_and_message(
        self,
        pipeline: Pipeline,
        payment_service: PaymentService,
        payment_repo: PaymentRepository,
        order: Order,
    ) -> None:
        payment = await payment_service.create_payment(str(order.id), "bank_transfer")

        await pipeline.orchestrator.add_payment_verification_to_queue(
            {
                "payment_reference": payment.payment_reference,
                "amount": "5000.00",
                "customer_phone": CUSTOMER_PHONE,
            }
        )
        await pipeline.orchestrator.drain(timeout=10)

        stored = await payment_repo.get_by_id(payment.id)
        assert stored.status == PaymentStatus.VERIFIED.value

        receipt = await payment_service.get_receipt_by_payment_id(str(payment.id))
        assert receipt is not None

        assert len(pipeline.sent) == 1
        assert pipeline.sent[0]["to"] == CUSTOMER_PHONE
        assert pipeline.sent[0]["type"] == "text"
        assert pipeline.sent[0]["content"] == receipt.content

    async def test_issued_reference_creates_payment_on_first_verification(
        self,
        pipeline: Pipeline,
        payment_service: PaymentService,
        payment_repo: PaymentRepository,
        order: Order,
    ) -> None:
        instructions = await payment_service.issue_instructions(str(order.id), "bank_transfer")
        assert await payment_repo.find_by_order_id(order.id) == []

        job = await pipeline.orchestrator.add_payment_verification_to_queue(
            {
                "order_id": str(order.id),
                "payment_reference": instructions.payment_reference,
                "amount": "5000.00",
            }
        )
        await pipeline.orchestrator.drain(timeout=10)

        assert job.result["verified"] is True
        stored = await payment_repo.get_by_reference(instructions.payment_reference)
        assert stored is not None
        assert stored.status == PaymentStatus.VERIFIED.value
        assert pipeline.failures == []

    async def test_receipt_image_verifies_payment(
        self,
        pipeline: Pipeline,
        payment_service: PaymentService,
        payment_repo: PaymentRepository,
        order: Order,
    ) -> None:
        payment = await payment_service.create_payment(str(order.id), "bank_transfer")
        pipeline.ocr.text = RECEIPT_TEXT.format(reference=payment.payment_reference)
        image = b"\x89PNG receipt"

        job = await pipeline.orchestrator.add_payment_verification_to_queue(
            {
                "payment_id": str(payment.id),
                "image_base64": base64.b64encode(image).decode("ascii"),
            }
        )
        await pipeline.orchestrator.drain(timeout=10)

        assert pipeline.ocr.images == [image]
        assert job.result["verified"] is True
        assert job.result["confidence"] == 100
        stored = await payment_repo.get_by_id(payment.id)
        assert stored.status == PaymentStatus.VERIFIED.value
        assert await payment_service.get_receipt_by_payment_id(str(payment.id)) is not None
        # No phone on the job, so no message
        assert pipeline.sent == []

    async def test_rejected_receipt_image_leaves_payment_pending(
        self,
        pipeline: Pipeline,
        payment_service: PaymentService,
        payment_repo: PaymentRepository,
        order: Order,
    ) -> None:
        payment = await payment_service.create_payment(str(order.id), "bank_transfer")
        pipeline.ocr.text = RECEIPT_TEXT.format(reference="SOMETHING-ELSE-ENTIRELY")

        job = await pipeline.orchestrator.add_payment_verification_to_queue(
            {
                "payment_reference": payment.payment_reference,
                "image_base64": base64.b64encode(b"img").decode("ascii"),
                "customer_phone": CUSTOMER_PHONE,
            }
        )
        await pipeline.orchestrator.drain(timeout=10)

        assert job.result["verified"] is False
        assert job.result["reason"] == "receipt_rejected"
        assert job.result["message"].startswith("1. Payment reference")
        stored = await payment_repo.get_by_id(payment.id)
        assert stored.status == PaymentStatus.PENDING.value
        assert await payment_service.get_receipt_by_payment_id(str(payment.id)) is None
        assert pipeline.sent == []

    async def test_unknown_reference_fails_without_retry(self, pipeline: Pipeline) -> None:
        job = await pipeline.orchestrator.add_payment_verification_to_queue(
            {"payment_reference": "PAY-NOPE-0-0000"}
        )
        await pipeline.orchestrator.drain(timeout=10)

        assert job.attempts_made == 1
        assert pipeline.failures == [job]

    async def test_redelivered_verification_reuses_receipt(
        self,
        pipeline: Pipeline,
        payment_service: PaymentService,
        order: Order,
    ) -> None:
        payment = await payment_service.create_payment(str(order.id), "bank_transfer")
        payload = {"payment_id": str(payment.id)}

        await pipeline.orchestrator.add_payment_verification_to_queue(payload)
        await pipeline.orchestrator.drain(timeout=10)
        second = await pipeline.orchestrator.add_payment_verification_to_queue(payload)
        await pipeline.orchestrator.drain(timeout=10)

        assert second.result["reason"] == "already_verified"
        assert second.result["verified"] is True
        receipts = pipeline.orchestrator.queue(RECEIPT_GENERATION).completed_jobs
        assert len(receipts) == 2
        assert receipts[0].result["receipt_id"] == receipts[1].result["receipt_id"]


class TestMessageQueue:
    async def test_message_retry_delivers(self, pipeline: Pipeline) -> None:
        job = await pipeline.orchestrator.add_message_to_queue(
            {"to": CUSTOMER_PHONE, "content": "Your order is on its way", "retry_count": 1}
        )
        await pipeline.orchestrator.drain(timeout=10)

        assert job.result == {"delivered": True, "to": CUSTOMER_PHONE}
        assert pipeline.sent == [
            {"to": CUSTOMER_PHONE, "type": "text", "content": "Your order is on its way"}
        ]
        assert pipeline.orchestrator.queue(MESSAGE_RETRY).completed_jobs == [job]


@pytest.mark.unit
class TestMessageSender:
    """Test suite for MessageSender."""

    async def test_without_api_url_only_logs(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        sender = MessageSender(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        await sender.send(OutboundMessage(to=CUSTOMER_PHONE, content="hello"))
        await sender.close()

    async def test_posts_with_bearer_token(self) -> None:
        captured: Dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["auth"] = request.headers.get("Authorization")
            captured["body"] = json.loads(request.content)
            return httpx.Response(200)

        sender = MessageSender(
            api_url="https://messaging.example.com/send",
            api_token="secret",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        await sender.send(OutboundMessage(to=CUSTOMER_PHONE, content="hello"))
        await sender.close()

        assert captured["auth"] == "Bearer secret"
        assert captured["body"] == {"to": CUSTOMER_PHONE, "type": "text", "content": "hello"}

    async def test_http_error_propagates(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        sender = MessageSender(
            api_url="https://messaging.example.com/send",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(httpx.HTTPStatusError):
            await sender.send(OutboundMessage(to=CUSTOMER_PHONE, content="hello"))
        await sender.close()
