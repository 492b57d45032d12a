"""
Pytest configuration and fixtures.

Database tests run against a throwaway SQLite file through aiosqlite, one
database per test.
"""
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_verification.config import PaymentConfig, Settings
from payment_verification.core.payment_service import PaymentService
from payment_verification.core.reference import ReferenceGenerator
from payment_verification.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from payment_verification.database.models import Customer, Order, OrderItem, OrderStatus
from payment_verification.database.repositories import (
    OrderRepository,
    PaymentRepository,
    ReceiptRepository,
)
from payment_verification.integrations.ocr_providers import OCRProvider, OCRResult
from payment_verification.workers.orchestrator import (
    DEFAULT_QUEUE_CONFIGS,
    QueueConfig,
    RetryPolicy,
)

RECEIPT_TEXT = (
    "Main Bank\n"
    "TRANSFER SUCCESSFUL\n"
    "Amount: ₦5,000.00\n"
    "Beneficiary Account: 1234567890\n"
    "Narration: {reference}\n"
)


class FakeOCRProvider(OCRProvider):
    """Returns canned text and records the images it was given."""

    name = "fake"

    def __init__(self, text: str = "", confidence: float = 95.0, error: Exception | None = None):
        self.text = text
        self.confidence = confidence
        self.error = error
        self.images: list[bytes] = []

    async def recognize(self, image: bytes) -> OCRResult:
        self.images.append(image)
        if self.error is not None:
            raise self.error
        return OCRResult(text=self.text, confidence=self.confidence)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/payments_test.db",
        redis_url="redis://localhost:6379/1",
        database_connect_retry_delay=0,
        app_name="payment-verification-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest.fixture
def payment_config(test_settings: Settings) -> PaymentConfig:
    return test_settings.payment_config()


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test engine with all tables."""
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def order_repo(session_factory: async_sessionmaker[AsyncSession]) -> OrderRepository:
    return OrderRepository(session_factory)


@pytest.fixture
def payment_repo(session_factory: async_sessionmaker[AsyncSession]) -> PaymentRepository:
    return PaymentRepository(session_factory)


@pytest.fixture
def receipt_repo(session_factory: async_sessionmaker[AsyncSession]) -> ReceiptRepository:
    return ReceiptRepository(session_factory)


@pytest.fixture
def payment_service(
    order_repo: OrderRepository,
    payment_repo: PaymentRepository,
    receipt_repo: ReceiptRepository,
    payment_config: PaymentConfig,
) -> PaymentService:
    return PaymentService(
        orders=order_repo,
        payments=payment_repo,
        receipts=receipt_repo,
        config=payment_config,
        reference_generator=ReferenceGenerator(payment_repo),
    )


@pytest.fixture
def make_order(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Order]]:
    """Factory for a customer order with two line items."""

    async def _make_order(
        status: str = OrderStatus.PENDING.value,
        total: Decimal = Decimal("5000.00"),
    ) -> Order:
        customer = Customer(
            id=uuid.uuid4(),
            phone_number=f"+234{uuid.uuid4().int % 10**10:010d}",
            name="Ada Obi",
        )
        order = Order(
            id=uuid.uuid4(),
            customer_id=customer.id,
            status=status,
            total_amount=total,
            subtotal_amount=total,
            tax_amount=Decimal("0.00"),
        )
        items = [
            OrderItem(
                order_id=order.id,
                product_name="Jollof Rice",
                quantity=2,
                unit_price=total / 4,
                total_price=total / 2,
            ),
            OrderItem(
                order_id=order.id,
                product_name="Chapman",
                quantity=1,
                unit_price=total / 2,
                total_price=total / 2,
            ),
        ]
        async with session_factory() as db:
            async with db.begin():
                db.add(customer)
                await db.flush()
                db.add(order)
                await db.flush()
                db.add_all(items)
        return order

    return _make_order


@pytest_asyncio.fixture
async def order(make_order: Callable[..., Awaitable[Order]]) -> Order:
    return await make_order()


def fast_configs(keep_completed: int = 10, keep_failed: int = 5) -> Dict[str, QueueConfig]:
    """Default queue layout with millisecond backoff."""
    return {
        name: QueueConfig(
            name=name,
            job_name=config.job_name,
            retry=RetryPolicy(attempts=config.retry.attempts, delay_seconds=0.001),
            keep_completed=keep_completed,
            keep_failed=keep_failed,
        )
        for name, config in DEFAULT_QUEUE_CONFIGS.items()
    }
