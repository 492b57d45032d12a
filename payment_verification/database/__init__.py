"""Database package for the payment verification engine."""
from .connection import (
    DatabaseUnavailableError,
    close_db,
    connect_with_retry,
    create_session_factory,
    get_session_factory,
    init_db,
)
from .models import (
    Base,
    Customer,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Receipt,
)
from .repositories import OrderRepository, PaymentRepository, ReceiptRepository

__all__ = [
    "Base",
    "Customer",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "Receipt",
    "OrderRepository",
    "PaymentRepository",
    "ReceiptRepository",
    "DatabaseUnavailableError",
    "close_db",
    "connect_with_retry",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
