"""
Receipt data and rendering.

ReceiptData is assembled by the payment service from a verified payment and
its order. Renderers turn it into stored content; only plain text ships.
"""
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol, Tuple

from payment_verification.config import BusinessInfo
from payment_verification.core.reference import BASE36_ALPHABET, order_prefix, to_base36


@dataclass(frozen=True)
class ReceiptLineItem:
    name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal


@dataclass(frozen=True)
class ReceiptData:
    """Everything printed on a receipt."""

    receipt_id: str
    receipt_number: str
    payment_id: str
    order_id: str
    customer_name: Optional[str]
    customer_phone: Optional[str]
    items: Tuple[ReceiptLineItem, ...]
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    payment_method: str
    payment_reference: str
    amount: Decimal
    verified_at: datetime
    business: BusinessInfo
    generated_at: datetime
    external_transaction_id: Optional[str] = None
    currency_symbol: str = field(default="₦")


class ReceiptRenderer(Protocol):
    format: str

    def render(self, data: ReceiptData) -> str: ...


class TextReceiptRenderer:
    """Plain text receipt suitable for a chat message."""

    format = "text"

    def render(self, data: ReceiptData) -> str:
        symbol = data.currency_symbol
        lines = [
            data.business.name,
        ]
        if data.business.address:
            lines.append(data.business.address)
        lines.extend(
            [
                "",
                f"Receipt #{data.receipt_number}",
                f"Date: {data.generated_at:%Y-%m-%d %H:%M} UTC",
                f"Customer: {data.customer_name or 'N/A'}",
                f"Phone: {data.customer_phone or 'N/A'}",
                "",
                "Order Details:",
            ]
        )
        for index, item in enumerate(data.items, start=1):
            lines.append(
                f"{index}. {item.name} x{item.quantity} - {symbol}{item.total_price:,.2f}"
            )

        lines.extend(
            [
                "",
                f"Subtotal: {symbol}{data.subtotal:,.2f}",
                f"Tax: {symbol}{data.tax:,.2f}",
                f"Total: {symbol}{data.total:,.2f}",
                f"Payment Method: {data.payment_method.replace('_', ' ').upper()}",
                f"Reference: {data.payment_reference}",
            ]
        )
        if data.external_transaction_id:
            lines.append(f"Transaction ID: {data.external_transaction_id}")
        lines.append(f"Verified: {data.verified_at:%Y-%m-%d %H:%M} UTC")
        if data.business.tax_id:
            lines.append(f"Tax ID: {data.business.tax_id}")

        return "\n".join(lines) + "\n"


def generate_receipt_id(clock=time.time) -> str:
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(6)).lower()
    return f"receipt_{int(clock() * 1000)}_{suffix}"


def generate_receipt_number(order_id: str, clock=time.time) -> str:
    # Random tail keeps numbers unique across orders sharing a suffix in the same millisecond
    tail = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(3))
    return f"RCP-{order_prefix(order_id)}-{to_base36(int(clock() * 1000))}{tail}"
