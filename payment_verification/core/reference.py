"""
Payment reference generation.

Format: PAY-{ORDER}-{TIME}-{RAND}

- ORDER: last 4 characters of the order id, uppercased, alphanumerics only
- TIME:  epoch milliseconds in base 36
- RAND:  4 random base-36 characters, re-drawn on collision

The store lookup is a fast path only. The UNIQUE constraint on
payments.payment_reference is what guarantees uniqueness at insert time.
"""
from __future__ import annotations

import re
import secrets
import time
from collections import deque
from typing import Callable, Deque, Protocol, Set

import structlog

from payment_verification.core.exceptions import ReferenceExhaustedError
from payment_verification.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

BASE36_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
MAX_ATTEMPTS = 5
RANDOM_SUFFIX_LENGTH = 4


class ReferenceLookup(Protocol):
    async def reference_exists(self, payment_reference: str) -> bool: ...


def to_base36(value: int) -> str:
    """Encode a non-negative integer in uppercase base 36."""
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def order_prefix(order_id: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", str(order_id)[-4:].upper())


def random_suffix(length: int = RANDOM_SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(BASE36_ALPHABET) for _ in range(length))


class ReferenceGenerator:
    """
    Produces collision-free payment references.

    References handed out by this instance are remembered (bounded) so two
    in-flight generations never return the same candidate before either
    payment row exists.
    """

    def __init__(
        self,
        lookup: ReferenceLookup,
        max_attempts: int = MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
        suffix_factory: Callable[[], str] = random_suffix,
        recent_capacity: int = 10_000,
    ):
        self._lookup = lookup
        self.max_attempts = max_attempts
        self._clock = clock
        self._suffix_factory = suffix_factory
        self._recent: Deque[str] = deque()
        self._recent_set: Set[str] = set()
        self._recent_capacity = recent_capacity

    def _remember(self, reference: str) -> None:
        self._recent.append(reference)
        self._recent_set.add(reference)
        while len(self._recent) > self._recent_capacity:
            self._recent_set.discard(self._recent.popleft())

    async def generate(self, order_id: str) -> str:
        """
        Generate a unique payment reference for an order.

        Raises:
            ReferenceExhaustedError: If no unique candidate is found within the bound
        """
        order_id = str(order_id)
        timestamp = to_base36(int(self._clock() * 1000))
        prefix = order_prefix(order_id)

        for attempt in range(1, self.max_attempts + 1):
            candidate = f"PAY-{prefix}-{timestamp}-{self._suffix_factory()}"

            if candidate in self._recent_set:
                metrics.record_reference_collision()
                continue
            # Claim before awaiting so a concurrent caller cannot pick it too
            self._remember(candidate)

            if await self._lookup.reference_exists(candidate):
                metrics.record_reference_collision()
                logger.warning(
                    "payment_reference_collision",
                    order_id=order_id,
                    candidate=candidate,
                    attempt=attempt,
                )
                continue

            logger.info("payment_reference_generated", order_id=order_id, reference=candidate)
            return candidate

        logger.error(
            "payment_reference_exhausted",
            order_id=order_id,
            attempts=self.max_attempts,
        )
        raise ReferenceExhaustedError(order_id, self.max_attempts)

