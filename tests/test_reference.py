"""
Tests for payment reference generation.
"""
import asyncio
import itertools
import re
import uuid
from typing import Set

import pytest

from payment_verification.core.exceptions import ReferenceExhaustedError
from payment_verification.core.reference import (
    ReferenceGenerator,
    order_prefix,
    to_base36,
)

REFERENCE_PATTERN = re.compile(r"^PAY-[A-Z0-9]{0,4}-[0-9A-Z]+-[0-9A-Z]{4}$")

FROZEN_NOW = 1_700_000_000.0
FROZEN_TS = to_base36(1_700_000_000_000)


class StubLookup:
    """Reference store that reports the given references as taken."""

    def __init__(self, taken: Set[str] | None = None, always_taken: bool = False):
        self.taken = taken or set()
        self.always_taken = always_taken
        self.calls = 0

    async def reference_exists(self, payment_reference: str) -> bool:
        self.calls += 1
        # Yield so concurrent generations interleave
        await asyncio.sleep(0)
        return self.always_taken or payment_reference in self.taken


@pytest.mark.unit
class TestReferenceFormat:
    def test_to_base36(self) -> None:
        assert to_base36(0) == "0"
        assert to_base36(35) == "Z"
        assert to_base36(36) == "10"
        assert to_base36(36**3) == "1000"
        assert to_base36(36**3 - 1) == "ZZZ"

    def test_to_base36_rejects_negative(self) -> None:
        with pytest.raises(ValueError):
            to_base36(-1)

    def test_order_prefix(self) -> None:
        assert order_prefix("order-ab12") == "AB12"
        assert order_prefix("x-1") == "X1"

    async def test_generated_reference_format(self) -> None:
        generator = ReferenceGenerator(
            StubLookup(), clock=lambda: FROZEN_NOW, suffix_factory=lambda: "K9Q2"
        )

        reference = await generator.generate("3f2a9c1e-0000-0000-0000-00000000beef")

        assert reference == f"PAY-BEEF-{FROZEN_TS}-K9Q2"
        assert REFERENCE_PATTERN.match(reference)


@pytest.mark.unit
class TestReferenceGeneration:
    async def test_collision_redraws_suffix(self) -> None:
        lookup = StubLookup(taken={f"PAY-BEEF-{FROZEN_TS}-AAAA"})
        suffixes = iter(["AAAA", "BBBB"])
        generator = ReferenceGenerator(
            lookup, clock=lambda: FROZEN_NOW, suffix_factory=lambda: next(suffixes)
        )

        reference = await generator.generate("order-beef")

        assert reference == f"PAY-BEEF-{FROZEN_TS}-BBBB"
        assert lookup.calls == 2

    async def test_exhaustion_after_max_attempts(self) -> None:
        lookup = StubLookup(always_taken=True)
        counter = itertools.count()
        generator = ReferenceGenerator(
            lookup, suffix_factory=lambda: f"{next(counter):04d}"
        )

        with pytest.raises(ReferenceExhaustedError) as exc_info:
            await generator.generate("order-beef")

        assert lookup.calls == 5
        assert exc_info.value.error_code == "reference_exhausted"
        assert exc_info.value.retryable is False
        fields = exc_info.value.to_dict()
        assert fields["error_type"] == "ReferenceExhaustedError"
        assert fields["order_id"] == "order-beef"
        assert fields["attempts"] == 5

    async def test_recently_issued_reference_is_not_reissued(self) -> None:
        suffixes = iter(["AAAA", "AAAA", "CCCC"])
        generator = ReferenceGenerator(
            StubLookup(), clock=lambda: FROZEN_NOW, suffix_factory=lambda: next(suffixes)
        )

        first = await generator.generate("order-beef")
        second = await generator.generate("order-beef")

        assert first == f"PAY-BEEF-{FROZEN_TS}-AAAA"
        assert second == f"PAY-BEEF-{FROZEN_TS}-CCCC"

    @pytest.mark.race
    async def test_concurrent_generation_is_unique(self) -> None:
        generator = ReferenceGenerator(StubLookup())
        order_ids = [str(uuid.uuid4()) for _ in range(50)]

        references = await asyncio.gather(*(generator.generate(o) for o in order_ids))

        assert len(set(references)) == 50

    @pytest.mark.race
    async def test_concurrent_generation_same_order_same_millisecond(self) -> None:
        # Same order and millisecond: only the random suffix separates candidates
        alphabet = itertools.cycle(["AAAA", "BBBB", "CCCC", "DDDD", "EEEE", "FFFF"])
        generator = ReferenceGenerator(
            StubLookup(), clock=lambda: FROZEN_NOW, suffix_factory=lambda: next(alphabet)
        )

        references = await asyncio.gather(*(generator.generate("order-beef") for _ in range(5)))

        assert len(set(references)) == 5
