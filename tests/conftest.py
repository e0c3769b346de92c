from datetime import datetime, timedelta, timezone

import pytest

from coupon_claims.logic import ClaimCoordinator, CouponAllocator, EligibilityEvaluator
from coupon_claims.storage import MemoryCouponStore, SqlCouponStore


START = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    store = MemoryCouponStore(lock_timeout=2.0)
    store.add_coupons(["B", "C", "A"])
    yield store
    store.close()


@pytest.fixture
def sql_store(tmp_path):
    store = SqlCouponStore(f"sqlite:///{tmp_path / 'coupons.db'}", lock_timeout=2.0)
    store.add_coupons(["B", "C", "A"])
    yield store
    store.close()


@pytest.fixture(params=["memory", "sql"])
def store(request, memory_store, sql_store):
    """Run a test against both store implementations."""
    return memory_store if request.param == "memory" else sql_store


@pytest.fixture
def evaluator(store, clock):
    return EligibilityEvaluator(store, clock=clock)


@pytest.fixture
def allocator(store):
    return CouponAllocator(store)


@pytest.fixture
def coordinator(store, evaluator, allocator, clock):
    return ClaimCoordinator(store, evaluator, allocator, clock=clock)


def coupon_id(store, code: str) -> int:
    return next(c.id for c in store.list_coupons_sorted_by_code() if c.code == code)
