import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .errors import ConflictError, IneligibleError, PoolExhaustedError, StorageError
from .logging import get_logger
from .models import Claim, ClaimResult, Coupon, EligibilityStatus, IdentityField
from .storage import CouponStore

logger = get_logger()

Clock = Callable[[], datetime]

SUCCESS_MESSAGE = "Coupon claimed successfully!"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def minutes_remaining(remaining: timedelta) -> int:
    return math.ceil(max(remaining.total_seconds(), 0) / 60)


def assigned_to_label(ip_address: str, browser_id: Optional[str]) -> str:
    return f"{ip_address}-{browser_id or 'noBrowserId'}"


# ---------------------------
# Eligibility
# ---------------------------

class EligibilityEvaluator:
    def __init__(self, store: CouponStore, window: timedelta = timedelta(hours=1), clock: Clock = utc_now):
        self.store = store
        self.window = window
        self.clock = clock

    def is_eligible(self, ip_address: str, browser_id: Optional[str], now: Optional[datetime] = None) -> bool:
        since = (now or self.clock()) - self.window

        if self.store.find_active_claim(IdentityField.IP_ADDRESS, ip_address, since):
            return False

        if browser_id and self.store.find_active_claim(IdentityField.BROWSER_ID, browser_id, since):
            return False

        return True

    def time_remaining(self, ip_address: str, browser_id: Optional[str], now: Optional[datetime] = None) -> timedelta:
        """Time until the most recent claim on either identity axis leaves the window."""
        latest = self.store.find_latest_claim(ip_address, browser_id)
        if latest is None:
            return timedelta(0)
        elapsed = (now or self.clock()) - latest.claimedAt
        return max(timedelta(0), self.window - elapsed)

    def check(self, ip_address: str, browser_id: Optional[str], now: Optional[datetime] = None) -> EligibilityStatus:
        now = now or self.clock()
        if self.is_eligible(ip_address, browser_id, now):
            return EligibilityStatus(eligible=True)

        latest = self.store.find_latest_claim(ip_address, browser_id)
        if latest is None:
            # Active claim vanished between the two reads
            logger.warning("eligibility.fail_open", extra={"event_type": "eligibility"})
            return EligibilityStatus(eligible=True)

        remaining = max(timedelta(0), self.window - (now - latest.claimedAt))
        return EligibilityStatus(eligible=False, minutesRemaining=minutes_remaining(remaining))


# ---------------------------
# Allocation
# ---------------------------

class CouponAllocator:
    """Round-robin over all coupons ordered by code.

    Rule:
     1. No coupons: None
     2. No claims yet: first coupon
     3. Otherwise: the coupon after the most recently claimed one, wrapping
        to the first after the last
    """

    def __init__(self, store: CouponStore):
        self.store = store

    def next_coupon(self) -> Optional[Coupon]:
        ordered = self.store.list_coupons_sorted_by_code()
        if not ordered:
            return None

        last_claim = self.store.find_most_recent_claim()
        if last_claim is None:
            return ordered[0]

        last_coupon = self.store.get_coupon_by_id(last_claim.couponId)
        if last_coupon is None:
            return ordered[0]

        for index, coupon in enumerate(ordered):
            if coupon.id == last_coupon.id:
                return ordered[(index + 1) % len(ordered)]

        return ordered[0]


# ---------------------------
# Claim orchestration
# ---------------------------

class ClaimCoordinator:
    def __init__(
        self,
        store: CouponStore,
        evaluator: EligibilityEvaluator,
        allocator: CouponAllocator,
        retry_attempts: int = 2,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.evaluator = evaluator
        self.allocator = allocator
        self.retry_attempts = max(1, retry_attempts)
        self.clock = clock

    def claim(self, ip_address: str, browser_id: Optional[str], now: Optional[datetime] = None) -> ClaimResult:
        now = now or self.clock()

        status = self.evaluator.check(ip_address, browser_id, now)
        if not status.eligible:
            logger.info(
                "claim.ineligible",
                extra={"event_type": "claim", "minutes_remaining": status.minutesRemaining},
            )
            raise IneligibleError(status.minutesRemaining)

        coupon = self.allocator.next_coupon()
        if coupon is None:
            logger.warning("claim.pool_exhausted", extra={"event_type": "claim"})
            raise PoolExhaustedError()

        claim = Claim(ipAddress=ip_address, browserId=browser_id, couponId=coupon.id, claimedAt=now)
        try:
            self._record(claim, now - self.evaluator.window, assigned_to_label(ip_address, browser_id))
        except ConflictError:
            raise self._lost_race(ip_address, browser_id, now)

        logger.info("claim.success", extra={"event_type": "claim", "coupon_code": coupon.code})
        return ClaimResult(code=coupon.code, message=SUCCESS_MESSAGE)

    def _record(self, claim: Claim, since: datetime, assigned_to: str) -> Claim:
        # Only storage failures are retried; a conflict propagates on first sight
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return self.store.insert_claim_if_absent(claim, since, assigned_to)
            except StorageError:
                if attempt == self.retry_attempts:
                    raise
                logger.warning(f"claim.retry attempt={attempt}", extra={"event_type": "claim"})

    def _lost_race(self, ip_address: str, browser_id: Optional[str], now: datetime) -> IneligibleError:
        remaining = self.evaluator.time_remaining(ip_address, browser_id, now)
        minutes = minutes_remaining(remaining) or minutes_remaining(self.evaluator.window)
        logger.info("claim.conflict", extra={"event_type": "claim", "minutes_remaining": minutes})
        return IneligibleError(minutes)
