"""Cooldown rules for the eligibility evaluator."""

from datetime import timedelta

from coupon_claims.logic import EligibilityEvaluator, minutes_remaining
from coupon_claims.models import Claim
from tests.conftest import coupon_id


def _record(store, clock, ip, browser=None, code="A"):
    claim = Claim(ipAddress=ip, browserId=browser, couponId=coupon_id(store, code), claimedAt=clock())
    return store.insert_claim_if_absent(claim, clock() - timedelta(hours=1), f"{ip}-{browser}")


def test_new_identity_is_eligible(evaluator):
    """No claims at all means eligible."""
    assert evaluator.is_eligible("10.0.0.1", "browser-1") is True
    assert evaluator.time_remaining("10.0.0.1", "browser-1") == timedelta(0)


def test_same_ip_blocks(evaluator, store, clock):
    _record(store, clock, "10.0.0.1", "browser-1")
    clock.advance(minutes=5)

    assert evaluator.is_eligible("10.0.0.1", "other-browser") is False
    assert evaluator.time_remaining("10.0.0.1", "other-browser") == timedelta(minutes=55)


def test_same_browser_blocks_from_new_ip(evaluator, store, clock):
    """Matching either axis blocks the claim."""
    _record(store, clock, "10.0.0.1", "browser-1")

    assert evaluator.is_eligible("10.0.0.2", "browser-1") is False
    assert evaluator.time_remaining("10.0.0.2", "browser-1") > timedelta(0)


def test_missing_browser_id_only_checks_ip(evaluator, store, clock):
    _record(store, clock, "10.0.0.1", None)

    assert evaluator.is_eligible("10.0.0.2", None) is True
    assert evaluator.time_remaining("10.0.0.2", None) == timedelta(0)


def test_claim_outside_window_does_not_block(evaluator, store, clock):
    _record(store, clock, "10.0.0.1", "browser-1")
    clock.advance(minutes=60, seconds=1)

    assert evaluator.is_eligible("10.0.0.1", "browser-1") is True
    assert evaluator.check("10.0.0.1", "browser-1").eligible is True


def test_minutes_remaining_over_the_window(evaluator, store, clock):
    """60 minutes at claim time, 1 minute near the end, eligible after."""
    _record(store, clock, "10.0.0.1", "browser-1")

    status = evaluator.check("10.0.0.1", "browser-1")
    assert status.eligible is False
    assert status.minutesRemaining == 60

    clock.advance(minutes=59)
    assert evaluator.check("10.0.0.1", "browser-1").minutesRemaining == 1

    clock.advance(minutes=1, seconds=1)
    status = evaluator.check("10.0.0.1", "browser-1")
    assert status.eligible is True
    assert status.minutesRemaining is None


def test_time_remaining_uses_most_recent_claim_across_axes(evaluator, store, clock):
    _record(store, clock, "10.0.0.1", "browser-1")
    clock.advance(minutes=61)
    _record(store, clock, "10.0.0.9", "browser-2", code="B")
    clock.advance(minutes=10)

    # IP axis is stale; browser axis (browser-2) holds the newer claim
    assert evaluator.time_remaining("10.0.0.1", "browser-2") == timedelta(minutes=50)
    assert evaluator.check("10.0.0.1", "browser-2").minutesRemaining == 50


def test_custom_window(store, clock):
    evaluator = EligibilityEvaluator(store, window=timedelta(minutes=10), clock=clock)
    _record(store, clock, "10.0.0.1")
    clock.advance(minutes=9)
    assert evaluator.is_eligible("10.0.0.1", None) is False
    clock.advance(minutes=1, seconds=1)
    assert evaluator.is_eligible("10.0.0.1", None) is True


def test_fails_open_when_claim_disappears(memory_store, clock, caplog):
    """Ineligible but no claim to measure from is reported as eligible."""
    evaluator = EligibilityEvaluator(memory_store, clock=clock)
    evaluator.is_eligible = lambda ip, browser, now=None: False

    status = evaluator.check("10.0.0.1", "browser-1")

    assert status.eligible is True
    assert "eligibility.fail_open" in caplog.text


def test_minutes_remaining_rounds_up():
    assert minutes_remaining(timedelta(seconds=1)) == 1
    assert minutes_remaining(timedelta(minutes=3)) == 3
    assert minutes_remaining(timedelta(minutes=3, seconds=1)) == 4
    assert minutes_remaining(timedelta(seconds=-5)) == 0
