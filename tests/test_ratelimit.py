"""Per-IP claim allowance and the bounded client table."""

from coupon_claims.ratelimit import ClaimAllowance, InMemoryRateLimiter, RateLimitConfig


class _Ticker:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _limiter(**overrides):
    values = {"max_requests": 2, "window_seconds": 60, "max_clients": 100}
    values.update(overrides)
    ticker = _Ticker()
    return InMemoryRateLimiter(RateLimitConfig(**values), time_fn=ticker), ticker


def test_allowance_is_spent_then_refills():
    limiter, ticker = _limiter()
    assert limiter.allow("ip:10.0.0.1")
    assert limiter.allow("ip:10.0.0.1")
    assert not limiter.allow("ip:10.0.0.1")

    ticker.now += 30
    assert limiter.allow("ip:10.0.0.1")


def test_retry_after_rounds_up():
    bucket = ClaimAllowance(capacity=4, window_seconds=64, now=0.0)
    for _ in range(4):
        assert bucket.take(0.0)
    # One token every 16 seconds
    assert bucket.retry_after() == 16

    assert not bucket.take(0.5)
    assert bucket.retry_after() == 16

    assert not bucket.take(15.5)
    assert bucket.retry_after() == 1


def test_spoofed_addresses_do_not_grow_table_past_cap():
    limiter, _ = _limiter()
    for n in range(10_000):
        limiter.allow(f"ip:203.0.{n // 256}.{n % 256}")
    assert len(limiter.buckets) <= 100


def test_idle_clients_are_dropped():
    limiter, ticker = _limiter()
    for n in range(50):
        limiter.allow(f"ip:10.0.0.{n}")

    ticker.now += 60
    limiter.allow("ip:10.0.1.1")
    assert list(limiter.buckets) == ["ip:10.0.1.1"]


def test_recently_seen_client_survives_eviction():
    limiter, ticker = _limiter(max_clients=3)
    limiter.allow("ip:10.0.0.1")
    limiter.allow("ip:10.0.0.1")
    limiter.allow("ip:10.0.0.2")
    limiter.allow("ip:10.0.0.3")

    # Touch the oldest so .2 becomes least recently seen
    assert not limiter.allow("ip:10.0.0.1")
    limiter.allow("ip:10.0.0.4")

    assert list(limiter.buckets) == ["ip:10.0.0.3", "ip:10.0.0.1", "ip:10.0.0.4"]
    # Its spent allowance was not reset by the eviction of others
    assert not limiter.allow("ip:10.0.0.1")
