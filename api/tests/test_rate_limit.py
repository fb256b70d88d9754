import pytest

from meetup.services.errors import ResourceExhausted
from meetup.services.rate_limit import InMemoryRateLimiter, enforce_user_rate


def test_sliding_window():
    limiter = InMemoryRateLimiter()
    assert limiter.check("k", limit=2, window_seconds=60, now=1000).allowed
    assert limiter.check("k", limit=2, window_seconds=60, now=1010).allowed
    blocked = limiter.check("k", limit=2, window_seconds=60, now=1020)
    assert not blocked.allowed
    assert blocked.retry_after_seconds == 40
    assert limiter.check("other", limit=2, window_seconds=60, now=1020).allowed
    assert limiter.check("k", limit=2, window_seconds=60, now=1061).allowed


def test_enforce_user_rate_raises_domain_error():
    enforce_user_rate("presence_start", "u1", 1, 3600)
    with pytest.raises(ResourceExhausted) as exc:
        enforce_user_rate("presence_start", "u1", 1, 3600)
    assert exc.value.code == "RATE_LIMITED"
    enforce_user_rate("presence_start", "u2", 1, 3600)
