import pytest

from comms_dispatch.persistence import Persistence
from comms_dispatch.rate_limit import RateLimiter


@pytest.mark.asyncio
async def test_rate_limiter_defer(tmp_path):
    db = tmp_path / "test.db"
    p = Persistence(str(db))
    await p.init_db()
    limiter = RateLimiter(p)
    limits = {"per_minute": 1}
    assert await limiter.check_and_plan("sms", limits) is None
    await limiter.log_send("sms")
    assert await limiter.check_and_plan("sms", limits) is not None
    assert await limiter.check_and_plan("email", limits) is None


@pytest.mark.asyncio
async def test_rate_limiter_ignores_zero_limits(tmp_path):
    db = tmp_path / "zero.db"
    p = Persistence(str(db))
    await p.init_db()
    limiter = RateLimiter(p)

    limits = {"per_minute": 0, "per_hour": 0, "per_day": 0}
    await limiter.log_send("sms")
    assert await limiter.check_and_plan("sms", limits) is None
    assert await limiter.check_and_plan("sms", None) is None


@pytest.mark.asyncio
async def test_rate_limiter_hour_and_day(tmp_path, monkeypatch):
    db = tmp_path / "limits.db"
    p = Persistence(str(db))
    await p.init_db()
    limiter = RateLimiter(p)

    current_time = 3600 * 10 + 30  # hour boundary plus 30 seconds
    monkeypatch.setattr("comms_dispatch.rate_limit.time.time", lambda: current_time)

    await limiter.log_send("sms")
    await p.log_send("sms", current_time - 10)
    await p.log_send("sms", current_time - 3500)

    limits = {"per_hour": 2, "per_day": 3}
    defer_until = await limiter.check_and_plan("sms", limits)
    assert defer_until == ((current_time // 3600) + 1) * 3600

    # Relax hourly limit but keep daily cap hit
    limits["per_hour"] = None
    defer_until = await limiter.check_and_plan("sms", limits)
    assert defer_until == 86400


@pytest.mark.asyncio
async def test_windows_are_fixed(tmp_path):
    p = Persistence(str(tmp_path / "fixed.db"))
    await p.init_db()
    limiter = RateLimiter(p)

    await limiter.log_send("sms", now_ts=119)
    # Same minute: deferred to the next boundary.
    assert await limiter.check_and_plan("sms", {"per_minute": 1}, now_ts=119) == 120
    # Next minute: the send at 119 no longer counts.
    assert await limiter.check_and_plan("sms", {"per_minute": 1}, now_ts=120) is None
