"""Tests for the request rate limiter."""

import pytest

from aelyra_chat.api.rate_limiter import RateLimiter, RateLimitExceeded


@pytest.mark.asyncio
async def test_allows_up_to_limit_then_rejects():
    limiter = RateLimiter(rate_limit=3, time_window=60)
    for _ in range(3):
        await limiter.check_rate_limit("owner-1:/chats/messages")

    with pytest.raises(RateLimitExceeded) as excinfo:
        await limiter.check_rate_limit("owner-1:/chats/messages")
    assert 1 <= excinfo.value.retry_after <= 60


@pytest.mark.asyncio
async def test_keys_are_independent():
    limiter = RateLimiter(rate_limit=1, time_window=60)
    await limiter.check_rate_limit("owner-1:/chats/messages")
    await limiter.check_rate_limit("owner-2:/chats/messages")
    assert await limiter.get_remaining_requests("owner-1:/chats/messages") == 0
    assert await limiter.get_remaining_requests("owner-3:/chats/messages") == 1


@pytest.mark.asyncio
async def test_start_and_stop_cleanup_task():
    limiter = RateLimiter(rate_limit=1, time_window=60)
    await limiter.start()
    assert limiter._cleanup_task is not None
    await limiter.stop()
    assert limiter._cleanup_task is None
