import pytest

from polyexec.errors import TransportError
from polyexec.utils.net import RetryPolicy, retry_async


@pytest.mark.asyncio
async def test_retry_async_succeeds_after_failure():
    calls = {"n": 0}

    async def func():
        calls["n"] += 1
        if calls["n"] < 2:
            raise ValueError("fail")
        return 42

    result = await retry_async(func, policy=RetryPolicy(max_attempts=3, backoff=0))
    assert result == 42
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_retry_async_respects_predicate():
    calls = {"n": 0}

    async def func():
        calls["n"] += 1
        raise TransportError("sent", request_sent=True)

    with pytest.raises(TransportError):
        await retry_async(
            func,
            policy=RetryPolicy(max_attempts=5, backoff=0),
            retry_on=(TransportError,),
            should_retry=lambda exc: not exc.request_sent,
        )
    assert calls["n"] == 1


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(max_attempts=10, backoff=0.5, max_backoff=2.0)
    assert policy.delay(1) == 0.5
    assert policy.delay(2) == 1.0
    assert policy.delay(5) == 2.0
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


@pytest.mark.asyncio
async def test_retry_async_reraises_after_last_attempt():
    calls = {"n": 0}

    async def func():
        calls["n"] += 1
        raise TransportError(f"attempt {calls['n']}", request_sent=False)

    with pytest.raises(TransportError, match="attempt 3"):
        await retry_async(func, policy=RetryPolicy(max_attempts=3, backoff=0), retry_on=(TransportError,))
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_retry_async_ignores_unlisted_errors():
    calls = {"n": 0}

    async def func():
        calls["n"] += 1
        raise KeyError("missing")

    with pytest.raises(KeyError):
        await retry_async(func, policy=RetryPolicy(max_attempts=4, backoff=0), retry_on=(TransportError,))
    assert calls["n"] == 1
