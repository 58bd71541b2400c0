import asyncio
import random

import pytest

from deploy_pilot.timing import (
    OperationTimeout,
    RetriesExhausted,
    RetryDecision,
    parse_reset_hint,
    race_with_timeout,
    rate_limit_delay,
    transient_delay,
    with_retry,
)

NOW = 1_700_000_000.0

# ---------------------------------------------------------------------------
# Reset hints
# ---------------------------------------------------------------------------


def test_reset_hint_delta_seconds():
    assert parse_reset_hint("7", now=NOW) == 7.0


def test_reset_hint_epoch_seconds_and_millis():
    assert parse_reset_hint(str(int(NOW + 30)), now=NOW) == pytest.approx(30.0)
    assert parse_reset_hint(str(int((NOW + 12) * 1000)), now=NOW) == pytest.approx(12.0)


def test_reset_hint_in_the_past_is_zero():
    assert parse_reset_hint(str(int(NOW - 100)), now=NOW) == 0.0


def test_reset_hint_http_date():
    assert parse_reset_hint("Tue, 14 Nov 2023 22:13:50 GMT", now=NOW) == pytest.approx(30.0, abs=1)


def test_reset_hint_garbage():
    assert parse_reset_hint("soon", now=NOW) is None
    assert parse_reset_hint(None) is None
    assert parse_reset_hint("  ") is None


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


def test_rate_limit_backoff_is_non_decreasing_and_capped():
    rng = random.Random(42)
    delays = [rate_limit_delay(attempt, max_backoff=120.0, rng=rng) for attempt in range(10)]
    assert delays == sorted(delays)
    assert all(delay <= 120.0 for delay in delays)
    assert 3.0 <= delays[0] <= 5.0


def test_rate_limit_backoff_honours_reset_hint():
    delay = rate_limit_delay(0, reset_hint=10.0, rng=random.Random(1))
    assert 12.0 <= delay <= 14.0


def test_transient_delay_range():
    assert 2.0 <= transient_delay(rng=random.Random(3)) <= 4.0
    assert transient_delay(max_backoff=1.0) == 1.0


# ---------------------------------------------------------------------------
# with_retry
# ---------------------------------------------------------------------------


class Flaky(Exception):
    pass


def test_with_retry_recovers_after_transient_errors():
    calls = []
    slept = []

    async def operation():
        calls.append(1)
        if len(calls) < 3:
            raise Flaky("boom")
        return "ok"

    async def sleep(seconds):
        slept.append(seconds)

    result = asyncio.run(
        with_retry(operation, classify=lambda exc: RetryDecision("transient"), sleep=sleep, rng=random.Random(0))
    )
    assert result == "ok"
    assert len(calls) == 3
    assert len(slept) == 2


def test_with_retry_does_not_retry_unclassified_errors():
    calls = []

    async def operation():
        calls.append(1)
        raise ValueError("bad request")

    async def sleep(seconds):
        raise AssertionError("should not sleep")

    with pytest.raises(ValueError):
        asyncio.run(with_retry(operation, classify=lambda exc: None, sleep=sleep))
    assert len(calls) == 1


def test_with_retry_exhaustion_carries_retry_in():
    retries = []

    async def operation():
        raise Flaky("429")

    async def sleep(seconds):
        return None

    with pytest.raises(RetriesExhausted) as info:
        asyncio.run(
            with_retry(
                operation,
                classify=lambda exc: RetryDecision("rate_limit"),
                max_retries=2,
                on_retry=lambda attempt, delay, exc: retries.append(attempt),
                sleep=sleep,
            )
        )
    assert info.value.attempts == 3
    assert info.value.rate_limited
    assert info.value.retry_in > 0
    assert isinstance(info.value.last_error, Flaky)
    assert retries == [1, 2]


# ---------------------------------------------------------------------------
# race_with_timeout
# ---------------------------------------------------------------------------


def test_race_with_timeout_returns_result():
    async def quick():
        return 5

    assert asyncio.run(race_with_timeout(quick(), 1.0, "slow")) == 5


def test_race_with_timeout_raises_custom_error():
    class Slow(OperationTimeout):
        pass

    async def main():
        async def forever():
            await asyncio.sleep(10)

        await race_with_timeout(forever(), 0.01, "took too long", error=Slow)

    with pytest.raises(Slow, match="took too long"):
        asyncio.run(main())


def test_race_without_timeout_just_awaits():
    async def quick():
        return "done"

    assert asyncio.run(race_with_timeout(quick(), None, "")) == "done"
