# timing.py
# Retry, backoff and timeout primitives.
#
# Shared by providers (rate limits, flaky networks), the tool loop and the
# recovery agent (wall-clock budgets). Sleep and randomness are injectable
# so tests never wait.

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Literal, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

BASE_RATE_LIMIT_DELAY = 2.0
DEFAULT_MAX_BACKOFF = 120.0
DEFAULT_MAX_RETRIES = 5
RATE_LIMIT_JITTER = (1.0, 3.0)
TRANSIENT_JITTER = (2.0, 4.0)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class OperationTimeout(TimeoutError):
    """Raised when an awaited operation loses the race against its deadline."""


class RetriesExhausted(Exception):
    """Raised when every retry attempt failed. Wraps the last error."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: BaseException,
        retry_in: float,
        rate_limited: bool,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
        self.retry_in = retry_in
        self.rate_limited = rate_limited


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryDecision:
    kind: Literal["rate_limit", "transient"]
    reset_hint: float | None = None


def parse_reset_hint(value: str | None, *, now: float | None = None) -> float | None:
    """
    Seconds until a rate limit resets, from a `retry-after` or
    `x-ratelimit-reset` header value.

    Accepts delta seconds, epoch seconds, epoch milliseconds, ISO-8601 and
    HTTP dates. Returns None for anything unparseable.
    """
    if value is None or not value.strip():
        return None
    value = value.strip()
    now = time.time() if now is None else now

    try:
        number = float(value)
    except ValueError:
        number = None

    if number is not None:
        if number > 1e12:
            return max(0.0, number / 1000.0 - now)
        if number > 1e9:
            return max(0.0, number - now)
        return max(0.0, number)

    try:
        if value[:4].isdigit() and "-" in value:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        else:
            moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0.0, moment.timestamp() - now)


def rate_limit_delay(
    attempt: int,
    *,
    reset_hint: float | None = None,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    rng: random.Random | None = None,
) -> float:
    """
    Delay before retry number `attempt` (0-based) after a 429.

    Exponential from 2s unless the server says when the window resets,
    plus 1-3s jitter, capped at max_backoff.
    """
    rng = rng or random
    base = reset_hint + 1.0 if reset_hint is not None else BASE_RATE_LIMIT_DELAY * 2**attempt
    return min(base + rng.uniform(*RATE_LIMIT_JITTER), max_backoff)


def transient_delay(*, max_backoff: float = DEFAULT_MAX_BACKOFF, rng: random.Random | None = None) -> float:
    rng = rng or random
    return min(rng.uniform(*TRANSIENT_JITTER), max_backoff)


def retry_delay(
    decision: RetryDecision,
    attempt: int,
    *,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    rng: random.Random | None = None,
) -> float:
    if decision.kind == "rate_limit":
        return rate_limit_delay(attempt, reset_hint=decision.reset_hint, max_backoff=max_backoff, rng=rng)
    return transient_delay(max_backoff=max_backoff, rng=rng)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    classify: Callable[[BaseException], RetryDecision | None],
    max_retries: int = DEFAULT_MAX_RETRIES,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """
    Await `operation()` until it succeeds or retries run out.

    `classify` decides per exception: None means not retryable (re-raised
    as is), otherwise the decision picks the backoff curve. After
    `max_retries` retries RetriesExhausted is raised from the last error.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            decision = classify(exc)
            if decision is None:
                raise
            delay = retry_delay(decision, attempt, max_backoff=max_backoff, rng=rng)
            if attempt >= max_retries:
                raise RetriesExhausted(
                    f"Gave up after {attempt + 1} attempts: {exc}",
                    attempts=attempt + 1,
                    last_error=exc,
                    retry_in=delay,
                    rate_limited=decision.kind == "rate_limit",
                ) from exc

            LOGGER.warning(
                "retry_scheduled",
                extra={"attempt": attempt + 1, "delay": round(delay, 2), "kind": decision.kind},
            )
            if on_retry is not None:
                on_retry(attempt + 1, delay, exc)
            await sleep(delay)
            attempt += 1


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


def _log_abandoned(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.debug("abandoned_operation_failed", extra={"error": repr(exc)})


async def race_with_timeout(
    awaitable: Awaitable[T],
    timeout: float | None,
    message: str,
    *,
    error: type[OperationTimeout] = OperationTimeout,
) -> T:
    """
    Await `awaitable` for at most `timeout` seconds, raising `error` on expiry.

    The loser of the race is abandoned rather than cancelled: it keeps
    running in the background and its eventual error is only logged.
    """
    if timeout is None:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        return task.result()
    task.add_done_callback(_log_abandoned)
    LOGGER.warning("operation_timed_out", extra={"timeout": timeout, "reason": message})
    raise error(message)
