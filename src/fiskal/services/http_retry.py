from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import requests.exceptions
from urllib3.exceptions import NewConnectionError

T = TypeVar("T")

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = frozenset({429, 502, 503, 504})


class RetryableHTTPError(requests.exceptions.HTTPError):
    """An HTTP status the remote side reports as temporary."""


def request_never_sent(exc: BaseException) -> bool:
    """True when *exc* proves no byte of the request reached the server.

    Covers connect timeouts and refused or unresolvable connections. An
    aborted or reset connection may follow a delivered request, so it is not
    included.
    """
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return True
    cause = exc.args[0] if exc.args else None
    # requests wraps urllib3's MaxRetryError, whose reason is the real failure
    cause = getattr(cause, "reason", cause)
    return isinstance(cause, NewConnectionError)


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    max_attempts: int
    base_delay: float
    max_delay: float
    retryable_exceptions: tuple[type[Exception], ...]
    retryable_status_codes: frozenset[int] = field(default_factory=frozenset)
    backoff_factor: float = 2.0
    jitter: float = 0.25
    retry_if: Callable[[BaseException], bool] | None = None


# A submission is retried only when the request never left this machine; a
# resent /send or RacunZahtjev can register the invoice twice.
CIS_SUBMIT = RetryPolicy(
    name="cis-submit",
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    retryable_exceptions=(requests.exceptions.ConnectionError,),
    retry_if=request_never_sent,
)

ERACUN_SUBMIT = RetryPolicy(
    name="eracun-submit",
    max_attempts=3,
    base_delay=2.0,
    max_delay=20.0,
    retryable_exceptions=(requests.exceptions.ConnectionError,),
    retry_if=request_never_sent,
)

# Outbox queries and downloads are idempotent.
ERACUN_READ = RetryPolicy(
    name="eracun-read",
    max_attempts=4,
    base_delay=1.0,
    max_delay=15.0,
    retryable_exceptions=(
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
        RetryableHTTPError,
    ),
    retryable_status_codes=_TRANSIENT_STATUSES,
)


def _calc_delay(attempt: int, policy: RetryPolicy) -> float:
    """Backoff before retry number *attempt* + 1 (0 after the first failure)."""
    capped = min(policy.base_delay * policy.backoff_factor**attempt, policy.max_delay)
    spread = capped * policy.jitter
    return max(0.0, capped + random.uniform(-spread, spread))


def raise_for_retryable_status(resp, policy: RetryPolicy) -> None:
    if resp.status_code in policy.retryable_status_codes:
        raise RetryableHTTPError(f"HTTP {resp.status_code}", response=resp)


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> T:
    """Call *func* until it succeeds, a non-retryable error escapes, or *policy* runs out.

    The last retryable exception is re-raised once attempts are exhausted.
    """
    attempt = 0
    while True:
        try:
            return func()
        except policy.retryable_exceptions as exc:
            if policy.retry_if is not None and not policy.retry_if(exc):
                raise
            attempt += 1
            if attempt >= policy.max_attempts:
                logger.error("%s: giving up after %d attempts (%s)", policy.name, attempt, exc)
                raise
            delay = _calc_delay(attempt - 1, policy)
            logger.warning(
                "%s: attempt %d/%d failed with %s, retrying in %.1fs",
                policy.name,
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
            sleep_func(delay)
