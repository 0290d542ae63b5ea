"""Retry classification and backoff hints for directive execution.

The runner owns retry *safety* (a failed attempt goes back to ``requested``
or to terminal ``failed``); the scheduler owns retry *timing*. This module
decides the first and suggests the second.

Key entrypoints:
 - ``next_delay_ms``: pick a delay from an exponential sequence
 - ``decide_retry``: decide terminal-vs-retryable for a failed attempt

Examples
--------
>>> next_delay_ms(0, [1000, 2000, 4000])
1000
>>> d = decide_retry(attempt=1, max_attempts=3, retryable=True, delays=[1000, 2000])
>>> (d.should_retry, d.delay_ms)
(True, 1000)
>>> decide_retry(attempt=3, max_attempts=3, retryable=True).should_retry
False
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import List

DEFAULT_RETRY_DELAYS_MS: List[int] = [1000, 2000, 4000, 8000]


def next_delay_ms(retry_count: int, delays: List[int] | None = None, jitter: float = 0.0) -> int:
    """Return the delay in milliseconds for a zero-based ``retry_count``.

    Falls back to the last delay once ``retry_count`` runs past the sequence.

    Examples
    --------
    >>> next_delay_ms(2, [100, 200, 400])
    400
    >>> next_delay_ms(5, [100, 200, 400])  # clamped to last
    400
    """
    if not delays:
        delays = DEFAULT_RETRY_DELAYS_MS
    idx = max(min(retry_count, len(delays) - 1), 0)
    base = delays[idx]
    if jitter <= 0:
        return int(base)
    delta = base * jitter
    return int(random.uniform(base - delta, base + delta))


@dataclass
class RetryDecision:
    """Outcome of ``decide_retry``.

    Attributes
    ----------
    should_retry: bool
        Whether the directive goes back to ``requested``.
    delay_ms: int
        Suggested redelivery delay; 0 when ``should_retry`` is False.
    reason: str
        ``retryable`` | ``fatal`` | ``exhausted``.
    """
    should_retry: bool
    delay_ms: int
    reason: str


def decide_retry(attempt: int, max_attempts: int, retryable: bool, delays: List[int] | None = None) -> RetryDecision:
    """Decide whether a failed attempt may run again.

    ``attempt`` is the one-based attempt that just failed. Fatal errors never
    retry; otherwise the directive retries while ``attempt < max_attempts``.
    """
    if not retryable:
        return RetryDecision(should_retry=False, delay_ms=0, reason="fatal")
    if attempt >= max_attempts:
        return RetryDecision(should_retry=False, delay_ms=0, reason="exhausted")
    return RetryDecision(should_retry=True, delay_ms=next_delay_ms(attempt - 1, delays), reason="retryable")


def pick_delay_bucket(delay_ms: int, buckets: List[int] | None = None) -> int:
    """Return the smallest bucket that is at least ``delay_ms`` (or the largest).

    Redelivery goes through fixed-TTL delay queues, so a requested delay is
    rounded up to a bucket. Longer waits (a far-away ``scheduled_at``) take
    several hops; each hop is a delivery that snoozes again.

    Examples
    --------
    >>> pick_delay_bucket(1500, [1000, 2000, 4000])
    2000
    >>> pick_delay_bucket(60_000, [1000, 2000, 4000])
    4000
    """
    ordered = sorted(buckets or DEFAULT_RETRY_DELAYS_MS)
    for bucket in ordered:
        if bucket >= delay_ms:
            return bucket
    return ordered[-1]
