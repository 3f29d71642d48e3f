from __future__ import annotations

import asyncio
import hashlib
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pnp.core.errors import TransientTransportError
from pnp.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, TransientTransportError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize retry behavior so each stage declares its schedule once.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    backoff_max_ms: int | None = None
    jitter: bool = True


def backoff_delay_s(policy: RetryPolicy, attempt: int) -> float:
    # Exponential backoff from the policy base, optionally capped.
    delay_ms = policy.backoff_ms * (2 ** max(0, attempt - 1))
    if policy.backoff_max_ms is not None:
        delay_ms = min(delay_ms, policy.backoff_max_ms)
    if policy.jitter:
        delay_ms *= random.uniform(0.5, 1.5)
        if policy.backoff_max_ms is not None:
            delay_ms = min(delay_ms, policy.backoff_max_ms)
    return delay_ms / 1000.0


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    counter: str = "retries_total",
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter(counter)
            sleep_s = backoff_delay_s(policy, attempt)
            logger.debug("retrying after %s (attempt %d, sleeping %.2fs)", type(exc).__name__, attempt, sleep_s)
            await asyncio.sleep(sleep_s)
            attempt += 1


def retry_backoff_ms(*, key: str, attempt_no: int, base_ms: int, cap_ms: int) -> int:
    # Use exponential backoff with deterministic jitter to keep tests reproducible and avoid stampedes.
    base = max(1, int(base_ms))
    cap = max(base, int(cap_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{key}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % 251
    return min(cap, backoff + jitter)
