"""Retry with exponential backoff for remote batch commits.

A failed push leaves records pending; retrying a few times with growing
delays covers transient network and throttling errors before the engine
gives up and reports the failure.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry with exponential backoff."""

    max_retries: int = 4
    backoff_base: float = 1.0  # seconds
    backoff_max: float = 30.0  # cap
    backoff_multiplier: float = 2.0
    retryable_status_codes: tuple[int, ...] = (408, 429, 500, 502, 503, 504)
    retryable_exceptions: tuple[type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        OSError,
    )

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Create config from environment variables."""
        return cls(
            max_retries=int(os.environ.get("ANCHOR_SYNC_MAX_RETRIES", "4")),
            backoff_base=float(os.environ.get("ANCHOR_SYNC_BACKOFF_BASE", "1.0")),
            backoff_max=float(os.environ.get("ANCHOR_SYNC_BACKOFF_MAX", "30.0")),
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        return min(self.backoff_base * (self.backoff_multiplier**attempt), self.backoff_max)


def _extract_status_code(exc: Exception) -> int | None:
    """Try to extract an HTTP status code from common SDK exceptions."""
    # Azure SDK: CosmosHttpResponseError, azure.core.exceptions
    status = getattr(exc, "status_code", None)
    if status is not None:
        return int(status)
    response = getattr(exc, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None) or getattr(response, "status", None)
        if code is not None:
            return int(code)
    return None


def is_retryable(exc: Exception, config: RetryConfig) -> bool:
    status_code = _extract_status_code(exc)
    if status_code is not None:
        return status_code in config.retryable_status_codes
    return isinstance(exc, config.retryable_exceptions)


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    config: RetryConfig | None = None,
    context_msg: str = "",
    **kwargs: Any,
) -> T:
    """Execute an async function with retry and exponential backoff.

    Args:
        fn: Async callable to execute
        *args: Positional args for fn
        config: Retry configuration (uses defaults if None)
        context_msg: Extra context for log messages (e.g. table name)
        **kwargs: Keyword args for fn

    Returns:
        Result of fn

    Raises:
        Exception: Last exception after all retries exhausted, or the first
            non-retryable one
    """
    cfg = config or RetryConfig()
    ctx = f" [{context_msg}]" if context_msg else ""

    for attempt in range(cfg.max_retries + 1):
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            retryable = is_retryable(exc, cfg)
            if not retryable or attempt >= cfg.max_retries:
                logger.error(
                    "RETRY_EXHAUSTED: attempt=%d/%d retryable=%s%s: %s",
                    attempt + 1,
                    cfg.max_retries + 1,
                    retryable,
                    ctx,
                    exc,
                )
                raise

            delay = cfg.delay_for(attempt)
            logger.warning(
                "RETRYING: attempt=%d/%d status=%s delay=%.1fs%s: %s",
                attempt + 1,
                cfg.max_retries + 1,
                _extract_status_code(exc),
                delay,
                ctx,
                exc,
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 0:
                logger.warning(
                    "RETRY_RECOVERED: succeeded on attempt %d/%d%s",
                    attempt + 1,
                    cfg.max_retries + 1,
                    ctx,
                )
            return result

    # Unreachable, but satisfies type checker
    raise RuntimeError("retry_with_backoff exhausted without raising")  # pragma: no cover
