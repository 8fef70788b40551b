"""Retry utilities for calls from the sync agent to the hub.

Provides retry with exponential backoff for the initial document fetch
and the delay schedule used by the WebSocket reconnect loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from .exceptions import HubConnectionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry with exponential backoff."""

    max_retries: int = 3
    backoff_base: float = 1.0  # seconds
    backoff_max: float = 30.0  # cap
    backoff_multiplier: float = 2.0
    linear: bool = False  # base * (attempt + 1) instead of exponential
    retryable_status_codes: tuple[int, ...] = (429, 500, 502, 503, 504)
    retryable_exceptions: tuple[type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        OSError,
    )


def backoff_delay(config: RetryConfig, attempt: int) -> float:
    """Delay before retry number ``attempt`` (0-indexed)."""
    if config.linear:
        return min(config.backoff_base * (attempt + 1), config.backoff_max)
    return min(config.backoff_base * (config.backoff_multiplier**attempt), config.backoff_max)


def _extract_status_code(exc: Exception) -> int | None:
    """Try to extract an HTTP status code from an exception."""
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    return None


def is_retryable(exc: Exception, config: RetryConfig) -> bool:
    """Whether ``exc`` is worth another attempt under ``config``."""
    status_code = _extract_status_code(exc)
    if status_code is not None:
        return status_code in config.retryable_status_codes
    return isinstance(exc, config.retryable_exceptions) or isinstance(exc, HubConnectionError)


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    config: RetryConfig | None = None,
    context_msg: str = "",
    **kwargs: Any,
) -> T:
    """Execute an async function with retry and backoff.

    Args:
        fn: Async callable to execute
        *args: Positional args for fn
        config: Retry configuration (uses defaults if None)
        context_msg: Extra context for log messages (e.g. the endpoint)
        **kwargs: Keyword args for fn

    Returns:
        Result of fn

    Raises:
        Exception: Last exception after all retries exhausted
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

            delay = backoff_delay(cfg, attempt)
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
                logger.info(
                    "RETRY_RECOVERED: succeeded on attempt %d/%d%s",
                    attempt + 1,
                    cfg.max_retries + 1,
                    ctx,
                )
            return result

    # Unreachable, but satisfies type checker
    raise RuntimeError("retry_with_backoff exhausted without raising")  # pragma: no cover
