"""Retry with exponential backoff for tool calls.

Operates on envelopes rather than exceptions: the wrapped thunk always
returns a :class:`ToolResponse`, and the decision to retry is taken from
its ``error`` flags.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Collection

    from toolrail.core.envelope import ToolErrorInfo, ToolResponse
    from toolrail.runtime.registry import ToolMetadata

logger = logging.getLogger(__name__)

DEFAULT_LOW_LATENCY_MODES: frozenset[str] = frozenset({"voice"})


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Configuration for retry with backoff."""

    max_retries: int = 3
    base_delay_ms: float = 300.0
    max_delay_ms: float = 3000.0
    multiplier: float = 2.0
    jitter: float = 0.2
    # Slower curve when the dependency is wholly unavailable
    unavailable_base_delay_ms: float = 1000.0
    unavailable_max_delay_ms: float = 8000.0


def should_retry(
    error: ToolErrorInfo,
    metadata: ToolMetadata | None,
) -> tuple[bool, str]:
    """Decide whether a failure may be retried.

    Returns:
        ``(retry, reason)``; *reason* explains a refusal.
    """
    if not error.retryable:
        return False, "not retryable"
    if error.idempotency_required and (metadata is None or not metadata.idempotent):
        return False, "requires idempotency but tool is not idempotent"
    if error.partial_side_effects:
        return False, "partial side effects"
    return True, ""


def compute_delay(
    attempt: int,
    config: RetryConfig,
    error: ToolErrorInfo,
) -> float:
    """Compute backoff delay in milliseconds for a retry attempt."""
    if error.unavailable:
        base, cap = config.unavailable_base_delay_ms, config.unavailable_max_delay_ms
    else:
        base, cap = config.base_delay_ms, config.max_delay_ms

    # Exponential backoff: base * multiplier^attempt
    delay: float = min(base * (config.multiplier**attempt), cap)

    # Symmetric jitter (±jitter of delay)
    if config.jitter:
        delay *= random.uniform(1.0 - config.jitter, 1.0 + config.jitter)

    return delay


async def _sleep_ms(delay_ms: float) -> None:
    await asyncio.sleep(delay_ms / 1000.0)


async def retry_tool_call(
    fn: Callable[[], Awaitable[ToolResponse]],
    *,
    mode: str,
    metadata: ToolMetadata | None = None,
    config: RetryConfig | None = None,
    low_latency_modes: Collection[str] = DEFAULT_LOW_LATENCY_MODES,
    on_retry: Callable[[int, float, ToolResponse], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = _sleep_ms,
) -> ToolResponse:
    """Execute fn, retrying retryable failures with exponential backoff.

    Under a low-latency mode no retry is attempted at all. Otherwise a
    failure is retried only if it is marked retryable, does not demand
    idempotency from a non-idempotent tool, and reports no partial side
    effects.

    Args:
        fn: Zero-arg callable returning an awaitable ToolResponse.
        mode: Execution mode of the session (e.g. ``"voice"``).
        metadata: Tool metadata (for the idempotency check).
        config: Retry configuration. Uses defaults if None.
        low_latency_modes: Modes in which retries are disabled.
        on_retry: Optional callback(attempt, delay_ms, response) before
            each retry.
        sleep: Awaitable delay in milliseconds; cancelling the calling
            task cancels the pending timer.

    Returns:
        The first success, the first non-retryable failure, or the last
        failure once retries are exhausted.
    """
    cfg = config or RetryConfig()
    tool_id = metadata.tool_id if metadata is not None else "unknown"

    if mode in low_latency_modes:
        return await fn()

    attempt = 0
    while True:
        result = await fn()

        if result.ok or result.error is None:
            if attempt > 0:
                logger.info("%s succeeded on attempt %d", tool_id, attempt + 1)
            return result

        retry, reason = should_retry(result.error, metadata)
        if not retry:
            if reason != "not retryable":
                logger.warning("%s: skipping retry (%s)", tool_id, reason)
            return result

        if attempt >= cfg.max_retries:
            logger.info(
                "%s failed after %d retries: %s - %s",
                tool_id,
                cfg.max_retries,
                result.error.type,
                result.error.message,
            )
            return result

        delay = compute_delay(attempt, cfg, result.error)
        logger.info(
            "%s failed (attempt %d/%d): %s - %s. Retrying in %.0fms",
            tool_id,
            attempt + 1,
            cfg.max_retries + 1,
            result.error.type,
            result.error.message,
            delay,
        )
        if on_retry is not None:
            on_retry(attempt + 1, delay, result)
        await sleep(delay)
        attempt += 1

