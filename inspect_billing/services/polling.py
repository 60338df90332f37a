"""
Confirmation Poller - Bounded, cancellable wait for a checkout session to settle.

A convenience for the confirmation endpoint only. Correctness comes from the
idempotent reconciler, which the webhook reaches independently.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from structlog import get_logger

from inspect_billing.config import settings
from inspect_billing.exceptions import ProviderUnavailableError
from inspect_billing.models.domain import ReconcileResult

logger = get_logger(__name__)


@dataclass(frozen=True)
class PollOutcome:
    """Last result seen and why polling stopped."""

    result: ReconcileResult | None
    attempts_used: int
    settled: bool
    cancelled: bool


async def poll_until_settled(
    check: Callable[[], Awaitable[ReconcileResult]],
    attempts: int | None = None,
    interval_seconds: float | None = None,
    stop: asyncio.Event | None = None,
) -> PollOutcome:
    """
    Call check() until it reports a terminal result, attempts run out or stop is set.

    ProviderUnavailableError counts as a non-terminal attempt. NotFoundError and
    task cancellation propagate.
    """
    attempts = attempts if attempts is not None else settings.confirm_poll_attempts
    interval = (
        interval_seconds if interval_seconds is not None else settings.confirm_poll_interval_seconds
    )
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")

    result: ReconcileResult | None = None
    for attempt in range(1, attempts + 1):
        if stop is not None and stop.is_set():
            return PollOutcome(result, attempt - 1, settled=False, cancelled=True)

        try:
            result = await check()
        except ProviderUnavailableError as exc:
            logger.info("confirm_poll_provider_unavailable", attempt=attempt, error=exc.reason)
        else:
            if result.terminal:
                return PollOutcome(result, attempt, settled=result.settled, cancelled=False)

        if attempt == attempts:
            break

        if stop is None:
            await asyncio.sleep(interval)
        else:
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                pass
            else:
                return PollOutcome(result, attempt, settled=False, cancelled=True)

    logger.info("confirm_poll_exhausted", attempts=attempts)
    return PollOutcome(result, attempts, settled=False, cancelled=False)
