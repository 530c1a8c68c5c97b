"""Bounded polling of external prediction jobs."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from services.generation_types import PollResult, PredictionStatus, PredictionStatusError
from services.prediction_client import PredictionProvider

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def to_poll_result(status: PredictionStatus, attempts: int) -> Optional[PollResult]:
    if status.status == "succeeded":
        if not status.output:
            return PollResult(
                status="failed",
                error="Prediction succeeded without an output",
                attempts=attempts,
            )
        return PollResult(status="succeeded", output=status.output, attempts=attempts)
    if status.status in ("failed", "canceled"):
        return PollResult(
            status="failed",
            error=status.error or "Prediction failed",
            attempts=attempts,
        )
    return None


async def check_once(provider: PredictionProvider, job_handle: str) -> Optional[PollResult]:
    """Single non-blocking status check. Returns None while the job is still running."""
    try:
        status = await provider.get_status(job_handle)
    except PredictionStatusError as exc:
        logger.warning("Status check failed job_handle=%s: %s", job_handle, exc)
        return None
    return to_poll_result(status, attempts=1)


async def poll_prediction(
    provider: PredictionProvider,
    job_handle: str,
    *,
    interval_seconds: float,
    max_attempts: int,
    sleep: Sleep = asyncio.sleep,
) -> PollResult:
    """Sleep-then-check until a terminal status or ``max_attempts`` checks.

    A failed status request counts as an attempt but does not stop polling.
    """
    attempts = 0
    budget = max(int(max_attempts), 0)
    while attempts < budget:
        await sleep(interval_seconds)
        attempts += 1
        try:
            status = await provider.get_status(job_handle)
        except PredictionStatusError as exc:
            logger.warning(
                "Status check %s/%s failed job_handle=%s: %s",
                attempts,
                budget,
                job_handle,
                exc,
            )
            continue
        result = to_poll_result(status, attempts)
        if result is not None:
            logger.info(
                "Prediction %s reached %s after %s attempts",
                job_handle,
                result.status,
                attempts,
            )
            return result

    logger.warning("Prediction %s timed out after %s attempts", job_handle, attempts)
    return PollResult(status="timeout", error="Generation timed out", attempts=attempts)
