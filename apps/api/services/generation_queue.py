"""Durable generation tracking queue (Redis/RQ) and the reconciliation sweep."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Dict, Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.feed_post import IN_FLIGHT_STATUSES, FeedPost
from services import credits
from services.generation_types import PollResult
from services.job_tracker import check_once

if TYPE_CHECKING:
    from services.generation import GenerationOrchestrator

logger = logging.getLogger(__name__)

GENERATION_QUEUE_NAME = "generation_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_generation_queue() -> Queue:
    """Return the configured generation tracking queue."""
    return Queue(
        name=GENERATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=900,
    )


def enqueue_generation_tracking_job(post_id: str, generation_version: int, job_handle: str) -> Job:
    """Hand polling of one submitted prediction to the worker."""
    queue = get_generation_queue()
    poll_budget = int(settings.GENERATION_POLL_INTERVAL_SECONDS * settings.GENERATION_POLL_MAX_ATTEMPTS)
    return queue.enqueue(
        "services.generation.track_generation_job",
        post_id,
        generation_version,
        job_handle,
        job_id=f"generation:{post_id}:{generation_version}",
        retry=Retry(max=2, interval=[10, 60]),
        job_timeout=max(poll_budget * 2, 600),
        result_ttl=86400,
        failure_ttl=86400,
    )


async def reconcile_generations(
    orchestrator: "GenerationOrchestrator",
    *,
    pending_max_age_minutes: Optional[int] = None,
    generating_max_age_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Resolve generations left behind by crashes, lost webhooks or dead workers."""
    now = now or datetime.now(timezone.utc)
    pending_age = pending_max_age_minutes or settings.RECONCILE_PENDING_MAX_AGE_MINUTES
    generating_age = generating_max_age_minutes or settings.RECONCILE_GENERATING_MAX_AGE_MINUTES
    pending_cutoff = now - timedelta(minutes=max(pending_age, 1))
    generating_cutoff = now - timedelta(minutes=max(generating_age, 1))
    counts = {"pending_failed": 0, "generating_resolved": 0, "orphans_refunded": 0}

    async with orchestrator.session_maker() as db:
        pending_rows = (
            await db.execute(
                select(FeedPost.id, FeedPost.generation_version, FeedPost.credit_reference_id).where(
                    FeedPost.status == "pending",
                    FeedPost.generation_started_at < pending_cutoff,
                )
            )
        ).all()
        generating_rows = (
            await db.execute(
                select(FeedPost.id, FeedPost.generation_version, FeedPost.job_handle).where(
                    FeedPost.status == "generating",
                    FeedPost.generation_started_at < generating_cutoff,
                )
            )
        ).all()

    for row in pending_rows:
        if not row.credit_reference_id:
            continue
        outcome = await orchestrator.fail_generation(
            row.id,
            row.generation_version,
            reference_id=row.credit_reference_id,
            job_handle=None,
            error_code="submission_failed",
            message="Generation was interrupted before the job was submitted.",
            from_statuses=("pending",),
        )
        if outcome.status == "failed":
            counts["pending_failed"] += 1

    for row in generating_rows:
        if not row.job_handle:
            continue
        result = await check_once(orchestrator.provider, row.job_handle)
        if result is None:
            result = PollResult(status="timeout", error="Generation did not finish in time")
        await orchestrator.resolve_generation(row.id, row.generation_version, row.job_handle, result)
        counts["generating_resolved"] += 1

    async with orchestrator.session_maker() as db:
        candidates = (
            await db.execute(
                select(CreditTransaction.reference_id).where(
                    CreditTransaction.kind == "image",
                    CreditTransaction.amount < 0,
                    CreditTransaction.reference_id.like(f"{credits.TEMP_REFERENCE_PREFIX}%"),
                    CreditTransaction.created_at < pending_cutoff,
                )
            )
        ).scalars().all()
        for reference_id in candidates:
            if await credits.has_refund(reference_id, db):
                continue
            live_post = (
                await db.execute(
                    select(FeedPost.id).where(
                        FeedPost.credit_reference_id == reference_id,
                        FeedPost.status.in_(IN_FLIGHT_STATUSES),
                    )
                )
            ).first()
            if live_post is not None:
                continue
            result = await credits.refund_reservation(
                reference_id,
                db,
                description="Refund for generation that never started",
            )
            if result.success and not result.already_applied:
                counts["orphans_refunded"] += 1
                logger.warning("Refunded orphaned reservation reference=%s", reference_id)

    if any(counts.values()):
        logger.info("Generation reconciliation finished: %s", counts)
    return counts
