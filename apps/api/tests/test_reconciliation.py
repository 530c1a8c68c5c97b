from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

from models.feed_post import FeedPost
from services import credits
from services.generation_queue import enqueue_generation_tracking_job, reconcile_generations
from services.generation_types import GenerationRequest

from fakes import ScriptedProvider, running, succeeded

USER_ID = "studio-user"


def _later(minutes: int = 60) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


async def _crash_after_reservation(session_maker, post_id: str) -> str:
    """Leave a post pending with a reserved temporary reference and no job."""
    reference_id = credits.new_temporary_reference()
    async with session_maker() as db:
        reservation = await credits.reserve_and_deduct(
            USER_ID,
            db,
            amount=1,
            kind="image",
            description="Image generation",
            reference_id=reference_id,
            commit=False,
        )
        assert reservation.success
        await db.execute(
            update(FeedPost)
            .where(FeedPost.id == post_id)
            .values(
                status="pending",
                generation_version=1,
                credit_cost=1,
                credit_reference_id=reference_id,
                generation_started_at=datetime.now(timezone.utc),
            )
        )
        await db.commit()
    return reference_id


async def _post(session_maker, post_id):
    async with session_maker() as db:
        return (await db.execute(select(FeedPost).where(FeedPost.id == post_id))).scalar_one()


async def _balance(session_maker):
    async with session_maker() as db:
        return await credits.get_credit_balance(USER_ID, db)


@pytest.mark.asyncio
async def test_stale_pending_post_is_failed_and_refunded(session_maker, seed_studio, make_orchestrator):
    post_id = await seed_studio(balance=2)
    reference_id = await _crash_after_reservation(session_maker, post_id)
    orchestrator = make_orchestrator(ScriptedProvider())
    assert await _balance(session_maker) == 1

    counts = await reconcile_generations(orchestrator, now=_later())

    assert counts == {"pending_failed": 1, "generating_resolved": 0, "orphans_refunded": 0}
    assert await _balance(session_maker) == 2
    post = await _post(session_maker, post_id)
    assert post.status == "failed"
    assert post.error_code == "submission_failed"
    async with session_maker() as db:
        assert await credits.has_refund(reference_id, db)


@pytest.mark.asyncio
async def test_recent_pending_post_is_left_alone(session_maker, seed_studio, make_orchestrator):
    post_id = await seed_studio(balance=2)
    await _crash_after_reservation(session_maker, post_id)

    counts = await reconcile_generations(make_orchestrator(ScriptedProvider()))

    assert counts == {"pending_failed": 0, "generating_resolved": 0, "orphans_refunded": 0}
    assert (await _post(session_maker, post_id)).status == "pending"


@pytest.mark.asyncio
async def test_stale_generating_post_completes_when_job_finished(session_maker, seed_studio, make_orchestrator):
    post_id = await seed_studio(balance=2)
    provider = ScriptedProvider(job_handle="job-lost-hook", statuses=[succeeded("job-lost-hook")])
    orchestrator = make_orchestrator(provider)
    await orchestrator.generate(USER_ID, post_id, GenerationRequest(), wait=False)

    counts = await reconcile_generations(orchestrator, now=_later())

    assert counts["generating_resolved"] == 1
    post = await _post(session_maker, post_id)
    assert post.status == "completed"
    assert post.result_url.startswith("http://test/assets/generations/")
    assert await _balance(session_maker) == 1


@pytest.mark.asyncio
async def test_stale_generating_post_times_out_with_refund(session_maker, seed_studio, make_orchestrator):
    post_id = await seed_studio(balance=2)
    provider = ScriptedProvider(job_handle="job-stuck", statuses=[running("job-stuck")])
    orchestrator = make_orchestrator(provider, webhook_enabled=True)
    await orchestrator.generate(USER_ID, post_id, GenerationRequest(), wait=False)

    counts = await reconcile_generations(orchestrator, now=_later())

    assert counts["generating_resolved"] == 1
    post = await _post(session_maker, post_id)
    assert post.status == "failed"
    assert post.error_code == "generation_timed_out"
    assert await _balance(session_maker) == 2


@pytest.mark.asyncio
async def test_orphaned_temporary_reservation_is_refunded_once(session_maker, seed_studio, make_orchestrator):
    await seed_studio(balance=3)
    orchestrator = make_orchestrator(ScriptedProvider())
    async with session_maker() as db:
        await credits.reserve_and_deduct(
            USER_ID,
            db,
            amount=1,
            kind="image",
            description="Image generation",
            reference_id=credits.new_temporary_reference(),
        )

    fresh = await reconcile_generations(orchestrator)
    first = await reconcile_generations(orchestrator, now=_later())
    second = await reconcile_generations(orchestrator, now=_later())

    assert fresh["orphans_refunded"] == 0
    assert first["orphans_refunded"] == 1
    assert second["orphans_refunded"] == 0
    assert await _balance(session_maker) == 3


def test_tracking_job_is_enqueued_with_stable_id():
    queue = MagicMock()
    with patch("services.generation_queue.get_generation_queue", return_value=queue):
        enqueue_generation_tracking_job("post-1", 3, "job-9")

    args, kwargs = queue.enqueue.call_args
    assert args == ("services.generation.track_generation_job", "post-1", 3, "job-9")
    assert kwargs["job_id"] == "generation:post-1:3"
    assert kwargs["retry"].max == 2
