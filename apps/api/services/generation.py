"""Generation orchestrator: reserve credits, submit, track, reconcile and persist.

A post moves through ``pending -> generating -> completed | failed``. Every
transition is a compare-and-set on ``(id, generation_version, status)`` so
concurrent callers (blocking request, worker, webhook, status endpoint, sweep)
cannot resolve the same generation twice. Credits are reserved before the job
is submitted and refunded idempotently whenever the generation fails.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.feed_post import IN_FLIGHT_STATUSES, FeedPost
from models.reference_image import ReferenceImage
from models.trained_model import TrainedModel
from models.user import User
from services import credits
from services.asset_storage import AssetFinalizer, get_asset_finalizer
from services.generation_queue import enqueue_generation_tracking_job
from services.generation_types import (
    AssetFinalizationError,
    DownloadFailed,
    GenerationError,
    GenerationFailed,
    GenerationInProgress,
    GenerationOutcome,
    GenerationRequest,
    GenerationSuperseded,
    GenerationTicket,
    GenerationTimedOut,
    InsufficientCredits,
    PollResult,
    PreconditionNotMet,
    PredictionRequest,
    PredictionStatus,
    RecordNotFound,
    StorageWriteFailed,
    SubmissionFailed,
)
from services.job_tracker import check_once, poll_prediction, to_poll_result
from services.prediction_client import (
    MAX_PRO_REFERENCE_IMAGES,
    PredictionProvider,
    build_classic_request,
    build_pro_request,
    get_prediction_provider,
    pro_credit_cost,
)
from services.prompt_assembler import PromptContext, assemble_prompt

logger = logging.getLogger(__name__)

_ERRORS_BY_CODE = {
    cls.error_code: cls
    for cls in (
        GenerationFailed,
        GenerationTimedOut,
        GenerationSuperseded,
        DownloadFailed,
        StorageWriteFailed,
        SubmissionFailed,
    )
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class _Claim:
    """A post moved to pending with credits reserved under a temporary reference."""

    post_id: str
    user_id: str
    version: int
    prediction: PredictionRequest
    cost: int
    temp_reference: str
    transaction_id: Optional[str]


def raise_for_outcome(outcome: GenerationOutcome) -> GenerationOutcome:
    """Translate a non-completed outcome into its typed error."""
    if outcome.status == "completed":
        return outcome
    error_cls = _ERRORS_BY_CODE.get(outcome.error_code or "", GenerationFailed)
    raise error_cls(
        outcome.error_message or "Generation failed",
        post_id=outcome.post_id,
        job_handle=outcome.job_handle,
        refunded=outcome.refunded,
    )


class GenerationOrchestrator:
    def __init__(
        self,
        *,
        session_maker=None,
        provider: Optional[PredictionProvider] = None,
        finalizer: Optional[AssetFinalizer] = None,
        poll_interval_seconds: Optional[float] = None,
        poll_max_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        enqueue: Optional[Callable[[str, int, str], Any]] = None,
        webhook_enabled: Optional[bool] = None,
    ) -> None:
        self.session_maker = session_maker or async_session_maker
        self.provider = provider or get_prediction_provider()
        self.finalizer = finalizer or get_asset_finalizer()
        self.poll_interval_seconds = (
            settings.GENERATION_POLL_INTERVAL_SECONDS if poll_interval_seconds is None else poll_interval_seconds
        )
        self.poll_max_attempts = (
            settings.GENERATION_POLL_MAX_ATTEMPTS if poll_max_attempts is None else poll_max_attempts
        )
        self.sleep = sleep
        self.enqueue = enqueue or enqueue_generation_tracking_job
        if webhook_enabled is None:
            webhook_enabled = bool((settings.PREDICTION_WEBHOOK_URL or "").strip())
        self.webhook_enabled = webhook_enabled

    # Eligibility

    async def _get_owned_post(self, db: AsyncSession, user_id: str, post_id: str) -> FeedPost:
        result = await db.execute(select(FeedPost).where(FeedPost.id == post_id))
        post = result.scalar_one_or_none()
        if not post or post.user_id != user_id:
            raise RecordNotFound("Post not found", post_id=post_id)
        return post

    async def _prepare_request(
        self,
        db: AsyncSession,
        user_id: str,
        post: FeedPost,
        request: GenerationRequest,
    ) -> Tuple[PredictionRequest, str, int]:
        """Check preconditions and build the prediction call. Touches no credits."""
        user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
        gender = user.gender if user else None
        ethnicity = user.ethnicity if user else None

        try:
            if request.mode == "pro":
                images = await self._pro_images(db, user_id, request)
                if not images:
                    raise PreconditionNotMet("Upload at least one reference image first")
                prompt = assemble_prompt(
                    PromptContext(
                        mode="pro",
                        post_type=post.post_type,
                        stored_prompt=post.prompt,
                        caption=post.caption,
                        brand_vibe=post.brand_vibe,
                        color_palette=post.color_palette,
                        gender=gender,
                        reference_count=len(images),
                        edit_instruction=request.edit_instruction,
                    )
                )
                prediction = build_pro_request(
                    prompt=prompt,
                    image_inputs=images,
                    aspect_ratio=request.aspect_ratio,
                    resolution=request.resolution,
                    output_format=request.output_format,
                    safety_level=request.safety_level,
                )
                return prediction, prompt, pro_credit_cost(request.resolution)

            model = (
                await db.execute(
                    select(TrainedModel)
                    .where(
                        TrainedModel.user_id == user_id,
                        TrainedModel.training_status == "completed",
                        TrainedModel.lora_weights_url.isnot(None),
                    )
                    .order_by(TrainedModel.created_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if not model:
                raise PreconditionNotMet("Train a personal model before generating classic images")
            prompt = assemble_prompt(
                PromptContext(
                    mode="classic",
                    post_type=post.post_type,
                    stored_prompt=post.prompt,
                    caption=post.caption,
                    brand_vibe=post.brand_vibe,
                    color_palette=post.color_palette,
                    trigger_word=model.trigger_word,
                    gender=gender,
                    ethnicity=ethnicity,
                    edit_instruction=request.edit_instruction,
                )
            )
            prediction = build_classic_request(
                prompt=prompt,
                version=model.replicate_version_id or "",
                lora_weights_url=model.lora_weights_url,
                post_type=post.post_type,
                lora_scale=model.lora_scale,
                aspect_ratio=request.aspect_ratio,
                output_format=request.output_format,
                extra_lora_url=model.extra_lora_url,
                extra_lora_scale=model.extra_lora_scale,
                extra_lora_disabled=request.extra_lora_disabled,
                seed=request.seed,
                image_url=request.base_image_url,
            )
            return prediction, prompt, max(int(settings.CREDIT_COST_CLASSIC_IMAGE), 1)
        except PreconditionNotMet as exc:
            exc.post_id = post.id
            raise

    async def _pro_images(self, db: AsyncSession, user_id: str, request: GenerationRequest) -> Sequence[str]:
        images = [url for url in request.image_inputs if url]
        if not images:
            result = await db.execute(
                select(ReferenceImage.image_url)
                .where(ReferenceImage.user_id == user_id, ReferenceImage.is_active.is_(True))
                .order_by(ReferenceImage.display_order.asc(), ReferenceImage.uploaded_at.asc())
            )
            images = [url for url in result.scalars().all() if url]
        if request.base_image_url:
            images = [request.base_image_url] + [url for url in images if url != request.base_image_url]
        continuity = [url for url in request.continuity_images if url and url not in images]
        if continuity:
            # the first reference image always stays
            room = MAX_PRO_REFERENCE_IMAGES - 1 if images else MAX_PRO_REFERENCE_IMAGES
            continuity = continuity[-room:]
            images = images[: MAX_PRO_REFERENCE_IMAGES - len(continuity)] + continuity
        return images[:MAX_PRO_REFERENCE_IMAGES]

    # Start

    async def _claim_post(
        self,
        db: AsyncSession,
        post: FeedPost,
        request: GenerationRequest,
        *,
        prompt: str,
        cost: int,
        temp_reference: str,
    ) -> bool:
        """Move the post to ``pending`` under a new version. False when another caller won."""
        observed_version = int(post.generation_version or 0)
        claimed = await db.execute(
            update(FeedPost)
            .where(
                FeedPost.id == post.id,
                FeedPost.generation_version == observed_version,
                FeedPost.status.notin_(IN_FLIGHT_STATUSES),
            )
            .values(
                status="pending",
                generation_version=observed_version + 1,
                generation_mode=request.mode,
                generation_prompt=prompt,
                credit_cost=cost,
                credit_reference_id=temp_reference,
                job_handle=None,
                result_url=None,
                error_code=None,
                error_message=None,
                generation_started_at=_now(),
                completed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return int(claimed.rowcount or 0) == 1

    async def start_generation(
        self,
        user_id: str,
        post_id: str,
        request: GenerationRequest,
    ) -> GenerationTicket:
        """Reserve credits, claim the post and submit the prediction."""
        async with self.session_maker() as db:
            post = await self._get_owned_post(db, user_id, post_id)
            if post.status in IN_FLIGHT_STATUSES:
                raise GenerationInProgress("A generation is already running for this post", post_id=post_id)
            prediction, prompt, cost = await self._prepare_request(db, user_id, post, request)
            observed_version = int(post.generation_version or 0)

            if not await credits.check_sufficient(user_id, cost, db):
                raise InsufficientCredits(f"This generation needs {cost} credit(s)", post_id=post_id)

            temp_reference = credits.new_temporary_reference()
            reservation = await credits.reserve_and_deduct(
                user_id,
                db,
                amount=cost,
                kind="image",
                description=f"Image generation for post {post_id}",
                reference_id=temp_reference,
                commit=False,
            )
            if not reservation.success:
                await db.rollback()
                raise InsufficientCredits(f"This generation needs {cost} credit(s)", post_id=post_id)

            if not await self._claim_post(db, post, request, prompt=prompt, cost=cost, temp_reference=temp_reference):
                await db.rollback()
                raise GenerationInProgress("A generation is already running for this post", post_id=post_id)
            await db.commit()

        claim = _Claim(
            post_id=post_id,
            user_id=user_id,
            version=observed_version + 1,
            prediction=prediction,
            cost=cost,
            temp_reference=temp_reference,
            transaction_id=reservation.transaction_id,
        )
        logger.info(
            "Generation reserved post=%s user=%s version=%s cost=%s reference=%s",
            post_id,
            user_id,
            claim.version,
            cost,
            temp_reference,
        )
        return await self._submit_claim(claim)

    async def _submit_claim(self, claim: _Claim) -> GenerationTicket:
        """Submit a claimed post and bind its job handle, refunding on failure."""
        post_id, user_id, version, temp_reference = claim.post_id, claim.user_id, claim.version, claim.temp_reference
        try:
            submitted = await self.provider.submit(claim.prediction)
        except Exception as exc:
            logger.exception("Prediction submit failed post=%s user=%s", post_id, user_id)
            outcome = await self.fail_generation(
                post_id,
                version,
                reference_id=temp_reference,
                job_handle=None,
                error_code="submission_failed",
                message=str(exc) or "Prediction submission failed",
                from_statuses=("pending",),
            )
            raise SubmissionFailed(
                f"Could not start generation: {exc}",
                post_id=post_id,
                refunded=outcome.refunded,
            ) from exc

        job_handle = submitted.job_handle
        async with self.session_maker() as db:
            rewritten = await credits.rewrite_reference_id(
                claim.transaction_id, job_handle, db, commit=False
            )
            moved = await db.execute(
                update(FeedPost)
                .where(
                    FeedPost.id == post_id,
                    FeedPost.generation_version == version,
                    FeedPost.status == "pending",
                )
                .values(
                    status="generating",
                    job_handle=job_handle,
                    credit_reference_id=job_handle if rewritten else temp_reference,
                )
                .execution_options(synchronize_session=False)
            )
            if int(moved.rowcount or 0) != 1:
                await db.rollback()
                refund = await credits.refund_reservation(temp_reference, db)
                logger.warning(
                    "Post %s changed while submitting; discarding job_handle=%s user=%s",
                    post_id,
                    job_handle,
                    user_id,
                )
                raise GenerationSuperseded(
                    "The post changed while the job was being submitted",
                    post_id=post_id,
                    job_handle=job_handle,
                    refunded=refund.success,
                )
            if not rewritten:
                logger.warning(
                    "Reservation %s kept its temporary reference for job_handle=%s",
                    claim.transaction_id,
                    job_handle,
                )
            await db.commit()

        logger.info(
            "Generation submitted post=%s user=%s version=%s job_handle=%s",
            post_id,
            user_id,
            version,
            job_handle,
        )
        return GenerationTicket(
            post_id=post_id,
            job_handle=job_handle,
            generation_version=version,
            credit_cost=claim.cost,
        )

    async def start_batch(
        self,
        user_id: str,
        post_ids: Sequence[str],
        request: GenerationRequest,
    ) -> List[Union[GenerationTicket, GenerationError]]:
        """Reserve credits for every post in one step, then submit them in order.

        Nothing is charged unless all posts are eligible and affordable. When a
        submission fails the remaining unsubmitted posts are failed as well, and
        every failed post gets its own share of the reservation back.
        """
        unique_ids = list(dict.fromkeys(post_id for post_id in post_ids if post_id))
        max_posts = max(int(settings.GENERATION_BATCH_MAX_POSTS), 1)
        if not unique_ids:
            raise PreconditionNotMet("Select at least one post to generate")
        if len(unique_ids) > max_posts:
            raise PreconditionNotMet(f"At most {max_posts} posts can be generated in one batch")

        async with self.session_maker() as db:
            prepared = []
            for post_id in unique_ids:
                post = await self._get_owned_post(db, user_id, post_id)
                if post.status in IN_FLIGHT_STATUSES:
                    raise GenerationInProgress("A generation is already running for this post", post_id=post_id)
                prediction, prompt, cost = await self._prepare_request(db, user_id, post, request)
                prepared.append((post, prediction, prompt, cost, credits.new_temporary_reference()))
            total = sum(cost for _, _, _, cost, _ in prepared)

            if not await credits.check_sufficient(user_id, total, db):
                raise InsufficientCredits(f"This batch needs {total} credit(s)")
            reservation = await credits.reserve_many(
                user_id,
                db,
                reservations=[(temp_reference, cost) for _, _, _, cost, temp_reference in prepared],
                kind="image",
                description=f"Batch image generation of {len(prepared)} posts",
                commit=False,
            )
            if not reservation.success:
                await db.rollback()
                raise InsufficientCredits(f"This batch needs {total} credit(s)")

            for post, _, prompt, cost, temp_reference in prepared:
                if not await self._claim_post(db, post, request, prompt=prompt, cost=cost, temp_reference=temp_reference):
                    await db.rollback()
                    raise GenerationInProgress("A generation is already running for this post", post_id=post.id)
            await db.commit()

        claims = [
            _Claim(
                post_id=post.id,
                user_id=user_id,
                version=int(post.generation_version or 0) + 1,
                prediction=prediction,
                cost=cost,
                temp_reference=temp_reference,
                transaction_id=transaction_id,
            )
            for (post, prediction, _, cost, temp_reference), transaction_id in zip(
                prepared, reservation.transaction_ids
            )
        ]
        logger.info(
            "Batch reserved user=%s posts=%s cost=%s",
            user_id,
            [claim.post_id for claim in claims],
            total,
        )

        results: List[Union[GenerationTicket, GenerationError]] = []
        abort_reason: Optional[str] = None
        for claim in claims:
            if abort_reason is not None:
                outcome = await self.fail_generation(
                    claim.post_id,
                    claim.version,
                    reference_id=claim.temp_reference,
                    job_handle=None,
                    error_code=SubmissionFailed.error_code,
                    message=abort_reason,
                    from_statuses=("pending",),
                )
                results.append(SubmissionFailed(abort_reason, post_id=claim.post_id, refunded=outcome.refunded))
                continue
            try:
                results.append(await self._submit_claim(claim))
            except SubmissionFailed as exc:
                abort_reason = f"Batch stopped after post {claim.post_id} could not be submitted"
                results.append(exc)
            except GenerationSuperseded as exc:
                results.append(exc)
        return results

    # Tracking and resolution

    async def poll_and_resolve(self, post_id: str, generation_version: int, job_handle: str) -> GenerationOutcome:
        result = await poll_prediction(
            self.provider,
            job_handle,
            interval_seconds=self.poll_interval_seconds,
            max_attempts=self.poll_max_attempts,
            sleep=self.sleep,
        )
        return await self.resolve_generation(post_id, generation_version, job_handle, result)

    async def track_generation(self, post_id: str, generation_version: int, job_handle: str) -> GenerationOutcome:
        """Block until the job resolves. Raises the typed error unless it completed."""
        outcome = await self.poll_and_resolve(post_id, generation_version, job_handle)
        return raise_for_outcome(outcome)

    async def resolve_generation(
        self,
        post_id: str,
        generation_version: int,
        job_handle: str,
        result: PollResult,
    ) -> GenerationOutcome:
        if result.status == "succeeded" and result.output:
            return await self._complete(post_id, generation_version, job_handle, result.output)
        if result.status == "timeout":
            code, message = "generation_timed_out", result.error or "Generation timed out"
        else:
            code, message = "generation_failed", result.error or "Generation failed"
        return await self.fail_generation(
            post_id,
            generation_version,
            reference_id=job_handle,
            job_handle=job_handle,
            error_code=code,
            message=message,
        )

    async def _current_state(self, db: AsyncSession, post_id: str):
        result = await db.execute(
            select(
                FeedPost.user_id,
                FeedPost.status,
                FeedPost.generation_version,
                FeedPost.result_url,
                FeedPost.credit_reference_id,
                FeedPost.error_code,
                FeedPost.error_message,
            ).where(FeedPost.id == post_id)
        )
        return result.first()

    def _stale_outcome(self, post_id: str, generation_version: int, job_handle: Optional[str], current) -> GenerationOutcome:
        """Outcome for an event that lost the compare-and-set."""
        if current is not None and current.generation_version == generation_version and current.status == "completed":
            return GenerationOutcome(
                post_id=post_id,
                status="completed",
                generation_version=generation_version,
                job_handle=job_handle,
                result_url=current.result_url,
            )
        return GenerationOutcome(
            post_id=post_id,
            status="superseded",
            generation_version=generation_version,
            job_handle=job_handle,
            error_code=GenerationSuperseded.error_code,
            error_message="This generation is no longer current for the post",
        )

    async def _complete(
        self,
        post_id: str,
        generation_version: int,
        job_handle: str,
        output_url: str,
    ) -> GenerationOutcome:
        async with self.session_maker() as db:
            current = await self._current_state(db, post_id)
        if current is None or current.generation_version != generation_version or current.status != "generating":
            if current is not None and current.generation_version == generation_version and current.status == "failed":
                logger.warning(
                    "Discarding late result for failed post=%s job_handle=%s version=%s",
                    post_id,
                    job_handle,
                    generation_version,
                )
            return self._stale_outcome(post_id, generation_version, job_handle, current)

        try:
            durable_url = await self.finalizer.finalize(output_url, user_id=current.user_id, job_handle=job_handle)
        except AssetFinalizationError as exc:
            logger.exception("Asset finalization failed post=%s job_handle=%s", post_id, job_handle)
            return await self.fail_generation(
                post_id,
                generation_version,
                reference_id=job_handle,
                job_handle=job_handle,
                error_code=exc.error_code,
                message=str(exc),
            )

        async with self.session_maker() as db:
            completed = await db.execute(
                update(FeedPost)
                .where(
                    FeedPost.id == post_id,
                    FeedPost.generation_version == generation_version,
                    FeedPost.status == "generating",
                )
                .values(
                    status="completed",
                    result_url=durable_url,
                    error_code=None,
                    error_message=None,
                    completed_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if int(completed.rowcount or 0) == 1:
                await db.commit()
                logger.info(
                    "Generation completed post=%s user=%s version=%s job_handle=%s",
                    post_id,
                    current.user_id,
                    generation_version,
                    job_handle,
                )
                return GenerationOutcome(
                    post_id=post_id,
                    status="completed",
                    generation_version=generation_version,
                    job_handle=job_handle,
                    result_url=durable_url,
                )
            await db.rollback()
            latest = await self._current_state(db, post_id)

        logger.warning(
            "Discarding stored asset %s for post=%s job_handle=%s; generation already resolved",
            durable_url,
            post_id,
            job_handle,
        )
        return self._stale_outcome(post_id, generation_version, job_handle, latest)

    async def fail_generation(
        self,
        post_id: str,
        generation_version: int,
        *,
        reference_id: str,
        job_handle: Optional[str],
        error_code: str,
        message: str,
        from_statuses: Sequence[str] = IN_FLIGHT_STATUSES,
    ) -> GenerationOutcome:
        """Mark the generation failed and return its credits exactly once."""
        async with self.session_maker() as db:
            failed = await db.execute(
                update(FeedPost)
                .where(
                    FeedPost.id == post_id,
                    FeedPost.generation_version == generation_version,
                    FeedPost.status.in_(tuple(from_statuses)),
                )
                .values(
                    status="failed",
                    job_handle=None,
                    result_url=None,
                    error_code=error_code,
                    error_message=(message or "")[:1000],
                    completed_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if int(failed.rowcount or 0) != 1:
                current = await self._current_state(db, post_id)
                same_version_failed = (
                    current is not None
                    and current.generation_version == generation_version
                    and current.status == "failed"
                )
                if not same_version_failed:
                    await db.rollback()
                    logger.info(
                        "Ignoring stale failure post=%s version=%s job_handle=%s",
                        post_id,
                        generation_version,
                        job_handle,
                    )
                    return self._stale_outcome(post_id, generation_version, job_handle, current)
                error_code = current.error_code or error_code
                message = current.error_message or message
            else:
                current = await self._current_state(db, post_id)

            refund = await credits.refund_reservation(
                current.credit_reference_id or reference_id,
                db,
                description=f"Refund for failed generation of post {post_id}",
                commit=False,
            )
            await db.commit()

        logger.warning(
            "Generation failed post=%s version=%s job_handle=%s error=%s refunded=%s",
            post_id,
            generation_version,
            job_handle,
            error_code,
            refund.success,
        )
        return GenerationOutcome(
            post_id=post_id,
            status="failed",
            generation_version=generation_version,
            job_handle=job_handle,
            error_code=error_code,
            error_message=message,
            refunded=refund.success,
        )

    # Entry points

    def _schedule_tracking(self, ticket: GenerationTicket) -> None:
        try:
            self.enqueue(ticket.post_id, ticket.generation_version, ticket.job_handle)
        except Exception:
            logger.exception(
                "Could not enqueue tracking for post=%s job_handle=%s; status checks and the sweep will resolve it",
                ticket.post_id,
                ticket.job_handle,
            )

    async def _follow_up(self, ticket: GenerationTicket) -> Optional[GenerationOutcome]:
        """Hand a submitted job to background tracking.

        In webhook mode a completion delivered before the job handle was stored
        finds no post, so the job is checked once here as well.
        """
        if not self.webhook_enabled:
            self._schedule_tracking(ticket)
            return None
        result = await check_once(self.provider, ticket.job_handle)
        if result is None:
            return None
        logger.info("Job finished during submission post=%s job_handle=%s", ticket.post_id, ticket.job_handle)
        return await self.resolve_generation(ticket.post_id, ticket.generation_version, ticket.job_handle, result)

    @staticmethod
    def _ticket_payload(ticket: GenerationTicket) -> Dict[str, Any]:
        return {
            "post_id": ticket.post_id,
            "job_handle": ticket.job_handle,
            "generation_version": ticket.generation_version,
            "credit_cost": ticket.credit_cost,
            "status": "generating",
        }

    @staticmethod
    def _apply_outcome(payload: Dict[str, Any], outcome: GenerationOutcome) -> Dict[str, Any]:
        payload["status"] = outcome.status
        if outcome.status == "completed":
            payload["result_url"] = outcome.result_url
        else:
            payload.update(error=outcome.error_code, message=outcome.error_message, refunded=outcome.refunded)
        return payload

    async def generate(
        self,
        user_id: str,
        post_id: str,
        request: GenerationRequest,
        *,
        wait: bool = False,
    ) -> Dict[str, Any]:
        ticket = await self.start_generation(user_id, post_id, request)
        payload = self._ticket_payload(ticket)
        if wait:
            outcome = await self.track_generation(ticket.post_id, ticket.generation_version, ticket.job_handle)
            payload.update(status="completed", result_url=outcome.result_url)
            return payload
        outcome = await self._follow_up(ticket)
        if outcome is not None:
            self._apply_outcome(payload, outcome)
        return payload

    async def generate_batch(
        self,
        user_id: str,
        post_ids: Sequence[str],
        request: GenerationRequest,
        *,
        wait: bool = False,
    ) -> Dict[str, Any]:
        """Generate several posts under one reservation. Per-post failures are reported, not raised."""
        results = await self.start_batch(user_id, post_ids, request)
        tickets = [result for result in results if isinstance(result, GenerationTicket)]
        if wait:
            outcomes = await asyncio.gather(
                *(
                    self.poll_and_resolve(ticket.post_id, ticket.generation_version, ticket.job_handle)
                    for ticket in tickets
                )
            )
        else:
            outcomes = [await self._follow_up(ticket) for ticket in tickets]
        outcomes_by_post = {ticket.post_id: outcome for ticket, outcome in zip(tickets, outcomes)}

        entries: List[Dict[str, Any]] = []
        for result in results:
            if isinstance(result, GenerationTicket):
                entry = self._ticket_payload(result)
                outcome = outcomes_by_post.get(result.post_id)
                if outcome is not None:
                    self._apply_outcome(entry, outcome)
            else:
                entry = {**result.to_detail(), "status": "failed"}
            entries.append(entry)
        return {
            "batch_size": len(entries),
            "credit_cost": sum(ticket.credit_cost for ticket in tickets),
            "submitted": len(tickets),
            "posts": entries,
        }

    async def apply_prediction_status(
        self,
        job_handle: str,
        status: PredictionStatus,
    ) -> Optional[GenerationOutcome]:
        """Resolve a generation from an externally delivered status.

        Returns None for events that need no action. Raises RecordNotFound when
        the handle is not known yet, so the sender retries the delivery.
        """
        result = to_poll_result(status, attempts=0)
        if result is None:
            return None
        async with self.session_maker() as db:
            row = (
                await db.execute(
                    select(FeedPost.id, FeedPost.generation_version, FeedPost.status, FeedPost.job_handle)
                    .where(or_(FeedPost.job_handle == job_handle, FeedPost.credit_reference_id == job_handle))
                    .order_by(FeedPost.generation_version.desc())
                    .limit(1)
                )
            ).first()
            known = row is not None or await credits.find_reservation(job_handle, db) is not None
        if not known:
            logger.warning("Status delivered for unknown job_handle=%s", job_handle)
            raise RecordNotFound("Unknown job handle", job_handle=job_handle)
        if row is None or row.status != "generating" or row.job_handle != job_handle:
            logger.info("Ignoring status for resolved job_handle=%s", job_handle)
            return None
        return await self.resolve_generation(row.id, row.generation_version, job_handle, result)

    async def refresh_generation(self, user_id: str, post_id: str) -> FeedPost:
        """Return the post, completing it first when its job already finished."""
        async with self.session_maker() as db:
            post = await self._get_owned_post(db, user_id, post_id)
        if post.status == "generating" and post.job_handle:
            result = await check_once(self.provider, post.job_handle)
            if result is not None:
                await self.resolve_generation(post.id, int(post.generation_version), post.job_handle, result)
                async with self.session_maker() as db:
                    post = await self._get_owned_post(db, user_id, post_id)
        return post


def track_generation_job(post_id: str, generation_version: int, job_handle: str) -> Dict[str, Any]:
    """RQ worker entrypoint for generation tracking."""
    outcome = asyncio.run(GenerationOrchestrator().poll_and_resolve(post_id, generation_version, job_handle))
    return {
        "post_id": outcome.post_id,
        "status": outcome.status,
        "result_url": outcome.result_url,
        "error_code": outcome.error_code,
    }
