"""Generation router: start jobs, check status, receive prediction webhooks."""

from __future__ import annotations

import logging
import secrets
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from config import settings
from routers.auth_scope import AuthContext, get_auth_context
from routers.posts import serialize_post
from routers.rate_limit import rate_limit
from services.generation import GenerationOrchestrator
from services.generation_types import GenerationError, GenerationRequest
from services.prediction_client import parse_prediction_payload

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerateRequest(BaseModel):
    mode: Literal["classic", "pro"] = "classic"
    wait: bool = False
    aspect_ratio: Optional[str] = Field(default=None, max_length=10)
    resolution: Literal["1K", "2K", "4K"] = "2K"
    output_format: Literal["png", "jpg", "webp"] = "png"
    safety_level: str = Field(default="block_only_high", max_length=40)
    seed: Optional[int] = Field(default=None, ge=0)
    edit_instruction: Optional[str] = Field(default=None, max_length=1000)
    base_image_url: Optional[str] = Field(default=None, max_length=2000)
    extra_lora_disabled: bool = False
    continuity_images: List[str] = Field(default_factory=list, max_length=8)

    def to_generation_request(self) -> GenerationRequest:
        return GenerationRequest(
            mode=self.mode,
            aspect_ratio=self.aspect_ratio,
            resolution=self.resolution,
            output_format=self.output_format,
            safety_level=self.safety_level,
            seed=self.seed,
            edit_instruction=self.edit_instruction,
            base_image_url=self.base_image_url,
            extra_lora_disabled=self.extra_lora_disabled,
            continuity_images=list(self.continuity_images),
        )


class BatchGenerateRequest(GenerateRequest):
    post_ids: List[str] = Field(min_length=1, max_length=50)


@lru_cache(maxsize=1)
def get_generation_orchestrator() -> GenerationOrchestrator:
    return GenerationOrchestrator()


def _http_error(exc: GenerationError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def _generation_quota():
    return rate_limit("generation", limit=max(int(settings.GENERATION_RATE_LIMIT_PER_HOUR), 1), window_seconds=3600)


@router.post("/posts/{post_id}/generate")
async def generate_post_image(
    post_id: str,
    request: GenerateRequest,
    _rate_limit: None = Depends(_generation_quota()),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    try:
        return await orchestrator.generate(auth.user_id, post_id, request.to_generation_request(), wait=request.wait)
    except GenerationError as exc:
        raise _http_error(exc) from exc


@router.post("/generations/batch")
async def generate_post_batch(
    request: BatchGenerateRequest,
    _rate_limit: None = Depends(_generation_quota()),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    try:
        return await orchestrator.generate_batch(
            auth.user_id, request.post_ids, request.to_generation_request(), wait=request.wait
        )
    except GenerationError as exc:
        raise _http_error(exc) from exc


@router.get("/posts/{post_id}/generation")
async def get_generation_status(
    post_id: str,
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    try:
        post = await orchestrator.refresh_generation(auth.user_id, post_id)
    except GenerationError as exc:
        raise _http_error(exc) from exc
    return serialize_post(post)


@router.post("/webhooks/predictions")
async def prediction_webhook(
    payload: Dict[str, Any],
    token: str = Query(default=""),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    expected = (settings.PREDICTION_WEBHOOK_TOKEN or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Prediction webhooks are not configured.")
    if not secrets.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=403, detail="Invalid webhook token.")

    status = parse_prediction_payload(payload)
    if not status.job_handle:
        raise HTTPException(status_code=400, detail="Prediction id missing from payload.")
    try:
        outcome = await orchestrator.apply_prediction_status(status.job_handle, status)
    except GenerationError as exc:
        raise _http_error(exc) from exc
    if outcome is None:
        return {"ok": True, "handled": False}
    return {"ok": True, "handled": True, "post_id": outcome.post_id, "status": outcome.status}
