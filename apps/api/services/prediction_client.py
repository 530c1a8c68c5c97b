"""Prediction service client and generation parameter strategies."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlencode

import httpx

from config import settings
from services.generation_types import (
    PredictionRequest,
    PredictionStatus,
    PredictionStatusError,
    PreconditionNotMet,
    SubmissionFailed,
    SubmittedPrediction,
)
from services.prompt_assembler import extract_version_id

logger = logging.getLogger(__name__)

MAX_PRO_REFERENCE_IMAGES = 8
PRO_RESOLUTIONS = ("1K", "2K", "4K")

QUALITY_PRESETS: Dict[str, Dict[str, Any]] = {
    "default": {
        "guidance_scale": 3.5,
        "num_inference_steps": 28,
        "aspect_ratio": "4:5",
        "megapixels": "1",
        "output_format": "png",
        "output_quality": 95,
        "lora_scale": 1.0,
        "extra_lora_scale": 0.0,
        "disable_safety_checker": False,
        "go_fast": False,
        "num_outputs": 1,
        "model": "dev",
    },
    "portrait": {
        "guidance_scale": 3.0,
        "num_inference_steps": 32,
        "aspect_ratio": "4:5",
        "lora_scale": 1.05,
    },
    "lifestyle": {
        "guidance_scale": 3.5,
        "num_inference_steps": 30,
        "aspect_ratio": "4:5",
        "lora_scale": 0.95,
    },
    "flatlay": {
        "guidance_scale": 4.0,
        "num_inference_steps": 28,
        "aspect_ratio": "1:1",
        "lora_scale": 0.8,
    },
}


def quality_preset(post_type: Optional[str]) -> Dict[str, Any]:
    preset = dict(QUALITY_PRESETS["default"])
    preset.update(QUALITY_PRESETS.get(str(post_type or "").lower(), {}))
    return preset


def pro_credit_cost(resolution: Optional[str]) -> int:
    if str(resolution or "").upper() == "4K":
        return max(int(settings.CREDIT_COST_PRO_IMAGE_4K), 1)
    return max(int(settings.CREDIT_COST_PRO_IMAGE), 1)


def build_classic_request(
    *,
    prompt: str,
    version: str,
    lora_weights_url: str,
    post_type: Optional[str] = None,
    lora_scale: Optional[float] = None,
    aspect_ratio: Optional[str] = None,
    output_format: Optional[str] = None,
    extra_lora_url: Optional[str] = None,
    extra_lora_scale: Optional[float] = None,
    extra_lora_disabled: bool = False,
    seed: Optional[int] = None,
    image_url: Optional[str] = None,
) -> PredictionRequest:
    """Trained-model (LoRA) request built from the post type's quality preset."""
    version_id = extract_version_id(version)
    if not version_id:
        raise PreconditionNotMet("Trained model has no version id")
    if not lora_weights_url:
        raise PreconditionNotMet("Trained model has no LoRA weights")

    preset = quality_preset(post_type)
    payload: Dict[str, Any] = {
        "prompt": prompt,
        "guidance_scale": preset["guidance_scale"],
        "num_inference_steps": preset["num_inference_steps"],
        "aspect_ratio": aspect_ratio or preset["aspect_ratio"],
        "megapixels": preset["megapixels"],
        "output_format": output_format or preset["output_format"],
        "output_quality": preset["output_quality"],
        "lora_scale": float(lora_scale) if lora_scale is not None else preset["lora_scale"],
        "hf_lora": lora_weights_url,
        "disable_safety_checker": preset["disable_safety_checker"],
        "go_fast": preset["go_fast"],
        "num_outputs": preset["num_outputs"],
        "model": preset["model"],
    }
    if extra_lora_scale is None:
        extra_lora_scale = preset.get("extra_lora_scale") or 0.0
    extra_scale = float(extra_lora_scale)
    if extra_lora_url and not extra_lora_disabled and extra_scale > 0:
        payload["extra_lora"] = extra_lora_url
        payload["extra_lora_scale"] = extra_scale
    if seed is not None:
        payload["seed"] = int(seed)
    if image_url:
        payload["image"] = image_url
    return PredictionRequest(mode="classic", input=payload, version=version_id)


def build_pro_request(
    *,
    prompt: str,
    image_inputs: Sequence[str],
    aspect_ratio: Optional[str] = None,
    resolution: str = "2K",
    output_format: str = "png",
    safety_level: str = "block_only_high",
    model_name: Optional[str] = None,
) -> PredictionRequest:
    """Multi-reference request; images are sent in the given order."""
    images: List[str] = [str(url) for url in image_inputs if url]
    if not images:
        raise PreconditionNotMet("At least one reference image is required")
    if len(images) > MAX_PRO_REFERENCE_IMAGES:
        raise PreconditionNotMet(f"At most {MAX_PRO_REFERENCE_IMAGES} reference images are supported")
    normalized_resolution = str(resolution or "2K").upper()
    if normalized_resolution not in PRO_RESOLUTIONS:
        raise PreconditionNotMet(f"resolution must be one of {PRO_RESOLUTIONS}")

    payload: Dict[str, Any] = {
        "prompt": prompt,
        "image_input": images,
        "aspect_ratio": aspect_ratio or "4:5",
        "resolution": normalized_resolution,
        "output_format": output_format or "png",
        "safety_filter_level": safety_level or "block_only_high",
    }
    return PredictionRequest(
        mode="pro",
        input=payload,
        model_name=model_name or settings.PRO_MODEL_NAME,
    )


def _first_output(output: Any) -> Optional[str]:
    if isinstance(output, list):
        return str(output[0]) if output else None
    if output:
        return str(output)
    return None


class PredictionProvider(ABC):
    name: str

    @abstractmethod
    async def submit(self, request: PredictionRequest) -> SubmittedPrediction:
        raise NotImplementedError

    @abstractmethod
    async def get_status(self, job_handle: str) -> PredictionStatus:
        raise NotImplementedError


class ReplicatePredictionProvider(PredictionProvider):
    """Replicate-compatible HTTP API over httpx."""

    name = "replicate"

    def __init__(
        self,
        *,
        api_token: str,
        base_url: str,
        timeout: float = 30.0,
        webhook_url: Optional[str] = None,
        webhook_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.webhook_url = (webhook_url or "").strip() or None
        self.webhook_token = (webhook_token or "").strip() or None
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=self.transport,
        )

    def _webhook(self) -> Optional[str]:
        if not self.webhook_url:
            return None
        if not self.webhook_token:
            return self.webhook_url
        separator = "&" if "?" in self.webhook_url else "?"
        return f"{self.webhook_url}{separator}{urlencode({'token': self.webhook_token})}"

    async def submit(self, request: PredictionRequest) -> SubmittedPrediction:
        body: Dict[str, Any] = {"input": request.input}
        webhook = self._webhook()
        if webhook:
            body["webhook"] = webhook
            body["webhook_events_filter"] = ["completed"]

        if request.mode == "pro":
            owner, _, model = str(request.model_name or "").partition("/")
            if not owner or not model:
                raise SubmissionFailed(f"Invalid model name: {request.model_name!r}")
            path = f"/models/{owner}/{model}/predictions"
        else:
            if not request.version:
                raise SubmissionFailed("Classic prediction requires a model version")
            body["version"] = request.version
            path = "/predictions"

        try:
            async with self._client() as client:
                response = await client.post(path, json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Prediction submit rejected status=%s body=%s",
                exc.response.status_code,
                exc.response.text[:500],
            )
            raise SubmissionFailed(
                f"Prediction service rejected the request ({exc.response.status_code})"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise SubmissionFailed(f"Prediction service unavailable: {exc}") from exc

        job_handle = str((data or {}).get("id") or "").strip()
        if not job_handle:
            raise SubmissionFailed("Prediction service returned no prediction id")
        return SubmittedPrediction(job_handle=job_handle, status=str(data.get("status") or "starting"))

    async def get_status(self, job_handle: str) -> PredictionStatus:
        try:
            async with self._client() as client:
                response = await client.get(f"/predictions/{job_handle}")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PredictionStatusError(f"Status check failed for {job_handle}: {exc}") from exc
        return parse_prediction_payload(data, job_handle=job_handle)


def parse_prediction_payload(data: Dict[str, Any], *, job_handle: Optional[str] = None) -> PredictionStatus:
    """Normalize a prediction object (API response or webhook body)."""
    status = str((data or {}).get("status") or "starting").lower()
    if status == "canceled":
        status = "failed"
    error = data.get("error")
    return PredictionStatus(
        job_handle=str(data.get("id") or job_handle or ""),
        status=status,
        output=_first_output(data.get("output")),
        error=str(error) if error else None,
    )


def get_prediction_provider() -> PredictionProvider:
    return ReplicatePredictionProvider(
        api_token=settings.REPLICATE_API_TOKEN,
        base_url=settings.REPLICATE_API_BASE_URL,
        timeout=float(settings.REPLICATE_TIMEOUT_SECONDS),
        webhook_url=settings.PREDICTION_WEBHOOK_URL,
        webhook_token=settings.PREDICTION_WEBHOOK_TOKEN,
    )
