"""Generation job contracts and typed error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


GenerationMode = Literal["classic", "pro"]
Resolution = Literal["1K", "2K", "4K"]
PollStatus = Literal["succeeded", "failed", "timeout"]

TERMINAL_PREDICTION_STATUSES = ("succeeded", "failed", "canceled")


class GenerationError(RuntimeError):
    """Base class for errors surfaced by the generation orchestrator."""

    status_code = 500
    error_code = "generation_error"

    def __init__(
        self,
        message: str,
        *,
        post_id: Optional[str] = None,
        job_handle: Optional[str] = None,
        refunded: bool = False,
    ) -> None:
        super().__init__(message)
        self.post_id = post_id
        self.job_handle = job_handle
        self.refunded = refunded

    def to_detail(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": str(self),
            "post_id": self.post_id,
            "job_handle": self.job_handle,
            "refunded": self.refunded,
        }


class PreconditionNotMet(GenerationError):
    """Missing trained model, reference images or other required resource."""

    status_code = 400
    error_code = "precondition_not_met"


class RecordNotFound(PreconditionNotMet):
    """Owning record does not exist or belongs to another user."""

    status_code = 404
    error_code = "record_not_found"


class GenerationInProgress(GenerationError):
    """The owning record already has an in-flight job."""

    status_code = 409
    error_code = "generation_in_progress"


class InsufficientCredits(GenerationError):
    status_code = 402
    error_code = "insufficient_credits"


class SubmissionFailed(GenerationError):
    status_code = 502
    error_code = "submission_failed"


class GenerationFailed(GenerationError):
    status_code = 502
    error_code = "generation_failed"


class GenerationTimedOut(GenerationError):
    status_code = 504
    error_code = "generation_timed_out"


class GenerationSuperseded(GenerationError):
    """A finalize arrived for a generation version that is no longer current."""

    status_code = 409
    error_code = "generation_superseded"


class AssetFinalizationError(GenerationError):
    status_code = 502
    error_code = "asset_finalization_failed"


class DownloadFailed(AssetFinalizationError):
    error_code = "download_failed"


class StorageWriteFailed(AssetFinalizationError):
    error_code = "storage_write_failed"


class PredictionStatusError(RuntimeError):
    """Transient failure while asking the prediction service for a status."""


@dataclass(frozen=True)
class PredictionRequest:
    """Provider-neutral prediction call built by a parameter strategy."""

    mode: GenerationMode
    input: Dict[str, Any]
    version: Optional[str] = None
    model_name: Optional[str] = None


@dataclass(frozen=True)
class SubmittedPrediction:
    job_handle: str
    status: str = "starting"


@dataclass(frozen=True)
class PredictionStatus:
    job_handle: str
    status: str
    output: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PREDICTION_STATUSES


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    output: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0


@dataclass
class GenerationRequest:
    """Caller-supplied generation parameters for one owning record."""

    mode: GenerationMode = "classic"
    aspect_ratio: Optional[str] = None
    resolution: Resolution = "2K"
    output_format: str = "png"
    safety_level: str = "block_only_high"
    seed: Optional[int] = None
    edit_instruction: Optional[str] = None
    base_image_url: Optional[str] = None
    extra_lora_disabled: bool = False
    image_inputs: List[str] = field(default_factory=list)
    # earlier results appended after the references to keep a series consistent
    continuity_images: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class GenerationTicket:
    post_id: str
    job_handle: str
    generation_version: int
    credit_cost: int
    status: str = "generating"


@dataclass(frozen=True)
class GenerationOutcome:
    post_id: str
    status: str
    generation_version: int
    job_handle: Optional[str] = None
    result_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    refunded: bool = False
