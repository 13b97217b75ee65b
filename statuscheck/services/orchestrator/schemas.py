"""API request/response schemas for the status-check endpoints."""

from typing import Annotated, Literal

from pydantic import Field, StringConstraints

from statuscheck.common.config import settings
from statuscheck.services.orchestrator.domain import CamelModel, Progress, RunConfig, RunResult

PaymentId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class RunConfigOverrides(CamelModel):
    """Optional per-run overrides; unset fields fall back to service defaults."""

    lookup_batch_size: int | None = Field(default=None, ge=1)
    chunk_size: int | None = Field(default=None, ge=1)
    max_attempts: int | None = Field(default=None, ge=1)
    initial_backoff: float | None = Field(default=None, ge=0)
    backoff_multiplier: float | None = Field(default=None, ge=1)
    max_backoff: float | None = Field(default=None, ge=0)
    per_call_timeout: float | None = Field(default=None, gt=0)


class CheckStatusRequest(CamelModel):
    """Payload accepted by `POST /payments/check-status`."""

    payment_ids: list[PaymentId] = Field(min_length=1, max_length=settings.max_payment_ids)
    config: RunConfigOverrides | None = None

    def run_config(self, defaults: RunConfig) -> RunConfig:
        if self.config is None:
            return defaults
        overrides = self.config.model_dump(exclude_none=True)
        return RunConfig.model_validate({**defaults.model_dump(), **overrides})


class CheckStatusAccepted(CamelModel):
    workflow_id: str
    status: Literal["STARTED"] = "STARTED"


class CheckStatusResponse(CamelModel):
    """Polling view of a run. `result` is only populated once COMPLETED."""

    workflow_id: str
    status: Literal["RUNNING", "COMPLETED", "FAILED", "NOT_FOUND"]
    progress: Progress | None = None
    result: RunResult | None = None
    error: str | None = None
