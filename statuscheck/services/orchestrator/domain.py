"""Run, chunk and result types shared by the orchestration layers.

Models serialize with camelCase aliases for the HTTP surface and accept
snake_case field names when reloaded from the journal store.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from statuscheck.common.config import CommonSettings
from statuscheck.common.retry import RetryPolicy
from statuscheck.common.state_machine import is_terminal


class RunPhase(str, Enum):
    LOOKUP = "LOOKUP"
    PROCESSING = "PROCESSING"
    AGGREGATING = "AGGREGATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FailureStage(str, Enum):
    LOOKUP_INDEX_NOTIFY = "LOOKUP_INDEX_NOTIFY"
    STATUS_CHECK = "STATUS_CHECK"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RunConfig(CamelModel):
    """Per-run knobs. Frozen once the run has been accepted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    lookup_batch_size: int = Field(default=10, ge=1)
    chunk_size: int = Field(default=5, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    initial_backoff: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_backoff: float = Field(default=10.0, ge=0)
    per_call_timeout: float = Field(default=30.0, gt=0)

    @classmethod
    def from_settings(cls, settings: CommonSettings) -> "RunConfig":
        return cls(
            lookup_batch_size=settings.lookup_batch_size,
            chunk_size=settings.chunk_size,
            max_attempts=settings.max_attempts,
            initial_backoff=settings.initial_backoff_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            max_backoff=settings.max_backoff_seconds,
            per_call_timeout=settings.per_call_timeout_seconds,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_backoff=self.initial_backoff,
            backoff_multiplier=self.backoff_multiplier,
            max_backoff=self.max_backoff,
            per_call_timeout=self.per_call_timeout,
        )


class Chunk(CamelModel):
    """Ordered slice of one gateway's payments."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    chunk_index: int = Field(ge=0)
    payment_ids: list[str]


class FailedChunk(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    chunk_index: int
    payment_ids: list[str]
    error: str
    stage: FailureStage


class ChunkOutcome(CamelModel):
    """What one chunk produced: successes plus zero or more failure entries."""

    successful_payment_ids: list[str] = Field(default_factory=list)
    failed_chunks: list[FailedChunk] = Field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.failed_chunks)


class GatewayResult(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    gateway: str
    successful_payment_ids: list[str] = Field(default_factory=list)
    failed_chunks: list[FailedChunk] = Field(default_factory=list)


class ChunkProgress(CamelModel):
    total_chunks: int
    completed_chunks: int = 0
    failed_chunks: int = 0
    current_chunk_index: int | None = None


class GatewayState(CamelModel):
    """Committed per-gateway progress, rewritten as a whole after every chunk."""

    gateway: str
    total_chunks: int
    completed_chunks: int = 0
    failed_chunk_count: int = 0
    current_chunk_index: int | None = None
    successful_payment_ids: list[str] = Field(default_factory=list)
    failed_chunks: list[FailedChunk] = Field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.completed_chunks >= self.total_chunks

    def merge(self, chunk: Chunk, outcome: ChunkOutcome) -> "GatewayState":
        """Return the state after `chunk` finished with `outcome`."""

        return self.model_copy(
            update={
                "completed_chunks": self.completed_chunks + 1,
                "failed_chunk_count": self.failed_chunk_count + (1 if outcome.failed else 0),
                "current_chunk_index": chunk.chunk_index,
                "successful_payment_ids": [*self.successful_payment_ids, *outcome.successful_payment_ids],
                "failed_chunks": [*self.failed_chunks, *outcome.failed_chunks],
            }
        )

    def progress(self) -> ChunkProgress:
        return ChunkProgress(
            total_chunks=self.total_chunks,
            completed_chunks=self.completed_chunks,
            failed_chunks=self.failed_chunk_count,
            current_chunk_index=self.current_chunk_index,
        )

    def result(self) -> GatewayResult:
        return GatewayResult(
            gateway=self.gateway,
            successful_payment_ids=list(self.successful_payment_ids),
            failed_chunks=list(self.failed_chunks),
        )


class RunResult(CamelModel):
    successful: dict[str, list[str]] = Field(default_factory=dict)
    failed: dict[str, list[FailedChunk]] = Field(default_factory=dict)
    gateway_lookup_failed: list[str] = Field(default_factory=list)


class Progress(CamelModel):
    """Read-only projection of a run, derived from committed state."""

    total_payments: int
    lookup_batches_total: int
    lookup_batches_completed: int
    lookup_failures: int
    gateways_identified: int
    chunks_total: int
    chunks_completed: int
    chunks_failed: int
    current_phase: RunPhase
    gateways: dict[str, ChunkProgress] = Field(default_factory=dict)
    error: str | None = None


class RunRecord(BaseModel):
    """Snapshot of one run as committed by the store."""

    run_id: str
    payment_ids: list[str]
    config: RunConfig
    phase: RunPhase = RunPhase.LOOKUP
    lookup_batches_completed: int = 0
    lookup_failures: list[str] = Field(default_factory=list)
    gateway_groups: dict[str, list[str]] = Field(default_factory=dict)
    chunks_total: int = 0
    result: RunResult | None = None
    error: str | None = None
    idempotency_key: str | None = None
    trace_id: str = ""
    state_version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def terminal(self) -> bool:
        return is_terminal(self.phase.value)
