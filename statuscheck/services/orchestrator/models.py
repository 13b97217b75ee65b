"""Orchestrator database models.

This DB is the source of truth for run state, the phase timeline, the durable
step journal, per-run scoped state and the service-local outbox.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from statuscheck.common.db import Base, JsonType


class StatusCheckRun(Base):
    """Current state of one status-check run."""

    __tablename__ = "status_check_runs"

    run_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    idempotency_key: Mapped[str | None] = mapped_column(String, unique=True, index=True, nullable=True)
    phase: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_ids: Mapped[list] = mapped_column(JsonType)
    config: Mapped[dict] = mapped_column(JsonType)
    lookup_batches_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lookup_failures: Mapped[list] = mapped_column(JsonType, default=list)
    gateway_groups: Mapped[dict] = mapped_column(JsonType, default=dict)
    chunks_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    error: Mapped[str | None] = mapped_column(String, nullable=True)
    trace_id: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RunTimeline(Base):
    """Immutable audit trail of every phase transition."""

    __tablename__ = "run_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    run_id: Mapped[str] = mapped_column(ForeignKey("status_check_runs.run_id"), index=True)
    from_phase: Mapped[str | None] = mapped_column(String, nullable=True)
    to_phase: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DurableStep(Base):
    """Journaled outcome of one external call, keyed by a deterministic step key."""

    __tablename__ = "durable_steps"

    run_id: Mapped[str] = mapped_column(String, primary_key=True)
    step_key: Mapped[str] = mapped_column(String, primary_key=True)
    outcome: Mapped[dict] = mapped_column(JsonType)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DurableState(Base):
    """Per-run scoped key/value state (per-gateway progress counters)."""

    __tablename__ = "durable_state"

    run_id: Mapped[str] = mapped_column(String, primary_key=True)
    state_key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[dict] = mapped_column(JsonType)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OutboxEvent(Base):
    """Run lifecycle events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JsonType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
