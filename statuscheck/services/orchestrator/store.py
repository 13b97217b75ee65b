"""Run state, step journal and scoped state storage.

`SqlRunStore` is the production store. `InMemoryRunStore` keeps the same
contract inside one process and backs tests and local experiments.

Every write method commits one state change atomically. Readers get copies
and never see a half-applied change.
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from statuscheck.common.config import settings
from statuscheck.common.events import EventEnvelope
from statuscheck.common.state_machine import TERMINAL_PHASES, validate_transition
from statuscheck.services.orchestrator.domain import RunConfig, RunPhase, RunRecord, RunResult
from statuscheck.services.orchestrator.errors import RunNotFound
from statuscheck.services.orchestrator.models import (
    DurableState,
    DurableStep,
    OutboxEvent,
    RunTimeline,
    StatusCheckRun,
)


def lifecycle_event(record: RunRecord) -> EventEnvelope:
    """Envelope published when a run reaches COMPLETED or FAILED."""

    payload: dict[str, Any] = {
        "runId": record.run_id,
        "phase": record.phase.value,
        "totalPayments": len(record.payment_ids),
        "error": record.error,
    }
    if record.result is not None:
        payload["successful"] = sum(len(ids) for ids in record.result.successful.values())
        payload["failed"] = sum(
            len(failed_chunk.payment_ids)
            for failed_chunks in record.result.failed.values()
            for failed_chunk in failed_chunks
        )
        payload["lookupFailed"] = len(record.result.gateway_lookup_failed)
    return EventEnvelope(
        event_type=f"status_check.{record.phase.value.lower()}",
        aggregate_id=record.run_id,
        trace_id=record.trace_id,
        payload=payload,
    )


class RunStore(ABC):
    """Contract shared by the SQL and in-memory stores."""

    @abstractmethod
    def create_run(self, record: RunRecord) -> RunRecord:
        """Insert a run, or return the existing one with the same idempotency key."""

    @abstractmethod
    def get_run(self, run_id: str) -> RunRecord | None: ...

    @abstractmethod
    def list_unfinished(self) -> list[RunRecord]: ...

    @abstractmethod
    def commit_lookup_batch(self, run_id: str, batches_completed: int, lookup_failures: list[str]) -> None:
        """Record lookup progress. Never moves the batch counter backwards."""

    @abstractmethod
    def transition(
        self,
        run_id: str,
        new_phase: RunPhase,
        reason: str,
        *,
        lookup_failures: list[str] | None = None,
        gateway_groups: dict[str, list[str]] | None = None,
        chunks_total: int | None = None,
        result: RunResult | None = None,
        error: str | None = None,
    ) -> RunRecord: ...

    @abstractmethod
    def timeline(self, run_id: str) -> list[dict]: ...

    @abstractmethod
    def load_step(self, run_id: str, step_key: str) -> dict | None: ...

    @abstractmethod
    def save_step(self, run_id: str, step_key: str, outcome: dict) -> dict:
        """Store an outcome once. A concurrent earlier write wins and is returned."""

    @abstractmethod
    def load_state(self, run_id: str, state_key: str) -> Any | None: ...

    @abstractmethod
    def save_state(self, run_id: str, state_key: str, value: Any) -> None: ...

    @abstractmethod
    def load_states(self, run_id: str, prefix: str) -> dict[str, Any]: ...


class InMemoryRunStore(RunStore):
    def __init__(self) -> None:
        self._runs: dict[str, RunRecord] = {}
        self._idempotency: dict[str, str] = {}
        self._timeline: dict[str, list[dict]] = {}
        self._steps: dict[tuple[str, str], dict] = {}
        self._state: dict[tuple[str, str], Any] = {}
        self.events: list[EventEnvelope] = []

    def _require(self, run_id: str) -> RunRecord:
        record = self._runs.get(run_id)
        if record is None:
            raise RunNotFound(run_id)
        return record

    def create_run(self, record: RunRecord) -> RunRecord:
        if record.idempotency_key and record.idempotency_key in self._idempotency:
            return self._runs[self._idempotency[record.idempotency_key]].model_copy(deep=True)
        now = datetime.now(timezone.utc)
        stored = record.model_copy(deep=True, update={"created_at": now, "updated_at": now})
        self._runs[stored.run_id] = stored
        if stored.idempotency_key:
            self._idempotency[stored.idempotency_key] = stored.run_id
        self._timeline[stored.run_id] = [
            {"from_phase": None, "to_phase": stored.phase.value, "reason": "run_accepted"}
        ]
        return stored.model_copy(deep=True)

    def get_run(self, run_id: str) -> RunRecord | None:
        record = self._runs.get(run_id)
        return record.model_copy(deep=True) if record is not None else None

    def list_unfinished(self) -> list[RunRecord]:
        return [record.model_copy(deep=True) for record in self._runs.values() if not record.terminal]

    def commit_lookup_batch(self, run_id: str, batches_completed: int, lookup_failures: list[str]) -> None:
        record = self._require(run_id)
        if record.phase != RunPhase.LOOKUP or batches_completed <= record.lookup_batches_completed:
            return
        self._runs[run_id] = record.model_copy(
            update={
                "lookup_batches_completed": batches_completed,
                "lookup_failures": list(lookup_failures),
                "updated_at": datetime.now(timezone.utc),
            }
        )

    def transition(
        self,
        run_id: str,
        new_phase: RunPhase,
        reason: str,
        *,
        lookup_failures: list[str] | None = None,
        gateway_groups: dict[str, list[str]] | None = None,
        chunks_total: int | None = None,
        result: RunResult | None = None,
        error: str | None = None,
    ) -> RunRecord:
        record = self._require(run_id)
        validate_transition(record.phase.value, new_phase.value)
        changes: dict[str, Any] = {
            "phase": new_phase,
            "state_version": record.state_version + 1,
            "updated_at": datetime.now(timezone.utc),
        }
        if lookup_failures is not None:
            changes["lookup_failures"] = list(lookup_failures)
        if gateway_groups is not None:
            changes["gateway_groups"] = copy.deepcopy(gateway_groups)
        if chunks_total is not None:
            changes["chunks_total"] = chunks_total
        if result is not None:
            changes["result"] = result.model_copy(deep=True)
        if error is not None:
            changes["error"] = error
        updated = record.model_copy(update=changes)
        self._runs[run_id] = updated
        self._timeline[run_id].append(
            {"from_phase": record.phase.value, "to_phase": new_phase.value, "reason": reason}
        )
        if updated.terminal:
            self.events.append(lifecycle_event(updated))
        return updated.model_copy(deep=True)

    def timeline(self, run_id: str) -> list[dict]:
        return copy.deepcopy(self._timeline.get(run_id, []))

    def load_step(self, run_id: str, step_key: str) -> dict | None:
        outcome = self._steps.get((run_id, step_key))
        return copy.deepcopy(outcome) if outcome is not None else None

    def save_step(self, run_id: str, step_key: str, outcome: dict) -> dict:
        stored = self._steps.setdefault((run_id, step_key), copy.deepcopy(outcome))
        return copy.deepcopy(stored)

    def load_state(self, run_id: str, state_key: str) -> Any | None:
        return copy.deepcopy(self._state.get((run_id, state_key)))

    def save_state(self, run_id: str, state_key: str, value: Any) -> None:
        self._state[(run_id, state_key)] = copy.deepcopy(value)

    def load_states(self, run_id: str, prefix: str) -> dict[str, Any]:
        return {
            key: copy.deepcopy(value)
            for (owner, key), value in self._state.items()
            if owner == run_id and key.startswith(prefix)
        }


class SqlRunStore(RunStore):
    """SQLAlchemy-backed store; one short transaction per committed change."""

    def __init__(self, session_factory, topic: str | None = None) -> None:
        self.session_factory = session_factory
        self.topic = topic or settings.run_events_topic

    def _to_record(self, row: StatusCheckRun) -> RunRecord:
        return RunRecord(
            run_id=row.run_id,
            payment_ids=list(row.payment_ids),
            config=RunConfig.model_validate(row.config),
            phase=RunPhase(row.phase),
            lookup_batches_completed=row.lookup_batches_completed,
            lookup_failures=list(row.lookup_failures or []),
            gateway_groups=dict(row.gateway_groups or {}),
            chunks_total=row.chunks_total,
            result=RunResult.model_validate(row.result) if row.result is not None else None,
            error=row.error,
            idempotency_key=row.idempotency_key,
            trace_id=row.trace_id or "",
            state_version=row.state_version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _by_idempotency_key(self, db, key: str) -> StatusCheckRun | None:
        return db.execute(select(StatusCheckRun).where(StatusCheckRun.idempotency_key == key)).scalar_one_or_none()

    def create_run(self, record: RunRecord) -> RunRecord:
        with self.session_factory() as db:
            if record.idempotency_key:
                existing = self._by_idempotency_key(db, record.idempotency_key)
                if existing:
                    return self._to_record(existing)

            row = StatusCheckRun(
                run_id=record.run_id,
                idempotency_key=record.idempotency_key,
                phase=record.phase.value,
                state_version=0,
                payment_ids=list(record.payment_ids),
                config=record.config.model_dump(mode="json"),
                lookup_batches_completed=0,
                lookup_failures=[],
                gateway_groups={},
                chunks_total=0,
                trace_id=record.trace_id,
            )
            db.add(row)
            db.add(
                RunTimeline(
                    run_id=row.run_id,
                    from_phase=None,
                    to_phase=row.phase,
                    reason="run_accepted",
                    state_version=0,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # Lost a race on the idempotency key; the winner's run is the answer.
                db.rollback()
                existing = self._by_idempotency_key(db, record.idempotency_key) if record.idempotency_key else None
                if existing is None:
                    raise
                return self._to_record(existing)
            db.refresh(row)
            return self._to_record(row)

    def get_run(self, run_id: str) -> RunRecord | None:
        with self.session_factory() as db:
            row = db.get(StatusCheckRun, run_id)
            return self._to_record(row) if row is not None else None

    def list_unfinished(self) -> list[RunRecord]:
        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(StatusCheckRun)
                    .where(StatusCheckRun.phase.not_in(sorted(TERMINAL_PHASES)))
                    .order_by(StatusCheckRun.created_at)
                )
                .scalars()
                .all()
            )
            return [self._to_record(row) for row in rows]

    def commit_lookup_batch(self, run_id: str, batches_completed: int, lookup_failures: list[str]) -> None:
        with self.session_factory() as db:
            db.execute(
                update(StatusCheckRun)
                .where(
                    StatusCheckRun.run_id == run_id,
                    StatusCheckRun.phase == RunPhase.LOOKUP.value,
                    StatusCheckRun.lookup_batches_completed < batches_completed,
                )
                .values(
                    lookup_batches_completed=batches_completed,
                    lookup_failures=list(lookup_failures),
                    updated_at=datetime.now(timezone.utc),
                )
            )
            db.commit()

    def transition(
        self,
        run_id: str,
        new_phase: RunPhase,
        reason: str,
        *,
        lookup_failures: list[str] | None = None,
        gateway_groups: dict[str, list[str]] | None = None,
        chunks_total: int | None = None,
        result: RunResult | None = None,
        error: str | None = None,
    ) -> RunRecord:
        """Apply one validated phase transition with optimistic concurrency.

        The write is guarded by `(run_id, phase, state_version)` so a stale
        writer cannot overwrite a newer transition. Terminal transitions enqueue
        the lifecycle event in the same transaction.
        """

        with self.session_factory() as db:
            row = db.get(StatusCheckRun, run_id)
            if row is None:
                raise RunNotFound(run_id)
            from_phase = row.phase
            validate_transition(from_phase, new_phase.value)
            current_version = row.state_version

            values: dict[str, Any] = {
                "phase": new_phase.value,
                "state_version": current_version + 1,
                "updated_at": datetime.now(timezone.utc),
            }
            if lookup_failures is not None:
                values["lookup_failures"] = list(lookup_failures)
            if gateway_groups is not None:
                values["gateway_groups"] = gateway_groups
            if chunks_total is not None:
                values["chunks_total"] = chunks_total
            if result is not None:
                values["result"] = result.model_dump(mode="json")
            if error is not None:
                values["error"] = error

            outcome = db.execute(
                update(StatusCheckRun)
                .where(
                    StatusCheckRun.run_id == run_id,
                    StatusCheckRun.phase == from_phase,
                    StatusCheckRun.state_version == current_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount != 1:
                raise RuntimeError(
                    f"optimistic concurrency conflict for run {run_id} (expected version {current_version})"
                )
            db.add(
                RunTimeline(
                    run_id=run_id,
                    from_phase=from_phase,
                    to_phase=new_phase.value,
                    reason=reason,
                    state_version=current_version + 1,
                )
            )
            db.flush()
            db.expire(row)
            record = self._to_record(db.get(StatusCheckRun, run_id))
            if record.terminal:
                event = lifecycle_event(record)
                db.add(
                    OutboxEvent(
                        aggregate_type="status_check_run",
                        aggregate_id=run_id,
                        event_type=event.event_type,
                        topic=self.topic,
                        payload=event.model_dump(),
                    )
                )
            db.commit()
            return record

    def timeline(self, run_id: str) -> list[dict]:
        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(RunTimeline)
                    .where(RunTimeline.run_id == run_id)
                    .order_by(RunTimeline.state_version)
                )
                .scalars()
                .all()
            )
            return [{"from_phase": row.from_phase, "to_phase": row.to_phase, "reason": row.reason} for row in rows]

    def load_step(self, run_id: str, step_key: str) -> dict | None:
        with self.session_factory() as db:
            row = db.get(DurableStep, (run_id, step_key))
            return dict(row.outcome) if row is not None else None

    def save_step(self, run_id: str, step_key: str, outcome: dict) -> dict:
        with self.session_factory() as db:
            existing = db.get(DurableStep, (run_id, step_key))
            if existing is not None:
                return dict(existing.outcome)
            db.add(DurableStep(run_id=run_id, step_key=step_key, outcome=outcome))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return dict(db.get(DurableStep, (run_id, step_key)).outcome)
            return outcome

    def load_state(self, run_id: str, state_key: str) -> Any | None:
        with self.session_factory() as db:
            row = db.get(DurableState, (run_id, state_key))
            return row.value if row is not None else None

    def save_state(self, run_id: str, state_key: str, value: Any) -> None:
        with self.session_factory() as db:
            row = db.get(DurableState, (run_id, state_key))
            if row is None:
                db.add(DurableState(run_id=run_id, state_key=state_key, value=value))
            else:
                row.value = value
            db.commit()

    def load_states(self, run_id: str, prefix: str) -> dict[str, Any]:
        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(DurableState).where(
                        DurableState.run_id == run_id,
                        DurableState.state_key.startswith(prefix, autoescape=True),
                    )
                )
                .scalars()
                .all()
            )
            return {row.state_key: row.value for row in rows}
