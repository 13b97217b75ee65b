"""Orchestrator service facade.

Accepts runs, schedules them as background tasks, answers progress/result
queries from committed state, resumes unfinished runs after a restart and
ships run lifecycle events from the outbox to Kafka.
"""

import asyncio
from typing import Awaitable, Callable
from uuid import uuid4

from statuscheck.common.config import settings
from statuscheck.common.events import EventEnvelope, KafkaBus
from statuscheck.common.logging import logger
from statuscheck.common.metrics import runs_in_flight, runs_started_total
from statuscheck.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    release_outbox_event,
    update_outbox_backlog_metrics,
)
from statuscheck.services.orchestrator.aggregation import build_progress
from statuscheck.services.orchestrator.chunking import dedupe_preserving_order
from statuscheck.services.orchestrator.clients import Collaborators
from statuscheck.services.orchestrator.domain import (
    GatewayState,
    Progress,
    RunConfig,
    RunPhase,
    RunRecord,
    RunResult,
)
from statuscheck.services.orchestrator.errors import ResultNotReady, RunFailed, RunNotFound
from statuscheck.services.orchestrator.models import OutboxEvent
from statuscheck.services.orchestrator.run import RunOrchestrator
from statuscheck.services.orchestrator.store import RunStore, SqlRunStore


class OrchestratorService:
    """Owns run scheduling; progress and result reads never touch run tasks."""

    def __init__(
        self,
        store: RunStore,
        collaborators: Collaborators,
        *,
        service_name: str | None = None,
        default_config: RunConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.collaborators = collaborators
        self.service_name = service_name or settings.service_name
        self.default_config = default_config or RunConfig.from_settings(settings)
        self.runner = RunOrchestrator(store, collaborators, service_name=self.service_name, sleep=sleep)
        self.kafka = KafkaBus()
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def publishes_outbox(self) -> bool:
        return isinstance(self.store, SqlRunStore)

    def start(
        self,
        payment_ids: list[str],
        config: RunConfig | None = None,
        *,
        idempotency_key: str | None = None,
        trace_id: str = "",
    ) -> RunRecord:
        """Accept a run and schedule it; returns before any lookup happens.

        Must be called from inside the event loop. A repeated idempotency key
        returns the run created the first time.
        """

        ids = dedupe_preserving_order(payment_ids)
        if not ids:
            raise ValueError("paymentIds must contain at least one id")
        candidate = RunRecord(
            run_id=str(uuid4()),
            payment_ids=ids,
            config=config or self.default_config,
            idempotency_key=idempotency_key,
            trace_id=trace_id,
        )
        record = self.store.create_run(candidate)
        if record.run_id == candidate.run_id:
            runs_started_total.labels(service=self.service_name).inc()
            logger.info(
                "run accepted run_id=%s payments=%s duplicates_dropped=%s",
                record.run_id,
                len(ids),
                len(payment_ids) - len(ids),
            )
        else:
            logger.info("idempotent replay of run run_id=%s key=%s", record.run_id, idempotency_key)
        if not record.terminal:
            self._launch(record.run_id)
        return record

    def _launch(self, run_id: str) -> None:
        existing = self._tasks.get(run_id)
        if existing is not None and not existing.done():
            return
        task = asyncio.create_task(self._execute(run_id), name=f"run:{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run_id, None))

    async def _execute(self, run_id: str) -> RunRecord | None:
        gauge = runs_in_flight.labels(service=self.service_name)
        gauge.inc()
        try:
            return await self.runner.execute(run_id)
        except asyncio.CancelledError:
            logger.info("run task cancelled run_id=%s; it resumes on next start", run_id)
            raise
        except Exception as exc:
            logger.exception("run task crashed run_id=%s error=%s", run_id, exc)
            return None
        finally:
            gauge.dec()

    async def wait(self, run_id: str) -> RunRecord | None:
        """Wait for this process's task for `run_id` (if any) and return the run."""

        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return self.store.get_run(run_id)

    def _run_or_raise(self, run_id: str) -> RunRecord:
        record = self.store.get_run(run_id)
        if record is None:
            raise RunNotFound(run_id)
        return record

    def query_progress(self, run_id: str) -> Progress:
        record = self._run_or_raise(run_id)
        states = {}
        for value in self.store.load_states(run_id, "gateway:").values():
            state = GatewayState.model_validate(value)
            states[state.gateway] = state
        return build_progress(record, states)

    def query_result(self, run_id: str) -> RunResult:
        record = self._run_or_raise(run_id)
        if record.phase == RunPhase.FAILED:
            raise RunFailed(run_id, record.error or "unknown error")
        if record.phase != RunPhase.COMPLETED or record.result is None:
            raise ResultNotReady(run_id, record.phase.value)
        return record.result

    def resume_pending(self) -> list[str]:
        """Reschedule every run left unfinished by a previous process."""

        resumed = []
        for record in self.store.list_unfinished():
            self._launch(record.run_id)
            resumed.append(record.run_id)
        if resumed:
            logger.info("resumed unfinished runs count=%s", len(resumed))
        return resumed

    async def outbox_publisher(self) -> None:
        """Continuously publish and ack pending run lifecycle events."""

        if not isinstance(self.store, SqlRunStore):
            return
        session_factory = self.store.session_factory
        while True:
            with session_factory() as db:
                rows = claim_outbox_batch(db, OutboxEvent, limit=100)
                update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                db.commit()
            for row in rows:
                try:
                    await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                    with session_factory() as db:
                        mark_outbox_sent(db, OutboxEvent, row["id"])
                        update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                        db.commit()
                except Exception as exc:
                    logger.exception("outbox publish failed: %s", exc)
                    with session_factory() as db:
                        status = release_outbox_event(db, OutboxEvent, row["id"], str(exc))
                        update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                        db.commit()
                    if status == "DEAD":
                        logger.error("outbox event parked event_id=%s topic=%s", row["id"], row["topic"])
            await asyncio.sleep(0.5)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.collaborators.close()
        await self.kafka.close()
