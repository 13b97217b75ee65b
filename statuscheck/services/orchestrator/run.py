"""Root orchestration for one status-check run.

Phases: LOOKUP (sequential batches, concurrent lookups inside a batch) ->
PROCESSING (one concurrent sub-run per gateway) -> AGGREGATING -> COMPLETED.
Each phase reads what the previous phase committed, so `execute` can be
re-entered for a run interrupted at any point and picks up where it stopped.
"""

import asyncio
from datetime import datetime, timezone
from functools import partial
from typing import Awaitable, Callable

from statuscheck.common.config import settings
from statuscheck.common.logging import log_context, logger
from statuscheck.common.metrics import lookups_total, run_duration_seconds, runs_finished_total
from statuscheck.common.tracing import orchestration_span
from statuscheck.services.orchestrator.aggregation import aggregate, verify_partition
from statuscheck.services.orchestrator.chunking import chunk_plan, count_chunks, group_by_gateway, partition
from statuscheck.services.orchestrator.clients import Collaborators
from statuscheck.services.orchestrator.domain import GatewayResult, GatewayState, RunPhase, RunRecord
from statuscheck.services.orchestrator.durable import DurableContext, describe_error
from statuscheck.services.orchestrator.errors import InternalFailure, RunNotFound
from statuscheck.services.orchestrator.gateway import ChunkProcessor, GatewayOrchestrator, gateway_state_key
from statuscheck.services.orchestrator.store import RunStore


def lookup_step_key(payment_id: str) -> str:
    return f"lookup:{payment_id}"


class RunOrchestrator:
    """Drives one run through its phases; the only writer of the run record."""

    def __init__(
        self,
        store: RunStore,
        collaborators: Collaborators,
        *,
        service_name: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.collaborators = collaborators
        self.service_name = service_name or settings.service_name
        self.sleep = sleep

    def context_for(self, record: RunRecord) -> DurableContext:
        return DurableContext(
            record.run_id,
            self.store,
            record.config.retry_policy(),
            service_name=self.service_name,
            sleep=self.sleep,
        )

    async def execute(self, run_id: str) -> RunRecord | None:
        """Run (or resume) `run_id` until it is COMPLETED or FAILED."""

        record = self.store.get_run(run_id)
        if record is None:
            raise RunNotFound(run_id)
        if record.terminal:
            return record

        with log_context(run_id=run_id, trace_id=record.trace_id):
            ctx = self.context_for(record)
            with orchestration_span(
                "run",
                run_id=run_id,
                payments=len(record.payment_ids),
                entry_phase=record.phase.value,
            ) as span:
                try:
                    if record.phase == RunPhase.LOOKUP:
                        record = await self._lookup_phase(ctx, record)
                    if record.phase == RunPhase.PROCESSING:
                        record = await self._gateway_phase(ctx, record)
                    if record.phase == RunPhase.AGGREGATING:
                        record = self._aggregate(ctx, record)
                except Exception as exc:
                    logger.exception("run failed run_id=%s error=%s", run_id, exc)
                    span.record_exception(exc)
                    record = self._fail(run_id, exc)
            self._observe_terminal(record)
            return record

    async def _lookup_phase(self, ctx: DurableContext, record: RunRecord) -> RunRecord:
        """Resolve each payment's gateway, one batch at a time."""

        lookup = self.collaborators.lookup
        resolved: list[tuple[str, str]] = []
        failures: list[str] = []
        batches = partition(record.payment_ids, record.config.lookup_batch_size)
        logger.info("lookup phase started payments=%s batches=%s", len(record.payment_ids), len(batches))

        for batch_index, batch in enumerate(batches):
            calls = []
            for payment_id in batch:
                step_key = lookup_step_key(payment_id)
                calls.append((step_key, partial(lookup.lookup, payment_id, ctx.idempotency_key(step_key)), "lookup"))
            outcomes = await ctx.run_parallel(calls)
            for payment_id, outcome in zip(batch, outcomes):
                if outcome.ok and isinstance(outcome.value, str) and outcome.value:
                    resolved.append((payment_id, outcome.value))
                    lookups_total.labels(service=self.service_name, outcome="ok").inc()
                else:
                    failures.append(payment_id)
                    lookups_total.labels(service=self.service_name, outcome="failed").inc()
            self.store.commit_lookup_batch(record.run_id, batch_index + 1, failures)

        groups = group_by_gateway(resolved)
        chunks_total = count_chunks(groups, record.config.chunk_size)
        logger.info(
            "lookup phase finished resolved=%s failed=%s gateways=%s chunks=%s",
            len(resolved),
            len(failures),
            len(groups),
            chunks_total,
        )
        return self.store.transition(
            record.run_id,
            RunPhase.PROCESSING,
            "lookup_completed",
            lookup_failures=failures,
            gateway_groups=groups,
            chunks_total=chunks_total,
        )

    async def _gateway_phase(self, ctx: DurableContext, record: RunRecord) -> RunRecord:
        """Fan out one gateway sub-run per gateway and wait for all of them."""

        plan = chunk_plan(record.gateway_groups, record.config.chunk_size)
        tasks: dict[str, asyncio.Task] = {}
        for gateway, chunks in plan.items():
            processor = ChunkProcessor(ctx, self.collaborators.notifier, self.collaborators.status_checker)
            orchestrator = GatewayOrchestrator(ctx, processor, service_name=self.service_name)
            tasks[gateway] = ctx.spawn(f"gateway:{gateway}", partial(orchestrator.run, gateway, chunks))

        settled = await asyncio.gather(*tasks.values(), return_exceptions=True)
        for gateway, item in zip(tasks, settled):
            if isinstance(item, BaseException):
                raise InternalFailure(f"gateway sub-run {gateway} failed: {describe_error(item)}") from item
        return self.store.transition(record.run_id, RunPhase.AGGREGATING, "gateways_completed")

    def _aggregate(self, ctx: DurableContext, record: RunRecord) -> RunRecord:
        """Build the final result from the committed gateway states."""

        results: dict[str, GatewayResult] = {}
        for gateway in record.gateway_groups:
            stored = ctx.get_state(gateway_state_key(gateway))
            if stored is None:
                raise InternalFailure(f"no committed state for gateway {gateway}")
            state = GatewayState.model_validate(stored)
            if not state.finished:
                raise InternalFailure(
                    f"gateway {gateway} committed {state.completed_chunks}/{state.total_chunks} chunks"
                )
            results[gateway] = state.result()

        result = aggregate(record.lookup_failures, results)
        verify_partition(record.payment_ids, result)
        return self.store.transition(record.run_id, RunPhase.COMPLETED, "aggregation_completed", result=result)

    def _fail(self, run_id: str, exc: BaseException) -> RunRecord | None:
        try:
            current = self.store.get_run(run_id)
            if current is None or current.terminal:
                return current
            return self.store.transition(run_id, RunPhase.FAILED, "internal_failure", error=describe_error(exc))
        except Exception:
            logger.exception("could not record run failure run_id=%s", run_id)
            return None

    def _observe_terminal(self, record: RunRecord | None) -> None:
        if record is None or not record.terminal:
            return
        phase = record.phase.value
        runs_finished_total.labels(service=self.service_name, terminal_phase=phase).inc()
        if record.created_at is not None:
            created_at = record.created_at
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
            run_duration_seconds.labels(service=self.service_name, terminal_phase=phase).observe(elapsed)
        logger.info("run finished run_id=%s phase=%s", record.run_id, phase)
