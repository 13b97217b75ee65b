"""Per-gateway chunk processing.

`ChunkProcessor` runs the notify-then-check protocol for one chunk.
`GatewayOrchestrator` walks one gateway's chunks strictly in index order and
commits the merged gateway state after each chunk.
"""

from statuscheck.common.config import settings
from statuscheck.common.logging import log_context, logger
from statuscheck.common.metrics import chunks_processed_total
from statuscheck.common.tracing import orchestration_span
from statuscheck.services.orchestrator.clients import NotifierClient, StatusCheckClient
from statuscheck.services.orchestrator.domain import (
    Chunk,
    ChunkOutcome,
    ChunkProgress,
    FailedChunk,
    FailureStage,
    GatewayResult,
    GatewayState,
)
from statuscheck.services.orchestrator.durable import DurableContext


def notify_step_key(gateway: str, chunk_index: int) -> str:
    return f"notify:{gateway}:{chunk_index}"


def status_step_key(gateway: str, chunk_index: int, payment_id: str) -> str:
    return f"status:{gateway}:{chunk_index}:{payment_id}"


def gateway_state_key(gateway: str) -> str:
    return f"gateway:{gateway}"


class ChunkProcessor:
    """Two-stage protocol for one chunk: notify the whole chunk, then check each id."""

    def __init__(self, ctx: DurableContext, notifier: NotifierClient, status_checker: StatusCheckClient) -> None:
        self.ctx = ctx
        self.notifier = notifier
        self.status_checker = status_checker

    async def process(self, gateway: str, chunk: Chunk) -> ChunkOutcome:
        payment_ids = list(chunk.payment_ids)
        notify_key = notify_step_key(gateway, chunk.chunk_index)
        notified = await self.ctx.invoke(
            notify_key,
            lambda: self.notifier.notify(gateway, payment_ids, self.ctx.idempotency_key(notify_key)),
            dependency="notifier",
        )
        if not notified.ok:
            # No partial credit: the status-check stage is skipped for the whole chunk.
            logger.warning(
                "notify failed gateway=%s chunk=%s size=%s error=%s",
                gateway,
                chunk.chunk_index,
                len(payment_ids),
                notified.error,
            )
            return ChunkOutcome(
                failed_chunks=[
                    FailedChunk(
                        chunk_index=chunk.chunk_index,
                        payment_ids=payment_ids,
                        error=notified.error or "notify failed",
                        stage=FailureStage.LOOKUP_INDEX_NOTIFY,
                    )
                ]
            )

        outcome = ChunkOutcome()
        for payment_id in payment_ids:
            with log_context(payment_id=payment_id):
                outcome = await self._check_one(gateway, chunk.chunk_index, payment_id, outcome)
        return outcome

    async def _check_one(
        self, gateway: str, chunk_index: int, payment_id: str, outcome: ChunkOutcome
    ) -> ChunkOutcome:
        step_key = status_step_key(gateway, chunk_index, payment_id)
        checked = await self.ctx.invoke(
            step_key,
            lambda: self.status_checker.check(gateway, payment_id, self.ctx.idempotency_key(step_key)),
            dependency="status_check",
        )
        if checked.ok:
            return ChunkOutcome(
                successful_payment_ids=[*outcome.successful_payment_ids, payment_id],
                failed_chunks=outcome.failed_chunks,
            )
        return ChunkOutcome(
            successful_payment_ids=outcome.successful_payment_ids,
            failed_chunks=[
                *outcome.failed_chunks,
                FailedChunk(
                    chunk_index=chunk_index,
                    payment_ids=[payment_id],
                    error=checked.error or "status check failed",
                    stage=FailureStage.STATUS_CHECK,
                ),
            ],
        )


class GatewayOrchestrator:
    """Owns one gateway's chunk list and its committed progress."""

    def __init__(self, ctx: DurableContext, processor: ChunkProcessor, service_name: str | None = None) -> None:
        self.ctx = ctx
        self.processor = processor
        self.service_name = service_name or settings.service_name
        self._state: GatewayState | None = None

    def chunk_progress(self) -> ChunkProgress:
        if self._state is None:
            return ChunkProgress(total_chunks=0)
        return self._state.progress()

    def _load_state(self, gateway: str, chunks: list[Chunk]) -> GatewayState:
        stored = self.ctx.get_state(gateway_state_key(gateway))
        if stored is not None:
            return GatewayState.model_validate(stored)
        return GatewayState(gateway=gateway, total_chunks=len(chunks))

    async def run(self, gateway: str, chunks: list[Chunk]) -> GatewayResult:
        """Process `chunks` one at a time; a failed chunk never stops the next one.

        On resume the loop continues after the last committed chunk.
        """

        with log_context(gateway=gateway), orchestration_span("gateway", gateway=gateway, chunks=len(chunks)):
            self._state = self._load_state(gateway, chunks)
            logger.info(
                "gateway started gateway=%s chunks=%s resumed_at=%s",
                gateway,
                len(chunks),
                self._state.completed_chunks,
            )
            for chunk in chunks[self._state.completed_chunks :]:
                self._state = self._state.model_copy(update={"current_chunk_index": chunk.chunk_index})
                self.ctx.set_state(gateway_state_key(gateway), self._state.model_dump(mode="json"))
                with orchestration_span("chunk", gateway=gateway, chunk_index=chunk.chunk_index) as span:
                    outcome = await self.processor.process(gateway, chunk)
                    span.set_attribute("status_check.failed_entries", len(outcome.failed_chunks))
                committed = self._state.merge(chunk, outcome)
                self.ctx.set_state(gateway_state_key(gateway), committed.model_dump(mode="json"))
                self._state = committed
                chunks_processed_total.labels(
                    service=self.service_name,
                    gateway=gateway,
                    outcome="failed" if outcome.failed else "ok",
                ).inc()
            logger.info(
                "gateway finished gateway=%s successful=%s failed_entries=%s",
                gateway,
                len(self._state.successful_payment_ids),
                len(self._state.failed_chunks),
            )
            return self._state.result()
