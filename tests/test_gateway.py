"""Chunk protocol and per-gateway sequencing."""

import asyncio

from statuscheck.common.retry import RetryPolicy
from statuscheck.services.orchestrator.chunking import build_chunks
from statuscheck.services.orchestrator.domain import Chunk, FailureStage, GatewayState
from statuscheck.services.orchestrator.durable import DurableContext
from statuscheck.services.orchestrator.gateway import ChunkProcessor, GatewayOrchestrator, gateway_state_key
from statuscheck.services.orchestrator.store import InMemoryRunStore
from tests.fakes import FakeNotifier, FakeStatusChecker, no_sleep


def _ctx(store):
    return DurableContext(
        "run-1",
        store,
        RetryPolicy(max_attempts=2, initial_backoff=0.0),
        service_name="test",
        sleep=no_sleep,
    )


def test_notify_failure_fails_whole_chunk_and_skips_status_checks():
    """No partial credit when the notifier rejects a chunk."""

    notifier = FakeNotifier()
    notifier.failing_ids = {"p2"}
    checker = FakeStatusChecker()
    processor = ChunkProcessor(_ctx(InMemoryRunStore()), notifier, checker)

    outcome = asyncio.run(processor.process("A", Chunk(chunk_index=3, payment_ids=["p1", "p2"])))

    assert outcome.successful_payment_ids == []
    assert len(outcome.failed_chunks) == 1
    failed = outcome.failed_chunks[0]
    assert failed.chunk_index == 3
    assert failed.payment_ids == ["p1", "p2"]
    assert failed.stage == FailureStage.LOOKUP_INDEX_NOTIFY
    assert checker.calls == []
    assert len(notifier.calls) == 2


def test_status_failure_is_isolated_to_one_payment():
    notifier = FakeNotifier()
    checker = FakeStatusChecker()
    checker.rejected_ids = {"p2"}
    processor = ChunkProcessor(_ctx(InMemoryRunStore()), notifier, checker)

    outcome = asyncio.run(processor.process("A", Chunk(chunk_index=0, payment_ids=["p1", "p2", "p3"])))

    assert outcome.successful_payment_ids == ["p1", "p3"]
    assert [(f.payment_ids, f.stage) for f in outcome.failed_chunks] == [(["p2"], FailureStage.STATUS_CHECK)]
    assert checker.checked_ids() == ["p1", "p2", "p3"]


def test_downstream_calls_carry_step_idempotency_keys():
    notifier = FakeNotifier()
    checker = FakeStatusChecker()
    processor = ChunkProcessor(_ctx(InMemoryRunStore()), notifier, checker)

    asyncio.run(processor.process("A", Chunk(chunk_index=1, payment_ids=["p1"])))

    assert notifier.calls[0][2] == "run-1:notify:A:1"
    assert checker.calls[0][2] == "run-1:status:A:1:p1"


def test_gateway_processes_chunks_in_order_and_continues_after_failure():
    store = InMemoryRunStore()
    notifier = FakeNotifier()
    notifier.failing_ids = {"p1"}
    checker = FakeStatusChecker()
    ctx = _ctx(store)
    orchestrator = GatewayOrchestrator(ctx, ChunkProcessor(ctx, notifier, checker), service_name="test")

    result = asyncio.run(orchestrator.run("A", build_chunks(["p1", "p2", "p3", "p4", "p5"], 2)))

    notified_chunks = [call[2].rsplit(":", 1)[-1] for call in notifier.calls if call[1] != ["p1", "p2"]]
    assert notified_chunks == ["1", "2"]
    assert result.successful_payment_ids == ["p3", "p4", "p5"]
    assert [f.chunk_index for f in result.failed_chunks] == [0]

    progress = orchestrator.chunk_progress()
    assert (progress.total_chunks, progress.completed_chunks, progress.failed_chunks) == (3, 3, 1)
    assert progress.current_chunk_index == 2
    assert store.load_state("run-1", gateway_state_key("A"))["completed_chunks"] == 3


def test_gateway_resumes_after_last_committed_chunk():
    """Chunks committed before a restart are not processed again."""

    store = InMemoryRunStore()
    chunks = build_chunks(["p1", "p2", "p3"], 2)
    committed = GatewayState(gateway="A", total_chunks=2, completed_chunks=1, successful_payment_ids=["p1", "p2"])
    store.save_state("run-1", gateway_state_key("A"), committed.model_dump(mode="json"))
    notifier = FakeNotifier()
    checker = FakeStatusChecker()
    ctx = _ctx(store)
    orchestrator = GatewayOrchestrator(ctx, ChunkProcessor(ctx, notifier, checker), service_name="test")

    result = asyncio.run(orchestrator.run("A", chunks))

    assert [call[1] for call in notifier.calls] == [["p3"]]
    assert result.successful_payment_ids == ["p1", "p2", "p3"]


def test_two_of_five_status_failures():
    notifier = FakeNotifier()
    checker = FakeStatusChecker()
    checker.failing_ids = {"p2", "p4"}
    processor = ChunkProcessor(_ctx(InMemoryRunStore()), notifier, checker)
    ids = ["p1", "p2", "p3", "p4", "p5"]

    outcome = asyncio.run(processor.process("A", Chunk(chunk_index=0, payment_ids=ids)))

    assert outcome.successful_payment_ids == ["p1", "p3", "p5"]
    assert [f.payment_ids for f in outcome.failed_chunks] == [["p2"], ["p4"]]
    assert all(f.stage == FailureStage.STATUS_CHECK for f in outcome.failed_chunks)
    assert [f.error for f in outcome.failed_chunks] == ["status check returned 503"] * 2


def test_failed_notify_of_five_ids_makes_no_status_calls():
    notifier = FakeNotifier()
    notifier.failing_ids = {"p1"}
    checker = FakeStatusChecker()
    processor = ChunkProcessor(_ctx(InMemoryRunStore()), notifier, checker)
    ids = ["p1", "p2", "p3", "p4", "p5"]

    outcome = asyncio.run(processor.process("A", Chunk(chunk_index=0, payment_ids=ids)))

    assert [f.payment_ids for f in outcome.failed_chunks] == [ids]
    assert checker.calls == []


def test_in_flight_chunk_index_is_committed_before_processing():
    """Readers of the committed state see the chunk that is currently running."""

    store = InMemoryRunStore()
    notifier = FakeNotifier()
    notifier.block_keys = {":notify:A:1"}
    checker = FakeStatusChecker()
    ctx = _ctx(store)
    orchestrator = GatewayOrchestrator(ctx, ChunkProcessor(ctx, notifier, checker), service_name="test")

    async def _run():
        task = asyncio.create_task(orchestrator.run("A", build_chunks(["p1", "p2", "p3", "p4"], 2)))
        await notifier.reached.wait()
        committed = GatewayState.model_validate(store.load_state("run-1", gateway_state_key("A")))
        live = orchestrator.chunk_progress()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return committed.progress(), live

    committed, live = asyncio.run(_run())
    assert committed == live
    assert committed.current_chunk_index == 1
    assert committed.completed_chunks == 1
