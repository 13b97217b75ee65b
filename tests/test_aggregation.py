"""Result merging, partition verification and progress projection."""

import pytest

from statuscheck.services.orchestrator.aggregation import aggregate, build_progress, verify_partition
from statuscheck.services.orchestrator.domain import (
    Chunk,
    ChunkOutcome,
    FailedChunk,
    FailureStage,
    GatewayResult,
    GatewayState,
    RunConfig,
    RunPhase,
    RunRecord,
    RunResult,
)
from statuscheck.services.orchestrator.errors import InternalFailure


def _failed(chunk_index, ids, stage=FailureStage.STATUS_CHECK):
    return FailedChunk(chunk_index=chunk_index, payment_ids=ids, error="boom", stage=stage)


def test_every_gateway_appears_in_both_maps():
    result = aggregate(
        ["x"],
        {
            "B": GatewayResult(gateway="B", successful_payment_ids=["p3"]),
            "A": GatewayResult(gateway="A", failed_chunks=[_failed(0, ["p1", "p2"], FailureStage.LOOKUP_INDEX_NOTIFY)]),
        },
    )
    assert result.successful == {"A": [], "B": ["p3"]}
    assert set(result.failed) == {"A", "B"}
    assert result.failed["B"] == []
    assert result.gateway_lookup_failed == ["x"]


def test_verify_partition_accepts_exact_cover():
    result = RunResult(
        successful={"A": ["p1"]},
        failed={"A": [_failed(0, ["p2"])]},
        gateway_lookup_failed=["p3"],
    )
    verify_partition(["p1", "p2", "p3"], result)


def test_verify_partition_rejects_duplicates_and_gaps():
    duplicated = RunResult(successful={"A": ["p1"]}, failed={"A": [_failed(0, ["p1"])]})
    with pytest.raises(InternalFailure, match=r"duplicated=\['p1'\]"):
        verify_partition(["p1"], duplicated)

    with pytest.raises(InternalFailure, match=r"missing=\['p2'\]"):
        verify_partition(["p1", "p2"], RunResult(successful={"A": ["p1"]}))


def test_gateway_state_merge_counts_failed_chunks_once():
    """A chunk with several status failures still counts as one failed chunk."""

    state = GatewayState(gateway="A", total_chunks=2)
    outcome = ChunkOutcome(
        successful_payment_ids=["p1"],
        failed_chunks=[_failed(0, ["p2"]), _failed(0, ["p3"])],
    )
    state = state.merge(Chunk(chunk_index=0, payment_ids=["p1", "p2", "p3"]), outcome)
    assert state.completed_chunks == 1
    assert state.failed_chunk_count == 1
    assert not state.finished
    assert len(state.result().failed_chunks) == 2


def test_progress_for_gateways_without_committed_state():
    record = RunRecord(
        run_id="r1",
        payment_ids=["p1", "p2", "p3", "x"],
        config=RunConfig(lookup_batch_size=3, chunk_size=2),
        phase=RunPhase.PROCESSING,
        lookup_batches_completed=2,
        lookup_failures=["x"],
        gateway_groups={"A": ["p1", "p2", "p3"]},
        chunks_total=2,
    )
    progress = build_progress(record, {})
    assert progress.total_payments == 4
    assert progress.lookup_batches_total == 2
    assert progress.lookup_failures == 1
    assert progress.gateways_identified == 1
    assert progress.chunks_total == 2
    assert progress.chunks_completed == 0
    assert progress.gateways["A"].total_chunks == 2
    assert progress.current_phase == RunPhase.PROCESSING
