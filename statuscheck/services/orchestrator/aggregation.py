"""Result aggregation and progress projection for one run."""

from collections import Counter
from collections.abc import Mapping

from statuscheck.services.orchestrator.chunking import batch_count
from statuscheck.services.orchestrator.domain import (
    ChunkProgress,
    GatewayResult,
    GatewayState,
    Progress,
    RunRecord,
    RunResult,
)
from statuscheck.services.orchestrator.errors import InternalFailure


def aggregate(lookup_failures: list[str], gateway_results: Mapping[str, GatewayResult]) -> RunResult:
    """Merge gateway outcomes into the final result maps.

    Every gateway appears in both `successful` and `failed`, possibly with an
    empty list.
    """

    successful: dict[str, list[str]] = {}
    failed = {}
    for gateway in sorted(gateway_results):
        outcome = gateway_results[gateway]
        successful[gateway] = list(outcome.successful_payment_ids)
        failed[gateway] = list(outcome.failed_chunks)
    return RunResult(successful=successful, failed=failed, gateway_lookup_failed=list(lookup_failures))


def verify_partition(payment_ids: list[str], result: RunResult) -> None:
    """Raise `InternalFailure` unless every id lands in exactly one category."""

    seen: Counter[str] = Counter(result.gateway_lookup_failed)
    for ids in result.successful.values():
        seen.update(ids)
    for failed_chunks in result.failed.values():
        for failed_chunk in failed_chunks:
            seen.update(failed_chunk.payment_ids)

    duplicated = sorted(payment_id for payment_id, count in seen.items() if count > 1)
    expected = set(payment_ids)
    missing = sorted(expected - seen.keys())
    unexpected = sorted(seen.keys() - expected)
    if duplicated or missing or unexpected:
        raise InternalFailure(
            "result partition violated "
            f"duplicated={duplicated[:5]} missing={missing[:5]} unexpected={unexpected[:5]}"
        )


def build_progress(record: RunRecord, gateway_states: Mapping[str, GatewayState]) -> Progress:
    """Project committed run + gateway state into a `Progress` snapshot.

    Gateways that have not committed a chunk yet report their planned chunk
    count with nothing completed.
    """

    chunk_size = record.config.chunk_size
    gateways: dict[str, ChunkProgress] = {}
    for gateway, ids in record.gateway_groups.items():
        state = gateway_states.get(gateway)
        if state is None:
            gateways[gateway] = ChunkProgress(total_chunks=batch_count(len(ids), chunk_size))
        else:
            gateways[gateway] = state.progress()

    return Progress(
        total_payments=len(record.payment_ids),
        lookup_batches_total=batch_count(len(record.payment_ids), record.config.lookup_batch_size),
        lookup_batches_completed=record.lookup_batches_completed,
        lookup_failures=len(record.lookup_failures),
        gateways_identified=len(record.gateway_groups),
        chunks_total=record.chunks_total,
        chunks_completed=sum(item.completed_chunks for item in gateways.values()),
        chunks_failed=sum(item.failed_chunks for item in gateways.values()),
        current_phase=record.phase,
        gateways=gateways,
        error=record.error,
    )
