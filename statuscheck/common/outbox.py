"""Transactional outbox helpers for run lifecycle events.

Rows are written in the same transaction as the run state change that produced
them and shipped later by a background publisher. Helpers take the outbox model
as an argument so they stay independent of the orchestrator schema module.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from statuscheck.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


PENDING_STATUSES = ("PENDING", "PROCESSING")


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Claim pending rows (and rows stuck in PROCESSING) for one publish pass.

    `skip_locked` lets several publisher replicas share the table on Postgres;
    other dialects ignore the locking hint.
    """

    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    ids = (
        db.execute(
            select(outbox_model.id)
            .where(
                or_(
                    outbox_model.status == "PENDING",
                    (outbox_model.status == "PROCESSING") & (outbox_model.claimed_at < stale_before),
                )
            )
            .order_by(outbox_model.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    if not ids:
        return []
    db.execute(
        update(outbox_model)
        .where(outbox_model.id.in_(ids))
        .values(status="PROCESSING", claimed_at=now, attempts=outbox_model.attempts + 1)
    )
    rows = db.execute(
        select(outbox_model.id, outbox_model.topic, outbox_model.payload, outbox_model.attempts)
        .where(outbox_model.id.in_(ids))
        .order_by(outbox_model.created_at)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload, "attempts": row.attempts} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed row as delivered."""

    db.execute(
        update(outbox_model)
        .where(outbox_model.id == event_id, outbox_model.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc), last_error=None)
    )


def release_outbox_event(db, outbox_model, event_id: str, error: str, max_attempts: int = 10) -> str:
    """Return a failed row to PENDING, or park it as DEAD once attempts run out."""

    attempts = db.execute(select(outbox_model.attempts).where(outbox_model.id == event_id)).scalar_one_or_none()
    status = "DEAD" if attempts is not None and attempts >= max_attempts else "PENDING"
    db.execute(
        update(outbox_model)
        .where(outbox_model.id == event_id, outbox_model.status == "PROCESSING")
        .values(status=status, claimed_at=None, last_error=error[:500])
    )
    return status


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    now = datetime.now(timezone.utc)
    pending_count = db.execute(
        select(func.count()).select_from(outbox_model).where(outbox_model.status.in_(PENDING_STATUSES))
    ).scalar_one()
    oldest_pending = db.execute(
        select(func.min(outbox_model.created_at)).where(outbox_model.status.in_(PENDING_STATUSES))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
