from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.apply_queue import ApplyQueueEntry
from app.models.enums import APPLY_CLAIMABLE_STATUSES, QueueStatus


async def create_apply_entry(
    db: AsyncSession,
    *,
    raw_payload: dict,
    status: QueueStatus = QueueStatus.PENDING,
    last_error: str | None = None,
    action: str | None = None,
) -> ApplyQueueEntry:
    entry = ApplyQueueEntry(
        raw_payload=raw_payload,
        status=QueueStatus(status).value,
        attempts=0,
        last_error=last_error,
        action=action,
    )
    db.add(entry)
    await db.flush()
    return entry


async def get_apply_entry(db: AsyncSession, entry_id: int) -> ApplyQueueEntry | None:
    stmt = (
        select(ApplyQueueEntry)
        .where(ApplyQueueEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def select_claimable(db: AsyncSession, *, batch_size: int = 100) -> list[tuple[int, int]]:
    """(id, attempts) of PENDING/RETRY entries, oldest first."""
    stmt = (
        select(ApplyQueueEntry.id, ApplyQueueEntry.attempts)
        .where(ApplyQueueEntry.status.in_([s.value for s in APPLY_CLAIMABLE_STATUSES]))
        .order_by(ApplyQueueEntry.id.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
    )
    return [(row.id, row.attempts) for row in (await db.execute(stmt)).all()]


async def claim_apply_entry(db: AsyncSession, entry_id: int, *, seen_attempts: int, **metadata: Any) -> bool:
    """
    Compare-and-swap on attempts: the pass that bumps attempts from the value
    it saw owns this try. Metadata derived from the raw payload rides along.
    """
    result = await db.execute(
        update(ApplyQueueEntry)
        .where(
            ApplyQueueEntry.id == entry_id,
            ApplyQueueEntry.status.in_([s.value for s in APPLY_CLAIMABLE_STATUSES]),
            ApplyQueueEntry.attempts == seen_attempts,
        )
        .values(attempts=seen_attempts + 1, **metadata)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def finish_apply_entry(
    db: AsyncSession,
    entry_id: int,
    *,
    claimed_attempts: int,
    status: QueueStatus,
    last_error: str | None = None,
) -> bool:
    result = await db.execute(
        update(ApplyQueueEntry)
        .where(
            ApplyQueueEntry.id == entry_id,
            ApplyQueueEntry.status.in_([s.value for s in APPLY_CLAIMABLE_STATUSES]),
            ApplyQueueEntry.attempts == claimed_attempts,
        )
        .values(status=QueueStatus(status).value, last_error=last_error)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def search_apply_entries(
    db: AsyncSession,
    *,
    statuses: Iterable[QueueStatus | str] | None = None,
) -> list[ApplyQueueEntry]:
    stmt = select(ApplyQueueEntry).order_by(ApplyQueueEntry.id.asc())
    if statuses is not None:
        stmt = stmt.where(ApplyQueueEntry.status.in_([QueueStatus(s).value for s in statuses]))
    stmt = stmt.execution_options(populate_existing=True)
    return list((await db.execute(stmt)).scalars().all())
