from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.models.enums import ExportContext, OrderType, QueueStatus
from app.models.export_queue import ExportQueueEntry


def _values(statuses: Iterable[QueueStatus | str]) -> list[str]:
    return [QueueStatus(s).value for s in statuses]


async def create_export_entry(
    db: AsyncSession,
    *,
    order_id: int,
    order_type: OrderType,
    context: ExportContext,
    courier_task_id: str | None = None,
    now: datetime | None = None,
) -> ExportQueueEntry:
    entry = ExportQueueEntry(
        order_id=int(order_id),
        order_type=OrderType(order_type).value,
        context=ExportContext(context).value,
        courier_task_id=courier_task_id or None,
        status=QueueStatus.PENDING.value,
        attempts=0,
        next_run_at=now or utcnow(),
    )
    db.add(entry)
    await db.flush()
    return entry


async def get_entry(db: AsyncSession, entry_id: int) -> ExportQueueEntry | None:
    stmt = (
        select(ExportQueueEntry)
        .where(ExportQueueEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def search_entries(
    db: AsyncSession,
    *,
    order_id: int | None = None,
    statuses: Iterable[QueueStatus | str] | None = None,
) -> list[ExportQueueEntry]:
    # newest first; ties broken by most recently modified
    stmt = select(ExportQueueEntry).order_by(ExportQueueEntry.id.desc(), ExportQueueEntry.updated_at.desc())
    if order_id is not None:
        stmt = stmt.where(ExportQueueEntry.order_id == int(order_id))
    if statuses is not None:
        stmt = stmt.where(ExportQueueEntry.status.in_(_values(statuses)))
    stmt = stmt.execution_options(populate_existing=True)
    return list((await db.execute(stmt)).scalars().all())


async def transition(
    db: AsyncSession,
    entry_id: int,
    *,
    from_statuses: Iterable[QueueStatus | str],
    **values: Any,
) -> bool:
    """
    Conditional update keyed by id and the status we expect the entry to be in.

    Returns False when another pass moved (or deleted) the entry first.
    """
    if "status" in values and isinstance(values["status"], QueueStatus):
        values["status"] = values["status"].value
    if "context" in values and isinstance(values["context"], ExportContext):
        values["context"] = values["context"].value

    result = await db.execute(
        update(ExportQueueEntry)
        .where(ExportQueueEntry.id == entry_id, ExportQueueEntry.status.in_(_values(from_statuses)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def delete_entries(db: AsyncSession, entry_ids: Iterable[int]) -> int:
    ids = list(entry_ids)
    if not ids:
        return 0
    result = await db.execute(
        delete(ExportQueueEntry)
        .where(ExportQueueEntry.id.in_(ids))
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def close_order_entries(db: AsyncSession, order_id: int, *, note: str) -> int:
    """Mark every non-terminal entry for an order SUCCESS with an explanatory note."""
    result = await db.execute(
        update(ExportQueueEntry)
        .where(
            ExportQueueEntry.order_id == int(order_id),
            ExportQueueEntry.status.not_in([QueueStatus.SUCCESS.value, QueueStatus.ERROR.value]),
        )
        .values(status=QueueStatus.SUCCESS.value, last_error=note)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def requeue_expired_leases(db: AsyncSession, *, now: datetime | None = None) -> int:
    """
    A pass that died mid-entry leaves it PROCESSING. Once the lease runs out,
    entries with a built payload go back to RETRY, the rest to PENDING.
    """
    now = now or utcnow()
    expired = (
        ExportQueueEntry.status == QueueStatus.PROCESSING.value,
        ExportQueueEntry.lease_expires_at.is_not(None),
        ExportQueueEntry.lease_expires_at < now,
    )
    released = 0
    for has_payload, status in ((True, QueueStatus.RETRY), (False, QueueStatus.PENDING)):
        cond = ExportQueueEntry.payload.is_not(None) if has_payload else ExportQueueEntry.payload.is_(None)
        result = await db.execute(
            update(ExportQueueEntry)
            .where(*expired, cond)
            .values(
                status=status.value,
                lease_id=None,
                lease_expires_at=None,
                next_run_at=now,
                last_error="requeued: lease expired",
            )
            .execution_options(synchronize_session=False)
        )
        released += int(result.rowcount or 0)
    return released


async def claim_entry(
    db: AsyncSession,
    entry_id: int,
    *,
    from_statuses: Iterable[QueueStatus | str],
    lease_id: str,
    now: datetime | None = None,
    lease_minutes: int = 10,
) -> bool:
    now = now or utcnow()
    return await transition(
        db, entry_id,
        from_statuses=from_statuses,
        status=QueueStatus.PROCESSING,
        lease_id=lease_id,
        lease_expires_at=now + timedelta(minutes=lease_minutes),
    )


async def finish(db: AsyncSession, entry_id: int, *, lease_id: str, **values: Any) -> bool:
    """Final write for a claimed entry; a no-op if the lease was lost."""
    if isinstance(values.get("status"), QueueStatus):
        values["status"] = values["status"].value
    if isinstance(values.get("context"), ExportContext):
        values["context"] = values["context"].value
    result = await db.execute(
        update(ExportQueueEntry)
        .where(
            ExportQueueEntry.id == entry_id,
            ExportQueueEntry.lease_id == lease_id,
            ExportQueueEntry.status == QueueStatus.PROCESSING.value,
        )
        .values(lease_id=None, lease_expires_at=None, **values)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def claim_pending_entries(
    db: AsyncSession,
    *,
    lease_id: str,
    batch_size: int = 100,
    now: datetime | None = None,
) -> list[int]:
    """PENDING -> PROCESSING, one conditional update per row; returns only ids this pass won."""
    stmt = (
        select(ExportQueueEntry.id)
        .where(ExportQueueEntry.status == QueueStatus.PENDING.value)
        .order_by(ExportQueueEntry.id.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
    )
    ids = (await db.execute(stmt)).scalars().all()

    claimed: list[int] = []
    for entry_id in ids:
        if await claim_entry(db, entry_id, from_statuses=[QueueStatus.PENDING], lease_id=lease_id, now=now):
            claimed.append(entry_id)
    await db.flush()
    return claimed


async def select_dispatchable(db: AsyncSession, *, now: datetime, batch_size: int = 40) -> list[tuple[int, str]]:
    """(id, status) of PROCESSED/RETRY entries that are due."""
    stmt = (
        select(ExportQueueEntry.id, ExportQueueEntry.status)
        .where(
            ExportQueueEntry.status.in_([QueueStatus.PROCESSED.value, QueueStatus.RETRY.value]),
            (ExportQueueEntry.next_run_at.is_(None)) | (ExportQueueEntry.next_run_at <= now),
        )
        .order_by(ExportQueueEntry.id.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
    )
    return [(row.id, row.status) for row in (await db.execute(stmt)).all()]
