from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.models.enums import OUTSTANDING_EXPORT_STATUSES, ExportContext, OrderType, QueueStatus
from app.models.export_queue import ExportQueueEntry
from app.orders.base import Order, OrderStore
from app.services.errors import BuildError, OrderNotFound
from app.services.export_queue import (
    claim_pending_entries,
    delete_entries,
    finish,
    get_entry,
    requeue_expired_leases,
    search_entries,
)
from app.services.order_updates import apply_with_conflict_retry
from app.services.payload_builder import PayloadPolicy, build_task_payload


log = logging.getLogger(__name__)

CLEARED_COURIER_FIELDS = {
    "courier_task_id": None,
    "courier_task_status": None,
    "tracking_link": None,
    "driver": None,
    "route_stop_number": None,
    "released": False,
}


@dataclass
class PrepareSummary:
    claimed: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def add(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1


def delete_payload(courier_task_id: str) -> dict:
    return {"action": "delete", "courierTaskId": courier_task_id}


def archived_history(order: Order) -> str | None:
    # newest first: "<current>, <older>, ..."
    parts = [p for p in (order.courier_task_id, order.courier_task_id_history) if p]
    return ", ".join(parts) or None


async def consolidate(db: AsyncSession, entry: ExportQueueEntry) -> bool:
    """
    Keep only the newest outstanding entry for the order; delete the rest.

    Returns False when `entry` is not the newest (it has just been deleted).
    """
    rows = await search_entries(db, order_id=entry.order_id, statuses=OUTSTANDING_EXPORT_STATUSES)
    if not rows:
        return False

    newest = rows[0]
    stale = [r.id for r in rows[1:]]
    if stale:
        await delete_entries(db, stale)
        log.info("export consolidation: order %s kept %s, deleted %s", entry.order_id, newest.id, stale)

    if newest.id != entry.id:
        log.info("export consolidation: entry %s superseded by %s for order %s", entry.id, newest.id, entry.order_id)
        return False
    return True


async def reset_for_backorder(orders: OrderStore, order: Order) -> Order:
    """Archive the current courier linkage into history and clear it so a fresh task gets created."""
    fields = dict(CLEARED_COURIER_FIELDS)
    fields["courier_task_id_history"] = archived_history(order)
    updated = await apply_with_conflict_retry(orders, order.id, order.order_type, fields)
    log.info("backorder reset: %s %s archived task %s", order.order_type.value, order.id, order.courier_task_id)
    return updated


async def prepare_entry(
    db: AsyncSession,
    orders: OrderStore,
    entry_id: int,
    *,
    lease_id: str,
    today: date | None = None,
    policy: PayloadPolicy | None = None,
    now: datetime | None = None,
) -> str:
    """
    Turn one claimed (PROCESSING) entry into a dispatchable one.

    Returns a short outcome label for logging/metrics.
    """
    now = now or utcnow()
    entry = await get_entry(db, entry_id)
    if entry is None or entry.lease_id != lease_id or entry.status != QueueStatus.PROCESSING.value:
        return "lost"

    if not await consolidate(db, entry):
        return "superseded"

    context = ExportContext(entry.context)
    order_type = OrderType(entry.order_type)
    courier_task_id = entry.courier_task_id or None

    order: Order | None = None
    if context != ExportContext.DELETE:
        try:
            order = await orders.load_order(entry.order_id, order_type)
        except OrderNotFound as e:
            log.error("export prepare: entry %s load failed: %s", entry_id, e)
            await finish(db, entry_id, lease_id=lease_id, status=QueueStatus.PROCESSED, last_error=f"Load failed: {e}")
            return "load_failed"

        # Order already linked to a task the entry doesn't know about: update it, never create a second one.
        if context != ExportContext.BACKORDER and order.courier_task_id and not courier_task_id:
            log.warning(
                "export prepare: entry %s adopting task %s from %s %s, context edit",
                entry_id, order.courier_task_id, order_type.value, entry.order_id,
            )
            courier_task_id = order.courier_task_id
            context = ExportContext.EDIT

        if context == ExportContext.BACKORDER:
            order = await reset_for_backorder(orders, order)
            courier_task_id = None
            context = ExportContext.CREATE

    closes_task = context == ExportContext.DELETE or (order is not None and order.is_closed and order.is_fully_closed)
    if closes_task:
        if not courier_task_id:
            # nothing exists remotely
            await finish(
                db, entry_id, lease_id=lease_id,
                status=QueueStatus.SUCCESS, context=ExportContext.DELETE, payload=None, last_error=None,
            )
            return "nothing_to_delete"

        await finish(
            db, entry_id, lease_id=lease_id,
            status=QueueStatus.PROCESSED,
            context=ExportContext.DELETE,
            courier_task_id=courier_task_id,
            payload=delete_payload(courier_task_id),
            last_error=None,
            next_run_at=now,
        )
        return "delete"

    if order is not None and order.is_closed:
        log.info("export prepare: entry %s order %s closed with open quantity, not deleting", entry_id, entry.order_id)
        await finish(
            db, entry_id, lease_id=lease_id,
            status=QueueStatus.SUCCESS, payload=None,
            last_error="Closed but not fully fulfilled; task left in place",
        )
        return "closed_open_lines"

    try:
        built = build_task_payload(order, today=today, policy=policy)
    except BuildError as e:
        log.error("export prepare: entry %s payload build failed: %s", entry_id, e)
        await finish(
            db, entry_id, lease_id=lease_id,
            status=QueueStatus.PROCESSED, payload=None, last_error=f"Payload build failed: {e}",
        )
        return "build_error"

    await finish(
        db, entry_id, lease_id=lease_id,
        status=QueueStatus.PROCESSED,
        context=context,
        courier_task_id=courier_task_id or built.courier_task_id,
        payload=built.payload,
        last_error=None,
        next_run_at=now,
    )
    log.info("export prepare: entry %s %s %s ready (%s)", entry_id, order_type.value, entry.order_id, context.value)
    return "processed"


async def drain_export_prepare(
    db: AsyncSession,
    orders: OrderStore,
    *,
    batch_size: int | None = None,
    today: date | None = None,
    policy: PayloadPolicy | None = None,
) -> PrepareSummary:
    batch_size = batch_size or settings.export_prepare_batch_size
    lease_id = uuid.uuid4().hex
    summary = PrepareSummary()

    await requeue_expired_leases(db)
    ids = await claim_pending_entries(db, lease_id=lease_id, batch_size=batch_size)
    # Commit the claim before any work so concurrent passes see PROCESSING
    await db.commit()
    summary.claimed = len(ids)

    for entry_id in ids:
        try:
            outcome = await prepare_entry(db, orders, entry_id, lease_id=lease_id, today=today, policy=policy)
            await db.commit()
        except Exception as e:
            log.exception("export prepare: entry %s failed", entry_id)
            await db.rollback()
            await finish(
                db, entry_id, lease_id=lease_id,
                status=QueueStatus.PROCESSED, last_error=f"Prepare failure: {type(e).__name__}: {e}",
            )
            await db.commit()
            outcome = "failed"
        summary.add(outcome)

    log.info("export prepare: claimed %d %s", summary.claimed, summary.outcomes)
    return summary
