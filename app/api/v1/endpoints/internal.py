from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.models.enums import OrderType, QueueStatus
from app.orders.sql_store import SqlOrderStore
from app.schemas.queue import (
    ApplyDrainResponse,
    ApplyQueueEntryOut,
    BackorderResponse,
    ExportDrainResponse,
    ExportQueueEntryOut,
    OrderEventRequest,
    OrderEventResponse,
)
from app.services.apply_processor import drain_apply_queue
from app.services.apply_queue import search_apply_entries
from app.services.courier_client import CourierClient
from app.services.errors import OrderNotFound
from app.services.export_dispatcher import dispatch_export_batch
from app.services.export_prepare import drain_export_prepare
from app.services.export_queue import search_entries
from app.services.internal_admin import require_internal_admin
from app.services.order_trigger import SYNC_EVENTS, enqueue_backorder, handle_order_event
from app.services.payload_builder import PayloadPolicy

router = APIRouter(dependencies=[Depends(require_internal_admin)])


async def get_courier_client() -> AsyncIterator[CourierClient]:
    async with CourierClient.from_settings() as client:
        yield client


def _statuses(status: str | None) -> list[QueueStatus] | None:
    if not status:
        return None
    try:
        return [QueueStatus(s.strip().upper()) for s in status.split(",")]
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown status: {status}")


@router.post("/internal/orders/{order_type}/{order_id}/backorder", response_model=BackorderResponse)
async def backorder_order(order_type: OrderType, order_id: int, db: AsyncSession = Depends(get_db)) -> BackorderResponse:
    try:
        queue_id = await enqueue_backorder(db, SqlOrderStore(db), order_id, order_type)
    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    await db.commit()
    return BackorderResponse(queue_id=queue_id)


@router.post("/internal/orders/{order_type}/{order_id}/events", response_model=OrderEventResponse)
async def order_event(
    order_type: OrderType,
    order_id: int,
    body: OrderEventRequest,
    db: AsyncSession = Depends(get_db),
) -> OrderEventResponse:
    if body.event.lower() not in SYNC_EVENTS:
        raise HTTPException(status_code=422, detail=f"Unknown event: {body.event}")
    previous_lines = None
    if body.previous_lines is not None:
        previous_lines = [(line.item, line.quantity) for line in body.previous_lines]
    try:
        result = await handle_order_event(
            db, SqlOrderStore(db), order_id, order_type, body.event,
            previous_values=body.previous, previous_lines=previous_lines,
        )
    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    await db.commit()
    decision = result.decision
    return OrderEventResponse(
        action=decision.action,
        reason=decision.reason,
        context=decision.context.value if decision.context else None,
        queue_id=result.entry_id,
        closed_entries=result.closed_entries,
    )


@router.post("/internal/export-queue/drain", response_model=ExportDrainResponse)
async def drain_export_queue(
    db: AsyncSession = Depends(get_db),
    client: CourierClient = Depends(get_courier_client),
) -> ExportDrainResponse:
    orders = SqlOrderStore(db)
    prepared = await drain_export_prepare(db, orders, policy=PayloadPolicy.from_settings())
    dispatched = await dispatch_export_batch(db, orders, client)
    return ExportDrainResponse(
        prepared=prepared.claimed,
        prepare_outcomes=prepared.outcomes,
        dispatched=dispatched.selected,
        dispatch_outcomes=dispatched.outcomes,
        more_waiting=dispatched.full,
    )


@router.post("/internal/apply-queue/drain", response_model=ApplyDrainResponse)
async def drain_apply(db: AsyncSession = Depends(get_db)) -> ApplyDrainResponse:
    summary = await drain_apply_queue(db, SqlOrderStore(db))
    return ApplyDrainResponse(selected=summary.selected, outcomes=summary.outcomes)


@router.get("/internal/export-queue", response_model=list[ExportQueueEntryOut])
async def list_export_entries(
    order_id: int | None = Query(default=None),
    status: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> list[ExportQueueEntryOut]:
    rows = await search_entries(db, order_id=order_id, statuses=_statuses(status))
    return [
        ExportQueueEntryOut(
            id=r.id,
            order_id=r.order_id,
            order_type=r.order_type,
            context=r.context,
            courier_task_id=r.courier_task_id,
            status=r.status,
            attempts=r.attempts,
            next_run_at=str(r.next_run_at) if r.next_run_at else None,
            last_error=r.last_error,
            debug_url=r.debug_url,
            payload=r.payload,
        )
        for r in rows
    ]


@router.get("/internal/apply-queue", response_model=list[ApplyQueueEntryOut])
async def list_apply_entries(
    status: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> list[ApplyQueueEntryOut]:
    rows = await search_apply_entries(db, statuses=_statuses(status))
    return [
        ApplyQueueEntryOut(
            id=r.id,
            status=r.status,
            attempts=r.attempts,
            action=r.action,
            reference=r.reference,
            resolved_order_id=r.resolved_order_id,
            resolved_order_type=r.resolved_order_type,
            courier_task_id=r.courier_task_id,
            last_error=r.last_error,
            raw_payload=r.raw_payload or {},
        )
        for r in rows
    ]
