"""
Order change -> export queue.

Called by the ERP's change-event hook after an order is saved. Decides
whether the change matters to the courier and, if so, writes one PENDING
export entry. The drains do the rest.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.models.enums import ExportContext, OrderType
from app.orders.base import Order, OrderLine, OrderStore
from app.services.errors import OrderNotFound
from app.services.export_queue import close_order_entries, create_export_entry, search_entries
from app.services.order_updates import apply_with_conflict_retry


log = logging.getLogger(__name__)

PICKUP_CLEANUP_NOTE = "Removed due to customer pickup turned on."

# body fields whose change is worth a resync
TRACKED_FIELDS = (
    "required_date",
    "site_contact_name",
    "site_contact_phone",
    "ship_method",
    "memo",
    "release_to_courier",
)
TRACKED_ADDRESS_FIELDS = (
    "ship_country",
    "ship_addressee",
    "ship_addr1",
    "ship_addr2",
    "ship_city",
    "ship_state",
    "ship_zip",
)

INHERITED_COURIER_FIELDS = (
    "courier_task_id",
    "courier_task_id_history",
    "courier_task_status",
    "tracking_link",
    "driver",
    "route_stop_number",
    "released",
)


class OrderEvent(str, Enum):
    CREATE = "create"
    EDIT = "edit"
    COPY = "copy"
    DELETE = "delete"


SYNC_EVENTS = {e.value for e in OrderEvent}


def _event_value(event) -> str:
    return (event.value if isinstance(event, Enum) else str(event)).lower()


@dataclass(frozen=True)
class OrderChange:
    event: str
    order: Order
    previous: Order | None = None


@dataclass(frozen=True)
class TriggerDecision:
    action: str  # "skip" | "enqueue" | "close_entries"
    reason: str
    context: ExportContext | None = None


@dataclass(frozen=True)
class TriggerResult:
    decision: TriggerDecision
    entry_id: int | None = None
    closed_entries: int = 0


def _norm(value) -> str:
    return str(value).strip() if value not in (None, "", False) else ""


def changed_field(previous: Order, current: Order) -> str | None:
    """First tracked field (or line) that differs, else None."""
    for name in TRACKED_FIELDS + TRACKED_ADDRESS_FIELDS:
        if _norm(getattr(previous, name)) != _norm(getattr(current, name)):
            return name

    if len(previous.lines) != len(current.lines):
        return "lines"
    for i, (old, new) in enumerate(zip(previous.lines, current.lines)):
        if old.item != new.item or float(old.quantity or 0) != float(new.quantity or 0):
            return f"lines[{i}]"
    return None


def decide(change: OrderChange) -> TriggerDecision:
    order, previous = change.order, change.previous
    event = _event_value(change.event)

    if not order.release_to_courier:
        return TriggerDecision("skip", "release to courier not enabled")

    # Known duplicate: an order released again while still linked gets a
    # create with its old task id, and prepare leaves that as a create.
    if previous is not None and not previous.release_to_courier:
        event = OrderEvent.CREATE.value

    if _event_value(change.event) == OrderEvent.EDIT.value and previous is not None:
        if order.customer_pickup and not previous.customer_pickup:
            if order.courier_task_id:
                return TriggerDecision("enqueue", "customer pickup turned on", ExportContext.DELETE)
            return TriggerDecision("close_entries", "customer pickup turned on, no courier task")

    if event not in SYNC_EVENTS:
        return TriggerDecision("skip", f"event {event} not synced")

    if event == OrderEvent.EDIT.value and previous is not None:
        field_name = changed_field(previous, order)
        if field_name is None:
            return TriggerDecision("skip", "no significant changes")
        reason = f"{field_name} changed"
    else:
        reason = event

    context = ExportContext(event)
    if not order.courier_task_id and context != ExportContext.DELETE:
        context = ExportContext.CREATE

    return TriggerDecision("enqueue", reason, context)


async def handle_order_change(db: AsyncSession, change: OrderChange, *, now: datetime | None = None) -> TriggerResult:
    order = change.order
    decision = decide(change)

    if decision.action == "skip":
        log.debug("order trigger: %s %s skipped (%s)", order.order_type.value, order.id, decision.reason)
        return TriggerResult(decision)

    if decision.action == "close_entries":
        closed = await close_order_entries(db, order.id, note=PICKUP_CLEANUP_NOTE)
        log.info("order trigger: %s %s pickup on, closed %d queue entries", order.order_type.value, order.id, closed)
        return TriggerResult(decision, closed_entries=closed)

    entry = await create_export_entry(
        db,
        order_id=order.id,
        order_type=order.order_type,
        context=decision.context,
        courier_task_id=order.courier_task_id,
        now=now or utcnow(),
    )
    log.info(
        "order trigger: queued entry %s for %s %s (%s: %s)",
        entry.id, order.order_type.value, order.id, decision.context.value, decision.reason,
    )
    return TriggerResult(decision, entry_id=entry.id)


async def enqueue_backorder(
    db: AsyncSession,
    orders: OrderStore,
    order_id: int,
    order_type: OrderType | None = None,
    *,
    now: datetime | None = None,
) -> int:
    """Manual re-send: the next prepare pass archives the old task and creates a new one."""
    candidates = [OrderType(order_type)] if order_type else [OrderType.SALES_ORDER, OrderType.RETURN_AUTHORIZATION]

    order: Order | None = None
    for candidate in candidates:
        try:
            order = await orders.load_order(order_id, candidate)
            break
        except OrderNotFound:
            continue
    if order is None:
        raise OrderNotFound(order_id, "/".join(c.value for c in candidates))

    entry = await create_export_entry(
        db,
        order_id=order.id,
        order_type=order.order_type,
        context=ExportContext.BACKORDER,
        courier_task_id=order.courier_task_id,
        now=now or utcnow(),
    )
    log.info("order trigger: backorder entry %s for %s %s", entry.id, order.order_type.value, order.id)
    return entry.id


def reset_inherited_courier_fields(order: Order, *, event: str) -> Order:
    """
    A copied order, or a return created from a sales order, inherits the
    source's courier linkage. Move the inherited task id into history and
    clear the rest before the new record is saved.
    """
    event = _event_value(event)
    fresh_return = order.order_type == OrderType.RETURN_AUTHORIZATION and event == OrderEvent.CREATE.value
    if not (fresh_return or event == OrderEvent.COPY.value):
        return order

    history = order.courier_task_id_history
    if order.courier_task_id:
        history = f"{history}, {order.courier_task_id}" if history else order.courier_task_id

    return dataclasses.replace(
        order,
        courier_task_id_history=history,
        courier_task_id=None,
        tracking_link=None,
        courier_task_status=None,
        driver=None,
        route_stop_number=None,
        released=False,
    )


async def last_known_task_id(db: AsyncSession, order_id: int, order_type: OrderType) -> str | None:
    """Courier task id on the newest export entry for the order, if any entry has one."""
    for entry in await search_entries(db, order_id=order_id):
        if entry.order_type == OrderType(order_type).value and entry.courier_task_id:
            return entry.courier_task_id
    return None


async def handle_deleted_order(
    db: AsyncSession,
    order_id: int,
    order_type: OrderType,
    *,
    courier_task_id: str | None = None,
    release_to_courier: bool | None = None,
    now: datetime | None = None,
) -> TriggerResult:
    """
    Delete hook for a record the store no longer has. The hook may send the
    deleted record's task id and release flag; otherwise the export queue's
    last known task id is used.
    """
    order_type = OrderType(order_type)
    if release_to_courier is False:
        return TriggerResult(TriggerDecision("skip", "release to courier not enabled"))

    courier_task_id = courier_task_id or await last_known_task_id(db, order_id, order_type)
    if not courier_task_id:
        log.info("order trigger: deleted %s %s has no courier task", order_type.value, order_id)
        return TriggerResult(TriggerDecision("skip", "deleted order has no courier task"))

    decision = TriggerDecision("enqueue", "delete", ExportContext.DELETE)
    entry = await create_export_entry(
        db,
        order_id=order_id,
        order_type=order_type,
        context=ExportContext.DELETE,
        courier_task_id=courier_task_id,
        now=now or utcnow(),
    )
    log.info(
        "order trigger: queued delete entry %s for deleted %s %s (task %s)",
        entry.id, order_type.value, order_id, courier_task_id,
    )
    return TriggerResult(decision, entry_id=entry.id)


# old values the ERP hook may report for an edit
PREVIOUS_VALUE_FIELDS = TRACKED_FIELDS + TRACKED_ADDRESS_FIELDS + ("customer_pickup",)


def previous_snapshot(
    order: Order,
    previous_values: Mapping[str, Any] | None,
    previous_lines: Iterable[tuple[str, float]] | None = None,
) -> Order:
    """Rebuild the pre-edit order from the current one plus the old values the hook sent."""
    changes = {k: v for k, v in (previous_values or {}).items() if k in PREVIOUS_VALUE_FIELDS}
    if previous_lines is not None:
        changes["lines"] = tuple(OrderLine(item=item, quantity=quantity) for item, quantity in previous_lines)
    return dataclasses.replace(order, **changes)


async def handle_order_event(
    db: AsyncSession,
    orders: OrderStore,
    order_id: int,
    order_type: OrderType,
    event: str,
    *,
    previous_values: Mapping[str, Any] | None = None,
    previous_lines: Iterable[tuple[str, float]] | None = None,
    now: datetime | None = None,
) -> TriggerResult:
    try:
        order = await orders.load_order(order_id, order_type)
    except OrderNotFound:
        if _event_value(event) != OrderEvent.DELETE.value:
            raise
        snapshot = previous_values or {}
        return await handle_deleted_order(
            db, order_id, order_type,
            courier_task_id=snapshot.get("courier_task_id"),
            release_to_courier=snapshot.get("release_to_courier"),
            now=now,
        )

    reset = reset_inherited_courier_fields(order, event=event)
    if reset is not order:
        order = await apply_with_conflict_retry(
            orders, order.id, order.order_type,
            {name: getattr(reset, name) for name in INHERITED_COURIER_FIELDS},
        )
        log.info("order trigger: %s %s cleared inherited courier fields", order.order_type.value, order.id)

    previous = None
    if _event_value(event) == OrderEvent.EDIT.value:
        previous = previous_snapshot(order, previous_values, previous_lines)
    return await handle_order_change(db, OrderChange(event, order, previous), now=now)
