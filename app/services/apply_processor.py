from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.enums import OrderType, QueueStatus
from app.orders.base import OrderStore
from app.services.apply_queue import (
    claim_apply_entry,
    finish_apply_entry,
    get_apply_entry,
    select_claimable,
)
from app.services.errors import ValidationError
from app.services.order_updates import Sleep, apply_with_conflict_retry
from app.services.webhook_intake import (
    ASSIGN_ACTION,
    DATE_ACTIONS,
    ROUTE_ACTIONS,
    assignee_info,
    history_date,
    latest_history,
    route_order,
)


log = logging.getLogger(__name__)

UNRESOLVED_NOTE = "Could not resolve target record from payload"
NO_UPDATE_NOTE = "Processed but no record fields updated"


@dataclass(frozen=True)
class RecordMutation:
    fields: dict[str, Any]
    label: str


@dataclass
class ApplySummary:
    selected: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def add(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1


def resolve_target(body: dict) -> tuple[int, OrderType] | None:
    """externalId is the ERP internal id; the reference prefix says which record type."""
    try:
        order_id = int(str(body.get("externalId")).strip())
    except (TypeError, ValueError):
        return None
    order_type = OrderType.from_reference(body.get("reference"))
    if order_id <= 0 or order_type is None:
        return None
    return order_id, order_type


def tracking_link_for(external_id: Any, base_url: str | None = None) -> str:
    base_url = base_url or settings.courier_tracking_base_url
    return f"{base_url}?externalId={quote(str(external_id), safe='')}"


def parse_compact_date(value: Any) -> date:
    text = str(value).strip()
    try:
        return date(int(text[0:4]), int(text[4:6]), int(text[6:8]))
    except ValueError:
        raise ValidationError(f"Invalid date {value!r}, expected YYYYMMDD")


def assignment_fields(body: dict, info: Any, tracking_base_url: str | None = None) -> dict[str, Any]:
    driver = info.get("firstName") if isinstance(info, dict) else None
    return {
        "tracking_link": tracking_link_for(body.get("externalId"), tracking_base_url),
        "released": True,
        "driver": driver or "",
    }


def plan_mutation(body: dict, *, tracking_base_url: str | None = None) -> RecordMutation | None:
    """Courier event -> the single set of order fields it changes, or None."""
    action = body.get("action")
    latest = latest_history(body)

    if action == ASSIGN_ACTION:
        info = assignee_info(latest)
        if not info:
            return None
        return RecordMutation(fields=assignment_fields(body, info, tracking_base_url), label="assignment")

    if action in ROUTE_ACTIONS:
        # same predicate as intake: a stop number, a driver, or both
        stop = route_order(latest)
        info = assignee_info(latest)
        fields: dict[str, Any] = {}
        if info:
            fields.update(assignment_fields(body, info, tracking_base_url))
        if stop:
            try:
                fields["route_stop_number"] = int(stop)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid routeOrder {stop!r}")
        if not fields:
            return None
        return RecordMutation(fields=fields, label="route")

    if action in DATE_ACTIONS:
        value = history_date(latest)
        if not value:
            return None
        return RecordMutation(fields={"ship_date": parse_compact_date(value)}, label="ship date")

    return None


def _metadata(body: dict, target: tuple[int, OrderType] | None) -> dict[str, Any]:
    return {
        "reference": str(body.get("reference") or "")[:60] or None,
        "action": str(body.get("action") or "")[:120] or None,
        "courier_task_id": str(body.get("uid") or "")[:100] or None,
        "resolved_order_id": target[0] if target else None,
        "resolved_order_type": target[1].value if target else None,
    }


async def process_entry(
    db: AsyncSession,
    orders: OrderStore,
    entry_id: int,
    *,
    seen_attempts: int,
    sleep: Sleep = asyncio.sleep,
) -> str:
    """Claim one PENDING/RETRY entry and apply its event to the order."""
    entry = await get_apply_entry(db, entry_id)
    if entry is None:
        return "lost"

    body = entry.raw_payload if isinstance(entry.raw_payload, dict) else {}
    target = resolve_target(body) if body else None

    if not await claim_apply_entry(db, entry_id, seen_attempts=seen_attempts, **_metadata(body, target)):
        return "lost"
    attempts = seen_attempts + 1
    await db.commit()

    async def done(status: QueueStatus, note: str | None) -> None:
        await finish_apply_entry(db, entry_id, claimed_attempts=attempts, status=status, last_error=note)
        await db.commit()

    if not body:
        log.error("apply: entry %s empty payload", entry_id)
        await done(QueueStatus.ERROR, "Empty payload")
        return "empty_payload"

    if body.get("externalId") in (None, ""):
        log.error("apply: entry %s missing externalId", entry_id)
        await done(QueueStatus.ERROR, "Missing externalId in payload")
        return "missing_external_id"

    if target is None:
        log.error(
            "apply: entry %s unresolved externalId=%s reference=%s",
            entry_id, body.get("externalId"), body.get("reference"),
        )
        await done(QueueStatus.PROCESSED, UNRESOLVED_NOTE)
        return "unresolved"

    order_id, order_type = target
    try:
        mutation = plan_mutation(body)
        if mutation is not None:
            await apply_with_conflict_retry(orders, order_id, order_type, mutation.fields, sleep=sleep)
    except ValidationError as e:
        # bad data in the event; retrying won't change it
        log.error("apply: entry %s %s %s invalid event: %s", entry_id, order_type.value, order_id, e)
        await db.rollback()
        await done(QueueStatus.PROCESSED, f"Invalid payload: {e.message}")
        return "invalid"
    except Exception as e:
        log.error("apply: entry %s %s %s update failed: %s", entry_id, order_type.value, order_id, e)
        await db.rollback()
        status = QueueStatus.ERROR if attempts >= settings.apply_max_attempts else QueueStatus.RETRY
        await done(status, str(e) or type(e).__name__)
        return status.value.lower()

    if mutation is None:
        log.info("apply: entry %s %s for %s %s changed nothing", entry_id, body.get("action"), order_type.value, order_id)
        await done(QueueStatus.PROCESSED, NO_UPDATE_NOTE)
        return "no_update"

    await done(QueueStatus.PROCESSED, "")
    log.info("apply: entry %s %s applied to %s %s", entry_id, mutation.label, order_type.value, order_id)
    return "processed"


async def drain_apply_queue(
    db: AsyncSession,
    orders: OrderStore,
    *,
    batch_size: int | None = None,
    sleep: Sleep = asyncio.sleep,
) -> ApplySummary:
    batch_size = batch_size or settings.apply_batch_size
    summary = ApplySummary()

    rows = await select_claimable(db, batch_size=batch_size)
    await db.commit()
    summary.selected = len(rows)

    for entry_id, seen_attempts in rows:
        try:
            outcome = await process_entry(db, orders, entry_id, seen_attempts=seen_attempts, sleep=sleep)
        except Exception:
            log.exception("apply: entry %s failed", entry_id)
            await db.rollback()
            outcome = "failed"
        summary.add(outcome)

    log.info("apply: selected %d %s", summary.selected, summary.outcomes)
    return summary
