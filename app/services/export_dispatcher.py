from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.models.enums import DISPATCHABLE_EXPORT_STATUSES, ExportContext, OrderType, QueueStatus
from app.orders.base import OrderStore
from app.services.courier_client import CourierClient, HttpResult, remote_error_for
from app.services.errors import (
    CourierSyncError,
    NetworkError,
    RemoteClientError,
    RemoteRateLimited,
)
from app.services.export_queue import (
    claim_entry,
    finish,
    get_entry,
    requeue_expired_leases,
    select_dispatchable,
)
from app.services.order_updates import apply_with_conflict_retry
from app.services.retry import compute_backoff_seconds, next_run_after


log = logging.getLogger(__name__)

TASK_STATUS_CREATED = "Courier Task Status: Created"
# Fields the courier API refuses on update
IMMUTABLE_TASK_FIELDS = ("type", "date")


@dataclass(frozen=True)
class DispatchOutcome:
    status: QueueStatus
    attempts: int
    last_error: str | None = None
    next_run_at: datetime | None = None
    courier_task_id: str | None = None


@dataclass
class DispatchSummary:
    selected: int = 0
    batch_size: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    @property
    def full(self) -> bool:
        # a full batch means there is probably more waiting
        return self.batch_size > 0 and self.selected >= self.batch_size

    def add(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1


def _retry(attempts: int, now: datetime, message: str, *, seconds: int | None = None) -> DispatchOutcome:
    wait = compute_backoff_seconds(attempts) if seconds is None else seconds
    return DispatchOutcome(
        status=QueueStatus.RETRY,
        attempts=attempts + 1,
        last_error=message,
        next_run_at=next_run_after(now, wait),
    )


def interpret_response(
    context: ExportContext,
    result: HttpResult,
    *,
    attempts: int,
    now: datetime,
    max_attempts: int | None = None,
) -> DispatchOutcome:
    """Remote response -> next state of the queue entry. Pure."""
    max_attempts = max_attempts or settings.export_max_attempts

    if result.ok:
        if context == ExportContext.DELETE:
            return DispatchOutcome(status=QueueStatus.SUCCESS, attempts=attempts)
        uid = result.detail.get("uid")
        return DispatchOutcome(
            status=QueueStatus.SUCCESS,
            attempts=attempts,
            courier_task_id=str(uid) if uid not in (None, "") else None,
        )

    error = remote_error_for(result)

    if context == ExportContext.DELETE and result.status_code == 404:
        return DispatchOutcome(
            status=QueueStatus.ERROR,
            attempts=attempts,
            last_error="Task not found on courier service (404); already gone",
        )

    if isinstance(error, RemoteRateLimited):
        return _retry(attempts, now, "429 Too Many Requests", seconds=error.retry_after_seconds)

    if isinstance(error, RemoteClientError):
        return DispatchOutcome(status=QueueStatus.ERROR, attempts=attempts, last_error=error.message)

    # 5xx, network, anything else: bounded retries
    message = error.message if error else f"HTTP {result.status_code}"
    if attempts + 1 >= max_attempts:
        return DispatchOutcome(status=QueueStatus.ERROR, attempts=attempts + 1, last_error=message)
    return _retry(attempts, now, message)


def edit_body(payload: dict) -> dict:
    return {k: v for k, v in payload.items() if k not in IMMUTABLE_TASK_FIELDS}


async def _call_remote(client: CourierClient, context: ExportContext, uid: str | None, payload: dict) -> HttpResult:
    if context == ExportContext.DELETE:
        return await client.delete_task(uid)
    if context == ExportContext.EDIT:
        return await client.update_task(uid, edit_body(payload))
    return await client.create_task(payload)


async def dispatch_entry(
    db: AsyncSession,
    orders: OrderStore,
    client: CourierClient,
    entry_id: int,
    *,
    lease_id: str,
    now: datetime | None = None,
) -> str:
    """Send one claimed entry to the courier API and record the outcome."""
    now = now or utcnow()
    entry = await get_entry(db, entry_id)
    if entry is None or entry.lease_id != lease_id:
        return "lost"

    if not entry.payload:
        note = f"Empty payload ({entry.last_error})" if entry.last_error else "Empty payload"
        await finish(db, entry_id, lease_id=lease_id, status=QueueStatus.ERROR, last_error=note)
        log.error("export dispatch: entry %s %s", entry_id, note)
        return "empty_payload"

    try:
        context = ExportContext(entry.context)
    except ValueError:
        context = None
    if context not in (ExportContext.CREATE, ExportContext.COPY, ExportContext.EDIT, ExportContext.DELETE):
        await finish(db, entry_id, lease_id=lease_id, status=QueueStatus.ERROR, last_error=f"Unknown context: {entry.context}")
        return "unknown_context"

    uid = entry.courier_task_id or entry.payload.get("courierTaskId")
    if context in (ExportContext.DELETE, ExportContext.EDIT) and not uid:
        await finish(
            db, entry_id, lease_id=lease_id,
            status=QueueStatus.ERROR, last_error=f"Missing courier task id for {context.value}",
        )
        return "missing_task_id"

    result = await _call_remote(client, context, uid, entry.payload)
    outcome = interpret_response(context, result, attempts=entry.attempts, now=now)

    last_error = outcome.last_error
    if outcome.status == QueueStatus.SUCCESS and outcome.courier_task_id:
        try:
            await apply_with_conflict_retry(
                orders, entry.order_id, OrderType(entry.order_type),
                {"courier_task_id": outcome.courier_task_id, "courier_task_status": TASK_STATUS_CREATED},
            )
        except CourierSyncError as e:
            # remote task exists; keep SUCCESS so it is not created twice
            log.error("export dispatch: entry %s task %s write-back failed: %s", entry_id, outcome.courier_task_id, e)
            last_error = f"Task {outcome.courier_task_id} synced but order write-back failed: {e}"

    values = {
        "status": outcome.status,
        "attempts": outcome.attempts,
        "last_error": last_error,
        "debug_url": result.url,
    }
    if outcome.next_run_at is not None:
        values["next_run_at"] = outcome.next_run_at
    if outcome.courier_task_id:
        values["courier_task_id"] = outcome.courier_task_id
    await finish(db, entry_id, lease_id=lease_id, **values)

    log_fn = log.info if outcome.status == QueueStatus.SUCCESS else log.warning
    log_fn(
        "export dispatch: entry %s %s order %s -> %s (http %s, attempts %d)",
        entry_id, context.value, entry.order_id, outcome.status.value, result.status_code, outcome.attempts,
    )
    return outcome.status.value.lower()


async def _fail_unexpected(db: AsyncSession, entry_id: int, *, lease_id: str, error: Exception, now: datetime) -> None:
    entry = await get_entry(db, entry_id)
    if entry is None:
        return
    wrapped = NetworkError(f"{type(error).__name__}: {error}")
    attempts = entry.attempts
    if attempts + 1 >= settings.export_max_attempts:
        await finish(db, entry_id, lease_id=lease_id, status=QueueStatus.ERROR, attempts=attempts + 1, last_error=wrapped.message)
        return
    await finish(
        db, entry_id, lease_id=lease_id,
        status=QueueStatus.RETRY,
        attempts=attempts + 1,
        next_run_at=next_run_after(now, compute_backoff_seconds(attempts)),
        last_error=wrapped.message,
    )


async def dispatch_export_batch(
    db: AsyncSession,
    orders: OrderStore,
    client: CourierClient,
    *,
    batch_size: int | None = None,
    now: datetime | None = None,
) -> DispatchSummary:
    """
    One bounded pass over PROCESSED/RETRY entries that are due.

    Entries are claimed (-> PROCESSING under this pass's lease) and committed
    before any remote call; each entry then gets its own error boundary.
    """
    batch_size = batch_size or settings.export_dispatch_batch_size
    now = now or utcnow()
    lease_id = uuid.uuid4().hex
    summary = DispatchSummary(batch_size=batch_size)

    await requeue_expired_leases(db, now=now)
    rows = await select_dispatchable(db, now=now, batch_size=batch_size)
    summary.selected = len(rows)

    claimed: list[int] = []
    for entry_id, status in rows:
        if await claim_entry(db, entry_id, from_statuses=[status], lease_id=lease_id, now=now):
            claimed.append(entry_id)
    await db.commit()

    for entry_id in claimed:
        try:
            outcome = await dispatch_entry(db, orders, client, entry_id, lease_id=lease_id, now=now)
            await db.commit()
        except Exception as e:
            log.exception("export dispatch: entry %s failed", entry_id)
            await db.rollback()
            await _fail_unexpected(db, entry_id, lease_id=lease_id, error=e, now=now)
            await db.commit()
            outcome = "failed"
        summary.add(outcome)

    log.info("export dispatch: selected %d %s", summary.selected, summary.outcomes)
    return summary


async def dispatch_one(
    db: AsyncSession,
    orders: OrderStore,
    client: CourierClient,
    entry_id: int,
    *,
    now: datetime | None = None,
) -> str:
    """Dispatch a single entry by id; terminal or in-flight entries are left alone."""
    now = now or utcnow()
    lease_id = uuid.uuid4().hex
    if not await claim_entry(db, entry_id, from_statuses=DISPATCHABLE_EXPORT_STATUSES, lease_id=lease_id, now=now):
        return "skipped"
    await db.commit()
    outcome = await dispatch_entry(db, orders, client, entry_id, lease_id=lease_id, now=now)
    await db.commit()
    return outcome
