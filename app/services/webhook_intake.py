"""
Courier webhook -> apply queue.

Intake never touches orders. It filters out events that cannot lead to a
mutation and stores the rest verbatim for the apply drain.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import QueueStatus
from app.services.apply_queue import create_apply_entry


log = logging.getLogger(__name__)

ASSIGN_ACTION = "Tasks.assignManually"
ROUTE_ACTIONS = (
    "v3.Optimization.optimizeDates",
    "v3.Optimization.optimizeRoutes",
    "Routes.setOrder",
    "Routes.reassign",
    "Routes.swap",
)
DATE_ACTIONS = ("Tasks.moveToDate", "Tasks.update")
ALLOWED_ACTIONS = (ASSIGN_ACTION,) + DATE_ACTIONS + ROUTE_ACTIONS

# fires on every route recalculation and never changes an order
NOISY_ACTION = "Routes.updateETAs"


@dataclass(frozen=True)
class IntakeResult:
    outcome: str  # "queued" | "ignored" | "dropped" | "skipped" | "missing_external_id" | "storage_failed"
    body: dict
    queue_id: int | None = None


def latest_history(body: dict) -> dict | None:
    history = body.get("history")
    if not isinstance(history, list) or not history:
        return None
    latest = history[-1]
    return latest if isinstance(latest, dict) else None


def _dig(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def assignee_info(latest: dict | None) -> Any:
    return _dig(latest, "data", "assignment", "assignee", "info")


def route_order(latest: dict | None) -> Any:
    return _dig(latest, "data", "assignment", "routeOrder")


def history_date(latest: dict | None) -> Any:
    return _dig(latest, "data", "date")


def required_field_present(action: str, latest: dict | None) -> bool:
    if action == ASSIGN_ACTION:
        return bool(assignee_info(latest))
    if action in ROUTE_ACTIONS:
        # a reassignment carries the new driver and no stop number
        return bool(route_order(latest)) or bool(assignee_info(latest))
    if action in DATE_ACTIONS:
        return bool(history_date(latest))
    return False


def _needed_field(action: str) -> str:
    if action == ASSIGN_ACTION:
        return "assignee info"
    if action in ROUTE_ACTIONS:
        return "route order or assignee info"
    return "date"


async def intake_webhook(db: AsyncSession, body: dict) -> IntakeResult:
    """Authenticated, parsed webhook body -> response body (always sent with 200)."""
    external_id = body.get("externalId")
    action = str(body.get("action") or "")

    if external_id in (None, ""):
        log.info("webhook intake: ignored, externalId missing (reference=%s)", body.get("reference"))
        return IntakeResult("missing_external_id", {"success": False, "message": "Ignored - externalId missing"})

    if action == NOISY_ACTION:
        log.debug("webhook intake: dropped %s for %s", action, external_id)
        return IntakeResult("dropped", {"success": True, "message": f"Dropped - {action}"})

    if action not in ALLOWED_ACTIONS:
        try:
            entry = await create_apply_entry(
                db, raw_payload=body, status=QueueStatus.ERROR, last_error=f"ignored: {action}", action=action,
            )
            await db.commit()
        except Exception as e:
            return await _storage_failed(db, body, e)
        log.info("webhook intake: recorded ignored action %s for %s as entry %s", action, external_id, entry.id)
        return IntakeResult("ignored", {"success": True, "message": f"Ignored action {action}", "queueId": entry.id}, entry.id)

    if not required_field_present(action, latest_history(body)):
        needed = _needed_field(action)
        log.info(
            "webhook intake: skipped %s for %s (reference=%s), missing %s",
            action, external_id, body.get("reference"), needed,
        )
        return IntakeResult("skipped", {"success": True, "message": f"Skipped - missing {needed}"})

    try:
        entry = await create_apply_entry(db, raw_payload=body, action=action)
        await db.commit()
    except Exception as e:
        return await _storage_failed(db, body, e)

    log.info("webhook intake: queued %s for %s as entry %s", action, external_id, entry.id)
    return IntakeResult("queued", {"success": True, "queueId": entry.id}, entry.id)


async def _storage_failed(db: AsyncSession, body: dict, error: Exception) -> IntakeResult:
    log.exception("webhook intake: failed to store event for %s", body.get("externalId"))
    await db.rollback()
    return IntakeResult(
        "storage_failed",
        {"success": False, "error": "Failed to create queue record", "details": str(error)},
    )
