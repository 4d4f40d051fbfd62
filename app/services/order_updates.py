from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping

from app.core.config import settings
from app.models.enums import OrderType
from app.orders.base import Order, OrderStore
from app.services.errors import ConflictError


log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


async def apply_with_conflict_retry(
    orders: OrderStore,
    order_id: int,
    order_type: OrderType,
    fields: Mapping[str, Any],
    *,
    attempts: int | None = None,
    base_seconds: float | None = None,
    sleep: Sleep = asyncio.sleep,
) -> Order:
    """
    Write courier fields onto an order, retrying stale-version conflicts.

    Waits base * 2^i between tries and gives up after `attempts` with
    ConflictError. Any other error propagates on the first occurrence.
    """
    attempts = attempts or settings.conflict_retry_attempts
    base_seconds = settings.conflict_retry_base_seconds if base_seconds is None else base_seconds

    for i in range(attempts):
        try:
            return await orders.update_order_fields(order_id, order_type, fields)
        except ConflictError:
            log.debug("order update conflict: %s %s retry %d/%d", order_type, order_id, i + 1, attempts)
            if i < attempts - 1:
                await sleep(base_seconds * (2 ** i))

    raise ConflictError(f"{OrderType(order_type).value} {order_id} still changing after {attempts} attempts")
