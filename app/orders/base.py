from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping, Protocol, runtime_checkable

from app.models.enums import OrderType


@dataclass(frozen=True)
class SiteAddress:
    addressee: str | None = None
    addr1: str | None = None
    addr2: str | None = None
    city: str | None = None
    zip: str | None = None
    country: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class OrderLine:
    item: str
    quantity: float = 0
    quantity_fulfilled: float = 0
    description: str | None = None
    item_display: str | None = None
    weight: float | None = None

    @property
    def remaining(self) -> float:
        return (self.quantity or 0) - (self.quantity_fulfilled or 0)


@dataclass(frozen=True)
class Order:
    """Snapshot of an ERP transaction, as seen by the courier sync."""

    id: int
    order_type: OrderType
    version: int = 1

    tran_id: str | None = None
    tran_date: date | None = None
    required_date: date | None = None
    ship_date: date | None = None
    status: str = "open"

    customer_name: str | None = None
    customer_email: str | None = None
    site: SiteAddress | None = None

    ship_addressee: str | None = None
    ship_addr1: str | None = None
    ship_addr2: str | None = None
    ship_city: str | None = None
    ship_state: str | None = None
    ship_zip: str | None = None
    ship_country: str | None = None

    ship_method: str | None = None
    delivery_service: str | None = None
    memo: str | None = None
    driver_notes: str | None = None
    raised_by: str | None = None
    site_contact_name: str | None = None
    site_contact_phone: str | None = None
    subtotal: float | None = None

    release_to_courier: bool = False
    customer_pickup: bool = False
    released: bool = False

    courier_task_id: str | None = None
    courier_task_id_history: str | None = None
    courier_task_status: str | None = None
    tracking_link: str | None = None
    driver: str | None = None
    route_stop_number: int | None = None

    lines: tuple[OrderLine, ...] = field(default_factory=tuple)

    @property
    def is_closed(self) -> bool:
        return (self.status or "").lower() == "closed"

    @property
    def is_fully_closed(self) -> bool:
        # every line shipped; an order with open quantity is not "gone" yet
        return all(line.remaining <= 0 for line in self.lines)


# Fields the sync is allowed to write back onto an order.
WRITABLE_FIELDS = frozenset({
    "courier_task_id",
    "courier_task_id_history",
    "courier_task_status",
    "tracking_link",
    "driver",
    "route_stop_number",
    "released",
    "ship_date",
})


@runtime_checkable
class OrderStore(Protocol):
    """
    The ERP side of the sync.

    load_order raises OrderNotFound; update_order_fields raises ConflictError
    when the record moved on since it was read (stale version).
    """

    async def load_order(self, order_id: int, order_type: OrderType) -> Order:
        ...

    async def update_order_fields(
        self,
        order_id: int,
        order_type: OrderType,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> Order:
        ...
