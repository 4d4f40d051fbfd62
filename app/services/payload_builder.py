from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from app.core.config import settings
from app.models.enums import OrderType
from app.orders.base import Order, OrderLine
from app.services.errors import BuildError


COURIER_SHIP_METHOD = "Courier"
FUTURE_ORDER_SKILL = "Future Order"
EARLY_DELIVERY_SKILL = "Early Delivery"
EARLY_DELIVERY_SERVICES = ("Pre 12 Delivery", "Pre 10:30 Delivery")

TASK_TYPE_DELIVERY = 1
LOCATION_TYPE_ADDRESS = 2


@dataclass(frozen=True)
class PayloadPolicy:
    preferred_ship_method: str = "Lapwing Van"
    # Return authorizations collect from the customer and drop at the site.
    swap_rma_locations: bool = False

    @classmethod
    def from_settings(cls) -> "PayloadPolicy":
        return cls(
            preferred_ship_method=settings.courier_preferred_ship_method,
            swap_rma_locations=settings.courier_rma_swap_locations,
        )


@dataclass(frozen=True)
class BuiltPayload:
    payload: dict[str, Any]
    courier_task_id: str | None


def format_compact_date(value: date | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%Y%m%d")


def ship_method_tag(ship_method: str | None, *, preferred: str) -> str:
    return ship_method if ship_method == preferred else COURIER_SHIP_METHOD


def delivery_service_tag(delivery_service: str | None) -> str | None:
    if (delivery_service or "") in EARLY_DELIVERY_SERVICES:
        return EARLY_DELIVERY_SKILL
    return None


def future_order_tag(required_date: date | None, *, today: date) -> str | None:
    if required_date is not None and required_date > today:
        return FUTURE_ORDER_SKILL
    return None


def build_skills(order: Order, *, today: date, policy: PayloadPolicy) -> list[str]:
    tags = [
        ship_method_tag(order.ship_method, preferred=policy.preferred_ship_method),
        delivery_service_tag(order.delivery_service),
        future_order_tag(order.required_date, today=today),
    ]
    return [t for t in tags if t]


def build_items(lines: tuple[OrderLine, ...] | list[OrderLine]) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for line in lines:
        quantity = float(line.remaining)
        if quantity <= 0:
            continue
        weight = line.weight if line.weight not in (None, "") else 0
        items.append({
            "description": line.description,
            "state": 0,
            "quantity": quantity,
            "customData": {"qty": quantity, "itemDisplay": line.item_display},
            "unitSize": {"Weight kg": weight},
        })
    return items


def _one_line_address(*parts: str | None) -> str:
    return " ".join(p.strip() for p in parts if p and p.strip())


def _pickup_location(order: Order) -> dict[str, Any]:
    site = order.site
    if site is None or not (site.addr1 or site.city or site.zip):
        raise BuildError(f"site address missing for {order.order_type.value} {order.id}")

    return {
        "type": LOCATION_TYPE_ADDRESS,
        "name": site.addressee,
        "address": site.addr1,
        "addressLine2": site.addr2,
        "postCode": site.zip,
        "city": site.city,
        "country": site.country,
        "contactName": order.raised_by,
        "contactPhone": site.phone,
    }


def _dropoff_location(order: Order) -> dict[str, Any]:
    return {
        "type": LOCATION_TYPE_ADDRESS,
        "name": order.customer_name,
        "address": _one_line_address(
            order.ship_addr1, order.ship_addr2, order.ship_city, order.ship_zip, order.ship_country
        ),
        "addressLine2": order.ship_addr2,
        "city": order.ship_city,
        "country": order.ship_country,
        "postCode": order.ship_zip,
        "contactName": order.site_contact_name,
        "contactPhone": order.site_contact_phone,
        "contactEmail": order.customer_email,
    }


def build_task_payload(order: Order, *, today: date | None = None, policy: PayloadPolicy | None = None) -> BuiltPayload:
    """
    Order -> courier task body.

    Pure: reads only the snapshot it is given. Raises BuildError when the
    pickup site cannot be resolved.
    """
    today = today or date.today()
    policy = policy or PayloadPolicy.from_settings()

    pickup_location = _pickup_location(order)
    dropoff_location = _dropoff_location(order)

    if order.order_type == OrderType.RETURN_AUTHORIZATION and policy.swap_rma_locations:
        pickup_location, dropoff_location = dropoff_location, pickup_location

    payload: dict[str, Any] = {
        "externalId": str(order.id),
        "reference": order.tran_id,
        "type": TASK_TYPE_DELIVERY,
        "date": format_compact_date(order.tran_date),  # required on create
        "orderValue": order.subtotal,
        "skills": build_skills(order, today=today, policy=policy),
        "pickup": {
            "location": pickup_location,
            "instructions": order.driver_notes,
        },
        "location": dropoff_location,
        "items": build_items(order.lines),
        "internalComment": order.memo,
        "customData": {
            "RequiredDate": order.required_date.isoformat() if order.required_date else None,
        },
    }

    return BuiltPayload(payload=payload, courier_task_id=order.courier_task_id or None)
