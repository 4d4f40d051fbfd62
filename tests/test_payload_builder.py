from datetime import date

import pytest

from app.models.enums import OrderType
from app.orders.base import Order, OrderLine, SiteAddress
from app.services.errors import BuildError
from app.services.payload_builder import (
    PayloadPolicy,
    build_items,
    build_skills,
    build_task_payload,
    format_compact_date,
)

TODAY = date(2026, 10, 17)
POLICY = PayloadPolicy(preferred_ship_method="Lapwing Van", swap_rma_locations=False)
SITE = SiteAddress(addressee="Depot", addr1="1 Depot Road", city="Leeds", zip="LS1 1AA", country="GB", phone="0113")


def _order(**kw) -> Order:
    values = dict(
        id=45,
        order_type=OrderType.SALES_ORDER,
        tran_id="SO45",
        tran_date=date(2026, 10, 14),
        customer_name="Acme Ltd",
        site=SITE,
        ship_addr1="22 High Street",
        ship_city="York",
        ship_zip="YO1 7HH",
        ship_country="GB",
        ship_method="Lapwing Van",
        lines=(OrderLine(item="A", quantity=3, quantity_fulfilled=1, weight=2.0),),
    )
    values.update(kw)
    return Order(**values)


def test_payload_core_fields():
    built = build_task_payload(_order(), today=TODAY, policy=POLICY)
    p = built.payload

    assert p["externalId"] == "45"
    assert p["reference"] == "SO45"
    assert p["date"] == "20261014"
    assert p["pickup"]["location"]["address"] == "1 Depot Road"
    assert p["location"]["address"] == "22 High Street York YO1 7HH GB"
    assert p["skills"] == ["Lapwing Van"]
    assert built.courier_task_id is None


def test_items_use_remaining_quantity_and_skip_fulfilled_lines():
    items = build_items([
        OrderLine(item="A", quantity=3, quantity_fulfilled=1, weight=None),
        OrderLine(item="B", quantity=2, quantity_fulfilled=2),
    ])
    assert len(items) == 1
    assert items[0]["quantity"] == 2.0
    assert items[0]["unitSize"] == {"Weight kg": 0}


def test_skills_for_other_method_early_service_and_future_date():
    order = _order(
        ship_method="Royal Mail",
        delivery_service="Pre 12 Delivery",
        required_date=date(2026, 10, 20),
    )
    assert build_skills(order, today=TODAY, policy=POLICY) == ["Courier", "Early Delivery", "Future Order"]


def test_required_date_today_is_not_future():
    order = _order(required_date=TODAY)
    assert "Future Order" not in build_skills(order, today=TODAY, policy=POLICY)


def test_missing_site_raises_build_error():
    with pytest.raises(BuildError):
        build_task_payload(_order(site=None), today=TODAY, policy=POLICY)


def test_return_locations_swap_only_when_enabled():
    rma = _order(order_type=OrderType.RETURN_AUTHORIZATION, tran_id="RMA7")

    kept = build_task_payload(rma, today=TODAY, policy=POLICY).payload
    assert kept["pickup"]["location"]["address"] == "1 Depot Road"

    swapped = build_task_payload(
        rma, today=TODAY, policy=PayloadPolicy(preferred_ship_method="Lapwing Van", swap_rma_locations=True)
    ).payload
    assert swapped["location"]["address"] == "1 Depot Road"
    assert swapped["pickup"]["location"]["name"] == "Acme Ltd"


def test_existing_task_id_is_carried():
    built = build_task_payload(_order(courier_task_id="uid-9"), today=TODAY, policy=POLICY)
    assert built.courier_task_id == "uid-9"


def test_format_compact_date():
    assert format_compact_date(date(2026, 1, 5)) == "20260105"
    assert format_compact_date(None) is None
