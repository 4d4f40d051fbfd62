import json
import os
from datetime import date

import pytest
from sqlalchemy import func, select

from app.core.config import UNSET_SECRET, settings
from app.models.apply_queue import ApplyQueueEntry
from app.models.enums import OrderType
from app.services.export_queue import get_entry, search_entries

ADMIN = {"X-Internal-Admin-Key": os.environ["INTERNAL_ADMIN_KEY"]}
WEBHOOK = {"x-api-key": os.environ["COURIER_WEBHOOK_SECRET"]}


@pytest.mark.asyncio
async def test_release_toggle_creates_remote_task_and_links_it(client, db_session, orders, make_order, courier):
    await make_order(45, release_to_courier=True, lines=(("WIDGET", 5, 0),))

    # 1) ERP reports the release flag was just switched on
    r = await client.post(
        "/v1/internal/orders/SalesOrder/45/events",
        headers=ADMIN,
        json={"event": "edit", "previous": {"release_to_courier": False}},
    )
    assert r.status_code == 200, r.text
    queued = r.json()
    assert queued["action"] == "enqueue"
    assert queued["context"] == "create"

    entry = await get_entry(db_session, queued["queue_id"])
    assert entry.status == "PENDING"

    # 2) one drain prepares and dispatches
    courier.queue(200, {"uid": "123"})
    r = await client.post("/v1/internal/export-queue/drain", headers=ADMIN)
    assert r.status_code == 200, r.text
    assert r.json()["dispatch_outcomes"] == {"success": 1}

    sent = json.loads(courier.requests[0].content)
    assert courier.requests[0].method == "POST"
    assert [item["quantity"] for item in sent["items"]] == [5.0]

    entry = await get_entry(db_session, queued["queue_id"])
    assert entry.status == "SUCCESS"
    order = await orders.load_order(45, OrderType.SALES_ORDER)
    assert order.courier_task_id == "123"


@pytest.mark.asyncio
async def test_move_to_date_webhook_sets_ship_date(client, db_session, orders, make_order):
    await make_order(123)

    body = {
        "externalId": 123,
        "reference": "SO45",
        "action": "Tasks.moveToDate",
        "history": [{"data": {"date": "20240115"}}],
    }
    r = await client.post("/v1/webhooks/courier", headers=WEBHOOK, json=body)
    assert r.status_code == 200
    queue_id = r.json()["queueId"]

    r = await client.post("/v1/internal/apply-queue/drain", headers=ADMIN)
    assert r.status_code == 200, r.text
    assert r.json()["outcomes"] == {"processed": 1}

    order = await orders.load_order(123, OrderType.SALES_ORDER)
    assert order.ship_date == date(2024, 1, 15)

    r = await client.get("/v1/internal/apply-queue", headers=ADMIN, params={"status": "PROCESSED"})
    assert [e["id"] for e in r.json()] == [queue_id]


@pytest.mark.asyncio
async def test_closed_order_issues_exactly_one_delete(client, db_session, make_order, courier):
    await make_order(60, courier_task_id="uid-60", status="closed", lines=(("A", 1, 1),))

    r = await client.post(
        "/v1/internal/orders/SalesOrder/60/events",
        headers=ADMIN,
        json={"event": "edit", "previous": {"memo": "before close"}},
    )
    assert r.json()["context"] == "edit"

    courier.queue(200)
    await client.post("/v1/internal/export-queue/drain", headers=ADMIN)
    await client.post("/v1/internal/export-queue/drain", headers=ADMIN)

    assert [req.method for req in courier.requests] == ["DELETE"]
    rows = await search_entries(db_session, order_id=60)
    assert [r.status for r in rows] == ["SUCCESS"]


@pytest.mark.asyncio
async def test_backorder_endpoint(client, make_order):
    await make_order(70, courier_task_id="uid-70")

    r = await client.post("/v1/internal/orders/SalesOrder/70/backorder", headers=ADMIN)
    assert r.status_code == 200, r.text
    assert r.json()["queue_id"] > 0

    r = await client.post("/v1/internal/orders/SalesOrder/71/backorder", headers=ADMIN)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_internal_endpoints_require_admin_key(client, db_session):
    r = await client.post("/v1/internal/apply-queue/drain", headers={"X-Internal-Admin-Key": "wrong"})
    assert r.status_code == 403

    count = (await db_session.execute(select(func.count()).select_from(ApplyQueueEntry))).scalar_one()
    assert count == 0


@pytest.mark.asyncio
async def test_delete_event_for_removed_order_deletes_remote_task(client, db_session, courier):
    r = await client.post(
        "/v1/internal/orders/SalesOrder/5555/events",
        headers=ADMIN,
        json={"event": "delete", "previous": {"courier_task_id": "uid-5555"}},
    )
    assert r.status_code == 200, r.text
    assert r.json()["context"] == "delete"

    courier.queue(200)
    await client.post("/v1/internal/export-queue/drain", headers=ADMIN)

    assert [req.method for req in courier.requests] == ["DELETE"]
    assert courier.requests[0].url.params["uid"] == "uid-5555"
    rows = await search_entries(db_session, order_id=5555)
    assert [r.status for r in rows] == ["SUCCESS"]


@pytest.mark.asyncio
async def test_unconfigured_admin_key_locks_internal_endpoints(client, monkeypatch):
    monkeypatch.setattr(settings, "internal_admin_key", UNSET_SECRET)

    r = await client.get("/v1/internal/export-queue", headers={"X-Internal-Admin-Key": UNSET_SECRET})
    assert r.status_code == 403
