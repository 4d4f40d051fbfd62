import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.core.clock import as_utc
from app.models.enums import ExportContext, OrderType, QueueStatus
from app.services.courier_client import CourierClient, CourierCredentials, HttpResult, remote_error_for
from app.services.errors import RemoteServerError
from app.services.export_dispatcher import (
    TASK_STATUS_CREATED,
    dispatch_export_batch,
    dispatch_one,
    interpret_response,
)
from app.services.export_queue import create_export_entry, get_entry, transition

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
PAYLOAD = {"externalId": "45", "reference": "SO45", "type": 1, "date": "20261014", "items": []}


async def _ready_entry(db, order_id=45, *, context="create", courier_task_id=None, payload=PAYLOAD, attempts=0, last_error=None):
    entry = await create_export_entry(
        db, order_id=order_id, order_type=OrderType.SALES_ORDER, context=ExportContext(context),
        courier_task_id=courier_task_id, now=NOW - timedelta(minutes=1),
    )
    await transition(
        db, entry.id, from_statuses=[QueueStatus.PENDING],
        status=QueueStatus.PROCESSED, payload=payload, attempts=attempts, last_error=last_error,
    )
    await db.commit()
    return entry.id


def _result(status_code, detail=None, headers=None) -> HttpResult:
    return HttpResult(
        ok=200 <= status_code < 300,
        status_code=status_code,
        detail=detail or {},
        response_headers=headers or {},
    )


@pytest.mark.asyncio
async def test_create_success_writes_task_id_back(db_session, orders, make_order, courier, courier_client):
    await make_order(45)
    entry_id = await _ready_entry(db_session)
    courier.queue(200, {"uid": "uid-45"})

    summary = await dispatch_export_batch(db_session, orders, courier_client, now=NOW)

    entry = await get_entry(db_session, entry_id)
    assert entry.status == QueueStatus.SUCCESS.value
    assert entry.courier_task_id == "uid-45"
    assert entry.lease_id is None
    assert summary.outcomes == {"success": 1}

    order = await orders.load_order(45, OrderType.SALES_ORDER)
    assert order.courier_task_id == "uid-45"
    assert order.courier_task_status == TASK_STATUS_CREATED

    sent = courier.requests[0]
    assert sent.method == "POST"
    assert sent.headers["Authorization"] == "ApiKey test-courier-key"
    assert json.loads(sent.content)["reference"] == "SO45"


@pytest.mark.asyncio
async def test_edit_puts_without_immutable_fields(db_session, orders, make_order, courier, courier_client):
    await make_order(45, courier_task_id="uid-45")
    entry_id = await _ready_entry(db_session, context="edit", courier_task_id="uid-45")
    courier.queue(200, {"uid": "uid-45"})

    await dispatch_export_batch(db_session, orders, courier_client, now=NOW)

    sent = courier.requests[0]
    assert sent.method == "PUT"
    assert sent.url.params["uid"] == "uid-45"
    body = json.loads(sent.content)
    assert "type" not in body and "date" not in body
    assert (await get_entry(db_session, entry_id)).status == QueueStatus.SUCCESS.value


@pytest.mark.asyncio
async def test_rate_limit_backs_off_exponentially(db_session, orders, courier, courier_client):
    entry_id = await _ready_entry(db_session)
    courier.queue(429)

    await dispatch_export_batch(db_session, orders, courier_client, now=NOW)

    entry = await get_entry(db_session, entry_id)
    assert entry.status == QueueStatus.RETRY.value
    assert entry.attempts == 1
    assert entry.last_error == "429 Too Many Requests"
    assert as_utc(entry.next_run_at) == NOW + timedelta(seconds=1)

    courier.queue(429)
    later = NOW + timedelta(seconds=1)
    await dispatch_export_batch(db_session, orders, courier_client, now=later)

    entry = await get_entry(db_session, entry_id)
    assert entry.attempts == 2
    assert as_utc(entry.next_run_at) == later + timedelta(seconds=2)


def test_backoff_sequence_doubles():
    waits = []
    attempts = 0
    for _ in range(4):
        outcome = interpret_response(ExportContext.CREATE, _result(429), attempts=attempts, now=NOW)
        waits.append((outcome.next_run_at - NOW).total_seconds())
        attempts = outcome.attempts
    assert waits == [1, 2, 4, 8]


def test_retry_after_header_wins():
    outcome = interpret_response(ExportContext.EDIT, _result(429, headers={"retry-after": "30"}), attempts=3, now=NOW)
    assert outcome.status == QueueStatus.RETRY
    assert outcome.next_run_at == NOW + timedelta(seconds=30)


def test_client_error_is_terminal():
    outcome = interpret_response(ExportContext.CREATE, _result(400, {"message": "bad postcode"}), attempts=0, now=NOW)
    assert outcome.status == QueueStatus.ERROR
    assert "bad postcode" in outcome.last_error


def test_server_error_retries_until_max_attempts():
    retry = interpret_response(ExportContext.CREATE, _result(503), attempts=0, now=NOW, max_attempts=12)
    assert retry.status == QueueStatus.RETRY

    final = interpret_response(ExportContext.CREATE, _result(503), attempts=11, now=NOW, max_attempts=12)
    assert final.status == QueueStatus.ERROR
    assert final.attempts == 12


def test_delete_404_is_terminal():
    outcome = interpret_response(ExportContext.DELETE, _result(404), attempts=0, now=NOW)
    assert outcome.status == QueueStatus.ERROR
    assert "404" in outcome.last_error


def test_any_2xx_is_success():
    outcome = interpret_response(ExportContext.DELETE, _result(204), attempts=2, now=NOW)
    assert outcome.status == QueueStatus.SUCCESS


@pytest.mark.asyncio
async def test_delete_sends_delete_request(db_session, orders, courier, courier_client):
    entry_id = await _ready_entry(
        db_session, context="delete", courier_task_id="uid-9",
        payload={"action": "delete", "courierTaskId": "uid-9"},
    )
    courier.queue(200)

    await dispatch_export_batch(db_session, orders, courier_client, now=NOW)

    assert [r.method for r in courier.requests] == ["DELETE"]
    entry = await get_entry(db_session, entry_id)
    assert entry.status == QueueStatus.SUCCESS.value
    assert entry.debug_url.endswith("?uid=uid-9")


@pytest.mark.asyncio
async def test_empty_payload_is_an_error_with_previous_note(db_session, orders, courier, courier_client):
    entry_id = await _ready_entry(db_session, payload=None, last_error="Payload build failed: site address missing")

    await dispatch_export_batch(db_session, orders, courier_client, now=NOW)

    entry = await get_entry(db_session, entry_id)
    assert entry.status == QueueStatus.ERROR.value
    assert entry.last_error == "Empty payload (Payload build failed: site address missing)"
    assert courier.requests == []


@pytest.mark.asyncio
async def test_network_error_is_retried(db_session, orders):
    def _fail(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = CourierClient(
        credentials=CourierCredentials(api_key="k", base_url="https://courier.test/tasks"),
        transport=httpx.MockTransport(_fail),
    )
    entry_id = await _ready_entry(db_session)

    async with client:
        await dispatch_export_batch(db_session, orders, client, now=NOW)

    entry = await get_entry(db_session, entry_id)
    assert entry.status == QueueStatus.RETRY.value
    assert "connection refused" in entry.last_error


@pytest.mark.asyncio
async def test_entry_not_yet_due_is_left_alone(db_session, orders, courier, courier_client):
    entry_id = await _ready_entry(db_session)
    await transition(
        db_session, entry_id, from_statuses=[QueueStatus.PROCESSED],
        status=QueueStatus.RETRY, next_run_at=NOW + timedelta(minutes=5),
    )
    await db_session.commit()

    summary = await dispatch_export_batch(db_session, orders, courier_client, now=NOW)

    assert summary.selected == 0
    assert courier.requests == []


@pytest.mark.asyncio
async def test_full_batch_is_flagged(db_session, orders, courier_client):
    for order_id in (1, 2):
        await _ready_entry(db_session, order_id)

    summary = await dispatch_export_batch(db_session, orders, courier_client, batch_size=2, now=NOW)

    assert summary.selected == 2
    assert summary.full


@pytest.mark.asyncio
async def test_terminal_entry_is_not_dispatched_again(db_session, orders, courier, courier_client):
    entry_id = await _ready_entry(db_session)
    await transition(db_session, entry_id, from_statuses=[QueueStatus.PROCESSED], status=QueueStatus.SUCCESS)
    await db_session.commit()

    assert await dispatch_one(db_session, orders, courier_client, entry_id, now=NOW) == "skipped"
    assert courier.requests == []


@pytest.mark.asyncio
async def test_client_result_carries_only_what_classification_reads(courier, courier_client):
    courier.queue(503, {"message": "busy"}, headers={"Retry-After": "7", "X-Request-Id": "abc"})

    result = await courier_client.update_task("uid-1", {"notes": "x"})

    assert not result.ok
    assert result.status_code == 503
    assert result.response_headers == {"retry-after": "7"}
    assert result.retry_after == "7"
    assert result.error_message == "HTTP 503"
    assert isinstance(remote_error_for(result), RemoteServerError)
    assert courier.requests[0].url.params["uid"] == "uid-1"
