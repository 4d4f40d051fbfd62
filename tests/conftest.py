import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ["OTLP_ENDPOINT"] = ""
os.environ.setdefault("INTERNAL_ADMIN_KEY", "test-internal")
os.environ.setdefault("COURIER_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("COURIER_API_KEY_PRODUCTION", "test-courier-key")
os.environ.setdefault("COURIER_BASE_URL_PRODUCTION", "https://courier.test/tasks")
os.environ.setdefault("COURIER_TRACKING_BASE_URL", "https://track.test/#/tracking")

from datetime import date  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import app.models  # noqa: E402,F401  # ensures Models are registered
from app.core.db import get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models.base import Base  # noqa: E402
from app.models.order import OrderLineRecord, OrderRecord, Site  # noqa: E402
from app.orders.sql_store import SqlOrderStore  # noqa: E402
from app.services.courier_client import CourierClient, CourierCredentials  # noqa: E402

COURIER_BASE_URL = "https://courier.test/tasks"


@pytest.fixture
async def async_engine():
    # one in-memory database per test, shared by every connection
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
async def db_session(async_engine):
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False, class_=AsyncSession)
    async with session_factory() as session:
        yield session


@pytest.fixture
def orders(db_session):
    return SqlOrderStore(db_session)


@pytest.fixture
def make_order(db_session):
    """Insert an order (with a pickup site and lines) and return its id."""

    async def _make(
        order_id: int = 1001,
        order_type: str = "SalesOrder",
        *,
        lines=(("ITEM-1", 2, 0),),
        with_site: bool = True,
        **fields,
    ) -> int:
        site_id = None
        if with_site:
            site = Site(
                addressee="Lapwing Depot",
                addr1="1 Depot Road",
                city="Leeds",
                zip="LS1 1AA",
                country="GB",
                phone="0113 000 0000",
            )
            db_session.add(site)
            await db_session.flush()
            site_id = site.id

        values = dict(
            id=order_id,
            order_type=order_type,
            tran_id=("RMA" if order_type == "ReturnAuthorization" else "SO") + str(order_id),
            tran_date=date(2026, 10, 1),
            status="open",
            customer_name="Acme Ltd",
            customer_email="ops@acme.test",
            site_id=site_id,
            ship_addressee="Acme Ltd",
            ship_addr1="22 High Street",
            ship_city="York",
            ship_zip="YO1 7HH",
            ship_country="GB",
            ship_method="Lapwing Van",
            site_contact_name="Sam",
            site_contact_phone="07700 900000",
            release_to_courier=True,
        )
        values.update(fields)
        record = OrderRecord(**values)
        record.lines = [
            OrderLineRecord(
                order_id=order_id,
                order_type=order_type,
                line_no=i,
                item=item,
                item_display=item,
                quantity=qty,
                quantity_fulfilled=fulfilled,
                weight=1.5,
            )
            for i, (item, qty, fulfilled) in enumerate(lines)
        ]
        db_session.add(record)
        await db_session.commit()
        return order_id

    return _make


class CourierStub:
    """Records courier API calls and answers from a queue of canned responses."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []

    def queue(self, status_code: int = 200, json=None, headers=None) -> None:
        self.responses.append(httpx.Response(status_code, json=json if json is not None else {}, headers=headers))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, json={"uid": "task-auto"})


@pytest.fixture
def courier():
    return CourierStub()


@pytest.fixture
async def courier_client(courier):
    client = CourierClient(
        credentials=CourierCredentials(api_key="test-courier-key", base_url=COURIER_BASE_URL),
        transport=httpx.MockTransport(courier.handler),
    )
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture
async def client(db_session: AsyncSession, courier_client):
    """
    HTTP client that uses the test DB session via dependency override.
    """
    from app.api.v1.endpoints.internal import get_courier_client

    async def _override_get_db():
        yield db_session

    async def _override_courier():
        yield courier_client

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_courier_client] = _override_courier

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
