from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import OrderType
from app.models.order import OrderRecord
from app.orders.base import WRITABLE_FIELDS, Order, OrderLine, SiteAddress
from app.services.errors import ConflictError, OrderNotFound


def to_order(row: OrderRecord) -> Order:
    site = None
    if row.site is not None:
        site = SiteAddress(
            addressee=row.site.addressee,
            addr1=row.site.addr1,
            addr2=row.site.addr2,
            city=row.site.city,
            zip=row.site.zip,
            country=row.site.country,
            phone=row.site.phone,
        )

    lines = tuple(
        OrderLine(
            item=ln.item,
            quantity=ln.quantity or 0,
            quantity_fulfilled=ln.quantity_fulfilled or 0,
            description=ln.description,
            item_display=ln.item_display,
            weight=ln.weight,
        )
        for ln in row.lines
    )

    return Order(
        id=row.id,
        order_type=OrderType(row.order_type),
        version=row.version,
        tran_id=row.tran_id,
        tran_date=row.tran_date,
        required_date=row.required_date,
        ship_date=row.ship_date,
        status=row.status,
        customer_name=row.customer_name,
        customer_email=row.customer_email,
        site=site,
        ship_addressee=row.ship_addressee,
        ship_addr1=row.ship_addr1,
        ship_addr2=row.ship_addr2,
        ship_city=row.ship_city,
        ship_state=row.ship_state,
        ship_zip=row.ship_zip,
        ship_country=row.ship_country,
        ship_method=row.ship_method,
        delivery_service=row.delivery_service,
        memo=row.memo,
        driver_notes=row.driver_notes,
        raised_by=row.raised_by,
        site_contact_name=row.site_contact_name,
        site_contact_phone=row.site_contact_phone,
        subtotal=row.subtotal,
        release_to_courier=bool(row.release_to_courier),
        customer_pickup=bool(row.customer_pickup),
        released=bool(row.released),
        courier_task_id=row.courier_task_id,
        courier_task_id_history=row.courier_task_id_history,
        courier_task_status=row.courier_task_status,
        tracking_link=row.tracking_link,
        driver=row.driver,
        route_stop_number=row.route_stop_number,
        lines=lines,
    )


class SqlOrderStore:
    """OrderStore backed by the local `orders` mirror, versioned for optimistic concurrency."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_row(self, order_id: int, order_type: OrderType) -> OrderRecord | None:
        stmt = (
            select(OrderRecord)
            .where(OrderRecord.id == order_id, OrderRecord.order_type == OrderType(order_type).value)
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def load_order(self, order_id: int, order_type: OrderType) -> Order:
        row = await self._get_row(order_id, order_type)
        if row is None:
            raise OrderNotFound(order_id, OrderType(order_type).value)
        return to_order(row)

    async def update_order_fields(
        self,
        order_id: int,
        order_type: OrderType,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> Order:
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not writable by courier sync: {sorted(unknown)}")

        type_value = OrderType(order_type).value
        current = (await self.db.execute(
            select(OrderRecord.version).where(OrderRecord.id == order_id, OrderRecord.order_type == type_value)
        )).scalar_one_or_none()
        if current is None:
            raise OrderNotFound(order_id, type_value)

        version = current if expected_version is None else expected_version
        result = await self.db.execute(
            update(OrderRecord)
            .where(
                OrderRecord.id == order_id,
                OrderRecord.order_type == type_value,
                OrderRecord.version == version,
            )
            .values(**dict(fields), version=OrderRecord.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError(f"{type_value} {order_id} has been changed (expected version {version})")

        await self.db.flush()
        return await self.load_order(order_id, order_type)
