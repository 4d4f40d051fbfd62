from datetime import date

from sqlalchemy import Boolean, Date, ForeignKey, ForeignKeyConstraint, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import Integer

from app.models.base import AuditMixin, Base


class Site(Base):
    """Subsidiary / warehouse address used as the pickup location."""

    __tablename__ = "sites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    addressee: Mapped[str | None] = mapped_column(String(200), nullable=True)
    addr1: Mapped[str | None] = mapped_column(String(200), nullable=True)
    addr2: Mapped[str | None] = mapped_column(String(200), nullable=True)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    zip: Mapped[str | None] = mapped_column(String(20), nullable=True)
    country: Mapped[str | None] = mapped_column(String(60), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(60), nullable=True)


class OrderRecord(AuditMixin, Base):
    """Local mirror of the ERP transaction fields the courier sync reads and writes."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    order_type: Mapped[str] = mapped_column(String(40), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    tran_id: Mapped[str | None] = mapped_column(String(60), nullable=True)  # e.g. "SO45"
    tran_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    required_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    ship_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")  # open/closed

    customer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    site_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("sites.id"), nullable=True)

    ship_addressee: Mapped[str | None] = mapped_column(String(200), nullable=True)
    ship_addr1: Mapped[str | None] = mapped_column(String(200), nullable=True)
    ship_addr2: Mapped[str | None] = mapped_column(String(200), nullable=True)
    ship_city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    ship_state: Mapped[str | None] = mapped_column(String(120), nullable=True)
    ship_zip: Mapped[str | None] = mapped_column(String(20), nullable=True)
    ship_country: Mapped[str | None] = mapped_column(String(60), nullable=True)

    ship_method: Mapped[str | None] = mapped_column(String(120), nullable=True)
    delivery_service: Mapped[str | None] = mapped_column(String(120), nullable=True)
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    driver_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    raised_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    site_contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    site_contact_phone: Mapped[str | None] = mapped_column(String(60), nullable=True)
    subtotal: Mapped[float | None] = mapped_column(Numeric(14, 2, asdecimal=False), nullable=True)

    release_to_courier: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    customer_pickup: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    released: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # courier-linked fields
    courier_task_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    courier_task_id_history: Mapped[str | None] = mapped_column(Text, nullable=True)
    courier_task_status: Mapped[str | None] = mapped_column(String(200), nullable=True)
    tracking_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    driver: Mapped[str | None] = mapped_column(String(200), nullable=True)
    route_stop_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    site: Mapped[Site | None] = relationship(lazy="selectin")
    lines: Mapped[list["OrderLineRecord"]] = relationship(
        lazy="selectin", order_by="OrderLineRecord.line_no", cascade="all, delete-orphan"
    )


class OrderLineRecord(Base):
    __tablename__ = "order_lines"
    __table_args__ = (
        ForeignKeyConstraint(["order_id", "order_type"], ["orders.id", "orders.order_type"]),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, nullable=False)
    order_type: Mapped[str] = mapped_column(String(40), nullable=False)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    item: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    item_display: Mapped[str | None] = mapped_column(String(200), nullable=True)
    quantity: Mapped[float] = mapped_column(Numeric(14, 4, asdecimal=False), nullable=False, default=0)
    quantity_fulfilled: Mapped[float] = mapped_column(Numeric(14, 4, asdecimal=False), nullable=False, default=0)
    weight: Mapped[float | None] = mapped_column(Numeric(14, 4, asdecimal=False), nullable=True)
