from datetime import datetime

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime, Integer

from app.models.base import AuditMixin, Base, JsonType
from app.models.enums import QueueStatus


class ExportQueueEntry(AuditMixin, Base):
    """Outbound work item: one create/edit/delete of a courier task for one order."""

    __tablename__ = "export_queue"
    __table_args__ = (
        Index("ix_export_queue_order_status", "order_id", "status"),
        Index("ix_export_queue_status_next_run", "status", "next_run_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    order_id: Mapped[int] = mapped_column(Integer, nullable=False)
    order_type: Mapped[str] = mapped_column(String(40), nullable=False)  # SalesOrder / ReturnAuthorization
    context: Mapped[str] = mapped_column(String(20), nullable=False)     # create/edit/copy/delete/backorder
    courier_task_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=QueueStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # claim fence: the pass holding lease_id owns the entry while PROCESSING
    lease_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payload: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    debug_url: Mapped[str | None] = mapped_column(Text, nullable=True)
