from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import Integer

from app.models.base import AuditMixin, Base, JsonType
from app.models.enums import QueueStatus


class ApplyQueueEntry(AuditMixin, Base):
    __tablename__ = "apply_queue"
    __table_args__ = (
        Index("ix_apply_queue_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # webhook body exactly as received; never rewritten
    raw_payload: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=QueueStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # metadata derived from raw_payload by the processor
    action: Mapped[str | None] = mapped_column(String(120), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(60), nullable=True)
    resolved_order_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_order_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    courier_task_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
