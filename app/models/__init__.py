from app.models.base import Base  # noqa: F401

from app.models.export_queue import ExportQueueEntry  # noqa: F401
from app.models.apply_queue import ApplyQueueEntry  # noqa: F401
from app.models.order import OrderLineRecord, OrderRecord, Site  # noqa: F401
