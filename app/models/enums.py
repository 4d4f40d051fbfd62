from enum import Enum


class QueueStatus(str, Enum):
    """Shared by the export and apply queues; each uses a subset."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    RETRY = "RETRY"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


# export queue: not yet dispatched, subject to consolidation
OUTSTANDING_EXPORT_STATUSES = (QueueStatus.PENDING, QueueStatus.PROCESSING, QueueStatus.PROCESSED)
DISPATCHABLE_EXPORT_STATUSES = (QueueStatus.PROCESSED, QueueStatus.RETRY)
APPLY_CLAIMABLE_STATUSES = (QueueStatus.PENDING, QueueStatus.RETRY)


class ExportContext(str, Enum):
    CREATE = "create"
    EDIT = "edit"
    COPY = "copy"
    DELETE = "delete"
    BACKORDER = "backorder"


class OrderType(str, Enum):
    SALES_ORDER = "SalesOrder"
    RETURN_AUTHORIZATION = "ReturnAuthorization"

    @classmethod
    def from_reference(cls, reference: str | None) -> "OrderType | None":
        # Document numbers: SO123 / RMA123
        ref = (reference or "").strip().upper()
        if ref.startswith("RMA"):
            return cls.RETURN_AUTHORIZATION
        if ref.startswith("SO"):
            return cls.SALES_ORDER
        return None
