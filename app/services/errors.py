from __future__ import annotations


class CourierSyncError(Exception):
    """Base for errors raised while moving orders between the ERP and the courier service."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class BuildError(CourierSyncError):
    """Payload could not be built from the order (missing linked data). Needs an operator."""


class ValidationError(CourierSyncError):
    """Inbound webhook body is malformed or incomplete."""


class OrderNotFound(CourierSyncError):
    def __init__(self, order_id: int, order_type: str):
        super().__init__(f"{order_type} {order_id} not found")
        self.order_id = order_id
        self.order_type = order_type


class ConflictError(CourierSyncError):
    """Order changed underneath us (stale version)."""


class RemoteError(CourierSyncError):
    def __init__(self, message: str = "", *, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RemoteClientError(RemoteError):
    """4xx other than 429: the request itself is wrong."""


class RemoteRateLimited(RemoteError):
    def __init__(self, message: str = "", *, retry_after_seconds: int | None = None, **kw):
        super().__init__(message, **kw)
        self.retry_after_seconds = retry_after_seconds


class RemoteServerError(RemoteError):
    """5xx from the courier API."""


class NetworkError(RemoteError):
    """No response: timeout, DNS, connection refused."""
