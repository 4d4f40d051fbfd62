from typing import Any

from pydantic import BaseModel, Field


class BackorderResponse(BaseModel):
    queue_id: int


class ExportDrainResponse(BaseModel):
    prepared: int
    prepare_outcomes: dict[str, int] = Field(default_factory=dict)
    dispatched: int
    dispatch_outcomes: dict[str, int] = Field(default_factory=dict)
    more_waiting: bool = False


class ApplyDrainResponse(BaseModel):
    selected: int
    outcomes: dict[str, int] = Field(default_factory=dict)


class ExportQueueEntryOut(BaseModel):
    id: int
    order_id: int
    order_type: str
    context: str
    courier_task_id: str | None
    status: str
    attempts: int
    next_run_at: str | None
    last_error: str | None
    debug_url: str | None
    payload: dict | None


class ApplyQueueEntryOut(BaseModel):
    id: int
    status: str
    attempts: int
    action: str | None
    reference: str | None
    resolved_order_id: int | None
    resolved_order_type: str | None
    courier_task_id: str | None
    last_error: str | None
    raw_payload: dict


class PreviousLineIn(BaseModel):
    item: str
    quantity: float = 0


class OrderEventRequest(BaseModel):
    event: str
    # edit: old values of the changed body fields
    # delete: the deleted record's courier_task_id / release_to_courier
    previous: dict[str, Any] | None = None
    previous_lines: list[PreviousLineIn] | None = None


class OrderEventResponse(BaseModel):
    action: str
    reason: str
    context: str | None = None
    queue_id: int | None = None
    closed_entries: int = 0
