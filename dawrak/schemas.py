from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class QueueCreate(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("name must not be empty")
        return value


class QueueRead(BaseModel):
    id: int
    name: str
    current_number: int
    last_issued_number: int
    is_paused: bool
    last_called_at: Optional[datetime] = None
    epoch: int
    reset_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class QueueDisplay(BaseModel):
    queue: QueueRead
    waiting_count: int
    next_number: Optional[int] = None


class PauseRequest(BaseModel):
    paused: bool


class TicketRequest(BaseModel):
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=64)


class TicketRead(BaseModel):
    id: int
    queue_id: int
    epoch: int
    ticket_number: int
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IssuedTicketRead(TicketRead):
    replayed: bool = False
    claim_token: Optional[str] = None


class CancelRequest(BaseModel):
    claim_token: Optional[str] = Field(default=None, max_length=64)


class TicketPositionRead(TicketRead):
    ahead: int
    is_up: bool
    is_stale: bool


class AdvanceResponse(BaseModel):
    current_number: int
    epoch: int
    none_waiting: bool = False
    ticket: Optional[TicketRead] = None
