from datetime import datetime, timezone
from enum import Enum
import secrets
from typing import Optional

from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_claim_token() -> str:
    return secrets.token_urlsafe(16)


class TicketStatus(str, Enum):
    WAITING = "waiting"
    SERVING = "serving"
    CALLED = "called"
    CANCELLED = "cancelled"


# Allowed status transitions; called and cancelled are terminal.
TICKET_TRANSITIONS = {
    TicketStatus.WAITING: {TicketStatus.SERVING, TicketStatus.CANCELLED},
    TicketStatus.SERVING: {TicketStatus.CALLED},
    TicketStatus.CALLED: set(),
    TicketStatus.CANCELLED: set(),
}


class Queue(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=255, nullable=False)
    current_number: int = Field(default=0, nullable=False)
    last_issued_number: int = Field(default=0, nullable=False)
    is_paused: bool = Field(default=False, nullable=False)
    last_called_at: Optional[datetime] = Field(default=None)
    epoch: int = Field(default=1, nullable=False)
    reset_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("current_number >= 0", name="ck_queue_current_non_negative"),
        CheckConstraint("last_issued_number >= 0", name="ck_queue_issued_non_negative"),
        CheckConstraint(
            "current_number <= last_issued_number", name="ck_queue_serving_behind_issuance"
        ),
    )


class Ticket(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    queue_id: int = Field(foreign_key="queue.id", index=True, nullable=False)
    epoch: int = Field(nullable=False)
    ticket_number: int = Field(index=True, nullable=False)
    status: str = Field(default=TicketStatus.WAITING.value, max_length=16, nullable=False)
    idempotency_key: Optional[str] = Field(default=None, max_length=64)
    # Handed only to the issuing client; lets it cancel its own ticket.
    claim_token: Optional[str] = Field(default_factory=new_claim_token, max_length=32)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("queue_id", "epoch", "ticket_number", name="uq_ticket_number_per_epoch"),
        UniqueConstraint("queue_id", "epoch", "idempotency_key", name="uq_ticket_idempotency_key"),
    )
