"""Ticket issuance.

The counter is incremented and read back by one ``UPDATE ... RETURNING``
statement, so two callers can never receive the same number. The ticket row is
inserted in the same transaction: either both land or neither does.
"""

from dataclasses import dataclass
import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import QueuePaused
from .models import Queue, Ticket, TicketStatus
from .notifier import TICKET_INSERTED, notifier, queue_event, ticket_event
from .store import get_queue, storage_guard


logger = logging.getLogger(__name__)


@dataclass
class IssuedTicket:
    ticket: Ticket
    replayed: bool = False

    @property
    def ticket_number(self) -> int:
        return self.ticket.ticket_number


def find_ticket_by_key(session: Session, queue_id: int, idempotency_key: str) -> Optional[Ticket]:
    """Ticket already issued for ``idempotency_key`` in the queue's current epoch."""
    return session.exec(
        select(Ticket)
        .join(Queue, Queue.id == Ticket.queue_id)
        .where(
            Ticket.queue_id == queue_id,
            Ticket.epoch == Queue.epoch,
            Ticket.idempotency_key == idempotency_key,
        )
    ).first()


def issue_ticket(
    session: Session, queue_id: int, idempotency_key: Optional[str] = None
) -> IssuedTicket:
    with storage_guard(session, "issue_ticket"):
        if idempotency_key:
            existing = find_ticket_by_key(session, queue_id, idempotency_key)
            if existing is not None:
                logger.info(
                    "Queue %s replayed ticket %s for a repeated request",
                    queue_id, existing.ticket_number,
                )
                return IssuedTicket(existing, replayed=True)

        row = session.exec(
            update(Queue)
            .where(Queue.id == queue_id, Queue.is_paused == False)  # noqa: E712
            .values(last_issued_number=Queue.last_issued_number + 1)
            .returning(Queue.last_issued_number, Queue.epoch)
        ).first()
        if row is None:
            session.rollback()
            # Raises QueueNotFound when the queue is missing.
            get_queue(session, queue_id)
            raise QueuePaused(queue_id)

        number, epoch = row
        ticket = Ticket(
            queue_id=queue_id,
            epoch=epoch,
            ticket_number=number,
            status=TicketStatus.WAITING.value,
            idempotency_key=idempotency_key,
        )
        session.add(ticket)
        try:
            session.commit()
        except IntegrityError:
            # A concurrent request with the same key won; our increment is
            # rolled back with the insert.
            session.rollback()
            existing = (
                find_ticket_by_key(session, queue_id, idempotency_key)
                if idempotency_key
                else None
            )
            if existing is None:
                raise
            return IssuedTicket(existing, replayed=True)

        session.refresh(ticket)
        queue = get_queue(session, queue_id)

    logger.info("Queue %s issued ticket %s (epoch %s)", queue_id, number, epoch)
    notifier.publish(ticket_event(TICKET_INSERTED, ticket))
    notifier.publish(queue_event(queue))
    return IssuedTicket(ticket)
