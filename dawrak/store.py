"""Queue Store: counters, pause state and ticket status transitions.

Every mutation is a single conditional UPDATE evaluated by the database, so
``current_number <= last_issued_number`` holds for every reader at all times.
"""

from contextlib import contextmanager
from dataclasses import dataclass
import logging
import secrets
from typing import Iterator, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session, select

from .config import ADVANCE_MAX_ATTEMPTS
from .errors import (
    InvalidTicketTransition,
    QueueNotFound,
    QueueServiceError,
    StorageFailure,
    TicketAccessDenied,
    TicketNotFound,
)
from .models import TICKET_TRANSITIONS, Queue, Ticket, TicketStatus, utcnow
from .notifier import TICKET_UPDATED, notifier, queue_event, ticket_event


logger = logging.getLogger(__name__)


@dataclass
class AdvanceResult:
    queue_id: int
    current_number: int
    epoch: int
    none_waiting: bool = False
    ticket: Optional[Ticket] = None


@dataclass
class TicketPosition:
    ticket: Ticket
    ahead: int
    is_up: bool
    is_stale: bool


@dataclass
class QueueSummary:
    queue: Queue
    waiting_count: int
    next_number: Optional[int]


@contextmanager
def storage_guard(session: Session, operation: str) -> Iterator[None]:
    """Roll back on any failure and surface driver errors as StorageFailure."""
    try:
        yield
    except QueueServiceError:
        session.rollback()
        raise
    except DBAPIError as exc:
        session.rollback()
        logger.error("Storage failure during %s: %s", operation, exc)
        raise StorageFailure(f"Storage unavailable during {operation}", operation) from exc


def get_queue(session: Session, queue_id: int) -> Queue:
    queue = session.get(Queue, queue_id, populate_existing=True)
    if queue is None:
        raise QueueNotFound(queue_id)
    return queue


def list_queues(session: Session) -> list[Queue]:
    return session.exec(select(Queue).order_by(Queue.id.asc())).all()


def create_queue(session: Session, name: str) -> Queue:
    with storage_guard(session, "create_queue"):
        queue = Queue(name=name)
        session.add(queue)
        session.commit()
        session.refresh(queue)
    logger.info("Created queue %s (%s)", queue.id, queue.name)
    notifier.publish(queue_event(queue))
    return queue


def next_waiting_ticket(session: Session, queue: Queue) -> Optional[Ticket]:
    # Cancelled and called numbers, and numbers with no ticket row, are skipped.
    return session.exec(
        select(Ticket)
        .where(
            Ticket.queue_id == queue.id,
            Ticket.epoch == queue.epoch,
            Ticket.status == TicketStatus.WAITING.value,
            Ticket.ticket_number > queue.current_number,
            Ticket.ticket_number <= queue.last_issued_number,
        )
        .order_by(Ticket.ticket_number.asc())
    ).first()


def advance_serving(
    session: Session, queue_id: int, max_attempts: int = ADVANCE_MAX_ATTEMPTS
) -> AdvanceResult:
    """Move the now-serving pointer to the next waiting ticket.

    The pointer only moves if it still holds the value read at the start of
    the attempt, and the target ticket is only claimed if it is still waiting.
    A lost race rolls back and rescans. Returns ``none_waiting`` without
    touching anything when no ticket is eligible.
    """
    with storage_guard(session, "advance_serving"):
        for attempt in range(1, max_attempts + 1):
            queue = get_queue(session, queue_id)
            previous = queue.current_number
            epoch = queue.epoch
            candidate = next_waiting_ticket(session, queue)
            if candidate is None:
                session.rollback()
                return AdvanceResult(queue_id, previous, epoch, none_waiting=True)

            now = utcnow()
            moved = session.exec(
                update(Queue)
                .where(
                    Queue.id == queue_id,
                    Queue.epoch == epoch,
                    Queue.current_number == previous,
                    Queue.last_issued_number >= candidate.ticket_number,
                )
                .values(current_number=candidate.ticket_number)
            ).rowcount
            claimed = moved == 1 and session.exec(
                update(Ticket)
                .where(Ticket.id == candidate.id, Ticket.status == TicketStatus.WAITING.value)
                .values(status=TicketStatus.SERVING.value, updated_at=now)
            ).rowcount == 1
            if not claimed:
                session.rollback()
                logger.info(
                    "Queue %s advance lost a race at %s (attempt %s/%s)",
                    queue_id, previous, attempt, max_attempts,
                )
                continue

            finished_ids = session.exec(
                select(Ticket.id).where(
                    Ticket.queue_id == queue_id,
                    Ticket.epoch == epoch,
                    Ticket.status == TicketStatus.SERVING.value,
                    Ticket.id != candidate.id,
                )
            ).all()
            if finished_ids:
                session.exec(
                    update(Ticket)
                    .where(
                        Ticket.id.in_(finished_ids),
                        Ticket.status == TicketStatus.SERVING.value,
                    )
                    .values(status=TicketStatus.CALLED.value, updated_at=now)
                )
            session.commit()
            break
        else:
            raise StorageFailure(
                f"Queue {queue_id} advance did not settle after {max_attempts} attempts",
                "advance_serving",
            )

        # The number this call wrote; later advances may already have moved on.
        served = candidate.ticket_number
        session.refresh(candidate)
        queue = get_queue(session, queue_id)
        finished = [session.get(Ticket, ticket_id) for ticket_id in finished_ids]

    logger.info("Queue %s now serving %s (was %s)", queue_id, served, previous)
    notifier.publish(queue_event(queue))
    notifier.publish(ticket_event(TICKET_UPDATED, candidate))
    for ticket in finished:
        notifier.publish(ticket_event(TICKET_UPDATED, ticket))
    return AdvanceResult(queue_id, served, epoch, ticket=candidate)


def _update_queue(session: Session, queue_id: int, operation: str, **values) -> Queue:
    with storage_guard(session, operation):
        updated = session.exec(
            update(Queue).where(Queue.id == queue_id).values(**values)
        ).rowcount
        if updated != 1:
            raise QueueNotFound(queue_id)
        session.commit()
        queue = get_queue(session, queue_id)
    notifier.publish(queue_event(queue))
    return queue


def set_paused(session: Session, queue_id: int, paused: bool) -> Queue:
    queue = _update_queue(session, queue_id, "set_paused", is_paused=paused)
    logger.info("Queue %s %s", queue_id, "paused" if paused else "resumed")
    return queue


def touch_last_called_at(session: Session, queue_id: int) -> Queue:
    """Stamp a re-announcement of the current number; counters are untouched."""
    queue = _update_queue(session, queue_id, "touch_last_called_at", last_called_at=utcnow())
    logger.info("Queue %s re-announced %s", queue_id, queue.current_number)
    return queue


def reset_queue(session: Session, queue_id: int) -> Queue:
    """Zero both counters in one statement and open a new numbering epoch."""
    queue = _update_queue(
        session,
        queue_id,
        "reset_queue",
        current_number=0,
        last_issued_number=0,
        is_paused=False,
        last_called_at=None,
        epoch=Queue.epoch + 1,
        reset_at=utcnow(),
    )
    logger.warning("Queue %s reset, now in epoch %s", queue_id, queue.epoch)
    return queue


def get_ticket(session: Session, queue_id: int, ticket_id: int) -> Ticket:
    ticket = session.get(Ticket, ticket_id, populate_existing=True)
    if ticket is None or ticket.queue_id != queue_id:
        raise TicketNotFound(ticket_id)
    return ticket


def transition_ticket(
    session: Session, queue_id: int, ticket_id: int, target: TicketStatus
) -> Ticket:
    with storage_guard(session, f"ticket_{target.value}"):
        ticket = get_ticket(session, queue_id, ticket_id)
        current = TicketStatus(ticket.status)
        if target not in TICKET_TRANSITIONS[current]:
            raise InvalidTicketTransition(ticket_id, current.value, target.value)

        updated = session.exec(
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.status == current.value)
            .values(status=target.value, updated_at=utcnow())
        ).rowcount
        if updated != 1:
            # Someone else moved it first; report against what it is now.
            session.rollback()
            ticket = get_ticket(session, queue_id, ticket_id)
            raise InvalidTicketTransition(ticket_id, ticket.status, target.value)
        session.commit()
        ticket = get_ticket(session, queue_id, ticket_id)

    logger.info("Ticket %s of queue %s is now %s", ticket_id, queue_id, target.value)
    notifier.publish(ticket_event(TICKET_UPDATED, ticket))
    return ticket


def cancel_ticket(
    session: Session,
    queue_id: int,
    ticket_id: int,
    claim_token: Optional[str] = None,
    by_staff: bool = True,
) -> Ticket:
    """Cancel a waiting ticket.

    Staff may cancel any ticket; anyone else must present the claim token
    handed out when the ticket was issued.
    """
    if not by_staff:
        ticket = get_ticket(session, queue_id, ticket_id)
        if (
            claim_token is None
            or ticket.claim_token is None
            or not secrets.compare_digest(claim_token, ticket.claim_token)
        ):
            session.rollback()
            logger.warning("Rejected cancel of ticket %s without a valid claim token", ticket_id)
            raise TicketAccessDenied(ticket_id)
    return transition_ticket(session, queue_id, ticket_id, TicketStatus.CANCELLED)


def complete_ticket(session: Session, queue_id: int, ticket_id: int) -> Ticket:
    return transition_ticket(session, queue_id, ticket_id, TicketStatus.CALLED)


def count_waiting(session: Session, queue: Queue, below: Optional[int] = None) -> int:
    query = select(func.count(Ticket.id)).where(
        Ticket.queue_id == queue.id,
        Ticket.epoch == queue.epoch,
        Ticket.status == TicketStatus.WAITING.value,
    )
    if below is not None:
        query = query.where(Ticket.ticket_number < below)
    return session.exec(query).one()


def ticket_position(session: Session, ticket: Ticket) -> TicketPosition:
    queue = get_queue(session, ticket.queue_id)
    if ticket.epoch != queue.epoch:
        return TicketPosition(ticket, ahead=0, is_up=False, is_stale=True)
    ahead = 0
    if ticket.status == TicketStatus.WAITING.value:
        ahead = count_waiting(session, queue, below=ticket.ticket_number)
    return TicketPosition(
        ticket,
        ahead=ahead,
        is_up=(
            ticket.status == TicketStatus.SERVING.value
            and queue.current_number == ticket.ticket_number
        ),
        is_stale=False,
    )


def queue_summary(session: Session, queue_id: int) -> QueueSummary:
    queue = get_queue(session, queue_id)
    upcoming = next_waiting_ticket(session, queue)
    return QueueSummary(
        queue=queue,
        waiting_count=count_waiting(session, queue),
        next_number=upcoming.ticket_number if upcoming else None,
    )
