from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from dawrak.errors import QueueNotFound, QueuePaused, StorageFailure
from dawrak.models import Ticket
from dawrak.sequencer import issue_ticket
from dawrak.store import get_queue, reset_queue, set_paused


def test_issue_ticket_hands_out_sequential_numbers(session, queue_id):
    numbers = [issue_ticket(session, queue_id).ticket_number for _ in range(3)]

    assert numbers == [1, 2, 3]
    queue = get_queue(session, queue_id)
    assert queue.last_issued_number == 3
    assert queue.current_number == 0
    tickets = session.exec(select(Ticket).where(Ticket.queue_id == queue_id)).all()
    assert sorted(t.ticket_number for t in tickets) == [1, 2, 3]
    assert {t.status for t in tickets} == {"waiting"}


def test_issue_ticket_unknown_queue(session):
    with pytest.raises(QueueNotFound):
        issue_ticket(session, 999)


def test_issue_ticket_rejected_while_paused(session, queue_id):
    issue_ticket(session, queue_id)
    set_paused(session, queue_id, True)

    with pytest.raises(QueuePaused):
        issue_ticket(session, queue_id)

    assert get_queue(session, queue_id).last_issued_number == 1
    assert len(session.exec(select(Ticket)).all()) == 1


def test_issue_ticket_resumes_after_unpause(session, queue_id):
    set_paused(session, queue_id, True)
    set_paused(session, queue_id, False)

    assert issue_ticket(session, queue_id).ticket_number == 1


def test_idempotency_key_replays_ticket(session, queue_id):
    first = issue_ticket(session, queue_id, idempotency_key="device-7-req-1")
    again = issue_ticket(session, queue_id, idempotency_key="device-7-req-1")
    other = issue_ticket(session, queue_id, idempotency_key="device-7-req-2")

    assert not first.replayed
    assert again.replayed
    assert again.ticket.id == first.ticket.id
    assert other.ticket_number == 2
    assert get_queue(session, queue_id).last_issued_number == 2


def test_idempotency_key_is_scoped_to_epoch(session, queue_id):
    issue_ticket(session, queue_id, idempotency_key="k")
    issue_ticket(session, queue_id)
    reset_queue(session, queue_id)

    issued = issue_ticket(session, queue_id, idempotency_key="k")

    assert not issued.replayed
    assert issued.ticket_number == 1
    assert issued.ticket.epoch == 2


def _issue_in_own_session(engine, queue_id):
    with Session(engine) as session:
        return issue_ticket(session, queue_id).ticket_number


def test_three_concurrent_issues_get_one_two_three(engine, queue_id):
    with ThreadPoolExecutor(max_workers=3) as pool:
        numbers = list(pool.map(lambda _: _issue_in_own_session(engine, queue_id), range(3)))

    assert sorted(numbers) == [1, 2, 3]
    with Session(engine) as session:
        assert get_queue(session, queue_id).last_issued_number == 3


def test_concurrent_issues_never_share_a_number(engine, queue_id):
    with ThreadPoolExecutor(max_workers=8) as pool:
        numbers = list(pool.map(lambda _: _issue_in_own_session(engine, queue_id), range(40)))

    assert len(set(numbers)) == 40
    assert sorted(numbers) == list(range(1, 41))
    with Session(engine) as session:
        queue = get_queue(session, queue_id)
        assert queue.last_issued_number == 40
        tickets = session.exec(select(Ticket.ticket_number)).all()
        assert sorted(tickets) == list(range(1, 41))


def test_failed_ticket_insert_rolls_back_the_increment(session, queue_id):
    issue_ticket(session, queue_id)

    def fail_insert(mapper, connection, target):
        raise OperationalError("INSERT INTO ticket", {}, Exception("disk I/O error"))

    event.listen(Ticket, "before_insert", fail_insert)
    try:
        with pytest.raises(StorageFailure) as excinfo:
            issue_ticket(session, queue_id)
    finally:
        event.remove(Ticket, "before_insert", fail_insert)

    assert excinfo.value.operation == "issue_ticket"
    assert get_queue(session, queue_id).last_issued_number == 1
    assert len(session.exec(select(Ticket)).all()) == 1
    # The rolled-back number is handed out again.
    assert issue_ticket(session, queue_id).ticket_number == 2
