"""Error taxonomy shared by the store, the sequencer and the HTTP layer.

Every failure carries a stable ``code`` so clients can branch on it without
parsing the human readable detail.
"""

from typing import Any, Optional


class QueueServiceError(Exception):
    code = "queue_service_error"
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_message(self) -> dict[str, Any]:
        return {"code": self.code, "detail": self.detail}


class QueueNotFound(QueueServiceError):
    code = "queue_not_found"
    status_code = 404

    def __init__(self, queue_id: int) -> None:
        super().__init__(f"Queue {queue_id} not found")
        self.queue_id = queue_id


class QueuePaused(QueueServiceError):
    """The queue is not accepting tickets; a normal, user-visible condition."""

    code = "queue_paused"
    status_code = 409

    def __init__(self, queue_id: int) -> None:
        super().__init__(f"Queue {queue_id} is not accepting tickets")
        self.queue_id = queue_id


class TicketNotFound(QueueServiceError):
    code = "ticket_not_found"
    status_code = 404

    def __init__(self, ticket_id: int) -> None:
        super().__init__(f"Ticket {ticket_id} not found")
        self.ticket_id = ticket_id


class TicketAccessDenied(QueueServiceError):
    code = "ticket_access_denied"
    status_code = 403

    def __init__(self, ticket_id: int) -> None:
        super().__init__(f"Ticket {ticket_id} can only be changed by its holder or staff")
        self.ticket_id = ticket_id


class InvalidTicketTransition(QueueServiceError):
    code = "invalid_ticket_transition"
    status_code = 409

    def __init__(self, ticket_id: int, current: str, target: str) -> None:
        super().__init__(f"Ticket {ticket_id} cannot move from {current} to {target}")
        self.ticket_id = ticket_id
        self.current = current
        self.target = target


class StorageFailure(QueueServiceError):
    """Transient persistence failure.

    Safe to retry for everything except ticket issuance without an
    idempotency key: the increment may already have happened.
    """

    code = "storage_failure"
    status_code = 503

    def __init__(self, detail: str, operation: Optional[str] = None) -> None:
        super().__init__(detail)
        self.operation = operation
