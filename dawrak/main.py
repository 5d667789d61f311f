import asyncio
from contextlib import asynccontextmanager
from functools import partial
import logging
from typing import Iterator, Optional

from fastapi import Depends, FastAPI, Request, Response, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlmodel import Session
import uvicorn

from . import store
from .auth import is_staff, verify_staff_key
from .config import (
    APP_DESCRIPTION,
    APP_NAME,
    APP_VERSION,
    CORS_ORIGINS,
    HOST,
    LOG_LEVEL,
    PORT,
)
from .database import engine, get_session, init_db
from .errors import QueueServiceError
from .log_config import setup_logging
from .models import Queue
from .notifier import notifier
from .schemas import (
    AdvanceResponse,
    CancelRequest,
    IssuedTicketRead,
    PauseRequest,
    QueueCreate,
    QueueDisplay,
    QueueRead,
    TicketPositionRead,
    TicketRead,
    TicketRequest,
)
from .sequencer import issue_ticket


setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s %s", APP_NAME, APP_VERSION)
    init_db(app.state.engine)
    logger.info("Database ready")
    yield


app = FastAPI(
    title=APP_NAME,
    description=APP_DESCRIPTION,
    version=APP_VERSION,
    lifespan=lifespan,
)
app.state.engine = engine

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_db_session(request: Request) -> Iterator[Session]:
    with get_session(request.app.state.engine) as session:
        yield session


@app.exception_handler(QueueServiceError)
async def queue_service_error_handler(request: Request, exc: QueueServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_message())


def ticket_position_read(position: store.TicketPosition) -> TicketPositionRead:
    return TicketPositionRead(
        **TicketRead.model_validate(position.ticket).model_dump(),
        ahead=position.ahead,
        is_up=position.is_up,
        is_stale=position.is_stale,
    )


@app.get("/queue/health")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/queues", response_model=list[QueueRead])
def list_queues(session: Session = Depends(get_db_session)) -> list[QueueRead]:
    return [QueueRead.model_validate(queue) for queue in store.list_queues(session)]


@app.post(
    "/queues",
    response_model=QueueRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_staff_key)],
)
def create_queue(payload: QueueCreate, session: Session = Depends(get_db_session)) -> QueueRead:
    return QueueRead.model_validate(store.create_queue(session, payload.name))


@app.get("/queues/{queue_id}", response_model=QueueRead)
def get_queue(queue_id: int, session: Session = Depends(get_db_session)) -> QueueRead:
    return QueueRead.model_validate(store.get_queue(session, queue_id))


@app.get("/queues/{queue_id}/display", response_model=QueueDisplay)
def display_payload(queue_id: int, session: Session = Depends(get_db_session)) -> QueueDisplay:
    summary = store.queue_summary(session, queue_id)
    return QueueDisplay(
        queue=QueueRead.model_validate(summary.queue),
        waiting_count=summary.waiting_count,
        next_number=summary.next_number,
    )


@app.post(
    "/queues/{queue_id}/tickets",
    response_model=IssuedTicketRead,
    status_code=status.HTTP_201_CREATED,
)
def create_ticket(
    queue_id: int,
    response: Response,
    payload: Optional[TicketRequest] = None,
    session: Session = Depends(get_db_session),
) -> IssuedTicketRead:
    idempotency_key = payload.idempotency_key if payload else None
    issued = issue_ticket(session, queue_id, idempotency_key=idempotency_key)
    if issued.replayed:
        response.status_code = status.HTTP_200_OK
    return IssuedTicketRead(
        **TicketRead.model_validate(issued.ticket).model_dump(),
        replayed=issued.replayed,
        claim_token=issued.ticket.claim_token,
    )


@app.get("/queues/{queue_id}/tickets/{ticket_id}", response_model=TicketPositionRead)
def get_ticket(
    queue_id: int, ticket_id: int, session: Session = Depends(get_db_session)
) -> TicketPositionRead:
    ticket = store.get_ticket(session, queue_id, ticket_id)
    return ticket_position_read(store.ticket_position(session, ticket))


@app.post("/queues/{queue_id}/tickets/{ticket_id}/cancel", response_model=TicketRead)
def cancel_ticket(
    queue_id: int,
    ticket_id: int,
    payload: Optional[CancelRequest] = None,
    staff: bool = Depends(is_staff),
    session: Session = Depends(get_db_session),
) -> TicketRead:
    ticket = store.cancel_ticket(
        session,
        queue_id,
        ticket_id,
        claim_token=payload.claim_token if payload else None,
        by_staff=staff,
    )
    return TicketRead.model_validate(ticket)


@app.post(
    "/queues/{queue_id}/tickets/{ticket_id}/complete",
    response_model=TicketRead,
    dependencies=[Depends(verify_staff_key)],
)
def complete_ticket(
    queue_id: int, ticket_id: int, session: Session = Depends(get_db_session)
) -> TicketRead:
    return TicketRead.model_validate(store.complete_ticket(session, queue_id, ticket_id))


@app.post(
    "/queues/{queue_id}/advance",
    response_model=AdvanceResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(verify_staff_key)],
)
def advance_serving(queue_id: int, session: Session = Depends(get_db_session)) -> AdvanceResponse:
    result = store.advance_serving(session, queue_id)
    return AdvanceResponse(
        current_number=result.current_number,
        epoch=result.epoch,
        none_waiting=result.none_waiting,
        ticket=TicketRead.model_validate(result.ticket) if result.ticket else None,
    )


@app.post(
    "/queues/{queue_id}/pause",
    response_model=QueueRead,
    dependencies=[Depends(verify_staff_key)],
)
def set_paused(
    queue_id: int, payload: PauseRequest, session: Session = Depends(get_db_session)
) -> QueueRead:
    return QueueRead.model_validate(store.set_paused(session, queue_id, payload.paused))


@app.post(
    "/queues/{queue_id}/recall",
    response_model=QueueRead,
    dependencies=[Depends(verify_staff_key)],
)
def recall_current(queue_id: int, session: Session = Depends(get_db_session)) -> QueueRead:
    return QueueRead.model_validate(store.touch_last_called_at(session, queue_id))


@app.post(
    "/queues/{queue_id}/reset",
    response_model=QueueRead,
    dependencies=[Depends(verify_staff_key)],
)
def reset_queue(queue_id: int, session: Session = Depends(get_db_session)) -> QueueRead:
    return QueueRead.model_validate(store.reset_queue(session, queue_id))


def log_forward_stop(queue_id: int, task: asyncio.Task) -> None:
    """Collect the outcome of a feed forwarder so a failed send is reported once."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info("Feed for queue %s stopped forwarding: %r", queue_id, exc)


def queue_exists(target: Engine, queue_id: int) -> bool:
    with get_session(target) as session:
        return session.get(Queue, queue_id) is not None


@app.websocket("/queues/{queue_id}/feed")
async def queue_feed(websocket: WebSocket, queue_id: int) -> None:
    """
    Change feed for one queue.

    Sends ``{"type": "subscribed"}`` once the subscription is live, then one
    message per committed change. Treat each message as a signal to re-fetch
    ``/queues/{queue_id}``; events can be lost across reconnects.
    """
    if not await run_in_threadpool(queue_exists, websocket.app.state.engine, queue_id):
        await websocket.close(code=4404)
        return

    subscription = notifier.subscribe(queue_id)
    await websocket.accept()

    async def forward() -> None:
        while True:
            event = await subscription.get()
            await websocket.send_json(event.to_message())

    forwarder = None
    try:
        await websocket.send_json({"type": "subscribed", "queue_id": queue_id})
        forwarder = asyncio.create_task(forward())
        forwarder.add_done_callback(partial(log_forward_stop, queue_id))
        # Client messages are ignored; receiving only detects the disconnect.
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        if forwarder is not None:
            forwarder.cancel()
        notifier.unsubscribe(subscription)


def main() -> None:
    uvicorn.run("dawrak.main:app", host=HOST, port=PORT, log_level=LOG_LEVEL)


if __name__ == "__main__":
    main()
