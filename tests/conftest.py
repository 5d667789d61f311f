import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from dawrak import config
from dawrak.database import build_engine, init_db
from dawrak.main import app
from dawrak.models import Queue


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def queue_id(engine):
    with Session(engine) as session:
        queue = Queue(name="Front desk")
        session.add(queue)
        session.commit()
        return queue.id


@pytest.fixture
def session(engine, queue_id):
    # Shares one connection; don't combine with other sessions writing concurrently.
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(engine, monkeypatch):
    monkeypatch.setattr(app.state, "engine", engine)
    monkeypatch.setattr(config, "STAFF_API_KEY", None)
    with TestClient(app) as client:
        yield client
