import os
import tempfile
from pathlib import Path

# settings are read at import time, so the environment has to be in place first
_DB_DIR = tempfile.mkdtemp(prefix="order-history-tests-")
os.environ["POSTGRES_DSN"] = f"sqlite:///{Path(_DB_DIR) / 'history.db'}"
os.environ["SNAPSHOT_ISOLATION_LEVEL"] = ""
os.environ["KAFKA_ENABLED"] = "false"

import pytest

from app.db.session import Base, SessionLocal, engine
from app.history.capture import CaptureOrchestrator
from app.history.loader import SnapshotLoader
from app.history.store import HistoryStore


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def store():
    return HistoryStore(SessionLocal)


@pytest.fixture
def loader():
    return SnapshotLoader(SessionLocal)


@pytest.fixture
def orchestrator(loader, store):
    orch = CaptureOrchestrator(loader, store, lanes=2, timeout=5).bind(SessionLocal)
    yield orch
    orch.shutdown()
