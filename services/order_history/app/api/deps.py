from app.core.config import settings
from app.db.session import SessionLocal
from app.history.loader import SnapshotLoader
from app.history.store import HistoryStore

def get_store() -> HistoryStore:
    return HistoryStore(SessionLocal)

def get_loader() -> SnapshotLoader:
    return SnapshotLoader(SessionLocal, settings.SNAPSHOT_ISOLATION_LEVEL)
