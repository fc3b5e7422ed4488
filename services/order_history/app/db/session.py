from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy import create_engine
from app.core.config import settings

class Base(DeclarativeBase): pass

connect_args = {"check_same_thread": False} if settings.POSTGRES_DSN.startswith("sqlite") else {}
engine = create_engine(settings.POSTGRES_DSN, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

# Sessions opened by the history engine itself carry this flag in ``Session.info``
# so the capture hooks leave them alone.
INTERNAL_SESSION = "order_history.internal"
