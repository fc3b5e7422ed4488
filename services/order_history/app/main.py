import logging
from fastapi import FastAPI, Request
from app.version import VERSION
from app.api import routes
from app.core.config import settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal
from app.history.actor import ActorContext
from app.history.capture import CaptureOrchestrator
from app.history.loader import SnapshotLoader
from app.history.store import HistoryStore
from app.kafka import consumer as lifecycle_consumer
from app.store.pending_store import RedisPendingSnapshots
from prometheus_fastapi_instrumentator import Instrumentator

logger = logging.getLogger(__name__)

# Create instrumentator first
instrumentator = Instrumentator()

app = FastAPI(title="Order History Service", version=VERSION)

# Instrument the app BEFORE adding routes or middleware
instrumentator.instrument(app).expose(
    app,
    include_in_schema=False,
    endpoint="/order-history/metrics",
    should_gzip=True,
)

orchestrator: CaptureOrchestrator | None = None

@app.middleware("http")
async def actor_context(request: Request, call_next):
    with ActorContext(request.headers.get("X-Actor-Id")):
        return await call_next(request)

# Health endpoints
@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/order-history/health")
def order_history_health():
    return {"status": "ok"}

@app.get("/v1/_info")
def info():
    return {"service": "order-history", "version": VERSION}

@app.on_event("startup")
async def startup_event():
    global orchestrator
    configure_logging()
    orchestrator = CaptureOrchestrator(
        SnapshotLoader(SessionLocal, settings.SNAPSHOT_ISOLATION_LEVEL),
        HistoryStore(SessionLocal),
        pending=RedisPendingSnapshots() if settings.KAFKA_ENABLED else None,
    ).bind(SessionLocal)
    if settings.KAFKA_ENABLED:
        lifecycle_consumer.start(orchestrator)
    logger.info("order history capture started (lanes=%s, kafka=%s)", settings.HISTORY_LANES, settings.KAFKA_ENABLED)

@app.on_event("shutdown")
async def shutdown_event():
    lifecycle_consumer.stop()
    if orchestrator is not None:
        orchestrator.shutdown(wait=False)

# Include routers
app.include_router(routes.router, prefix="/order-history", tags=["order-history"])
