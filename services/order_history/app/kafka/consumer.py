import json, logging, threading
from kafka import KafkaConsumer
from pydantic import ValidationError
from app.core.config import settings
from app.history.capture import CaptureOrchestrator, LifecycleEvent

logger = logging.getLogger(__name__)

_stop_event = threading.Event()
_thread = None

def process_event(ev: dict, orchestrator: CaptureOrchestrator) -> bool:
    """Hand one lifecycle message to the orchestrator. False when the message is unusable."""
    try:
        event = LifecycleEvent.model_validate(ev)
    except ValidationError as e:
        logger.warning("skipping malformed lifecycle event: %s", e.errors(include_url=False))
        return False
    orchestrator.submit_event(event)
    return True

def run_loop(orchestrator: CaptureOrchestrator):
    consumer = KafkaConsumer(
        settings.TOPIC_ORDER_LIFECYCLE,
        bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
        group_id="order-history-service",
        value_deserializer=lambda v: json.loads(v.decode("utf-8")),
        enable_auto_commit=True,
        auto_offset_reset="earliest",
    )
    try:
        for msg in consumer:
            if _stop_event.is_set(): break
            if not isinstance(msg.value, dict):
                logger.warning("skipping non-object message at offset %s", msg.offset)
                continue
            process_event(msg.value, orchestrator)
    finally:
        consumer.close()

def start(orchestrator: CaptureOrchestrator):
    global _thread
    if _thread and _thread.is_alive(): return
    _stop_event.clear()
    _thread = threading.Thread(target=run_loop, args=(orchestrator,), daemon=True)
    _thread.start()

def stop():
    _stop_event.set()
