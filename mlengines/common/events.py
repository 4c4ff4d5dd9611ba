"""Model lifecycle events.

The execution wrapper announces every change to a model record as an event.
Consumers register callbacks on an in-process ``EventBus``; when a Redis URL
is configured the bus also forwards each event to Redis pub/sub so other
processes can react.

Key concepts
- ``EventType`` identifiers are versioned (``.v1`` suffix)
- ``RedisEventPublisher`` composes channel names as ``{prefix}:{event_type}``
- ``EventBus`` keeps a map of event handlers and dispatches synchronously
"""

import json
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import redis
import structlog

logger = structlog.get_logger("events")


class EventType(Enum):
    """Lifecycle event types."""
    MODEL_CREATED = "ml.model.created.v1"
    MODEL_UPDATED = "ml.model.updated.v1"
    MODEL_FAILED = "ml.model.failed.v1"
    MODEL_DROPPED = "ml.model.dropped.v1"
    PREDICTION_COMPLETED = "ml.prediction.completed.v1"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class BaseEvent:
    """Base event class.

    Child events set their ``event_type`` in ``__post_init__``.
    """
    timestamp: int = 0
    event_type: str = ""
    model_name: str = ""
    model_id: str = ""
    engine: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = _now_ms()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class ModelCreatedEvent(BaseEvent):
    """Emitted once a model finished ``create`` and is ready for predictions."""
    target: Optional[str] = None
    duration_ms: int = 0

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.MODEL_CREATED.value


@dataclass
class ModelUpdatedEvent(BaseEvent):
    """Emitted after a successful incremental update."""
    version: int = 1
    duration_ms: int = 0

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.MODEL_UPDATED.value


@dataclass
class ModelFailedEvent(BaseEvent):
    """Emitted when ``create`` fails; the record is left in ``error`` status."""
    error: str = ""

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.MODEL_FAILED.value


@dataclass
class ModelDroppedEvent(BaseEvent):
    """Emitted when a model record and its artifacts are removed."""

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.MODEL_DROPPED.value


@dataclass
class PredictionCompletedEvent(BaseEvent):
    """Emitted for prediction usage tracking."""
    rows: int = 0
    latency_ms: int = 0

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.PREDICTION_COMPLETED.value


class RedisEventPublisher:
    """Publishes events to Redis pub/sub channels."""

    def __init__(self, redis_url: str, channel_prefix: str = "ml_events", client: Optional[Any] = None):
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self.client = client or redis.Redis.from_url(redis_url)

    def publish(self, event: BaseEvent) -> bool:
        """Publish an event.

        Returns ``True`` when Redis accepted the message. Delivery problems
        are logged and reported as ``False`` so a broker outage never fails
        a model operation that already succeeded.
        """
        channel = f"{self.channel_prefix}:{event.event_type}"
        try:
            self.client.publish(channel, event.to_json())
            logger.debug("Event published", channel=channel, model_name=event.model_name)
            return True
        except redis.RedisError as e:
            logger.warning("Failed to publish event", channel=channel, error=str(e))
            return False

    def close(self) -> None:
        self.client.close()


class EventBus:
    """In-process event dispatcher with optional Redis forwarding."""

    def __init__(self, publisher: Optional[RedisEventPublisher] = None):
        self.publisher = publisher
        self.handlers: Dict[str, List[Callable[[BaseEvent], None]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, handler: Callable[[BaseEvent], None]) -> None:
        """Register a handler for one event type."""
        with self._lock:
            self.handlers.setdefault(event_type.value, []).append(handler)
        logger.debug("Subscribed to event", event_type=event_type.value)

    def unsubscribe(self, event_type: EventType, handler: Callable[[BaseEvent], None]) -> None:
        with self._lock:
            handlers = self.handlers.get(event_type.value, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: BaseEvent) -> None:
        """Dispatch an event to local handlers, then forward it to Redis.

        A failing handler is logged with its traceback and does not prevent
        the remaining handlers from running.
        """
        with self._lock:
            handlers = list(self.handlers.get(event.event_type, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed",
                    event_type=event.event_type,
                    handler=getattr(handler, "__name__", repr(handler)),
                )

        if self.publisher is not None:
            self.publisher.publish(event)


def create_event_bus(redis_url: Optional[str] = None) -> EventBus:
    """Create an event bus, forwarding to Redis when a URL is given."""
    publisher = RedisEventPublisher(redis_url) if redis_url else None
    return EventBus(publisher=publisher)
