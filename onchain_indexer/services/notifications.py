"""
Progress event channels.

The indexer emits a ProgressEvent after every session and chunk transition.
Delivery is at-least-once; consumers must tolerate duplicates.
"""

import json
import queue
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis
import structlog

from onchain_indexer.config import settings

logger = structlog.get_logger()


@dataclass
class ProgressEvent:
    session_id: str
    progress_percent: float
    step: str
    metrics_snapshot: Dict[str, Any]
    status: str
    chunk_index: Optional[int] = None
    total_chunks: int = 0
    message: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class ProgressChannel(ABC):
    @abstractmethod
    def publish(self, event: ProgressEvent) -> None:
        pass

    def latest(self, session_id: str) -> Optional[ProgressEvent]:
        return None


class InMemoryProgressChannel(ProgressChannel):
    """Fan events out to per-session subscriber queues and keep the latest event for polling"""

    def __init__(self, history_size: int = 100):
        self._subscribers: Dict[str, List[queue.Queue]] = {}
        self._latest: Dict[str, ProgressEvent] = {}
        self._history: Dict[str, deque] = {}
        self._history_size = history_size
        self._lock = threading.Lock()

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            self._latest[event.session_id] = event
            self._history.setdefault(event.session_id, deque(maxlen=self._history_size)).append(event)
            subscribers = list(self._subscribers.get(event.session_id, []))
        for subscriber in subscribers:
            subscriber.put(event)

    def subscribe(self, session_id: str) -> queue.Queue:
        subscriber = queue.Queue()
        with self._lock:
            self._subscribers.setdefault(session_id, []).append(subscriber)
            latest = self._latest.get(session_id)
        if latest is not None:
            # Late subscribers start from the current state
            subscriber.put(latest)
        return subscriber

    def unsubscribe(self, session_id: str, subscriber: queue.Queue) -> None:
        with self._lock:
            subscribers = self._subscribers.get(session_id, [])
            if subscriber in subscribers:
                subscribers.remove(subscriber)

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def latest(self, session_id: str) -> Optional[ProgressEvent]:
        with self._lock:
            return self._latest.get(session_id)

    def history(self, session_id: str) -> List[ProgressEvent]:
        with self._lock:
            return list(self._history.get(session_id, []))


class RedisProgressChannel(ProgressChannel):
    """Publish events on ``progress:{session_id}`` and keep the latest under ``progress:latest:{session_id}``"""

    def __init__(self, redis_client: redis.Redis = None, ttl: int = None, prefix: str = "progress"):
        self.redis_client = redis_client or redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        self.ttl = ttl or settings.PROGRESS_TTL
        self.prefix = prefix

    def channel_name(self, session_id: str) -> str:
        return f"{self.prefix}:{session_id}"

    def latest_key(self, session_id: str) -> str:
        return f"{self.prefix}:latest:{session_id}"

    def publish(self, event: ProgressEvent) -> None:
        payload = event.to_json()
        try:
            pipe = self.redis_client.pipeline()
            pipe.setex(self.latest_key(event.session_id), self.ttl, payload)
            pipe.publish(self.channel_name(event.session_id), payload)
            pipe.execute()
        except redis.RedisError as e:
            logger.error("Progress publish failed", session_id=event.session_id, step=event.step, error=str(e))

    def latest(self, session_id: str) -> Optional[ProgressEvent]:
        try:
            cached = self.redis_client.get(self.latest_key(session_id))
        except redis.RedisError as e:
            logger.error("Progress read failed", session_id=session_id, error=str(e))
            return None
        if not cached:
            return None
        return ProgressEvent(**json.loads(cached))


class FanoutProgressChannel(ProgressChannel):
    """Publish to several channels; the first one answers ``latest``"""

    def __init__(self, channels: List[ProgressChannel]):
        if not channels:
            raise ValueError("At least one progress channel is required")
        self.channels = list(channels)

    def publish(self, event: ProgressEvent) -> None:
        for channel in self.channels:
            channel.publish(event)

    def latest(self, session_id: str) -> Optional[ProgressEvent]:
        for channel in self.channels:
            event = channel.latest(session_id)
            if event is not None:
                return event
        return None
