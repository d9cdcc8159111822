"""Topic-keyed publish/subscribe for job progress, decoupled from any transport."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Mapping

logger = logging.getLogger(__name__)

ALL_JOBS_TOPIC = "jobs:all"


@dataclass(frozen=True, slots=True)
class Event:
    topic: str
    name: str
    payload: dict[str, Any]


Subscriber = Callable[[Event], None]


def job_topic(job_id: str) -> str:
    return f"job:{job_id}"


def preflight_topic(check_id: str) -> str:
    return f"preflight:{check_id}"


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers[topic].append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._subscribers.get(topic, [])
                if subscriber in listeners:
                    listeners.remove(subscriber)

        return _unsubscribe

    def publish(self, topic: str, name: str, payload: Mapping[str, Any]) -> Event:
        event = Event(topic=topic, name=name, payload=dict(payload))
        with self._lock:
            listeners = list(self._subscribers.get(topic, ()))
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("events.subscriber_failed topic=%s event=%s", topic, name)
        return event


class TransferNotifier:
    """Outward event surface: every job event lands on ``job:<id>`` and ``jobs:all``."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    def progress(self, job_id: str, update: Mapping[str, Any]) -> None:
        self._emit(job_id, "progress", update)

    def file_progress(self, job_id: str, update: Mapping[str, Any]) -> None:
        self._emit(job_id, "file_progress", update)

    def complete(self, job_id: str, result: Mapping[str, Any]) -> None:
        self._emit(job_id, "complete", result)

    def error(self, job_id: str, error: Mapping[str, Any]) -> None:
        self._emit(job_id, "error", error)

    def preflight(self, check_id: str, update: Mapping[str, Any]) -> None:
        self._bus.publish(preflight_topic(check_id), "preflight", update)
        self._bus.publish(ALL_JOBS_TOPIC, "preflight", {**update, "check_id": check_id})

    def _emit(self, job_id: str, name: str, payload: Mapping[str, Any]) -> None:
        self._bus.publish(job_topic(job_id), name, payload)
        self._bus.publish(ALL_JOBS_TOPIC, name, {**payload, "job_id": job_id})


__all__ = [
    "ALL_JOBS_TOPIC",
    "Event",
    "EventBus",
    "Subscriber",
    "TransferNotifier",
    "job_topic",
    "preflight_topic",
]
