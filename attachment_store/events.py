"""Upload-completed notifications."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import threading
from typing import Callable

from attachment_store.db.repo import AttachmentRecord


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadCompleted:
    record: AttachmentRecord
    time: datetime


Subscriber = Callable[[UploadCompleted], None]


class UploadNotifier:
    """In-process publish/subscribe registry.

    Subscribers are called synchronously in registration order. A failing
    subscriber is logged and skipped; it never affects the others or the
    upload that triggered the event.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Subscriber:
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.remove(subscriber)

    @property
    def subscribers(self) -> list[Subscriber]:
        with self._lock:
            return list(self._subscribers)

    def emit(self, record: AttachmentRecord, timestamp: datetime) -> UploadCompleted:
        event = UploadCompleted(record=record, time=timestamp)
        for subscriber in self.subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception(
                    "Upload subscriber %r failed for attachment %s",
                    getattr(subscriber, "__name__", subscriber),
                    record.id,
                )
        return event
