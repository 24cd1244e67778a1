"""
Live progress feed for schedules, consumed by the events stream.

Each open stream reads from its own bounded queue. When a queue is full the
oldest event is dropped, so a reader always ends on the latest progress.
"""
import asyncio
from typing import Dict, Set

from loguru import logger

from ezmark.schemas import ScheduleResult

logger = logger.bind(module="services.progress_events")

QUEUE_SIZE = 32


def progress_event(result: ScheduleResult) -> dict:
    return {
        "type": "progress",
        "data": {
            "progress": result.progress.value,
            "error": result.error.model_dump(by_alias=True) if result.error else None,
        },
    }


class ProgressFeed:
    """Per-schedule fan-out of progress events."""

    def __init__(self, queue_size: int = QUEUE_SIZE):
        self.queue_size = queue_size
        self.subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, document_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self.subscribers.setdefault(document_id, set()).add(queue)
        return queue

    def unsubscribe(self, document_id: str, queue: asyncio.Queue) -> None:
        queues = self.subscribers.get(document_id)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self.subscribers[document_id]

    def subscriber_count(self, document_id: str) -> int:
        return len(self.subscribers.get(document_id, ()))

    def publish(self, document_id: str, event: dict) -> None:
        for queue in self.subscribers.get(document_id, ()):
            if queue.full():
                queue.get_nowait()
                logger.debug(f"Dropped oldest event for a slow reader of {document_id}")
            queue.put_nowait(event)

    def publish_progress(self, document_id: str, result: ScheduleResult) -> None:
        self.publish(document_id, progress_event(result))


progress_feed = ProgressFeed()
