import asyncio
import logging
from collections import defaultdict


logger = logging.getLogger(__name__)


class JobEventBus:
    """
    In-process pub/sub for job status events.

    Each channel keeps its timeline so a subscriber that joins after the job
    was created still sees every event from the start.
    """

    def __init__(self):
        self._timelines = defaultdict(list)
        self._subscribers = defaultdict(set)

    def publish(self, channel: str, event: dict) -> None:
        self._timelines[channel].append(event)
        for queue in list(self._subscribers.get(channel, ())):
            queue.put_nowait(event)

    def subscribe(self, channel: str) -> asyncio.Queue:
        queue = asyncio.Queue()
        for event in self._timelines.get(channel, []):
            queue.put_nowait(event)
        self._subscribers[channel].add(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(channel)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[channel]

    def get_timeline(self, channel: str) -> list:
        return list(self._timelines.get(channel, []))

    def clear(self, channel: str) -> None:
        """Forget the channel. Subscribers must already hold a terminal event."""
        self._timelines.pop(channel, None)
        self._subscribers.pop(channel, None)


def import_channel(job_id: str) -> str:
    return f"import-{job_id}"
