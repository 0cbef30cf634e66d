'''
In-process publish/subscribe for job lifecycle events.

Every subscriber owns a bounded asyncio.Queue. Publishing never blocks: when
a subscriber's queue is full the event is dropped for that subscriber, so
delivery is at-most-once and best effort.
'''
import asyncio
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from ..common.logger import log
from ..models.jobs import JobEvent


@dataclass(eq=False)
class Subscription:
    queue: asyncio.Queue
    job_id: Optional[UUID] = None
    entity_id: Optional[str] = None
    dropped: int = field(default=0)

    def matches(self, event: JobEvent) -> bool:
        if self.job_id is not None and event.job_id != self.job_id:
            return False
        if self.entity_id is not None and event.entity_id != self.entity_id:
            return False
        return True

    async def get(self, timeout: Optional[float] = None) -> JobEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


class JobEventBus:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscriptions: set[Subscription] = set()
        self.published = 0
        self.dropped = 0

    def subscribe(self, job_id: Optional[UUID] = None, entity_id: Optional[str] = None) -> Subscription:
        """Subscribes to one job, one entity, or (with neither) every event."""
        subscription = Subscription(
            queue=asyncio.Queue(maxsize=self.queue_size),
            job_id=job_id,
            entity_id=str(entity_id) if entity_id is not None else None
        )
        self._subscriptions.add(subscription)
        log.info(f"Added job event subscriber (job={job_id}, entity={entity_id}).")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        self._subscriptions.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: JobEvent) -> int:
        """Delivers the event to every matching subscriber. Returns the number of deliveries."""
        self.published += 1
        delivered = 0
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                subscription.dropped += 1
                self.dropped += 1
                log.warning(f"Job event {event.event_type.value} for job {event.job_id} dropped: subscriber queue full.")
        return delivered
