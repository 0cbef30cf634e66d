import asyncio
import uuid

import pytest

from lesson_sync_backend.models.enums import JobEventType, JobType
from lesson_sync_backend.models.jobs import JobEvent
from lesson_sync_backend.services.job_events import JobEventBus


def _event(job_id, event_type=JobEventType.PROGRESS, entity_id=None, percentage=None) -> JobEvent:
    return JobEvent(
        job_id=job_id,
        event_type=event_type,
        job_type=JobType.CASCADE_DELETION,
        entity_id=entity_id,
        percentage=percentage
    )


@pytest.mark.anyio
class TestJobEventBus:

    async def test_subscriber_only_receives_its_job(self):
        bus = JobEventBus()
        job_a, job_b = uuid.uuid4(), uuid.uuid4()
        subscription = bus.subscribe(job_id=job_a)

        bus.publish(_event(job_b))
        bus.publish(_event(job_a, percentage=40))

        event = await subscription.get(timeout=1)
        assert event.job_id == job_a
        assert event.percentage == 40
        assert subscription.queue.empty()

    async def test_entity_filter(self):
        bus = JobEventBus()
        student_id = str(uuid.uuid4())
        subscription = bus.subscribe(entity_id=student_id)

        bus.publish(_event(uuid.uuid4(), entity_id="someone-else"))
        delivered = bus.publish(_event(uuid.uuid4(), JobEventType.COMPLETED, entity_id=student_id))

        assert delivered == 1
        event = await subscription.get(timeout=1)
        assert event.event_type == JobEventType.COMPLETED

    async def test_events_arrive_in_publish_order(self):
        bus = JobEventBus()
        job_id = uuid.uuid4()
        subscription = bus.subscribe(job_id=job_id)

        for percentage in (5, 50, 90):
            bus.publish(_event(job_id, percentage=percentage))
        bus.publish(_event(job_id, JobEventType.COMPLETED))

        received = [await subscription.get(timeout=1) for _ in range(4)]
        assert [e.percentage for e in received[:3]] == [5, 50, 90]
        assert received[-1].event_type == JobEventType.COMPLETED

    async def test_full_queue_drops_instead_of_blocking(self):
        bus = JobEventBus(queue_size=2)
        job_id = uuid.uuid4()
        subscription = bus.subscribe(job_id=job_id)

        for _ in range(5):
            bus.publish(_event(job_id))

        assert subscription.queue.qsize() == 2
        assert subscription.dropped == 3
        assert bus.dropped == 3
        assert bus.published == 5

    async def test_unsubscribe_stops_delivery(self):
        bus = JobEventBus()
        subscription = bus.subscribe()
        assert bus.subscriber_count == 1

        bus.unsubscribe(subscription)
        assert bus.publish(_event(uuid.uuid4())) == 0
        assert bus.subscriber_count == 0

    async def test_get_times_out_when_nothing_arrives(self):
        subscription = JobEventBus().subscribe()
        with pytest.raises(asyncio.TimeoutError):
            await subscription.get(timeout=0.05)
