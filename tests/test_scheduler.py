from datetime import datetime, timedelta

import pytest

from delaywatch.models import BillingStatus
from delaywatch.queue import InMemoryJobQueue, JobState
from delaywatch.scheduler import (
    CARRIER_POLL_QUEUE,
    PollPriority,
    calculate_poll_priority,
    create_poll_job_id,
    poll_job_options,
    run_poll_scheduler,
)
from tests.conftest import NOW, make_merchant, make_shipment


@pytest.fixture
async def queue():
    queue = InMemoryJobQueue()
    yield queue
    await queue.close()


class TestPollPriority:
    @pytest.mark.parametrize("expected, priority", [
        (None, PollPriority.NORMAL),
        (datetime(2026, 2, 3), PollPriority.URGENT),
        (datetime(2026, 2, 4, 23), PollPriority.HIGH),
        (datetime(2026, 2, 5), PollPriority.HIGH),
        (datetime(2026, 2, 9), PollPriority.NORMAL),
        (datetime(2026, 2, 10), PollPriority.LOW),
    ])
    def test_priority_by_days_until_expected(self, expected, priority):
        assert calculate_poll_priority(expected, NOW) == priority

    def test_job_options(self):
        options = poll_job_options(42, PollPriority.HIGH, attempts=5, backoff_seconds=1.5)

        assert options.job_id == create_poll_job_id(42) == "poll-42"
        assert options.priority == 2
        assert options.attempts == 5
        assert options.backoff_seconds == 1.5


class TestRunPollScheduler:
    async def test_enqueues_only_due_shipments(self, db, merchant, queue):
        due = make_shipment(db, merchant)
        make_shipment(db, merchant, next_poll_at=NOW + timedelta(minutes=1))
        make_shipment(db, merchant, next_poll_at=None)
        make_shipment(db, merchant, is_delivered=True)
        make_shipment(db, merchant, is_archived=True)

        result = await run_poll_scheduler(db, queue, now=NOW)

        assert result.shipments_found == 1
        assert result.jobs_enqueued == 1
        assert result.truncated is False
        job = await queue.get_job(CARRIER_POLL_QUEUE, f"poll-{due.id}")
        assert job.payload == {"shipment_id": due.id}
        assert job.state == JobState.WAITING

    async def test_inactive_merchants_are_excluded(self, db, queue):
        for billing_status in (BillingStatus.CANCELLED, BillingStatus.FROZEN):
            make_shipment(db, make_merchant(db, billing_status=billing_status))
        make_shipment(db, make_merchant(db, uninstalled_at=datetime(2026, 1, 20)))
        make_shipment(db, make_merchant(db, billing_status=BillingStatus.PENDING))

        result = await run_poll_scheduler(db, queue, now=NOW)

        assert result.shipments_found == 1

    async def test_second_tick_skips_queued_job(self, db, merchant, queue):
        make_shipment(db, merchant)

        first = await run_poll_scheduler(db, queue, now=NOW)
        second = await run_poll_scheduler(db, queue, now=NOW + timedelta(minutes=15))

        assert first.jobs_enqueued == 1
        assert second.shipments_found == 1
        assert second.jobs_enqueued == 0
        assert second.jobs_skipped == 1
        assert queue.count(CARRIER_POLL_QUEUE) == 1

    async def test_job_priority_follows_expected_date(self, db, merchant, queue):
        overdue = make_shipment(db, merchant, expected_delivery_date=datetime(2026, 2, 1))
        far = make_shipment(db, merchant, expected_delivery_date=datetime(2026, 2, 20))

        await run_poll_scheduler(db, queue, now=NOW, attempts=4, backoff_seconds=0.5)

        overdue_job = await queue.get_job(CARRIER_POLL_QUEUE, f"poll-{overdue.id}")
        far_job = await queue.get_job(CARRIER_POLL_QUEUE, f"poll-{far.id}")
        assert overdue_job.priority == PollPriority.URGENT
        assert far_job.priority == PollPriority.LOW
        assert overdue_job.max_attempts == 4
        assert overdue_job.options.backoff_seconds == 0.5

    async def test_stops_at_job_cap(self, db, merchant, queue):
        for _ in range(5):
            make_shipment(db, merchant)

        result = await run_poll_scheduler(db, queue, now=NOW, max_jobs=2)

        assert result.jobs_enqueued == 2
        assert result.truncated is True
        assert queue.count(CARRIER_POLL_QUEUE) == 2

    async def test_walks_every_batch(self, db, merchant, queue):
        shipments = [make_shipment(db, merchant) for _ in range(5)]

        result = await run_poll_scheduler(db, queue, now=NOW, batch_size=2)

        assert result.shipments_found == 5
        assert result.jobs_enqueued == 5
        for shipment in shipments:
            assert await queue.get_job(CARRIER_POLL_QUEUE, f"poll-{shipment.id}") is not None

    async def test_nothing_due(self, db, queue):
        result = await run_poll_scheduler(db, queue, now=NOW)

        assert result.shipments_found == 0
        assert result.jobs_enqueued == 0
        assert result.errors == []

    async def test_enqueue_failure_is_recorded_and_run_continues(self, db, merchant, queue, monkeypatch):
        failing, healthy = make_shipment(db, merchant), make_shipment(db, merchant)
        enqueue = queue.enqueue

        async def flaky_enqueue(queue_name, payload, options=None):
            if payload["shipment_id"] == failing.id:
                raise RuntimeError("queue unavailable")
            return await enqueue(queue_name, payload, options)

        monkeypatch.setattr(queue, "enqueue", flaky_enqueue)

        result = await run_poll_scheduler(db, queue, now=NOW)

        assert result.shipments_found == 2
        assert result.jobs_enqueued == 1
        assert result.errors == [f"Enqueue error for shipment {failing.id}: queue unavailable"]
        assert await queue.get_job(CARRIER_POLL_QUEUE, f"poll-{healthy.id}") is not None
