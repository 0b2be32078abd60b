"""
Tests for the durable TaskQueue.
"""

import asyncio
import threading

import pytest

from compute.errors import QueueClosed
from compute.models import Job
from compute.storage import TaskQueue


def job(task_id):
    return Job(task_id=task_id, model_id=1, data_point=f"dp-{task_id}")


class TestOrdering:
    def test_fifo(self, queue):
        for task_id in (3, 1, 2):
            queue.enqueue(job(task_id))
        assert [queue.try_dequeue().task_id for _ in range(3)] == [3, 1, 2]
        assert queue.try_dequeue() is None

    def test_duplicate_enqueue_ignored(self, queue):
        assert queue.enqueue(job(1)) is True
        assert queue.enqueue(job(1)) is False
        claimed = queue.try_dequeue()
        assert queue.enqueue(job(1)) is False
        assert claimed.task_id == 1
        assert queue.pending_count() == 0

    def test_requeue_goes_to_tail(self, queue):
        queue.enqueue(job(1))
        queue.enqueue(job(2))
        head = queue.try_dequeue()

        assert queue.requeue(head) is True
        assert queue.queued_task_ids() == [2, 1]

    def test_requeue_is_exactly_once(self, queue):
        queue.enqueue(job(1))
        head = queue.try_dequeue()
        assert queue.requeue(head) is True
        assert queue.requeue(head) is False
        assert queue.queued_task_ids() == [1]

    def test_attempts_counted(self, queue):
        queue.enqueue(job(1))
        first = queue.try_dequeue()
        queue.requeue(first)
        second = queue.try_dequeue()
        assert first.attempts == 1
        assert second.attempts == 2
        assert second == first

    def test_complete_removes(self, queue):
        queue.enqueue(job(1))
        head = queue.try_dequeue()
        assert queue.complete(head) is True
        assert queue.inflight_count() == 0
        assert queue.enqueue(job(1)) is True


class TestDurability:
    def test_recover_returns_inflight_jobs(self, temp_queue_db):
        first = TaskQueue(db_path=temp_queue_db)
        for task_id in (1, 2, 3):
            first.enqueue(job(task_id))
        first.try_dequeue()
        first.try_dequeue()

        restarted = TaskQueue(db_path=temp_queue_db)
        assert restarted.recover() == 2
        assert restarted.queued_task_ids() == [1, 2, 3]
        assert restarted.inflight_count() == 0


class TestBlockingDequeue:
    def test_dequeue_waits_for_enqueue(self, queue):
        async def scenario():
            waiter = asyncio.create_task(queue.dequeue())
            await asyncio.sleep(0.05)
            assert not waiter.done()
            queue.enqueue(job(7))
            return await asyncio.wait_for(waiter, timeout=1.0)

        assert asyncio.run(scenario()).task_id == 7

    def test_enqueue_from_another_thread_wakes_consumer(self, queue):
        async def scenario():
            waiter = asyncio.create_task(queue.dequeue())
            await asyncio.sleep(0.05)
            producer = threading.Thread(target=queue.enqueue, args=(job(9),))
            producer.start()
            result = await asyncio.wait_for(waiter, timeout=1.0)
            producer.join()
            return result

        assert asyncio.run(scenario()).task_id == 9

    def test_close_wakes_consumer(self, queue):
        async def scenario():
            waiter = asyncio.create_task(queue.dequeue())
            await asyncio.sleep(0.05)
            queue.close()
            with pytest.raises(QueueClosed):
                await asyncio.wait_for(waiter, timeout=1.0)

        asyncio.run(scenario())

    def test_enqueue_after_close_raises(self, queue):
        queue.close()
        with pytest.raises(QueueClosed):
            queue.enqueue(job(1))
