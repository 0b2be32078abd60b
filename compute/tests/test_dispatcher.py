"""
Tests for worker selection, dispatch, requeue and the drain loop.
"""

import asyncio
import json

import pytest

from compute.errors import NoWorkersAvailable, TaskAlreadyInFlight
from compute.models import TaskStatus
from ethml.protocol import ErrorMessage, ResultMessage
from ethml.server.dispatch import Dispatcher


def reply_358(worker_id, message):
    return ResultMessage(
        request_id=message.request_id,
        task_id=message.task_id,
        prediction=358,
        confidence=0.9,
    )


def reply_error(worker_id, message):
    return ErrorMessage(request_id=message.request_id, task_id=message.task_id, error="model crashed")


class TestWorkerSelection:
    """`task_id mod n` over the connection-ordered worker list."""

    def test_task_7_of_three_workers_goes_to_w1(self):
        assert Dispatcher.select_worker(7, ["w0", "w1", "w2"]) == "w1"

    def test_selection_is_pure(self):
        workers = ["a", "b", "c", "d"]
        picks = [Dispatcher.select_worker(t, workers) for t in range(8)]
        assert picks == ["a", "b", "c", "d", "a", "b", "c", "d"]
        assert Dispatcher.select_worker(5, workers) == Dispatcher.select_worker(5, list(workers))

    def test_empty_worker_list_raises(self):
        with pytest.raises(NoWorkersAvailable):
            Dispatcher.select_worker(1, [])

    def test_selection_follows_connection_order(self, harness_factory):
        h = harness_factory()
        for worker_id in ("w0", "w1", "w2"):
            h.registry.register(worker_id)
        assert Dispatcher.select_worker(4, h.registry.list_available()) == "w1"


class TestDispatchJob:
    """One dispatch attempt end to end against the fake transport."""

    def test_three_workers_task_4_settles_once_and_completes(self, harness_factory):
        h = harness_factory(responder=reply_358)
        for worker_id in ("w0", "w1", "w2"):
            h.registry.register(worker_id)
        h.add_task(4)

        outcome = asyncio.run(h.dispatcher.dispatch_job(h.claim()))

        assert outcome == "completed"
        assert [worker for worker, _ in h.transport.sent] == ["w1"]
        assert h.ledger.submissions == [(4, 358)]
        task = h.store.get(4)
        assert task.status == TaskStatus.COMPLETED
        assert task.worker_id == "w1"
        settlement = h.store.get_settlement(4)
        assert settlement.submitted is True
        assert settlement.confidence == pytest.approx(0.9)
        assert h.queue.pending_count() == 0
        assert h.queue.inflight_count() == 0
        assert h.registry.get("w1").active_jobs == 0
        assert len(h.dispatcher.pending) == 0

    def test_no_workers_requeues(self, harness_factory):
        h = harness_factory()
        h.add_task(3)

        outcome = asyncio.run(h.dispatcher.dispatch_job(h.claim()))

        assert outcome == "requeued"
        assert h.queue.queued_task_ids() == [3]
        assert h.store.get(3).last_error == "no_workers_available"
        assert h.dispatcher.stats.requeued("no_workers_available") == 1
        assert h.transport.sent == []

    def test_active_jobs_counts_live_assignment(self, harness_factory):
        h = harness_factory()
        h.registry.register("w0")
        h.add_task(10)
        job = h.claim()

        async def scenario():
            task = asyncio.create_task(h.dispatcher.dispatch_job(job))
            await h.wait_until(lambda: h.transport.sent)
            assert h.registry.get("w0").active_jobs == 1
            assert h.store.get(10).status == TaskStatus.DISPATCHED
            _, message = h.transport.sent[0]
            h.dispatcher.deliver_reply("w0", reply_358("w0", message))
            return await task

        assert asyncio.run(scenario()) == "completed"
        assert h.registry.get("w0").active_jobs == 0

    def test_predictor_failure_requeues(self, harness_factory):
        h = harness_factory(responder=reply_error)
        h.registry.register("w0")
        h.add_task(2)

        outcome = asyncio.run(h.dispatcher.dispatch_job(h.claim()))

        assert outcome == "requeued"
        assert h.queue.queued_task_ids() == [2]
        task = h.store.get(2)
        assert task.status == TaskStatus.PENDING
        assert task.last_error == "predictor_failure"
        assert h.ledger.submissions == []

    def test_unreachable_worker_requeues(self, harness_factory):
        h = harness_factory()
        h.registry.register("w0")
        h.transport.unreachable.add("w0")
        h.add_task(1)

        outcome = asyncio.run(h.dispatcher.dispatch_job(h.claim()))

        assert outcome == "requeued"
        assert h.dispatcher.stats.requeued("worker_disconnected") == 1
        assert h.registry.get("w0").active_jobs == 0

    def test_settlement_exhaustion_fails_task(self, harness_factory):
        h = harness_factory(responder=reply_358, max_attempts=2)
        h.ledger.fail_next = 10
        h.registry.register("w0")
        h.add_task(9)

        outcome = asyncio.run(h.dispatcher.dispatch_job(h.claim()))

        assert outcome == "failed"
        task = h.store.get(9)
        assert task.status == TaskStatus.FAILED
        assert task.reason == "settlement_failed"
        assert h.queue.pending_count() == 0
        assert h.queue.inflight_count() == 0
        assert len(h.ledger.submissions) == 2


class TestFailureRecovery:
    """Disconnect, timeout and eviction all put the job back exactly once."""

    def test_disconnect_requeues_exactly_once(self, harness_factory):
        h = harness_factory(reply_timeout=5.0)
        h.registry.register("w0")
        h.add_task(6)
        job = h.claim()

        async def scenario():
            task = asyncio.create_task(h.dispatcher.dispatch_job(job))
            await h.wait_until(lambda: h.transport.sent)
            h.registry.unregister("w0")
            return await task

        assert asyncio.run(scenario()) == "requeued"
        assert h.queue.queued_task_ids() == [6]
        assert h.dispatcher.stats.requeued("worker_disconnected") == 1
        # A second requeue of the same attempt is a no-op.
        assert h.queue.requeue(job) is False
        assert h.queue.queued_task_ids() == [6]
        assert h.store.get(6).status == TaskStatus.PENDING

    def test_timeout_requeues_and_evicts_stale_worker(self, harness_factory):
        h = harness_factory(reply_timeout=0.05, heartbeat_timeout=10.0)
        h.registry.register("w0")
        h.add_task(8)
        job = h.claim()

        async def scenario():
            task = asyncio.create_task(h.dispatcher.dispatch_job(job))
            await h.wait_until(lambda: h.transport.sent)
            h.clock.advance(30.0)
            return await task

        assert asyncio.run(scenario()) == "requeued"
        assert h.dispatcher.stats.requeued("worker_timeout") == 1
        assert h.registry.list_available() == []
        assert h.queue.queued_task_ids() == [8]

    def test_timeout_keeps_live_worker(self, harness_factory):
        h = harness_factory(reply_timeout=0.05, heartbeat_timeout=10.0)
        h.registry.register("w0")
        h.add_task(8)

        outcome = asyncio.run(h.dispatcher.dispatch_job(h.claim()))

        assert outcome == "requeued"
        assert h.registry.list_available() == ["w0"]

    def test_stale_eviction_cancels_assignment_within_one_cycle(self, harness_factory):
        h = harness_factory(reply_timeout=5.0, heartbeat_timeout=10.0)
        h.registry.register("w0")
        h.registry.register("w1")
        h.add_task(2)
        job = h.claim()

        async def scenario():
            task = asyncio.create_task(h.dispatcher.dispatch_job(job))
            await h.wait_until(lambda: h.transport.sent)
            h.clock.advance(11.0)
            h.registry.update_status("w1", h.registry.get("w1").status)
            evicted = h.registry.mark_dead_if_stale(None, 10.0)
            return evicted, await task

        evicted, outcome = asyncio.run(scenario())

        assert evicted == ["w0"]
        assert outcome == "requeued"
        assert h.registry.list_available() == ["w1"]
        assert h.queue.queued_task_ids() == [2]

    def test_late_reply_is_ignored(self, harness_factory):
        h = harness_factory(reply_timeout=0.05)
        h.registry.register("w0")
        h.add_task(5)

        outcome = asyncio.run(h.dispatcher.dispatch_job(h.claim()))
        assert outcome == "requeued"

        _, message = h.transport.sent[0]
        late = reply_358("w0", message)

        async def deliver():
            return h.dispatcher.deliver_reply("w0", late)

        assert asyncio.run(deliver()) is False
        assert h.dispatcher.stats.count("late_replies") == 1
        assert h.ledger.submissions == []

    def test_reply_from_other_worker_is_ignored(self, harness_factory):
        h = harness_factory(reply_timeout=5.0)
        h.registry.register("w0")
        h.registry.register("w1")
        h.add_task(4)
        job = h.claim()

        async def scenario():
            task = asyncio.create_task(h.dispatcher.dispatch_job(job))
            await h.wait_until(lambda: h.transport.sent)
            worker_id, message = h.transport.sent[0]
            assert worker_id == "w0"
            assert h.dispatcher.deliver_reply("w1", reply_358("w1", message)) is False
            assert h.dispatcher.deliver_reply("w0", reply_358("w0", message)) is True
            return await task

        assert asyncio.run(scenario()) == "completed"


class TestNoDoubleDispatch:
    """At most one live assignment per task."""

    def test_second_attempt_for_live_task_is_skipped(self, harness_factory):
        h = harness_factory(reply_timeout=5.0)
        h.registry.register("w0")
        h.add_task(12)
        job = h.claim()

        async def scenario():
            first = asyncio.create_task(h.dispatcher.dispatch_job(job))
            await h.wait_until(lambda: h.transport.sent)
            second = await h.dispatcher.dispatch_job(job)
            _, message = h.transport.sent[0]
            h.dispatcher.deliver_reply("w0", reply_358("w0", message))
            return second, await first

        second, first = asyncio.run(scenario())
        assert second == "skipped"
        assert first == "completed"
        assert len(h.transport.sent) == 1
        assert h.ledger.submissions == [(12, 358)]

    def test_pending_table_rejects_second_open(self, harness_factory):
        h = harness_factory()

        async def scenario():
            h.dispatcher.pending.open(1, "w0", 1.0)
            with pytest.raises(TaskAlreadyInFlight):
                h.dispatcher.pending.open(1, "w1", 1.0)

        asyncio.run(scenario())


class TestDrainLoop:
    """The background loop blocks without workers and never busy-loops."""

    def test_zero_workers_blocks_until_worker_connects(self, harness_factory):
        h = harness_factory(responder=reply_358)
        h.add_task(4)

        async def scenario():
            runner = asyncio.create_task(h.dispatcher.run())
            await asyncio.sleep(0.1)
            assert h.transport.sent == []
            assert h.queue.queued_task_ids() == [4]
            h.registry.register("w0")
            await h.wait_until(lambda: h.store.get(4).status == TaskStatus.COMPLETED)
            h.queue.close()
            await asyncio.wait_for(runner, timeout=2.0)

        asyncio.run(scenario())
        assert [worker for worker, _ in h.transport.sent] == ["w0"]
        assert h.ledger.submissions == [(4, 358)]

    def test_loop_dispatches_distinct_tasks_concurrently(self, harness_factory):
        h = harness_factory(reply_timeout=5.0)
        for worker_id in ("w0", "w1"):
            h.registry.register(worker_id)
        for task_id in (1, 2, 3):
            h.add_task(task_id)

        async def scenario():
            runner = asyncio.create_task(h.dispatcher.run())
            await h.wait_until(lambda: len(h.transport.sent) == 3)
            assert len(h.dispatcher.pending) == 3
            for worker_id, message in list(h.transport.sent):
                h.dispatcher.deliver_reply(worker_id, reply_358(worker_id, message))
            await h.wait_until(
                lambda: all(h.store.get(t).status == TaskStatus.COMPLETED for t in (1, 2, 3))
            )
            h.queue.close()
            await asyncio.wait_for(runner, timeout=2.0)

        asyncio.run(scenario())
        assert sorted(t for t, _ in h.ledger.submissions) == [1, 2, 3]

    def test_dispatch_events_are_logged(self, harness_factory):
        h = harness_factory(responder=reply_358)
        for worker_id in ("w0", "w1", "w2"):
            h.registry.register(worker_id)
        h.add_task(4)

        asyncio.run(h.dispatcher.dispatch_job(h.claim()))

        events = [json.loads(line) for line in h.event_log.path.read_text().splitlines()]
        sent = [e for e in events if e["event"] == "dispatch_sent"]
        assert sent[0]["available"] == ["w0", "w1", "w2"]
        assert sent[0]["index"] == 1
        assert any(e["event"] == "settlement_submitted" for e in events)
