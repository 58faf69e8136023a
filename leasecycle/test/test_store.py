# tests/test_store.py - In-memory conditional store, transactions, counters and work queue

from unittest.mock import MagicMock

import pytest

from leasecycle.core.guards import Guard, Mutation
from leasecycle.core.store import run_now_or_on_commit
from leasecycle.models.queue import QueuePriority, QueueTask
from leasecycle.services.counter import MongoCounterService
from leasecycle.services.work_queue import APP_QUEUES, MongoWorkQueue
from leasecycle.test.factories import NOW, contract_doc, queue_doc
from leasecycle.utils.exceptions import DownstreamFailureError


class TestInMemoryStore:
    """Guarded writes and reads"""

    @pytest.mark.asyncio
    async def test_guarded_update_returns_post_image(self, store):
        """A matching guard applies the mutation and returns the new document"""
        store.seed("contracts", contract_doc(status="new"))

        updated = await store.guarded_update(
            "contracts", Guard.by_id("contract-1").eq("status", "new"), Mutation().set_field("status", "upcoming")
        )

        assert updated["status"] == "upcoming"
        assert store.dump("contracts")[0]["status"] == "upcoming"

    @pytest.mark.asyncio
    async def test_guarded_update_rejects_when_guard_fails(self, store):
        store.seed("contracts", contract_doc(status="closed"))

        updated = await store.guarded_update(
            "contracts", Guard.by_id("contract-1").eq("status", "new"), Mutation().set_field("status", "upcoming")
        )

        assert updated is None
        assert store.dump("contracts")[0]["status"] == "closed"

    @pytest.mark.asyncio
    async def test_find_sorts_skips_and_limits(self, store):
        store.seed(
            "contracts",
            contract_doc("c3", createdAt=NOW),
            contract_doc("c1", createdAt=NOW),
            contract_doc("c2", createdAt=NOW),
        )

        found = await store.find("contracts", Guard(), sort=[("createdAt", 1), ("_id", 1)], skip=1, limit=1)

        assert [doc["_id"] for doc in found] == ["c2"]

    @pytest.mark.asyncio
    async def test_duplicate_insert_raises(self, store):
        await store.insert_one("contracts", contract_doc())
        with pytest.raises(ValueError):
            await store.insert_one("contracts", contract_doc())


class TestTransactions:
    """Transaction scoping and post-commit callbacks"""

    @pytest.mark.asyncio
    async def test_abort_restores_documents(self, store):
        store.seed("contracts", contract_doc(status="new"))

        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await store.guarded_update(
                    "contracts", Guard.by_id("contract-1"), Mutation().set_field("status", "upcoming"), tx=tx
                )
                raise RuntimeError("serial allocation failed")

        assert store.dump("contracts")[0]["status"] == "new"

    @pytest.mark.asyncio
    async def test_nested_transaction_joins_parent(self, store):
        async with store.transaction() as tx:
            async with store.transaction(tx) as inner:
                assert inner is tx

    @pytest.mark.asyncio
    async def test_callbacks_run_after_commit_only(self, store):
        callback = MagicMock()

        async with store.transaction() as tx:
            await run_now_or_on_commit(tx, "dispatch", callback)
            callback.assert_not_called()
        callback.assert_called_once()

        aborted = MagicMock()
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await run_now_or_on_commit(tx, "dispatch", aborted)
                raise RuntimeError("boom")
        aborted.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_callback_reports_downstream_failure(self, store):
        with pytest.raises(DownstreamFailureError) as exc_info:
            async with store.transaction() as tx:
                await run_now_or_on_commit(tx, "dispatch:send_welcome_lease", MagicMock(side_effect=OSError("down")))

        assert exc_info.value.effect == "dispatch:send_welcome_lease"

    @pytest.mark.asyncio
    async def test_without_transaction_callback_runs_immediately(self):
        callback = MagicMock()
        await run_now_or_on_commit(None, "dispatch", callback)
        callback.assert_called_once()


class TestCounterService:

    @pytest.mark.asyncio
    async def test_counters_are_monotonic_per_key(self, store):
        counters = MongoCounterService(store)

        assert await counters.increment_counter("lease-property-1") == 1
        assert await counters.increment_counter("lease-property-1") == 2
        assert await counters.increment_counter("assignment-property-1") == 1


class TestWorkQueue:
    """Queue tasks are deduplicated and dispatched after commit"""

    @pytest.fixture
    def dispatcher(self):
        return MagicMock()

    @pytest.fixture
    def work_queue(self, store, clock, dispatcher):
        return MongoWorkQueue(store, dispatcher=dispatcher, clock=clock)

    @pytest.mark.asyncio
    async def test_dedupe_key_stores_task_once(self, store, work_queue):
        task = QueueTask.notification(
            "send_CPI_settlement_notice", "partner-1", "contract-1",
            priority=QueuePriority.IMMEDIATE, dedupe_key="send_CPI_settlement_notice:contract-1",
        )

        first = await work_queue.enqueue(task)
        second = await work_queue.enqueue(task)

        assert first is not None
        assert second is None
        queued = store.dump(APP_QUEUES)
        assert len(queued) == 1
        assert queued[0]["_id"] == first
        assert queued[0]["dedupeKey"] == "send_CPI_settlement_notice:contract-1"
        assert queued[0]["status"] == "new"
        assert queued[0]["priority"] == "immediate"

    @pytest.mark.asyncio
    async def test_dispatch_waits_for_commit(self, store, work_queue, dispatcher):
        task = QueueTask(event="create_rent_invoice", action="create_rent_invoice", destination="invoice")

        async with store.transaction() as tx:
            queue_id = await work_queue.enqueue(task, tx=tx)
            dispatcher.assert_not_called()

        dispatcher.assert_called_once_with(queue_id)

    @pytest.mark.asyncio
    async def test_processing_and_completion_are_guarded(self, store, work_queue):
        store.seed(APP_QUEUES, queue_doc("q-1", "send_cpi_notification"))

        assert await work_queue.mark_completed("q-1") is False
        assert await work_queue.mark_processing("q-1") is True
        assert await work_queue.mark_processing("q-1") is False
        assert await work_queue.mark_completed("q-1") is True

        record = store.dump(APP_QUEUES)[0]
        assert record["status"] == "completed"
        assert record["completedAt"] == NOW
