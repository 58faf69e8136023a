import logging
from typing import Callable, Optional

from bson import ObjectId

from leasecycle.core.guards import Guard, Mutation
from leasecycle.core.store import ConditionalStore, TransactionContext, run_now_or_on_commit
from leasecycle.metrics.metrics import MetricsCollector, get_metrics
from leasecycle.models.queue import QueueStatus, QueueTask
from leasecycle.services.base import WorkQueue
from leasecycle.utils.date_helper import utcnow

logger = logging.getLogger(__name__)

APP_QUEUES = "app_queues"


class MongoWorkQueue(WorkQueue):
    """
    Tasks are persisted to ``app_queues`` in the caller's transaction and
    handed to ``dispatcher`` (a dramatiq actor's ``send``) once it commits.
    A task carrying a ``dedupe_key`` is stored at most once.
    """

    def __init__(
        self,
        store: ConditionalStore,
        dispatcher: Optional[Callable[[str], object]] = None,
        clock: Callable = utcnow,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self.metrics = metrics or get_metrics()

    async def enqueue(self, task: QueueTask, tx: Optional[TransactionContext] = None) -> Optional[str]:
        queue_id = str(ObjectId())
        document = task.model_dump(by_alias=True, exclude_none=True)
        document.update({"_id": queue_id, "status": QueueStatus.NEW.value, "createdAt": self.clock()})

        if task.dedupe_key:
            document.pop("dedupeKey")
            saved = await self.store.guarded_update(
                APP_QUEUES,
                Guard().eq("dedupeKey", task.dedupe_key),
                Mutation().set_on_insert(document),
                tx=tx,
                upsert=True,
            )
            if saved["_id"] != queue_id:
                logger.info(f"Queue task {task.dedupe_key} already exists as {saved['_id']}, skipping")
                return None
        else:
            await self.store.insert_one(APP_QUEUES, document, tx=tx)

        self.metrics.record_enqueue(task.event, task.destination)
        logger.info(f"Queued {task.event} -> {task.destination} ({queue_id})")

        if self.dispatcher is not None:
            await run_now_or_on_commit(tx, f"dispatch:{task.event}", lambda: self.dispatcher(queue_id))
        return queue_id

    async def mark_processing(self, queue_id: str, tx: Optional[TransactionContext] = None) -> bool:
        claimed = await self.store.guarded_update(
            APP_QUEUES,
            Guard.by_id(queue_id).eq("status", QueueStatus.NEW.value),
            Mutation().set_field("status", QueueStatus.PROCESSING.value),
            tx=tx,
        )
        return claimed is not None

    async def mark_completed(self, queue_id: str, tx: Optional[TransactionContext] = None) -> bool:
        completed = await self.store.guarded_update(
            APP_QUEUES,
            Guard.by_id(queue_id).eq("status", QueueStatus.PROCESSING.value),
            Mutation().set_fields({"status": QueueStatus.COMPLETED.value, "completedAt": self.clock()}),
            tx=tx,
        )
        if completed is None:
            logger.info(f"Queue task {queue_id} is not processing, nothing to complete")
        return completed is not None
