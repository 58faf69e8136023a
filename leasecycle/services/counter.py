import logging
from typing import Optional

from leasecycle.core.guards import Guard, Mutation
from leasecycle.core.store import ConditionalStore, TransactionContext
from leasecycle.services.base import CounterService

logger = logging.getLogger(__name__)

COUNTERS = "counters"


class MongoCounterService(CounterService):
    """Monotonic per-key counters (``lease-{propertyId}``, ``assignment-{propertyId}``)"""

    def __init__(self, store: ConditionalStore):
        self.store = store

    async def increment_counter(self, key: str, tx: Optional[TransactionContext] = None) -> int:
        counter = await self.store.guarded_update(
            COUNTERS,
            Guard.by_id(key),
            Mutation().inc_field("next_val", 1),
            tx=tx,
            upsert=True,
        )
        logger.debug(f"Counter {key} advanced to {counter['next_val']}")
        return counter["next_val"]
