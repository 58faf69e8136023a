import logging
from typing import Callable, List, Optional

from leasecycle.core.guards import Guard, Mutation
from leasecycle.core.store import ConditionalStore, SortSpec, TransactionContext
from leasecycle.models.property_item import PropertyItem
from leasecycle.utils.date_helper import utcnow

logger = logging.getLogger(__name__)

PROPERTY_ITEMS = "property_items"


class PropertyItemRepository:
    """Moving-in / moving-out protocols; signing and reminder stamps are guarded writes."""

    def __init__(self, store: ConditionalStore, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    def transaction(self, parent: Optional[TransactionContext] = None):
        return self.store.transaction(parent)

    async def get(self, item_id: str, tx: Optional[TransactionContext] = None) -> Optional[PropertyItem]:
        document = await self.store.find_one(PROPERTY_ITEMS, Guard.by_id(item_id), tx=tx)
        return PropertyItem.model_validate(document) if document else None

    async def find(
        self,
        guard: Guard,
        skip: int = 0,
        limit: int = 0,
        sort: SortSpec = (("createdAt", 1), ("_id", 1)),
        tx: Optional[TransactionContext] = None,
    ) -> List[PropertyItem]:
        documents = await self.store.find(PROPERTY_ITEMS, guard, sort=sort, skip=skip, limit=limit, tx=tx)
        return [PropertyItem.model_validate(document) for document in documents]

    async def guarded_update(
        self, guard: Guard, mutation: Mutation, tx: Optional[TransactionContext] = None
    ) -> Optional[PropertyItem]:
        mutation = Mutation().merge(mutation)
        mutation.sets.setdefault("updatedAt", self.clock())
        document = await self.store.guarded_update(PROPERTY_ITEMS, guard, mutation, tx=tx)
        if document is None:
            logger.info(f"Guarded property item write matched nothing: {guard.describe()}")
            return None
        return PropertyItem.model_validate(document)
