from typing import Optional

from leasecycle.core.guards import Guard
from leasecycle.core.store import ConditionalStore
from leasecycle.services.base import CpiIndexService

CPI_INDEXES = "cpi_indexes"


class MongoCpiIndexService(CpiIndexService):
    """Index values stored as ``{_id: "2024M05", value: 131.4}``"""

    def __init__(self, store: ConditionalStore):
        self.store = store

    async def get_index(self, month: str) -> Optional[float]:
        document = await self.store.find_one(CPI_INDEXES, Guard.by_id(month))
        return document.get("value") if document else None

    async def latest_month(self) -> Optional[str]:
        document = await self.store.find_one(CPI_INDEXES, Guard(), sort=[("_id", -1)])
        return document["_id"] if document else None
