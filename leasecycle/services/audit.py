import logging
from typing import Any, Callable, Dict, Optional

from leasecycle.core.store import ConditionalStore, TransactionContext
from leasecycle.models.log import LogEntry
from leasecycle.services.base import LogService
from leasecycle.utils.date_helper import utcnow

logger = logging.getLogger(__name__)

LOGS = "logs"


class MongoLogService(LogService):
    """
    Writes audit entries to the ``logs`` collection inside the caller's
    transaction. Failures propagate: a change is not reported as done until
    its log entry is stored.
    """

    def __init__(self, store: ConditionalStore, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    async def create_log(self, entry: LogEntry, tx: Optional[TransactionContext] = None) -> Dict[str, Any]:
        document = entry.model_dump(by_alias=True, exclude_none=True)
        document.setdefault("createdAt", self.clock())
        saved = await self.store.insert_one(LOGS, document, tx=tx)
        logger.info(f"Log '{entry.action}' stored for contract {entry.contract_id}")
        return saved
