import logging
from typing import Callable, List, Optional, Sequence

from leasecycle.core.guards import Guard, Mutation
from leasecycle.core.store import ConditionalStore, SortSpec, TransactionContext
from leasecycle.engines.history import collapse_entries, replaced_names
from leasecycle.models.contract import Contract, HistoryEntry
from leasecycle.utils.date_helper import utcnow
from leasecycle.utils.exceptions import NotFoundError

logger = logging.getLogger(__name__)

CONTRACTS = "contracts"


class ContractRepository:
    """Typed access to the ``contracts`` collection. Writes go through guards only."""

    def __init__(self, store: ConditionalStore, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    def transaction(self, parent: Optional[TransactionContext] = None):
        return self.store.transaction(parent)

    async def get(self, contract_id: str, tx: Optional[TransactionContext] = None) -> Optional[Contract]:
        return await self.find_one(Guard.by_id(contract_id), tx=tx)

    async def get_or_raise(self, contract_id: str, tx: Optional[TransactionContext] = None) -> Contract:
        contract = await self.get(contract_id, tx=tx)
        if contract is None:
            raise NotFoundError("Contract", contract_id)
        return contract

    async def find_one(self, guard: Guard, tx: Optional[TransactionContext] = None) -> Optional[Contract]:
        document = await self.store.find_one(CONTRACTS, guard, tx=tx)
        return Contract.model_validate(document) if document else None

    async def find(
        self,
        guard: Guard,
        skip: int = 0,
        limit: int = 0,
        sort: SortSpec = (("_id", 1),),
        tx: Optional[TransactionContext] = None,
    ) -> List[Contract]:
        documents = await self.store.find(CONTRACTS, guard, sort=sort, skip=skip, limit=limit, tx=tx)
        return [Contract.model_validate(document) for document in documents]

    async def exists(self, guard: Guard, tx: Optional[TransactionContext] = None) -> bool:
        return bool(await self.store.find_one(CONTRACTS, guard, tx=tx))

    async def insert(self, contract: Contract, tx: Optional[TransactionContext] = None) -> Contract:
        document = contract.to_document()
        now = self.clock()
        document.setdefault("createdAt", now)
        document.setdefault("updatedAt", now)
        saved = await self.store.insert_one(CONTRACTS, document, tx=tx)
        return Contract.model_validate(saved)

    async def guarded_update(
        self, guard: Guard, mutation: Mutation, tx: Optional[TransactionContext] = None
    ) -> Optional[Contract]:
        """Apply ``mutation`` if ``guard`` still holds; ``None`` means the contract moved on."""
        mutation = Mutation().merge(mutation)
        mutation.sets.setdefault("updatedAt", self.clock())
        document = await self.store.guarded_update(CONTRACTS, guard, mutation, tx=tx)
        if document is None:
            logger.info(f"Guarded contract write matched nothing: {guard.describe()}")
            return None
        return Contract.model_validate(document)

    async def record_history(
        self, contract_id: str, entries: Sequence[HistoryEntry], tx: Optional[TransactionContext] = None
    ) -> Optional[Contract]:
        """Append history entries, first dropping older entries with the same names."""
        if not entries:
            return await self.get(contract_id, tx=tx)
        entries = collapse_entries(entries)
        async with self.transaction(tx) as tx:
            names = replaced_names(entries)
            if names:
                await self.store.guarded_update(
                    CONTRACTS,
                    Guard.by_id(contract_id),
                    Mutation().pull_where("history", Guard().in_("name", names)),
                    tx=tx,
                )
            return await self.guarded_update(
                Guard.by_id(contract_id),
                Mutation().push_items("history", [entry.to_document() for entry in entries]),
                tx=tx,
            )
