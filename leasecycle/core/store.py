# core/store.py - Conditional (guarded) document store

import copy
import inspect
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from leasecycle.core.guards import Guard, Mutation, resolve_path
from leasecycle.utils.exceptions import DownstreamFailureError

logger = logging.getLogger(__name__)

SortSpec = Optional[Sequence[Tuple[str, int]]]


# =====================================
# TRANSACTION CONTEXT
# =====================================

@dataclass
class TransactionContext:
    """
    One request's unit of work. Passed explicitly to every store call so a
    compound write (status + serial + log) commits or aborts together.
    Callbacks registered with ``on_commit`` run only after a successful commit.
    """
    session: Any = None
    active: bool = False
    _callbacks: List[Tuple[str, Callable[[], Any]]] = field(default_factory=list)

    def on_commit(self, effect: str, callback: Callable[[], Any]) -> None:
        self._callbacks.append((effect, callback))

    def drain(self) -> List[Tuple[str, Callable[[], Any]]]:
        callbacks, self._callbacks = self._callbacks, []
        return callbacks


def session_of(tx: Optional[TransactionContext]) -> Any:
    return tx.session if tx is not None else None


async def run_now_or_on_commit(
    tx: Optional[TransactionContext], effect: str, callback: Callable[[], Any]
) -> None:
    """Run ``callback`` after ``tx`` commits, or immediately when there is no transaction."""
    if tx is not None and tx.active:
        tx.on_commit(effect, callback)
        return
    result = callback()
    if inspect.isawaitable(result):
        await result


# =====================================
# STORE INTERFACE
# =====================================

class ConditionalStore(ABC):
    """
    The single mutation primitive is ``guarded_update``: apply ``mutation`` to
    the one document matching ``guard`` and return its post-image, or ``None``
    when nothing matched.
    """

    @abstractmethod
    async def find_one(
        self, collection: str, guard: Guard, tx: Optional[TransactionContext] = None, sort: SortSpec = None
    ) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def find(
        self,
        collection: str,
        guard: Guard,
        *,
        sort: SortSpec = None,
        skip: int = 0,
        limit: int = 0,
        tx: Optional[TransactionContext] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def insert_one(
        self, collection: str, document: Dict[str, Any], tx: Optional[TransactionContext] = None
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def guarded_update(
        self,
        collection: str,
        guard: Guard,
        mutation: Mutation,
        tx: Optional[TransactionContext] = None,
        upsert: bool = False,
    ) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def _session(self) -> Any:
        """Async context manager that begins, commits or aborts one transaction."""

    @asynccontextmanager
    async def transaction(self, parent: Optional[TransactionContext] = None) -> AsyncIterator[TransactionContext]:
        """
        Open a transaction, or join ``parent`` when it is already open.

        Usage:
            async with store.transaction(tx) as tx:
                await store.guarded_update("contracts", guard, mutation, tx)
        """
        if parent is not None and parent.active:
            yield parent
            return

        async with self._session() as session:
            tx = TransactionContext(session=session, active=True)
            yield tx
            tx.active = False

        for effect, callback in tx.drain():
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Post-commit callback '{effect}' failed: {e}")
                raise DownstreamFailureError(effect) from e


# =====================================
# MOTOR STORE
# =====================================

class MotorConditionalStore(ConditionalStore):
    """Guarded writes through ``find_one_and_update`` on a motor database."""

    def __init__(self, database: AsyncIOMotorDatabase):
        self.database = database

    async def find_one(self, collection, guard, tx=None, sort=None):
        return await self.database[collection].find_one(
            guard.to_filter(), sort=list(sort) if sort else None, session=session_of(tx)
        )

    async def find(self, collection, guard, *, sort=None, skip=0, limit=0, tx=None):
        cursor = self.database[collection].find(
            guard.to_filter(),
            sort=list(sort) if sort else None,
            skip=skip,
            limit=limit,
            session=session_of(tx),
        )
        return await cursor.to_list(length=None)

    async def insert_one(self, collection, document, tx=None):
        document = dict(document)
        document.setdefault("_id", str(ObjectId()))
        await self.database[collection].insert_one(document, session=session_of(tx))
        return document

    async def guarded_update(self, collection, guard, mutation, tx=None, upsert=False):
        return await self.database[collection].find_one_and_update(
            guard.to_filter(),
            mutation.to_update(),
            return_document=ReturnDocument.AFTER,
            upsert=upsert,
            session=session_of(tx),
        )

    @asynccontextmanager
    async def _session(self):
        async with await self.database.client.start_session() as session:
            async with session.start_transaction():
                try:
                    yield session
                except Exception as e:
                    logger.error(f"Transaction failed, rolling back: {e}")
                    raise


# =====================================
# IN-MEMORY STORE
# =====================================

def _sort_key(path: str) -> Callable[[Dict[str, Any]], Any]:
    def key(doc: Dict[str, Any]) -> Any:
        values = resolve_path(doc, path.split("."))
        value = values[0] if values else None
        return (value is not None, value)
    return key


class InMemoryConditionalStore(ConditionalStore):
    """
    Dict-backed store evaluating the same Guard/Mutation values the motor store
    compiles. Transactions snapshot every collection and restore on abort.
    """

    def __init__(self, collections: Optional[Dict[str, Iterable[Dict[str, Any]]]] = None):
        self._collections: Dict[str, List[Dict[str, Any]]] = {}
        for name, documents in (collections or {}).items():
            self.seed(name, *documents)

    def seed(self, collection: str, *documents: Dict[str, Any]) -> None:
        rows = self._collections.setdefault(collection, [])
        for document in documents:
            document = copy.deepcopy(document)
            document.setdefault("_id", str(ObjectId()))
            rows.append(document)

    def dump(self, collection: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._collections.get(collection, []))

    def _rows(self, collection: str) -> List[Dict[str, Any]]:
        return self._collections.setdefault(collection, [])

    async def find_one(self, collection, guard, tx=None, sort=None):
        found = await self.find(collection, guard, sort=sort, limit=1, tx=tx)
        return found[0] if found else None

    async def find(self, collection, guard, *, sort=None, skip=0, limit=0, tx=None):
        rows = [row for row in self._rows(collection) if guard.matches(row)]
        for path, direction in reversed(list(sort or [])):
            rows.sort(key=_sort_key(path), reverse=direction < 0)
        rows = rows[skip:]
        if limit:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def insert_one(self, collection, document, tx=None):
        document = copy.deepcopy(document)
        document.setdefault("_id", str(ObjectId()))
        if any(row["_id"] == document["_id"] for row in self._rows(collection)):
            raise ValueError(f"Duplicate key in {collection}: {document['_id']}")
        self._rows(collection).append(document)
        return copy.deepcopy(document)

    async def guarded_update(self, collection, guard, mutation, tx=None, upsert=False):
        rows = self._rows(collection)
        array_path = mutation.positional_array()
        for index, row in enumerate(rows):
            if not guard.matches(row):
                continue
            position = guard.positional_index(row, array_path) if array_path else None
            rows[index] = mutation.apply(row, position=position)
            return copy.deepcopy(rows[index])

        if not upsert:
            return None
        seed: Dict[str, Any] = {}
        for path, value in guard.equality_fields().items():
            seed = Mutation().set_field(path, value).apply(seed)
        document = mutation.apply(seed, inserting=True)
        document.setdefault("_id", str(ObjectId()))
        rows.append(document)
        return copy.deepcopy(document)

    @asynccontextmanager
    async def _session(self):
        snapshot = copy.deepcopy(self._collections)
        try:
            yield None
        except BaseException:
            self._collections = snapshot
            raise
