# core/database.py - Motor connection pool and index setup for the contract collections

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, OperationFailure, ServerSelectionTimeoutError

from leasecycle.core.config import settings
from leasecycle.utils.date_helper import utcnow

logger = logging.getLogger(__name__)

IndexSpec = Dict[str, List[Dict[str, Any]]]

CONTRACT_INDEXES: IndexSpec = {
    "contracts": [
        {"keys": [("partnerId", 1), ("propertyId", 1), ("status", 1)]},
        {"keys": [("rentalMeta.status", 1), ("rentalMeta.cpiEnabled", 1)]},
        {"keys": [("evictionCases.invoiceId", 1)]},
    ],
    "app_queues": [
        {"keys": [("dedupeKey", 1)], "unique": True, "sparse": True},
        {"keys": [("status", 1), ("createdAt", 1)]},
    ],
    "property_items": [
        {"keys": [("contractId", 1), ("type", 1)]},
    ],
}


@dataclass
class AsyncDatabaseConfig:
    """Pool settings for the engine's MongoDB connection"""
    mongo_uri: str
    database_name: str
    max_pool_size: int = 50
    min_pool_size: int = 0
    server_selection_timeout_ms: int = 5000
    socket_timeout_ms: int = 20000
    require_replica_set: bool = True

    @classmethod
    def from_env(cls) -> "AsyncDatabaseConfig":
        return cls(
            mongo_uri=settings.MONGO_URI,
            database_name=settings.MONGO_DATABASE,
            max_pool_size=int(os.getenv("MONGO_MAX_POOL_SIZE", "50")),
            min_pool_size=int(os.getenv("MONGO_MIN_POOL_SIZE", "0")),
            server_selection_timeout_ms=int(os.getenv("MONGO_SERVER_TIMEOUT_MS", "5000")),
            socket_timeout_ms=int(os.getenv("MONGO_SOCKET_TIMEOUT_MS", "20000")),
            require_replica_set=os.getenv("MONGO_REQUIRE_REPLICA_SET", "true").lower() in ("1", "true", "yes"),
        )

    def validate(self) -> None:
        if not self.mongo_uri:
            raise ValueError("MONGO_URI cannot be empty")
        if not self.database_name:
            raise ValueError("MONGO_DATABASE cannot be empty")
        if self.max_pool_size < self.min_pool_size:
            raise ValueError("MONGO_MAX_POOL_SIZE must be >= MONGO_MIN_POOL_SIZE")

    def create_client(self) -> AsyncIOMotorClient:
        # tz_aware so dates read back from contracts compare with utcnow()
        return AsyncIOMotorClient(
            self.mongo_uri,
            maxPoolSize=self.max_pool_size,
            minPoolSize=self.min_pool_size,
            serverSelectionTimeoutMS=self.server_selection_timeout_ms,
            socketTimeoutMS=self.socket_timeout_ms,
            retryWrites=True,
            tz_aware=True,
        )


class AsyncDatabaseManager:
    """
    Process-wide motor client used by the scheduler process.

    Worker actors open their own client per call (see ``workers.services``);
    this manager is for long-lived loops that own one event loop.
    """

    _instance: Optional["AsyncDatabaseManager"] = None

    def __new__(cls) -> "AsyncDatabaseManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._client = None
            cls._instance._config = None
        return cls._instance

    async def initialize(self, config: Optional[AsyncDatabaseConfig] = None) -> None:
        """
        Connect and check the deployment can run multi-document transactions.

        Raises:
            ConnectionFailure: server unreachable or not a replica set member
            ValueError: invalid configuration
        """
        if self._client is not None:
            logger.warning("Database already initialized, skipping")
            return

        config = config or AsyncDatabaseConfig.from_env()
        config.validate()
        client = config.create_client()
        try:
            hello = await asyncio.wait_for(
                client.admin.command("hello"), timeout=config.server_selection_timeout_ms / 1000
            )
        except (ConnectionFailure, ServerSelectionTimeoutError, asyncio.TimeoutError) as e:
            client.close()
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise ConnectionFailure(f"Could not connect to MongoDB: {e}") from e

        if config.require_replica_set and not hello.get("setName"):
            client.close()
            raise ConnectionFailure("Contract transactions need a replica set; set MONGO_REQUIRE_REPLICA_SET=false to skip")

        self._client = client
        self._config = config
        logger.info(f"Connected to MongoDB {config.database_name} (replica set: {hello.get('setName') or '-'})")

    @property
    def client(self) -> AsyncIOMotorClient:
        if self._client is None:
            raise RuntimeError("Database not initialized. Call `await db_manager.initialize()` first.")
        return self._client

    @property
    def database(self) -> AsyncIOMotorDatabase:
        return self.client[self._config.database_name]

    async def health_check(self) -> Dict[str, Any]:
        """Ping the server; reports latency and the number of open contracts."""
        report: Dict[str, Any] = {"timestamp": utcnow().isoformat()}
        if self._client is None:
            report.update(status="unhealthy", error="Database not initialized")
            return report

        try:
            started = time.perf_counter()
            await asyncio.wait_for(self._client.admin.command("ping"), timeout=5.0)
            report["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
            report["open_contracts"] = await self.database["contracts"].count_documents({"status": {"$ne": "closed"}})
            report.update(status="healthy", database=self._config.database_name)
        except (asyncio.TimeoutError, ConnectionFailure, OperationFailure) as e:
            logger.error(f"Database health check failed: {e}")
            report.update(status="unhealthy", error=str(e) or type(e).__name__)
        return report

    async def create_indexes(self, indexes: IndexSpec = CONTRACT_INDEXES) -> None:
        for collection_name, definitions in indexes.items():
            collection = self.database[collection_name]
            for definition in definitions:
                options = dict(definition)
                keys = options.pop("keys")
                await collection.create_index(keys, **options)
                logger.info(f"Ensured index on {collection_name}: {keys}")

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            logger.info("Database connection closed")
        self._client = None
        self._config = None


db_manager = AsyncDatabaseManager()
