# tests/test_database.py - Connection settings and scheduler-process database manager

from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import ConnectionFailure

from leasecycle.core.database import CONTRACT_INDEXES, AsyncDatabaseConfig, AsyncDatabaseManager


@pytest.fixture
def manager():
    manager = AsyncDatabaseManager()
    yield manager
    manager._client = None
    manager._config = None


def fake_client(hello):
    client = MagicMock()
    client.admin.command = AsyncMock(return_value=hello)
    return client


class TestAsyncDatabaseConfig:

    @pytest.mark.parametrize("fields", [
        {"mongo_uri": ""},
        {"database_name": ""},
        {"max_pool_size": 1, "min_pool_size": 5},
    ])
    def test_invalid_settings_are_rejected(self, fields):
        config = AsyncDatabaseConfig(**{"mongo_uri": "mongodb://db", "database_name": "leasecycle", **fields})

        with pytest.raises(ValueError):
            config.validate()


class TestAsyncDatabaseManager:

    def test_manager_is_a_singleton(self):
        assert AsyncDatabaseManager() is AsyncDatabaseManager()

    @pytest.mark.asyncio
    async def test_standalone_server_is_refused(self, manager):
        config = AsyncDatabaseConfig("mongodb://db", "leasecycle")
        client = fake_client({"isWritablePrimary": True})
        config.create_client = MagicMock(return_value=client)

        with pytest.raises(ConnectionFailure):
            await manager.initialize(config)

        client.close.assert_called_once()
        assert manager._client is None

    @pytest.mark.asyncio
    async def test_replica_set_member_connects(self, manager):
        config = AsyncDatabaseConfig("mongodb://db", "leasecycle")
        client = fake_client({"setName": "rs0"})
        config.create_client = MagicMock(return_value=client)

        await manager.initialize(config)

        assert manager.client is client

    @pytest.mark.asyncio
    async def test_health_before_initialize(self, manager):
        report = await manager.health_check()

        assert report["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_create_indexes_passes_options(self, manager):
        collection = MagicMock()
        collection.create_index = AsyncMock()
        client = MagicMock()
        client.__getitem__.return_value.__getitem__.return_value = collection
        manager._client = client
        manager._config = AsyncDatabaseConfig("mongodb://db", "leasecycle")

        await manager.create_indexes({"app_queues": CONTRACT_INDEXES["app_queues"]})

        collection.create_index.assert_any_await([("dedupeKey", 1)], unique=True, sparse=True)
        assert collection.create_index.await_count == 2
