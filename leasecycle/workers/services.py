# workers/services.py - Per-run wiring of stores, services and engines for worker actors

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from leasecycle.core.database import AsyncDatabaseConfig
from leasecycle.core.store import MotorConditionalStore
from leasecycle.engines.cpi_scheduler import CpiScheduler
from leasecycle.engines.orchestrator import ContractLifecycleOrchestrator
from leasecycle.engines.reminder_scheduler import ReminderScheduler
from leasecycle.services.audit import MongoLogService
from leasecycle.services.contract_repository import ContractRepository
from leasecycle.services.cpi_index import MongoCpiIndexService
from leasecycle.services.partner_settings import MongoPartnerSettingService
from leasecycle.services.property_items import PropertyItemRepository
from leasecycle.services.work_queue import MongoWorkQueue


@dataclass
class WorkerServices:
    store: MotorConditionalStore
    repository: ContractRepository
    work_queue: MongoWorkQueue
    cpi_scheduler: CpiScheduler
    reminder_scheduler: ReminderScheduler
    orchestrator: Optional[ContractLifecycleOrchestrator] = None


OrchestratorFactory = Callable[[WorkerServices], ContractLifecycleOrchestrator]
_orchestrator_factory: Optional[OrchestratorFactory] = None


def register_orchestrator_factory(factory: OrchestratorFactory) -> None:
    """
    Invoice, property and tenant services belong to the host application, so
    the host registers how to build the orchestrator from worker services.
    """
    global _orchestrator_factory
    _orchestrator_factory = factory


@asynccontextmanager
async def worker_services(dispatcher: Optional[Callable[[str], object]] = None) -> AsyncIterator[WorkerServices]:
    """
    Each actor call runs in its own event loop (``asyncio.run``), so the motor
    client is opened and closed per call.
    """
    config = AsyncDatabaseConfig.from_env()
    config.validate()
    client = config.create_client()
    try:
        store = MotorConditionalStore(client[config.database_name])
        repository = ContractRepository(store)
        partner_settings = MongoPartnerSettingService(store)
        work_queue = MongoWorkQueue(store, dispatcher=dispatcher)
        log_service = MongoLogService(store)
        services = WorkerServices(
            store=store,
            repository=repository,
            work_queue=work_queue,
            cpi_scheduler=CpiScheduler(
                repository, partner_settings, MongoCpiIndexService(store), work_queue, log_service
            ),
            reminder_scheduler=ReminderScheduler(
                repository, PropertyItemRepository(store), partner_settings, work_queue
            ),
        )
        if _orchestrator_factory is not None:
            services.orchestrator = _orchestrator_factory(services)
        yield services
    finally:
        client.close()
