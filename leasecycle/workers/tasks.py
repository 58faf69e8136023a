# workers/tasks.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

import dramatiq

from leasecycle.core.guards import Guard
from leasecycle.core.scheduler_decorators import run_cron, run_every_day
from leasecycle.engines.reminder_scheduler import ReminderContext
from leasecycle.engines.transitions import TransitionContext
from leasecycle.models.contract import ContractStatus
from leasecycle.models.queue import QueueRecord, QueueStatus
from leasecycle.services.work_queue import APP_QUEUES
from leasecycle.utils.date_helper import utcnow
from leasecycle.utils.exceptions import ContractEngineError
from leasecycle.workers.services import WorkerServices, worker_services

logger = logging.getLogger(__name__)

# Returns True when the handler already completed the queue record itself
QueueHandler = Callable[[WorkerServices, QueueRecord], Awaitable[bool]]
QUEUE_HANDLERS: Dict[str, QueueHandler] = {}

CPI_PAGE_SIZE = 100


def queue_handler(action: str):
    """Register a local handler for ``app_queues`` records with this action."""
    def wrapper(func: QueueHandler):
        QUEUE_HANDLERS[action] = func
        return func
    return wrapper


@queue_handler("send_cpi_notification")
async def _handle_cpi_notification(services: WorkerServices, record: QueueRecord) -> bool:
    await services.cpi_scheduler.send_cpi_notification(record.params["contractId"])
    return False


@queue_handler("apply_cpi_rent_amount")
async def _handle_cpi_rent_amount(services: WorkerServices, record: QueueRecord) -> bool:
    await services.cpi_scheduler.apply_cpi_rent_amount(record.params["contractId"])
    return False


@queue_handler("reset_pending_cpi")
async def _handle_reset_pending_cpi(services: WorkerServices, record: QueueRecord) -> bool:
    await services.cpi_scheduler.reset_pending_cpi(record.params["contractId"])
    return False


@queue_handler("update_contract_status")
async def _handle_status_update(services: WorkerServices, record: QueueRecord) -> bool:
    if services.orchestrator is None:
        raise ContractEngineError("No orchestrator factory registered for status updates")
    params = record.params
    await services.orchestrator.update_contract_status(
        params["contractId"],
        status=params.get("status"),
        rental_status=params.get("rentalStatus"),
        context=TransitionContext(user_id=params.get("userId", "SYSTEM"), queue_id=record.id),
    )
    return True


async def _process_app_queue(queue_id: str):
    async with worker_services(dispatcher=process_app_queue.send) as services:
        document = await services.store.find_one(APP_QUEUES, Guard.by_id(queue_id))
        if not document:
            logger.warning(f"Queue task {queue_id} not found")
            return
        record = QueueRecord.model_validate(document)
        handler = QUEUE_HANDLERS.get(record.action)
        if handler is None:
            # Left as new for the consumer that owns this destination
            logger.debug(f"Queue task {queue_id} ({record.action}) is handled by {record.destination}")
            return
        if record.status != QueueStatus.NEW.value or not await services.work_queue.mark_processing(queue_id):
            logger.info(f"Queue task {queue_id} already claimed")
            return

        completed = await handler(services, record)
        if not completed:
            await services.work_queue.mark_completed(queue_id)
        logger.info(f"Queue task {queue_id} ({record.action}) processed")


@dramatiq.actor(max_retries=3)
def process_app_queue(queue_id: str):
    """Run a locally handled ``app_queues`` task once it has been committed."""
    logger.info(f"Processing queue task {queue_id}")
    asyncio.run(_process_app_queue(queue_id))


async def _daily_cpi_notifications() -> int:
    run_at = utcnow()
    failures: List[str] = []
    sent = 0
    async with worker_services(dispatcher=process_app_queue.send) as services:
        guard = (
            Guard()
            .in_("rentalMeta.status", [ContractStatus.ACTIVE.value, ContractStatus.UPCOMING.value])
            .eq("rentalMeta.cpiEnabled", True)
        )
        skip = 0
        while True:
            contracts = await services.repository.find(guard, skip=skip, limit=CPI_PAGE_SIZE)
            if not contracts:
                break
            for contract in contracts:
                try:
                    outcome = await services.cpi_scheduler.send_cpi_notification(contract.id, created_at=run_at)
                except ContractEngineError as e:
                    logger.error(f"CPI notification failed for contract {contract.id}: {e}", exc_info=True)
                    failures.append(contract.id)
                    continue
                sent += int(outcome.applied)
            skip += len(contracts)

    if failures:
        raise ContractEngineError(f"CPI notification failed for {len(failures)} contracts: {failures[:10]}")
    return sent


@run_every_day(hour=1, minute=0)
@dramatiq.actor(max_retries=2)
def daily_cpi_notifications():
    """Send due CPI notices; guarded writes make a retried run a no-op for finished contracts."""
    sent = asyncio.run(_daily_cpi_notifications())
    logger.info(f"Daily CPI run applied {sent} changes")


async def _daily_esign_reminders() -> Dict[str, int]:
    totals: Dict[str, int] = {}
    async with worker_services(dispatcher=process_app_queue.send) as services:
        for context in ReminderContext:
            skip = 0
            totals[context.value] = 0
            while True:
                result = await services.reminder_scheduler.run(context, skip=skip)
                totals[context.value] += len(result.sent)
                if not result.has_more:
                    break
                skip += result.scanned
    return totals


@run_every_day(hour=2, minute=0)
@dramatiq.actor(max_retries=2)
def daily_esign_reminders():
    totals = asyncio.run(_daily_esign_reminders())
    logger.info(f"E-signing reminders sent: {totals}")


async def _drain(step: Callable[[int], Awaitable[List[Any]]]) -> int:
    """
    Page through a maintenance query whose matches drop out once handled;
    only rejected contracts stay in the result set, so they are skipped.
    """
    skip = 0
    applied = 0
    while True:
        outcomes = await step(skip)
        if not outcomes:
            return applied
        rejected = sum(1 for outcome in outcomes if not outcome.applied)
        applied += len(outcomes) - rejected
        skip += rejected


async def _daily_lease_maintenance() -> Dict[str, int]:
    async with worker_services(dispatcher=process_app_queue.send) as services:
        orchestrator = services.orchestrator
        if orchestrator is None:
            raise ContractEngineError("No orchestrator factory registered for lease maintenance")
        activated = await _drain(lambda skip: orchestrator.activate_upcoming_leases(skip=skip))
        closed = await _drain(lambda skip: orchestrator.close_terminated_leases(skip=skip))
    return {"activated": activated, "closed": closed}


@run_cron("30 0 * * *")
@dramatiq.actor(max_retries=2)
def daily_lease_maintenance():
    """Activate upcoming leases that have started and close leases past their end date."""
    counts = asyncio.run(_daily_lease_maintenance())
    logger.info(f"Lease maintenance finished: {counts}")
