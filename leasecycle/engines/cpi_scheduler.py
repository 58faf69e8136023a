# engines/cpi_scheduler.py - Consumer price index (CPI) rent regulation

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from leasecycle.core.guards import Guard, Mutation
from leasecycle.core.store import TransactionContext
from leasecycle.engines.history import build_history_entry
from leasecycle.metrics.metrics import MetricsCollector, get_metrics
from leasecycle.models.contract import Contract, ContractStatus
from leasecycle.models.log import LogEntry
from leasecycle.models.partner import PartnerSettings
from leasecycle.models.queue import QueuePriority, QueueTask
from leasecycle.services.base import CpiIndexService, LogService, PartnerSettingService, WorkQueue
from leasecycle.services.contract_repository import ContractRepository
from leasecycle.utils.date_helper import (
    add_days,
    add_months,
    add_months_end_of_day,
    end_of_day,
    ensure_utc,
    month_key,
    start_of_month,
    utcnow,
)
from leasecycle.utils.exceptions import NotFoundError

logger = structlog.get_logger(__name__)

CPI_STATUSES = (ContractStatus.ACTIVE.value, ContractStatus.UPCOMING.value)
PENDING_CPI_FIELDS = (
    "rentalMeta.lastCPINotificationSentOn",
    "rentalMeta.futureRentAmount",
    "rentalMeta.cpiFromMonth",
    "rentalMeta.cpiInMonth",
)


class CpiBranch(str, Enum):
    NOTICE_SENT = "notice_sent"
    NEXT_DATE_ROLLED = "next_date_rolled"
    PENDING_RESET = "pending_reset"
    RENT_APPLIED = "rent_applied"
    SKIPPED = "skipped"


@dataclass
class CpiOutcome:
    contract_id: str
    branch: CpiBranch
    applied: bool
    contract: Optional[Contract] = None


class CpiScheduler:
    """
    Decides, once per run and contract, whether a CPI settlement notice is due.

    ``cpiDate`` is the run date plus one month (end of day, partner calendar).
    Three branches are disjoint by their guards:

    1. no pending notice, ``nextCpiDate <= cpiDate`` and a projected rent
       exists: store the projection and queue the notice;
    2. same precondition but nothing can be projected: roll ``nextCpiDate``
       twelve months forward and log the change;
    3. a pending notice whose ``nextCpiDate`` has moved past ``cpiDate``:
       drop the pending fields and queue a fresh notice.
    """

    def __init__(
        self,
        repository: ContractRepository,
        partner_settings: PartnerSettingService,
        cpi_index: CpiIndexService,
        work_queue: WorkQueue,
        log_service: LogService,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self.partner_settings = partner_settings
        self.cpi_index = cpi_index
        self.work_queue = work_queue
        self.log_service = log_service
        self.clock = clock
        self.metrics = metrics or get_metrics()

    async def _settings_for(self, contract: Contract, tx: Optional[TransactionContext]) -> PartnerSettings:
        settings = await self.partner_settings.get_settings(contract.partner_id, tx=tx)
        if settings is None:
            raise NotFoundError("Partner settings", contract.partner_id)
        return settings

    @staticmethod
    def cpi_date(created_at: datetime, timezone: str) -> datetime:
        return add_months_end_of_day(created_at, 1, timezone)

    async def project_future_rent(self, contract: Contract, settings: PartnerSettings) -> Optional[int]:
        """``round(rent * index(till) / index(from))``, or ``None`` when an index is missing."""
        rental_meta = contract.rental_meta
        if not (
            rental_meta
            and rental_meta.cpi_enabled
            and rental_meta.monthly_rent_amount
            and rental_meta.last_cpi_date
            and rental_meta.next_cpi_date
        ):
            return None

        from_month = month_key(rental_meta.last_cpi_date, settings.timezone, settings.cpi_settlement_months)
        till_month = month_key(rental_meta.next_cpi_date, settings.timezone)
        index_from = await self.cpi_index.get_index(from_month)
        index_till = await self.cpi_index.get_index(till_month)
        if index_till is None:
            latest = await self.cpi_index.latest_month()
            index_till = await self.cpi_index.get_index(latest) if latest else None
        if not index_from or not index_till:
            logger.info("cpi_index_missing", contract_id=contract.id, from_month=from_month, till_month=till_month)
            return None
        return round(rental_meta.monthly_rent_amount * index_till / index_from)

    def _base_guard(self, contract: Contract) -> Guard:
        return (
            Guard.by_id(contract.id)
            .eq("partnerId", contract.partner_id)
            .in_("rentalMeta.status", CPI_STATUSES)
            .eq("rentalMeta.cpiEnabled", True)
        )

    def _notice(self, contract: Contract, cpi_date: datetime) -> QueueTask:
        return QueueTask.notification(
            "send_CPI_settlement_notice",
            partner_id=contract.partner_id,
            collection_id=contract.id,
            priority=QueuePriority.IMMEDIATE,
            dedupe_key=f"send_CPI_settlement_notice:{contract.id}:{cpi_date.isoformat()}",
        )

    def _outcome(self, contract_id: str, branch: CpiBranch, updated: Optional[Contract]) -> CpiOutcome:
        applied = updated is not None
        self.metrics.record_scheduler_result("cpi", branch.value if applied else "rejected")
        logger.info("cpi_branch_evaluated", contract_id=contract_id, branch=branch.value, applied=applied)
        return CpiOutcome(contract_id=contract_id, branch=branch, applied=applied, contract=updated)

    # =====================================
    # DAILY NOTIFICATION RUN
    # =====================================

    async def send_cpi_notification(
        self,
        contract_id: str,
        created_at: Optional[datetime] = None,
        tx: Optional[TransactionContext] = None,
    ) -> CpiOutcome:
        created_at = ensure_utc(created_at) if created_at else self.clock()
        contract = await self.repository.find_one(
            Guard.by_id(contract_id).in_("rentalMeta.status", CPI_STATUSES), tx=tx
        )
        if contract is None:
            raise NotFoundError("Contract", contract_id)
        settings = await self._settings_for(contract, tx)
        rental_meta = contract.rental_meta

        if settings.stop_cpi_regulation or not rental_meta.cpi_enabled:
            logger.info("cpi_regulation_skipped", contract_id=contract_id, partner_id=contract.partner_id)
            return CpiOutcome(contract_id=contract_id, branch=CpiBranch.SKIPPED, applied=False, contract=contract)

        tz = settings.timezone
        cpi_date = self.cpi_date(created_at, tz)

        async with self.repository.transaction(tx) as tx:
            if rental_meta.last_cpi_notification_sent_on is None:
                pending_guard = (
                    self._base_guard(contract)
                    .absent("rentalMeta.lastCPINotificationSentOn")
                    .lte("rentalMeta.nextCpiDate", cpi_date)
                )
                future_rent = None
                if rental_meta.contract_end_date is None or (
                    rental_meta.next_cpi_date is not None
                    and ensure_utc(rental_meta.contract_end_date) > ensure_utc(rental_meta.next_cpi_date)
                ):
                    future_rent = await self.project_future_rent(contract, settings)

                if future_rent:
                    mutation = (
                        Mutation()
                        .set_fields({
                            "rentalMeta.lastCPINotificationSentOn": cpi_date,
                            "rentalMeta.futureRentAmount": future_rent,
                            "rentalMeta.cpiInMonth": start_of_month(rental_meta.next_cpi_date, tz),
                        })
                        .push_item("rentalMeta.cpiNotificationSentHistory", created_at)
                    )
                    if rental_meta.last_cpi_date:
                        mutation.set_field(
                            "rentalMeta.cpiFromMonth",
                            add_months(rental_meta.last_cpi_date, -settings.cpi_settlement_months, tz),
                        )
                    updated = await self.repository.guarded_update(pending_guard, mutation, tx=tx)
                    if updated is not None:
                        await self.work_queue.enqueue(self._notice(contract, cpi_date), tx=tx)
                    return self._outcome(contract_id, CpiBranch.NOTICE_SENT, updated)

                next_cpi_date = add_months_end_of_day(self.clock(), 12, tz)
                updated = await self.repository.guarded_update(
                    pending_guard, Mutation().set_field("rentalMeta.nextCpiDate", next_cpi_date), tx=tx
                )
                if updated is not None:
                    await self.log_service.create_log(
                        LogEntry(
                            action="updated_contract",
                            partner_id=contract.partner_id,
                            contract_id=contract.id,
                            property_id=contract.property_id,
                            account_id=contract.account_id,
                            tenant_id=rental_meta.tenant_id,
                            lease_serial=contract.lease_serial,
                            is_change_log=True,
                            changes=[{
                                "field": "nextCpiDate",
                                "type": "date",
                                "oldDate": rental_meta.next_cpi_date,
                                "newDate": next_cpi_date,
                            }],
                        ),
                        tx=tx,
                    )
                return self._outcome(contract_id, CpiBranch.NEXT_DATE_ROLLED, updated)

            reset_guard = (
                self._base_guard(contract)
                .exists("rentalMeta.lastCPINotificationSentOn")
                .exists("rentalMeta.futureRentAmount")
                .gt("rentalMeta.nextCpiDate", cpi_date)
            )
            updated = await self.repository.guarded_update(
                reset_guard, Mutation().unset_field(*PENDING_CPI_FIELDS), tx=tx
            )
            if updated is not None:
                await self.work_queue.enqueue(self._notice(contract, cpi_date), tx=tx)
            return self._outcome(contract_id, CpiBranch.PENDING_RESET, updated)

    # =====================================
    # SUPPLEMENTARY OPERATIONS
    # =====================================

    async def apply_cpi_rent_amount(
        self, contract_id: str, user_id: str = "SYSTEM", tx: Optional[TransactionContext] = None
    ) -> CpiOutcome:
        """Make the notified future rent the current rent and start the next CPI year."""
        async with self.repository.transaction(tx) as tx:
            contract = await self.repository.get_or_raise(contract_id, tx=tx)
            settings = await self._settings_for(contract, tx)
            rental_meta = contract.rental_meta
            now = self.clock()

            guard = (
                self._base_guard(contract)
                .exists("rentalMeta.lastCPINotificationSentOn")
                .exists("rentalMeta.futureRentAmount")
            )
            mutation = Mutation().unset_field(*PENDING_CPI_FIELDS)
            if rental_meta and rental_meta.future_rent_amount:
                mutation.set_fields({
                    "rentalMeta.monthlyRentAmount": rental_meta.future_rent_amount,
                    "rentalMeta.lastCpiDate": end_of_day(now, settings.timezone),
                    "rentalMeta.nextCpiDate": add_months_end_of_day(now, 12, settings.timezone),
                })
            updated = await self.repository.guarded_update(guard, mutation, tx=tx)
            if updated is not None:
                updated = await self.repository.record_history(
                    contract_id,
                    [build_history_entry(
                        "monthlyRentAmount",
                        rental_meta.monthly_rent_amount,
                        rental_meta.future_rent_amount,
                        old_updated_at=contract.updated_at,
                        new_updated_at=now,
                    )],
                    tx=tx,
                )
                await self.log_service.create_log(
                    LogEntry(
                        action="updated_lease",
                        partner_id=contract.partner_id,
                        contract_id=contract_id,
                        property_id=contract.property_id,
                        account_id=contract.account_id,
                        tenant_id=rental_meta.tenant_id,
                        lease_serial=contract.lease_serial,
                        created_by=user_id,
                        is_change_log=True,
                        changes=[{
                            "field": "monthlyRentAmount",
                            "type": "number",
                            "oldText": rental_meta.monthly_rent_amount,
                            "newText": rental_meta.future_rent_amount,
                        }],
                    ),
                    tx=tx,
                )
        return self._outcome(contract_id, CpiBranch.RENT_APPLIED, updated)

    async def reset_pending_cpi(self, contract_id: str, tx: Optional[TransactionContext] = None) -> CpiOutcome:
        """Drop a pending notice whose regulation date is more than a month away."""
        contract = await self.repository.get_or_raise(contract_id, tx=tx)
        settings = await self._settings_for(contract, tx)
        cpi_date = end_of_day(add_days(self.clock(), 31, settings.timezone), settings.timezone)
        updated = await self.repository.guarded_update(
            self._base_guard(contract)
            .exists("rentalMeta.lastCPINotificationSentOn")
            .exists("rentalMeta.futureRentAmount")
            .gt("rentalMeta.nextCpiDate", cpi_date),
            Mutation().unset_field("rentalMeta.futureRentAmount", "rentalMeta.lastCPINotificationSentOn"),
            tx=tx,
        )
        return self._outcome(contract_id, CpiBranch.PENDING_RESET, updated)
