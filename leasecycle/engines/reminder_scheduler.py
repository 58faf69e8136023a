# engines/reminder_scheduler.py - E-signing reminders and lease ending notices

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from leasecycle.core.config import settings as app_settings
from leasecycle.core.guards import Guard, Mutation
from leasecycle.core.store import TransactionContext
from leasecycle.metrics.metrics import MetricsCollector, get_metrics
from leasecycle.models.contract import Contract, ContractStatus
from leasecycle.models.partner import EsignReminderSetting, PartnerSettings
from leasecycle.models.property_item import MovingType, PropertyItem
from leasecycle.models.queue import QueuePriority, QueueTask
from leasecycle.services.base import PartnerSettingService, WorkQueue
from leasecycle.services.contract_repository import ContractRepository
from leasecycle.services.property_items import PropertyItemRepository
from leasecycle.utils.date_helper import add_days, ensure_utc, utcnow

logger = structlog.get_logger(__name__)


class ReminderContext(str, Enum):
    ASSIGNMENT = "assignment"
    LEASE = "lease"
    MOVING_IN = "moving_in"
    MOVING_OUT = "moving_out"


class ReminderAudience(str, Enum):
    TENANT = "tenant"
    AGENT = "agent"
    LANDLORD = "landlord"


ASSIGNMENT_STAMP = "assignmentESigningReminderToLandlordSentAt"
LEASE_STAMPS = {
    ReminderAudience.TENANT: "rentalMeta.eSignReminderToTenantForLeaseSendAt",
    ReminderAudience.LANDLORD: "rentalMeta.eSignReminderToLandlordForLeaseSendAt",
}


@dataclass
class ReminderBatchResult:
    context: ReminderContext
    limit: int
    scanned: int = 0
    sent: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def has_more(self) -> bool:
        return self.scanned >= self.limit


def reminder_interval(setting: EsignReminderSetting) -> int:
    """Days between two reminders, clamped to the supported range"""
    days = setting.notice_days or app_settings.DEFAULT_ESIGN_REMINDER_DAYS
    return min(max(days, 1), app_settings.MAX_ESIGN_REMINDER_DAYS)


def next_reminder_date(
    last_sent_at: Optional[datetime], created_at: Optional[datetime], interval: int, timezone: str
) -> Optional[datetime]:
    start = last_sent_at or created_at
    if start is None:
        return None
    return add_days(start, interval, timezone)


def _stamp_guard(guard: Guard, stamp_field: str, previous: Optional[datetime]) -> Guard:
    if previous is None:
        return guard.absent(stamp_field)
    return guard.eq(stamp_field, previous)


class ReminderScheduler:
    """
    Paginated reminder runs. Each (document, audience) pair is stamped with a
    guarded write on the stamp's previous value, so two overlapping runs can
    not both send the same reminder; the queue task is written in the same
    transaction as the stamp.
    """

    def __init__(
        self,
        repository: ContractRepository,
        property_items: PropertyItemRepository,
        partner_settings: PartnerSettingService,
        work_queue: WorkQueue,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self.property_items = property_items
        self.partner_settings = partner_settings
        self.work_queue = work_queue
        self.clock = clock
        self.metrics = metrics or get_metrics()

    async def run(
        self, context: ReminderContext, skip: int = 0, limit: Optional[int] = None
    ) -> ReminderBatchResult:
        limit = limit or app_settings.REMINDER_BATCH_LIMIT
        context = ReminderContext(context)
        match context:
            case ReminderContext.ASSIGNMENT:
                return await self.send_assignment_reminders(skip, limit)
            case ReminderContext.LEASE:
                return await self.send_lease_reminders(skip, limit)
            case ReminderContext.MOVING_IN:
                return await self.send_moving_reminders(MovingType.IN, skip, limit)
            case ReminderContext.MOVING_OUT:
                return await self.send_moving_reminders(MovingType.OUT, skip, limit)

    async def _load_settings(self, partner_id: str, cache: Dict[str, Optional[PartnerSettings]]):
        if partner_id not in cache:
            cache[partner_id] = await self.partner_settings.get_settings(partner_id)
        return cache[partner_id]

    def _is_due(self, last_sent_at, created_at, interval: int, timezone: str, now: datetime) -> bool:
        due_at = next_reminder_date(last_sent_at, created_at, interval, timezone)
        return due_at is not None and ensure_utc(due_at) <= now

    async def _stamp_and_enqueue(
        self,
        repository,
        guard: Guard,
        stamp_field: str,
        previous: Optional[datetime],
        task: QueueTask,
        now: datetime,
        tx: Optional[TransactionContext] = None,
    ) -> bool:
        async with repository.transaction(tx) as tx:
            stamped = await repository.guarded_update(
                _stamp_guard(guard, stamp_field, previous),
                Mutation().set_field(stamp_field, now),
                tx=tx,
            )
            if stamped is None:
                self.metrics.record_scheduler_result("reminder", "rejected")
                return False
            await self.work_queue.enqueue(task, tx=tx)
        self.metrics.record_scheduler_result("reminder", task.event)
        logger.info("reminder_queued", event=task.event, stamp_field=stamp_field)
        return True

    # =====================================
    # ASSIGNMENT
    # =====================================

    async def send_assignment_reminders(self, skip: int = 0, limit: int = 100) -> ReminderBatchResult:
        now = self.clock()
        result = ReminderBatchResult(context=ReminderContext.ASSIGNMENT, limit=limit)
        candidates = await self.repository.find(
            Guard()
            .eq("status", ContractStatus.IN_PROGRESS.value)
            .eq("enabledEsigning", True)
            .eq("landlordAssignmentSigningStatus.signed", False),
            skip=skip,
            limit=limit,
            sort=(("createdAt", 1), ("_id", 1)),
        )
        result.scanned = len(candidates)
        cache: Dict[str, Optional[PartnerSettings]] = {}

        for contract in candidates:
            partner = await self._load_settings(contract.partner_id, cache)
            if partner is None or not partner.assignment_esign_reminder.enabled:
                continue
            interval = reminder_interval(partner.assignment_esign_reminder)
            previous = contract.assignment_esigning_reminder_sent_at
            if not self._is_due(previous, contract.created_at, interval, partner.timezone, now):
                continue

            event = "send_assignment_esigning_reminder_notice_to_landlord"
            sent = await self._stamp_and_enqueue(
                self.repository,
                Guard.by_id(contract.id)
                .eq("status", ContractStatus.IN_PROGRESS.value)
                .eq("landlordAssignmentSigningStatus.signed", False),
                ASSIGNMENT_STAMP,
                previous,
                QueueTask.notification(
                    event, contract.partner_id, contract.id, dedupe_key=f"{event}:{contract.id}:{now.isoformat()}"
                ),
                now,
            )
            if sent:
                result.sent.append((contract.id, ReminderAudience.LANDLORD.value))
        return result

    # =====================================
    # LEASE
    # =====================================

    async def send_lease_reminders(self, skip: int = 0, limit: int = 100) -> ReminderBatchResult:
        """Tenants first; the landlord is reminded only once every tenant has signed."""
        now = self.clock()
        result = ReminderBatchResult(context=ReminderContext.LEASE, limit=limit)
        candidates = await self.repository.find(
            Guard()
            .eq("rentalMeta.status", ContractStatus.IN_PROGRESS.value)
            .eq("rentalMeta.enabledLeaseEsigning", True),
            skip=skip,
            limit=limit,
            sort=(("createdAt", 1), ("_id", 1)),
        )
        result.scanned = len(candidates)
        cache: Dict[str, Optional[PartnerSettings]] = {}
        unsigned_tenant = Guard().eq("signed", False)

        for contract in candidates:
            partner = await self._load_settings(contract.partner_id, cache)
            if partner is None or not partner.lease_esign_reminder.enabled:
                continue
            rental_meta = contract.rental_meta
            interval = reminder_interval(partner.lease_esign_reminder)
            base = Guard.by_id(contract.id).eq("rentalMeta.status", ContractStatus.IN_PROGRESS.value)

            if not rental_meta.all_tenants_signed():
                audience = ReminderAudience.TENANT
                guard = base.elem_match("rentalMeta.tenantLeaseSigningStatus", unsigned_tenant)
                previous = rental_meta.esign_reminder_to_tenant_sent_at
            elif rental_meta.landlord_lease_signing_status and not rental_meta.landlord_lease_signing_status.signed:
                audience = ReminderAudience.LANDLORD
                guard = (
                    base.no_elem_match("rentalMeta.tenantLeaseSigningStatus", unsigned_tenant)
                    .eq("rentalMeta.landlordLeaseSigningStatus.signed", False)
                )
                previous = rental_meta.esign_reminder_to_landlord_sent_at
            else:
                continue

            if not self._is_due(previous, contract.created_at, interval, partner.timezone, now):
                continue
            event = f"send_lease_esigning_reminder_notice_to_{audience.value}"
            sent = await self._stamp_and_enqueue(
                self.repository,
                guard,
                LEASE_STAMPS[audience],
                previous,
                QueueTask.notification(
                    event, contract.partner_id, contract.id, dedupe_key=f"{event}:{contract.id}:{now.isoformat()}"
                ),
                now,
            )
            if sent:
                result.sent.append((contract.id, audience.value))
        return result

    # =====================================
    # MOVING IN / OUT
    # =====================================

    def _moving_audiences(self, item: PropertyItem, partner: PartnerSettings) -> List[ReminderAudience]:
        audiences = []
        if item.tenant_signing_status and not item.all_tenants_signed():
            audiences.append(ReminderAudience.TENANT)
        if partner.is_broker:
            if item.agent_signing_status and not item.agent_signing_status.signed:
                audiences.append(ReminderAudience.AGENT)
        elif item.landlord_signing_status and not item.landlord_signing_status.signed:
            audiences.append(ReminderAudience.LANDLORD)
        return audiences

    def _moving_guard(self, item: PropertyItem, audience: ReminderAudience) -> Guard:
        guard = Guard.by_id(item.id).eq("isEsigningInitiate", True)
        if audience == ReminderAudience.TENANT:
            return guard.elem_match("tenantSigningStatus", Guard().eq("signed", False))
        return guard.eq(f"{audience.value}SigningStatus.signed", False)

    async def send_moving_reminders(
        self, moving_type: MovingType, skip: int = 0, limit: int = 100
    ) -> ReminderBatchResult:
        """Agent reminders go out for broker partners, landlord reminders for direct partners."""
        now = self.clock()
        moving_type = MovingType(moving_type)
        context = ReminderContext.MOVING_IN if moving_type == MovingType.IN else ReminderContext.MOVING_OUT
        direction = "move_in" if moving_type == MovingType.IN else "move_out"
        result = ReminderBatchResult(context=context, limit=limit)

        items = await self.property_items.find(
            Guard()
            .eq("type", moving_type.value)
            .eq("isEsigningInitiate", True)
            .exists("contractId")
            .any_of(
                Guard().elem_match("tenantSigningStatus", Guard().eq("signed", False)),
                Guard().eq("agentSigningStatus.signed", False),
                Guard().eq("landlordSigningStatus.signed", False),
            ),
            skip=skip,
            limit=limit,
        )
        result.scanned = len(items)
        cache: Dict[str, Optional[PartnerSettings]] = {}

        for item in items:
            partner = await self._load_settings(item.partner_id, cache)
            if partner is None or not partner.moving_esign_reminder.enabled:
                continue
            if not await self.repository.exists(Guard.by_id(item.contract_id)):
                logger.info("moving_item_without_contract", moving_id=item.id, contract_id=item.contract_id)
                continue
            interval = reminder_interval(partner.moving_esign_reminder)

            for audience in self._moving_audiences(item, partner):
                previous = item.reminder_stamp(audience.value)
                if not self._is_due(previous, item.created_at, interval, partner.timezone, now):
                    continue
                event = f"send_{direction}_esigning_reminder_notice_to_{audience.value}"
                sent = await self._stamp_and_enqueue(
                    self.property_items,
                    self._moving_guard(item, audience),
                    item.reminder_stamp_field(audience.value),
                    previous,
                    QueueTask.notification(
                        event,
                        item.partner_id,
                        item.contract_id,
                        options={"movingId": item.id},
                        dedupe_key=f"{event}:{item.id}:{now.isoformat()}",
                    ),
                    now,
                )
                if sent:
                    result.sent.append((item.id, audience.value))
        return result

    # =====================================
    # LEASE ENDING NOTICES
    # =====================================

    async def _send_once(self, contract_ids: Iterable[str], stamp_field: str, event: str) -> List[str]:
        now = self.clock()
        notified = []
        for contract_id in contract_ids:
            contract: Optional[Contract] = await self.repository.get(contract_id)
            if contract is None:
                logger.info("ending_notice_contract_missing", contract_id=contract_id, event=event)
                continue
            sent = await self._stamp_and_enqueue(
                self.repository,
                Guard.by_id(contract_id).eq("rentalMeta.status", ContractStatus.ACTIVE.value),
                stamp_field,
                None,
                QueueTask.notification(
                    event, contract.partner_id, contract_id, priority=QueuePriority.IMMEDIATE,
                    dedupe_key=f"{event}:{contract_id}",
                ),
                now,
            )
            if sent:
                notified.append(contract_id)
        return notified

    async def send_natural_termination_notices(self, contract_ids: Iterable[str]) -> List[str]:
        return await self._send_once(
            contract_ids, "rentalMeta.naturalTerminatedNoticeSendDate", "send_natural_termination_notice"
        )

    async def send_soon_ending_notices(self, contract_ids: Iterable[str]) -> List[str]:
        return await self._send_once(
            contract_ids, "rentalMeta.soonTerminatedNoticeSendDate", "send_soon_ending_notice"
        )
