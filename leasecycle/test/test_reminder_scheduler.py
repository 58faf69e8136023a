# tests/test_reminder_scheduler.py - E-signing reminders and ending notices

import pytest

from leasecycle.core.guards import Guard
from leasecycle.engines.reminder_scheduler import (
    ReminderContext,
    ReminderScheduler,
    next_reminder_date,
    reminder_interval,
)
from leasecycle.models.partner import EsignReminderSetting
from leasecycle.models.queue import QueueTask
from leasecycle.services.contract_repository import ContractRepository
from leasecycle.services.partner_settings import PARTNER_SETTINGS, MongoPartnerSettingService
from leasecycle.services.property_items import PROPERTY_ITEMS, PropertyItemRepository
from leasecycle.services.work_queue import APP_QUEUES, MongoWorkQueue
from leasecycle.test.factories import (
    NOW,
    TENANT_ID,
    contract_doc,
    days_ago,
    days_ahead,
    partner_doc,
    rental_meta_doc,
)

ENABLED = {"enabled": True, "noticeDays": 2}


def esigning_lease(tenant_signed=False, **fields):
    return rental_meta_doc(
        status="in_progress",
        enabledLeaseEsigning=True,
        tenantLeaseSigningStatus=[{"tenantId": TENANT_ID, "signed": tenant_signed}],
        landlordLeaseSigningStatus={"signed": False},
        **fields,
    )


def moving_doc(item_id="moving-1", moving_type="in", contract_id="contract-1", **fields):
    doc = {
        "_id": item_id,
        "partnerId": "partner-1",
        "contractId": contract_id,
        "type": moving_type,
        "isEsigningInitiate": True,
        "tenantSigningStatus": [{"tenantId": TENANT_ID, "signed": False}],
        "agentSigningStatus": {"signed": False},
        "landlordSigningStatus": {"signed": False},
        "createdAt": days_ago(10),
    }
    doc.update(fields)
    return doc


def queued_events(store):
    return [task["event"] for task in store.dump(APP_QUEUES)]


@pytest.fixture
def scheduler(store, clock):
    return ReminderScheduler(
        ContractRepository(store, clock=clock),
        PropertyItemRepository(store, clock=clock),
        MongoPartnerSettingService(store),
        MongoWorkQueue(store, clock=clock),
        clock=clock,
    )


class TestReminderInterval:

    @pytest.mark.parametrize("notice_days,expected", [(None, 1), (0, 1), (-3, 1), (7, 7), (90, 45)])
    def test_interval_is_clamped(self, notice_days, expected):
        assert reminder_interval(EsignReminderSetting(enabled=True, notice_days=notice_days)) == expected

    def test_next_date_starts_from_last_reminder_or_creation(self):
        assert next_reminder_date(None, days_ago(10), 3, "UTC") == days_ago(7)
        assert next_reminder_date(days_ago(2), days_ago(10), 3, "UTC") == days_ahead(1)
        assert next_reminder_date(None, None, 3, "UTC") is None


class TestLeaseReminders:
    """ReminderScheduler.send_lease_reminders"""

    @pytest.mark.asyncio
    async def test_tenant_reminder_repeats_after_interval(self, store, scheduler, clock):
        store.seed(PARTNER_SETTINGS, partner_doc(leaseESignReminder=ENABLED))
        store.seed("contracts", contract_doc(rental=esigning_lease()))

        first = await scheduler.send_lease_reminders()
        same_day = await scheduler.send_lease_reminders()
        clock.return_value = days_ahead(2)
        later = await scheduler.send_lease_reminders()

        assert first.sent == [("contract-1", "tenant")]
        assert same_day.sent == []
        assert later.sent == [("contract-1", "tenant")]
        stamp = store.dump("contracts")[0]["rentalMeta"]["eSignReminderToTenantForLeaseSendAt"]
        assert stamp == days_ahead(2)
        assert queued_events(store) == ["send_lease_esigning_reminder_notice_to_tenant"] * 2

    @pytest.mark.asyncio
    async def test_landlord_reminded_once_tenants_signed(self, store, scheduler):
        store.seed(PARTNER_SETTINGS, partner_doc(leaseESignReminder=ENABLED))
        store.seed("contracts", contract_doc(rental=esigning_lease(tenant_signed=True)))

        result = await scheduler.send_lease_reminders()

        assert result.sent == [("contract-1", "landlord")]
        assert "eSignReminderToLandlordForLeaseSendAt" in store.dump("contracts")[0]["rentalMeta"]
        assert queued_events(store) == ["send_lease_esigning_reminder_notice_to_landlord"]

    @pytest.mark.asyncio
    async def test_disabled_partner_gets_no_reminders(self, store, scheduler):
        store.seed(PARTNER_SETTINGS, partner_doc())
        store.seed("contracts", contract_doc(rental=esigning_lease()))

        result = await scheduler.send_lease_reminders()

        assert result.scanned == 1
        assert result.sent == []
        assert store.dump(APP_QUEUES) == []

    @pytest.mark.asyncio
    async def test_stale_stamp_loses_the_race(self, store, scheduler):
        """A run holding an outdated stamp value neither stamps nor queues"""
        store.seed("contracts", contract_doc(rental=esigning_lease(eSignReminderToTenantForLeaseSendAt=days_ago(1))))
        task = QueueTask.notification("send_lease_esigning_reminder_notice_to_tenant", "partner-1", "contract-1")

        sent = await scheduler._stamp_and_enqueue(
            scheduler.repository,
            Guard.by_id("contract-1"),
            "rentalMeta.eSignReminderToTenantForLeaseSendAt",
            days_ago(5),
            task,
            NOW,
        )

        assert sent is False
        assert store.dump(APP_QUEUES) == []
        assert store.dump("contracts")[0]["rentalMeta"]["eSignReminderToTenantForLeaseSendAt"] == days_ago(1)

    @pytest.mark.asyncio
    async def test_batches_report_more_pages(self, store, scheduler):
        store.seed(PARTNER_SETTINGS, partner_doc(leaseESignReminder=ENABLED))
        store.seed(
            "contracts",
            contract_doc("contract-1", rental=esigning_lease()),
            contract_doc("contract-2", rental=esigning_lease()),
        )

        first_page = await scheduler.run(ReminderContext.LEASE, skip=0, limit=1)
        last_page = await scheduler.run(ReminderContext.LEASE, skip=2, limit=1)

        assert first_page.has_more is True
        assert first_page.sent == [("contract-1", "tenant")]
        assert last_page.scanned == 0
        assert last_page.has_more is False


class TestAssignmentReminders:

    @pytest.mark.asyncio
    async def test_landlord_reminded_for_unsigned_assignment(self, store, scheduler):
        store.seed(PARTNER_SETTINGS, partner_doc(assignmentESignReminder=ENABLED))
        store.seed("contracts", contract_doc(
            status="in_progress", enabledEsigning=True, landlordAssignmentSigningStatus={"signed": False}
        ))

        result = await scheduler.run(ReminderContext.ASSIGNMENT)

        assert result.sent == [("contract-1", "landlord")]
        assert store.dump("contracts")[0]["assignmentESigningReminderToLandlordSentAt"] == NOW
        assert queued_events(store) == ["send_assignment_esigning_reminder_notice_to_landlord"]


class TestMovingReminders:
    """Moving-in/out protocol reminders per partner type"""

    @pytest.mark.asyncio
    async def test_broker_partner_reminds_tenants_and_agent(self, store, scheduler):
        store.seed(PARTNER_SETTINGS, partner_doc(movingInOutESignReminder=ENABLED))
        store.seed("contracts", contract_doc(rental=rental_meta_doc()))
        store.seed(PROPERTY_ITEMS, moving_doc())

        result = await scheduler.run(ReminderContext.MOVING_IN)

        assert result.sent == [("moving-1", "tenant"), ("moving-1", "agent")]
        item = store.dump(PROPERTY_ITEMS)[0]
        assert item["eSignReminderToTenantForMoveInSentAt"] == NOW
        assert item["eSignReminderToAgentForMoveInSentAt"] == NOW
        assert queued_events(store) == [
            "send_move_in_esigning_reminder_notice_to_tenant",
            "send_move_in_esigning_reminder_notice_to_agent",
        ]
        assert store.dump(APP_QUEUES)[0]["params"]["options"] == {"movingId": "moving-1"}

    @pytest.mark.asyncio
    async def test_direct_partner_reminds_landlord(self, store, scheduler):
        store.seed(PARTNER_SETTINGS, partner_doc(accountType="direct", movingInOutESignReminder=ENABLED))
        store.seed("contracts", contract_doc(rental=rental_meta_doc()))
        store.seed(PROPERTY_ITEMS, moving_doc(moving_type="out"))

        result = await scheduler.send_moving_reminders("out")

        assert [audience for _, audience in result.sent] == ["tenant", "landlord"]
        assert "eSignReminderToLandlordForMoveOutSentAt" in store.dump(PROPERTY_ITEMS)[0]

    @pytest.mark.asyncio
    async def test_item_without_contract_is_skipped(self, store, scheduler):
        store.seed(PARTNER_SETTINGS, partner_doc(movingInOutESignReminder=ENABLED))
        store.seed(PROPERTY_ITEMS, moving_doc(contract_id="contract-9"))

        result = await scheduler.run(ReminderContext.MOVING_IN)

        assert result.scanned == 1
        assert result.sent == []


class TestEndingNotices:

    @pytest.mark.asyncio
    async def test_natural_termination_notice_sent_once(self, store, scheduler):
        store.seed("contracts", contract_doc(rental=rental_meta_doc()))

        first = await scheduler.send_natural_termination_notices(["contract-1", "missing"])
        second = await scheduler.send_natural_termination_notices(["contract-1"])

        assert first == ["contract-1"]
        assert second == []
        assert queued_events(store) == ["send_natural_termination_notice"]
        assert store.dump("contracts")[0]["rentalMeta"]["naturalTerminatedNoticeSendDate"] == NOW

    @pytest.mark.asyncio
    async def test_soon_ending_notice_requires_active_lease(self, store, scheduler):
        store.seed("contracts", contract_doc(rental=rental_meta_doc(status="closed")))

        assert await scheduler.send_soon_ending_notices(["contract-1"]) == []
