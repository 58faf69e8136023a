# tests/test_cpi_scheduler.py - CPI notification branches and rent projection

from datetime import datetime, timezone

import pytest

from leasecycle.engines.cpi_scheduler import CpiBranch, CpiScheduler
from leasecycle.models.contract import Contract
from leasecycle.models.partner import PartnerSettings
from leasecycle.services.audit import LOGS, MongoLogService
from leasecycle.services.contract_repository import ContractRepository
from leasecycle.services.cpi_index import CPI_INDEXES, MongoCpiIndexService
from leasecycle.services.partner_settings import PARTNER_SETTINGS, MongoPartnerSettingService
from leasecycle.services.work_queue import APP_QUEUES, MongoWorkQueue
from leasecycle.test.factories import NOW, contract_doc, days_ahead, partner_doc, rental_meta_doc
from leasecycle.utils.exceptions import NotFoundError

CPI_DATE = datetime(2024, 6, 15, 23, 59, 59, 999999, tzinfo=timezone.utc)
LAST_CPI_DATE = datetime(2023, 6, 15, 23, 59, 59, tzinfo=timezone.utc)


def cpi_rental(**fields):
    return rental_meta_doc(**{"cpiEnabled": True, "lastCpiDate": LAST_CPI_DATE, "nextCpiDate": CPI_DATE, **fields})


def seed_indexes(store, **values):
    store.seed(CPI_INDEXES, *({"_id": month, "value": value} for month, value in values.items()))


@pytest.fixture
def scheduler(store, clock):
    store.seed(PARTNER_SETTINGS, partner_doc())
    return CpiScheduler(
        ContractRepository(store, clock=clock),
        MongoPartnerSettingService(store),
        MongoCpiIndexService(store),
        MongoWorkQueue(store, clock=clock),
        MongoLogService(store, clock=clock),
        clock=clock,
    )


class TestSendCpiNotification:
    """CpiScheduler.send_cpi_notification"""

    def test_cpi_date_is_one_month_ahead_end_of_day(self):
        assert CpiScheduler.cpi_date(NOW, "UTC") == CPI_DATE

    @pytest.mark.asyncio
    async def test_due_contract_gets_notice_and_projection(self, store, scheduler):
        """nextCpiDate equal to the CPI date is due"""
        store.seed("contracts", contract_doc(rental=cpi_rental()))
        seed_indexes(store, **{"2023M06": 100, "2024M06": 105})

        outcome = await scheduler.send_cpi_notification("contract-1")

        assert outcome.branch == CpiBranch.NOTICE_SENT
        assert outcome.applied
        lease = store.dump("contracts")[0]["rentalMeta"]
        assert lease["futureRentAmount"] == 1050
        assert lease["lastCPINotificationSentOn"] == CPI_DATE
        assert lease["cpiInMonth"] == datetime(2024, 6, 1, tzinfo=timezone.utc)
        assert lease["cpiFromMonth"] == LAST_CPI_DATE
        assert lease["cpiNotificationSentHistory"] == [NOW]

        queued = store.dump(APP_QUEUES)
        assert len(queued) == 1
        assert queued[0]["event"] == "send_CPI_settlement_notice"
        assert queued[0]["priority"] == "immediate"

    @pytest.mark.asyncio
    async def test_second_run_same_day_changes_nothing(self, store, scheduler):
        store.seed("contracts", contract_doc(rental=cpi_rental()))
        seed_indexes(store, **{"2023M06": 100, "2024M06": 105})
        await scheduler.send_cpi_notification("contract-1")

        outcome = await scheduler.send_cpi_notification("contract-1")

        assert outcome.branch == CpiBranch.PENDING_RESET
        assert outcome.applied is False
        assert len(store.dump(APP_QUEUES)) == 1
        assert store.dump("contracts")[0]["rentalMeta"]["futureRentAmount"] == 1050

    @pytest.mark.asyncio
    async def test_missing_index_rolls_next_cpi_date(self, store, scheduler):
        store.seed("contracts", contract_doc(rental=cpi_rental()))

        outcome = await scheduler.send_cpi_notification("contract-1")

        assert outcome.branch == CpiBranch.NEXT_DATE_ROLLED
        assert outcome.applied
        assert store.dump("contracts")[0]["rentalMeta"]["nextCpiDate"] == datetime(
            2025, 5, 15, 23, 59, 59, 999999, tzinfo=timezone.utc
        )
        log = store.dump(LOGS)[0]
        assert log["action"] == "updated_contract"
        assert log["changes"][0]["field"] == "nextCpiDate"
        assert store.dump(APP_QUEUES) == []

    @pytest.mark.asyncio
    async def test_postponed_pending_notice_is_reset(self, store, scheduler):
        store.seed("contracts", contract_doc(rental=cpi_rental(
            nextCpiDate=days_ahead(90),
            lastCPINotificationSentOn=CPI_DATE,
            futureRentAmount=1050,
            cpiInMonth=datetime(2024, 6, 1, tzinfo=timezone.utc),
        )))

        outcome = await scheduler.send_cpi_notification("contract-1")

        assert outcome.branch == CpiBranch.PENDING_RESET
        assert outcome.applied
        lease = store.dump("contracts")[0]["rentalMeta"]
        for field in ("lastCPINotificationSentOn", "futureRentAmount", "cpiInMonth"):
            assert field not in lease
        assert len(store.dump(APP_QUEUES)) == 1

    @pytest.mark.asyncio
    async def test_contract_not_due_is_left_alone(self, store, scheduler):
        store.seed("contracts", contract_doc(rental=cpi_rental(nextCpiDate=days_ahead(60))))
        seed_indexes(store, **{"2023M06": 100, "2024M07": 105})

        outcome = await scheduler.send_cpi_notification("contract-1")

        assert outcome.applied is False
        assert "futureRentAmount" not in store.dump("contracts")[0]["rentalMeta"]
        assert store.dump(APP_QUEUES) == []

    @pytest.mark.asyncio
    async def test_partner_stopped_regulation(self, store, scheduler):
        store.seed(PARTNER_SETTINGS, partner_doc(partnerId="partner-2", stopCPIRegulation=True))
        store.seed("contracts", contract_doc(partnerId="partner-2", rental=cpi_rental()))

        outcome = await scheduler.send_cpi_notification("contract-1")

        assert outcome.branch == CpiBranch.SKIPPED
        assert outcome.applied is False

    @pytest.mark.asyncio
    async def test_unknown_contract_raises(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.send_cpi_notification("missing")


class TestProjectFutureRent:

    @pytest.mark.asyncio
    async def test_settlement_months_shift_the_base_month(self, store, scheduler):
        seed_indexes(store, **{"2023M04": 100, "2024M06": 110})
        contract = Contract.model_validate(contract_doc(rental=cpi_rental()))
        settings = PartnerSettings.model_validate(partner_doc(cpiSettlementMonths=2))

        assert await scheduler.project_future_rent(contract, settings) == 1100

    @pytest.mark.asyncio
    async def test_latest_index_used_when_target_month_missing(self, store, scheduler):
        seed_indexes(store, **{"2023M06": 100, "2024M04": 104})
        contract = Contract.model_validate(contract_doc(rental=cpi_rental()))

        assert await scheduler.project_future_rent(contract, PartnerSettings.model_validate(partner_doc())) == 1040

    @pytest.mark.asyncio
    async def test_disabled_cpi_projects_nothing(self, scheduler):
        contract = Contract.model_validate(contract_doc(rental=rental_meta_doc()))

        assert await scheduler.project_future_rent(contract, PartnerSettings.model_validate(partner_doc())) is None


class TestPendingCpiFollowups:
    """apply_cpi_rent_amount / reset_pending_cpi"""

    @pytest.mark.asyncio
    async def test_apply_rent_amount(self, store, scheduler):
        store.seed("contracts", contract_doc(rental=cpi_rental(
            lastCPINotificationSentOn=CPI_DATE, futureRentAmount=1050
        )))

        outcome = await scheduler.apply_cpi_rent_amount("contract-1", user_id="user-1")

        assert outcome.branch == CpiBranch.RENT_APPLIED
        lease = outcome.contract.rental_meta
        assert lease.monthly_rent_amount == 1050
        assert lease.future_rent_amount is None
        assert lease.last_cpi_notification_sent_on is None
        assert lease.last_cpi_date == datetime(2024, 5, 15, 23, 59, 59, 999999, tzinfo=timezone.utc)
        assert lease.next_cpi_date == datetime(2025, 5, 15, 23, 59, 59, 999999, tzinfo=timezone.utc)
        assert outcome.contract.history[-1].name == "monthlyRentAmount"
        assert outcome.contract.history[-1].new_value == 1050
        log = store.dump(LOGS)[0]
        assert log["action"] == "updated_lease"
        assert log["createdBy"] == "user-1"

    @pytest.mark.asyncio
    async def test_apply_without_pending_notice_is_rejected(self, store, scheduler):
        store.seed("contracts", contract_doc(rental=cpi_rental()))

        outcome = await scheduler.apply_cpi_rent_amount("contract-1")

        assert outcome.applied is False
        assert store.dump(LOGS) == []

    @pytest.mark.asyncio
    async def test_reset_pending_cpi(self, store, scheduler):
        store.seed("contracts", contract_doc(rental=cpi_rental(
            nextCpiDate=days_ahead(90), lastCPINotificationSentOn=CPI_DATE, futureRentAmount=1050
        )))

        outcome = await scheduler.reset_pending_cpi("contract-1")

        assert outcome.applied
        assert "futureRentAmount" not in store.dump("contracts")[0]["rentalMeta"]

    @pytest.mark.asyncio
    async def test_apply_on_unknown_contract_raises(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.apply_cpi_rent_amount("missing")
