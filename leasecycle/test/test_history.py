# tests/test_history.py - Field history entries on contracts

import pytest

from leasecycle.engines.history import build_history_entry, collapse_entries, replaced_names
from leasecycle.services.contract_repository import ContractRepository
from leasecycle.test.factories import NOW, contract_doc, days_ago, rental_meta_doc


class TestReplacedNames:

    def test_names_are_unique_and_ordered(self):
        entries = [
            build_history_entry("contractEndDate", None, NOW),
            build_history_entry("monthlyRentAmount", 900, 1000),
            build_history_entry("contractEndDate", NOW, None),
        ]

        assert replaced_names(entries) == ["contractEndDate", "monthlyRentAmount"]

    def test_commissions_are_never_replaced(self):
        assert replaced_names([build_history_entry("commissions", 12, 15)]) == []

    def test_collapse_keeps_last_change_per_field(self):
        entries = [
            build_history_entry("contractEndDate", None, days_ago(5)),
            build_history_entry("contractEndDate", days_ago(5), NOW),
        ]

        assert collapse_entries(entries) == [entries[1]]


class TestRecordHistory:
    """ContractRepository.record_history replaces same-name entries in one transaction"""

    @pytest.fixture
    def repository(self, store, clock):
        return ContractRepository(store, clock=clock)

    @pytest.mark.asyncio
    async def test_record_replaces_previous_entry(self, store, repository):
        store.seed("contracts", contract_doc(
            rental=rental_meta_doc(),
            history=[
                {"name": "contractEndDate", "oldValue": None, "newValue": days_ago(10)},
                {"name": "monthlyRentAmount", "oldValue": 900, "newValue": 1000},
            ],
        ))

        updated = await repository.record_history(
            "contract-1", [build_history_entry("contractEndDate", days_ago(10), NOW, new_updated_at=NOW)]
        )

        names = [entry.name for entry in updated.history]
        assert names == ["monthlyRentAmount", "contractEndDate"]
        assert updated.history[-1].new_value == NOW
        assert updated.history[-1].new_updated_at == NOW
        assert updated.updated_at == NOW

    @pytest.mark.asyncio
    async def test_commission_changes_accumulate(self, store, repository):
        store.seed("contracts", contract_doc(
            rental=rental_meta_doc(),
            history=[{"name": "commissions", "oldValue": 10, "newValue": 12}],
        ))

        updated = await repository.record_history("contract-1", [build_history_entry("commissions", 12, 15)])

        assert [entry.new_value for entry in updated.history] == [12, 15]

    @pytest.mark.asyncio
    async def test_empty_entries_return_current_contract(self, store, repository):
        store.seed("contracts", contract_doc(rental=rental_meta_doc()))

        contract = await repository.record_history("contract-1", [])

        assert contract.id == "contract-1"
        assert contract.history == []

    @pytest.mark.asyncio
    async def test_same_field_twice_in_one_call_keeps_last(self, store, repository):
        store.seed("contracts", contract_doc(rental=rental_meta_doc()))

        updated = await repository.record_history("contract-1", [
            build_history_entry("monthlyRentAmount", 1000, 1100),
            build_history_entry("commissions", 10, 12),
            build_history_entry("monthlyRentAmount", 1100, 1200),
            build_history_entry("commissions", 12, 15),
        ])

        assert [(entry.name, entry.new_value) for entry in updated.history] == [
            ("commissions", 12),
            ("monthlyRentAmount", 1200),
            ("commissions", 15),
        ]
