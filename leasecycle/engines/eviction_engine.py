# engines/eviction_engine.py - Eviction case sub-state machine embedded in contracts

from datetime import datetime
from typing import Callable, Optional

import structlog

from leasecycle.core.guards import Guard, Mutation
from leasecycle.core.store import TransactionContext
from leasecycle.engines.transitions import TransitionApplied, TransitionOutcome, TransitionRejected
from leasecycle.metrics.metrics import MetricsCollector, get_metrics
from leasecycle.models.contract import (
    OPEN_EVICTION_STATUSES,
    TERMINAL_EVICTION_STATUSES,
    Contract,
    EvictionCase,
    EvictionCaseStatus,
)
from leasecycle.models.invoice import Invoice
from leasecycle.models.log import LogEntry
from leasecycle.models.queue import QueuePriority, QueueTask
from leasecycle.services.base import InvoiceService, LogService, PartnerSettingService, WorkQueue
from leasecycle.services.contract_repository import ContractRepository
from leasecycle.utils.date_helper import utcnow
from leasecycle.utils.exceptions import NotFoundError, PreconditionFailedError, ValidationFailedError

logger = structlog.get_logger(__name__)


class EvictionCaseEngine:
    """
    Creates, extends, starts, closes and removes the eviction cases embedded in
    a contract. Cases are addressed by the invoice that triggered them and
    every write is guarded on the case's own status, so concurrent invoice
    events cannot open a second case for the same invoice.
    """

    def __init__(
        self,
        repository: ContractRepository,
        invoice_service: InvoiceService,
        partner_settings: PartnerSettingService,
        log_service: LogService,
        work_queue: WorkQueue,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self.invoice_service = invoice_service
        self.partner_settings = partner_settings
        self.log_service = log_service
        self.work_queue = work_queue
        self.clock = clock
        self.metrics = metrics or get_metrics()

    async def _package_enabled(self, partner_id: str, tx: Optional[TransactionContext]) -> bool:
        settings = await self.partner_settings.get_settings(partner_id, tx=tx)
        return bool(settings and settings.eviction_package_enabled)

    def _rejected(self, contract_id: str, operation: str, reason: str, guard: Optional[Guard] = None) -> TransitionRejected:
        self.metrics.record_transition(operation, False)
        logger.info("eviction_write_rejected", contract_id=contract_id, operation=operation, reason=reason)
        return TransitionRejected(
            contract_id=contract_id,
            reason=reason,
            guard=guard.to_filter() if guard else None,
            operation=operation,
        )

    def _applied(self, previous: Contract, updated: Contract, operation: str) -> TransitionApplied:
        self.metrics.record_transition(operation, True)
        logger.info("eviction_write_applied", contract_id=updated.id, operation=operation)
        return TransitionApplied(previous=previous, updated=updated, operation=operation)

    @staticmethod
    def _open_case_guard(invoice_id: str) -> Guard:
        return Guard().nin("status", TERMINAL_EVICTION_STATUSES).any_of(
            Guard().eq("invoiceId", invoice_id),
            Guard().eq("evictionInvoiceIds", invoice_id),
        )

    # =====================================
    # INVOICE DRIVEN
    # =====================================

    async def create_case(self, invoice: Invoice, tx: Optional[TransactionContext] = None) -> Optional[TransitionOutcome]:
        """Open a case for ``invoice`` when the partner uses eviction packages and debt is overdue."""
        if not invoice.contract_id:
            return None
        if not await self._package_enabled(invoice.partner_id, tx):
            logger.info("eviction_package_disabled", partner_id=invoice.partner_id, invoice_id=invoice.id)
            return None

        async with self.repository.transaction(tx) as tx:
            previous = await self.repository.get_or_raise(invoice.contract_id, tx=tx)
            overdue = [
                candidate
                for candidate in await self.invoice_service.find_overdue_invoices(invoice.contract_id, tx=tx)
                if candidate.total_due > 0
            ]
            if not overdue:
                logger.info("no_overdue_invoices_for_eviction", contract_id=invoice.contract_id)
                return None
            if invoice.id not in [candidate.id for candidate in overdue]:
                overdue.append(invoice)

            case = EvictionCase(
                invoice_id=invoice.id,
                status=EvictionCaseStatus.NEW,
                eviction_invoice_ids=[candidate.id for candidate in overdue],
                amount=sum(candidate.invoice_total for candidate in overdue),
                tenant_id=invoice.tenant_id or (previous.rental_meta.tenant_id if previous.rental_meta else None),
                lease_serial=previous.lease_serial,
                created_at=self.clock(),
            )
            guard = Guard.by_id(invoice.contract_id).no_elem_match(
                "evictionCases", self._open_case_guard(invoice.id)
            )
            updated = await self.repository.guarded_update(
                guard, Mutation().push_item("evictionCases", case.to_document()), tx=tx
            )
        if updated is None:
            return self._rejected(invoice.contract_id, "create_eviction_case", f"Invoice {invoice.id} already has an open eviction case", guard)
        return self._applied(previous, updated, "create_eviction_case")

    async def update_case(self, invoice: Invoice, tx: Optional[TransactionContext] = None) -> Optional[TransitionOutcome]:
        """Add ``invoice`` to the contract's open case once its eviction reminder went out."""
        if not (invoice.contract_id and invoice.invoice_total and invoice.eviction_due_reminder_sent):
            return None
        if not await self._package_enabled(invoice.partner_id, tx):
            return None

        async with self.repository.transaction(tx) as tx:
            previous = await self.repository.get_or_raise(invoice.contract_id, tx=tx)
            guard = Guard.by_id(invoice.contract_id).elem_match(
                "evictionCases",
                Guard().nin("status", TERMINAL_EVICTION_STATUSES).nin("evictionInvoiceIds", [invoice.id]),
            )
            mutation = (
                Mutation()
                .push_item("evictionCases.$.evictionInvoiceIds", invoice.id)
                .inc_field("evictionCases.$.amount", invoice.invoice_total)
            )
            updated = await self.repository.guarded_update(guard, mutation, tx=tx)
        if updated is None:
            return self._rejected(invoice.contract_id, "update_eviction_case", f"No open case can take invoice {invoice.id}", guard)
        return self._applied(previous, updated, "update_eviction_case")

    async def create_or_update_case(self, invoice: Invoice, tx: Optional[TransactionContext] = None) -> Optional[TransitionOutcome]:
        if not invoice.contract_id:
            return None
        contract = await self.repository.get_or_raise(invoice.contract_id, tx=tx)
        if contract.open_eviction_case() is None:
            return await self.create_case(invoice, tx=tx)
        return await self.update_case(invoice, tx=tx)

    async def remove_or_update_case(
        self,
        partner_id: str,
        invoice_id: str,
        contract_id: str,
        paid_amount: float,
        ignore_remove: bool = False,
        user_id: str = "SYSTEM",
        tx: Optional[TransactionContext] = None,
    ) -> Optional[TransitionOutcome]:
        """
        React to a payment on an invoice tracked by an eviction case. A case
        with nothing left overdue is removed (``new``) or marked paid
        (``in_progress``); otherwise its amount goes down by ``paid_amount``.
        """
        if not await self._package_enabled(partner_id, tx):
            return None

        async with self.repository.transaction(tx) as tx:
            previous = await self.repository.get(contract_id, tx=tx)
            case = previous.find_eviction_case(invoice_id) if previous else None
            if case is None or case.has_paid:
                return None

            remove = False
            if not ignore_remove:
                still_overdue = {
                    candidate.id
                    for candidate in await self.invoice_service.find_overdue_invoices(contract_id, tx=tx)
                    if not candidate.is_fully_paid
                }
                # the paid invoice itself counts while part of it is still due
                tracked = set(case.eviction_invoice_ids) | {case.invoice_id}
                remove = not (tracked & still_overdue)

            if remove and case.status == EvictionCaseStatus.NEW:
                updated = await self._remove_new_case(previous, case, user_id, tx)
                return self._applied(previous, updated, "remove_eviction_case")

            guard = Guard.by_id(contract_id).elem_match(
                "evictionCases",
                Guard().eq("invoiceId", case.invoice_id).in_("status", OPEN_EVICTION_STATUSES).ne("hasPaid", True),
            )
            mutation = Mutation().inc_field("evictionCases.$.amount", -abs(paid_amount or 0))
            if remove:
                mutation.set_field("evictionCases.$.hasPaid", True)
            updated = await self.repository.guarded_update(guard, mutation, tx=tx)
            if updated is None:
                return self._rejected(contract_id, "update_eviction_case", f"Eviction case {case.invoice_id} changed concurrently", guard)

            if remove and all(c.has_paid for c in updated.eviction_cases if c.is_open):
                await self._notify_tenant_paid_all(updated, tx)
        return self._applied(previous, updated, "update_eviction_case")

    async def _notify_tenant_paid_all(self, contract: Contract, tx: TransactionContext) -> None:
        settings = await self.partner_settings.get_settings(contract.partner_id, tx=tx)
        if not (settings and settings.notify_tenant_pays_all_due_during_eviction):
            return
        await self.work_queue.enqueue(
            QueueTask.notification(
                "send_notification_tenant_pays_all_due_during_eviction",
                partner_id=contract.partner_id,
                collection_id=contract.id,
            ),
            tx=tx,
        )

    # =====================================
    # MANUAL CASE HANDLING
    # =====================================

    def _removal_log(self, contract: Contract, invoice_id: str, user_id: str) -> LogEntry:
        return LogEntry(
            action="removed_eviction_case",
            partner_id=contract.partner_id,
            contract_id=contract.id,
            property_id=contract.property_id,
            account_id=contract.account_id,
            tenant_id=contract.rental_meta.tenant_id if contract.rental_meta else None,
            invoice_id=invoice_id,
            lease_serial=contract.lease_serial,
            created_by=user_id,
            visibility=["property", "account", "tenant"],
        )

    async def _remove_new_case(
        self, contract: Contract, case: EvictionCase, user_id: str, tx: TransactionContext
    ) -> Contract:
        """Snapshot the case into the audit log, then pull it. Both or neither are stored."""
        await self.log_service.create_log(self._removal_log(contract, case.invoice_id, user_id), tx=tx)
        new_case = Guard().eq("invoiceId", case.invoice_id).eq("status", EvictionCaseStatus.NEW.value)
        updated = await self.repository.guarded_update(
            Guard.by_id(contract.id).elem_match("evictionCases", new_case),
            Mutation().pull_where("evictionCases", new_case),
            tx=tx,
        )
        if updated is None:
            raise PreconditionFailedError(
                f"Eviction case {case.invoice_id} is no longer new", contract_id=contract.id
            )
        return updated

    async def remove_case(
        self,
        contract_id: str,
        invoice_id: str,
        user_id: str = "SYSTEM",
        tx: Optional[TransactionContext] = None,
    ) -> TransitionOutcome:
        async with self.repository.transaction(tx) as tx:
            previous = await self.repository.find_one(
                Guard.by_id(contract_id).elem_match(
                    "evictionCases",
                    Guard().eq("invoiceId", invoice_id).eq("status", EvictionCaseStatus.NEW.value),
                ),
                tx=tx,
            )
            if previous is None:
                raise NotFoundError("Eviction case", invoice_id)
            case = next(c for c in previous.eviction_cases if c.invoice_id == invoice_id and c.status == EvictionCaseStatus.NEW)
            updated = await self._remove_new_case(previous, case, user_id, tx)
        return self._applied(previous, updated, "remove_eviction_case")

    async def start_case(
        self,
        contract_id: str,
        invoice_id: str,
        user_id: str,
        eviction_prev_doc: Optional[str] = None,
        tx: Optional[TransactionContext] = None,
    ) -> TransitionOutcome:
        """Move a ``new`` case to ``in_progress`` and request its eviction document."""
        async with self.repository.transaction(tx) as tx:
            previous = await self.repository.find_one(
                Guard.by_id(contract_id).eq("evictionCases.invoiceId", invoice_id), tx=tx
            )
            if previous is None:
                raise NotFoundError("Eviction case", invoice_id)
            case = next(c for c in previous.eviction_cases if c.invoice_id == invoice_id)

            updated = previous
            if case.status == EvictionCaseStatus.NEW:
                guard = Guard.by_id(contract_id).elem_match(
                    "evictionCases",
                    Guard().eq("invoiceId", invoice_id).eq("status", EvictionCaseStatus.NEW.value),
                )
                updated = await self.repository.guarded_update(
                    guard,
                    Mutation().set_field("evictionCases.$.status", EvictionCaseStatus.IN_PROGRESS.value),
                    tx=tx,
                )
                if updated is None:
                    return self._rejected(contract_id, "start_eviction_case", f"Eviction case {invoice_id} is no longer new", guard)
            elif case.status != EvictionCaseStatus.IN_PROGRESS:
                return self._rejected(contract_id, "start_eviction_case", f"Eviction case {invoice_id} is {case.status}")

            params = {
                "contractId": contract_id,
                "partnerId": previous.partner_id,
                "invoiceId": invoice_id,
                "type": "eviction_document",
                "userId": user_id,
            }
            if eviction_prev_doc:
                params["evictionPrevDoc"] = eviction_prev_doc
            await self.work_queue.enqueue(
                QueueTask(
                    event="produce_eviction_document_and_upload_to_s3",
                    action="produce_eviction_document",
                    destination="lease",
                    priority=QueuePriority.IMMEDIATE,
                    params=params,
                ),
                tx=tx,
            )
        return self._applied(previous, updated, "start_eviction_case")

    async def close_case(
        self,
        contract_id: str,
        invoice_id: str,
        status: str,
        user_id: str = "SYSTEM",
        tx: Optional[TransactionContext] = None,
    ) -> TransitionOutcome:
        if status not in TERMINAL_EVICTION_STATUSES:
            raise ValidationFailedError(f"Eviction case cannot be closed as '{status}'", ["status"])

        async with self.repository.transaction(tx) as tx:
            previous = await self.repository.get_or_raise(contract_id, tx=tx)
            guard = Guard.by_id(contract_id).elem_match(
                "evictionCases",
                Guard().eq("invoiceId", invoice_id).eq("status", EvictionCaseStatus.IN_PROGRESS.value),
            )
            updated = await self.repository.guarded_update(
                guard, Mutation().set_field("evictionCases.$.status", status), tx=tx
            )
            if updated is None:
                return self._rejected(contract_id, "close_eviction_case", f"Eviction case {invoice_id} is not in progress", guard)
            await self.log_service.create_log(
                LogEntry(
                    action="updated_eviction_case",
                    partner_id=updated.partner_id,
                    contract_id=contract_id,
                    property_id=updated.property_id,
                    account_id=updated.account_id,
                    tenant_id=updated.rental_meta.tenant_id if updated.rental_meta else None,
                    invoice_id=invoice_id,
                    lease_serial=updated.lease_serial,
                    created_by=user_id,
                    is_change_log=True,
                    changes=[{"field": "evictionCaseStatus", "type": "text", "oldText": "in_progress", "newText": status}],
                ),
                tx=tx,
            )
        return self._applied(previous, updated, "close_eviction_case")

    # =====================================
    # DEFAULTED TAG
    # =====================================

    async def mark_defaulted(self, invoice: Invoice, tx: Optional[TransactionContext] = None) -> Optional[Contract]:
        if not invoice.contract_id:
            return None
        return await self.repository.guarded_update(
            Guard.by_id(invoice.contract_id).ne("isDefaulted", True),
            Mutation().set_field("isDefaulted", True),
            tx=tx,
        )

    async def clear_defaulted(self, invoice: Invoice, tx: Optional[TransactionContext] = None) -> Optional[Contract]:
        """Drop the tag once no other invoice of the contract is still defaulted."""
        if not invoice.contract_id or invoice.is_defaulted:
            return None
        other = await self.invoice_service.find_defaulted_invoice(
            invoice.contract_id, exclude_invoice_id=invoice.id, tx=tx
        )
        if other is not None:
            return None
        return await self.repository.guarded_update(
            Guard.by_id(invoice.contract_id).eq("isDefaulted", True),
            Mutation().set_field("isDefaulted", False),
            tx=tx,
        )

