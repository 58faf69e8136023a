# engines/orchestrator.py - Composition root for contract lifecycle operations

import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from leasecycle.core.guards import Guard, Mutation
from leasecycle.core.store import TransactionContext
from leasecycle.engines.eviction_engine import EvictionCaseEngine
from leasecycle.engines.signing_engine import SigningEngine, SigningEvent, SigningEventKind, SigningResult
from leasecycle.engines.status_engine import StatusTransitionEngine
from leasecycle.engines.transitions import (
    TransitionContext,
    TransitionOutcome,
    raise_for_rejection,
)
from leasecycle.metrics.metrics import MetricsCollector, get_metrics
from leasecycle.models.contract import Addon, Contract, ContractStatus, RentalMeta, SigningStatus
from leasecycle.models.invoice import Invoice
from leasecycle.models.log import LogEntry
from leasecycle.models.partner import PartnerSettings
from leasecycle.models.queue import QueuePriority, QueueTask
from leasecycle.services.base import (
    InvoiceService,
    LogService,
    PartnerSettingService,
    PropertyService,
    TenantService,
    WorkQueue,
)
from leasecycle.services.contract_repository import ContractRepository
from leasecycle.utils.date_helper import ensure_utc, utcnow
from leasecycle.utils.exceptions import DownstreamFailureError, NotFoundError, ValidationFailedError

logger = structlog.get_logger(__name__)

S = ContractStatus
Effect = Tuple[str, Callable[[], Awaitable[Any]]]


class ContractLifecycleOrchestrator:
    """
    Entry point for every inbound contract request.

    Each operation runs its guarded write through an engine, and once that
    write has committed, diffs the previous and updated contract to drive the
    fixed list of side effects: property flags, tenant property status,
    credit notes, welcome lease notice, rent invoice queue and the lease
    status change log. A failing side effect is reported as
    ``DownstreamFailureError``; the committed contract is never rolled back.

    Usage:
        orchestrator = ContractLifecycleOrchestrator(...)
        outcome = await orchestrator.update_contract_status(
            contract_id, rental_status="active", context=TransitionContext(user_id=user_id)
        )
    """

    def __init__(
        self,
        repository: ContractRepository,
        status_engine: StatusTransitionEngine,
        eviction_engine: EvictionCaseEngine,
        signing_engine: SigningEngine,
        invoice_service: InvoiceService,
        property_service: PropertyService,
        tenant_service: TenantService,
        log_service: LogService,
        work_queue: WorkQueue,
        partner_settings: PartnerSettingService,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self.status_engine = status_engine
        self.eviction_engine = eviction_engine
        self.signing_engine = signing_engine
        self.invoice_service = invoice_service
        self.property_service = property_service
        self.tenant_service = tenant_service
        self.log_service = log_service
        self.work_queue = work_queue
        self.partner_settings = partner_settings
        self.clock = clock
        self.metrics = metrics or get_metrics()

    async def _settings(self, partner_id: str) -> PartnerSettings:
        settings = await self.partner_settings.get_settings(partner_id)
        if settings is None:
            raise NotFoundError("Partner settings", partner_id)
        return settings

    async def _finish(
        self, outcome: TransitionOutcome, context: TransitionContext, partner: PartnerSettings, strict: bool
    ) -> TransitionOutcome:
        if not outcome.applied:
            return raise_for_rejection(outcome) if strict else outcome
        await self.after_status_update(outcome.previous, outcome.updated, context, partner)
        if context.queue_id:
            await self.complete_queue_task(context.queue_id)
        return outcome

    # =====================================
    # STATUS ENTRY POINTS
    # =====================================

    async def update_contract_status(
        self,
        contract_id: str,
        status: Optional[str] = None,
        rental_status: Optional[str] = None,
        context: Optional[TransitionContext] = None,
        strict: bool = False,
    ) -> TransitionOutcome:
        context = context or TransitionContext()
        contract = await self.repository.get_or_raise(contract_id)
        partner = await self._settings(contract.partner_id)
        outcome = await self.status_engine.request_transition(contract_id, status, rental_status, context)
        return await self._finish(outcome, context, partner, strict)

    async def create_assignment(
        self, contract: Contract, context: Optional[TransitionContext] = None, strict: bool = False
    ) -> TransitionOutcome:
        """Store a new assignment and move it to ``in_progress`` (e-signing) or ``upcoming``."""
        context = context or TransitionContext()
        if not contract.partner_id or not contract.property_id:
            raise ValidationFailedError("Assignment needs a partner and a property", ["partnerId", "propertyId"])
        partner = await self._settings(contract.partner_id)

        draft = contract.model_copy(update={"status": S.NEW.value, "created_by": context.user_id})
        if draft.enabled_esigning:
            draft.landlord_assignment_signing_status = draft.landlord_assignment_signing_status or SigningStatus()
            if partner.is_broker:
                draft.agent_assignment_signing_status = draft.agent_assignment_signing_status or SigningStatus()
        target = S.IN_PROGRESS if draft.enabled_esigning else S.UPCOMING

        async with self.repository.transaction() as tx:
            await self.repository.insert(draft, tx=tx)
            outcome = await self.status_engine.request_transition(draft.id, target.value, None, context, tx=tx)
        logger.info("assignment_created", contract_id=draft.id, partner_id=draft.partner_id, status=target.value)
        return await self._finish(outcome, context, partner, strict)

    async def terminate_assignment(
        self, contract_id: str, context: Optional[TransitionContext] = None, strict: bool = False
    ) -> TransitionOutcome:
        """Close the assignment; a lease that is still open is closed with it."""
        return await self.update_contract_status(contract_id, status=S.CLOSED.value, context=context, strict=strict)

    async def create_lease(
        self,
        contract_id: str,
        rental_meta: RentalMeta,
        addons: Tuple[Addon, ...] = (),
        context: Optional[TransitionContext] = None,
        strict: bool = False,
    ) -> TransitionOutcome:
        context = context or TransitionContext()
        contract = await self.repository.get_or_raise(contract_id)
        partner = await self._settings(contract.partner_id)
        outcome = await self.status_engine.create_lease(contract_id, rental_meta, addons, context)
        return await self._finish(outcome, context, partner, strict)

    async def cancel_lease(
        self, contract_id: str, context: Optional[TransitionContext] = None, strict: bool = False
    ) -> TransitionOutcome:
        """Close a lease that never became active."""
        context = context or TransitionContext()
        context.rental_sources = frozenset({S.IN_PROGRESS.value, S.UPCOMING.value})
        return await self.update_contract_status(
            contract_id, rental_status=S.CLOSED.value, context=context, strict=strict
        )

    async def terminate_lease(
        self,
        contract_id: str,
        contract_end_date: datetime,
        terminated_by: str,
        reason: Optional[str] = None,
        notice_period: Optional[int] = None,
        context: Optional[TransitionContext] = None,
        strict: bool = False,
    ) -> TransitionOutcome:
        context = context or TransitionContext()
        contract = await self.repository.get_or_raise(contract_id)
        partner = await self._settings(contract.partner_id)
        outcome = await self.status_engine.terminate_lease(
            contract_id, contract_end_date, terminated_by, reason, notice_period, context
        )
        return await self._finish(outcome, context, partner, strict)

    async def cancel_lease_termination(
        self, contract_id: str, context: Optional[TransitionContext] = None, strict: bool = False
    ) -> TransitionOutcome:
        context = context or TransitionContext()
        contract = await self.repository.get_or_raise(contract_id)
        partner = await self._settings(contract.partner_id)
        outcome = await self.status_engine.cancel_lease_termination(contract_id, context)
        return await self._finish(outcome, context, partner, strict)

    # =====================================
    # SIGNING
    # =====================================

    async def apply_signing_event(
        self, event: SigningEvent, context: Optional[TransitionContext] = None
    ) -> SigningResult:
        """Record one signature and advance the contract once its signing is complete."""
        context = context or TransitionContext(user_id=event.user_id)
        match event.kind:
            case SigningEventKind.ASSIGNMENT:
                result = await self.signing_engine.sign_assignment(event)
                if result.completed:
                    await self.update_contract_status(event.contract_id, status=S.ACTIVE.value, context=context)
            case SigningEventKind.LEASE:
                result = await self.signing_engine.sign_lease(event)
                if result.completed:
                    await self._lease_signed(result.contract, context)
            case SigningEventKind.MOVING_IN | SigningEventKind.MOVING_OUT:
                result = await self.signing_engine.sign_moving_protocol(event)
            case SigningEventKind.DEPOSIT_ACCOUNT:
                result = await self.signing_engine.mark_deposit_data_sent(event)
            case _:
                raise ValidationFailedError(f"Unknown signing event '{event.kind}'", ["kind"])
        if context.queue_id and result.applied:
            await self.complete_queue_task(context.queue_id)
        return result

    async def _lease_signed(self, contract: Contract, context: TransitionContext) -> None:
        rental_meta = contract.rental_meta
        target = S.ACTIVE if ensure_utc(rental_meta.contract_start_date) <= self.clock() else S.UPCOMING
        outcome = await self.update_contract_status(contract.id, rental_status=target.value, context=context)
        if outcome.applied and rental_meta.deposit_type == "deposit_account":
            await self._run_effect("deposit_account_queue", contract.id, lambda: self.work_queue.enqueue(
                QueueTask(
                    event="handle_deposit_account_process",
                    action="init_deposit_account_process",
                    destination="lease",
                    priority=QueuePriority.IMMEDIATE,
                    params={"contractId": contract.id, "partnerId": contract.partner_id},
                    dedupe_key=f"init_deposit_account_process:{contract.id}",
                )
            ))

    # =====================================
    # QUEUE & INVOICE EVENTS
    # =====================================

    async def complete_queue_task(self, queue_id: str, tx: Optional[TransactionContext] = None) -> bool:
        return await self.work_queue.mark_completed(queue_id, tx=tx)

    async def on_invoice_defaulted(self, invoice: Invoice) -> Optional[TransitionOutcome]:
        """Tag the contract as defaulted and open or extend its eviction case."""
        async with self.repository.transaction() as tx:
            await self.eviction_engine.mark_defaulted(invoice, tx=tx)
            return await self.eviction_engine.create_or_update_case(invoice, tx=tx)

    async def on_invoice_payment_applied(
        self, invoice: Invoice, paid_amount: float, ignore_remove: bool = False, user_id: str = "SYSTEM"
    ) -> Optional[TransitionOutcome]:
        if not invoice.contract_id:
            return None
        async with self.repository.transaction() as tx:
            await self.eviction_engine.clear_defaulted(invoice, tx=tx)
            return await self.eviction_engine.remove_or_update_case(
                invoice.partner_id, invoice.id, invoice.contract_id, paid_amount, ignore_remove, user_id, tx=tx
            )

    async def on_eviction_reminder_sent(self, invoice: Invoice) -> Optional[TransitionOutcome]:
        return await self.eviction_engine.create_or_update_case(invoice)

    # =====================================
    # DAILY LEASE MAINTENANCE
    # =====================================

    async def activate_upcoming_leases(self, skip: int = 0, limit: int = 100) -> List[TransitionOutcome]:
        now = self.clock()
        contracts = await self.repository.find(
            Guard().eq("rentalMeta.status", S.UPCOMING.value).lte("rentalMeta.contractStartDate", now),
            skip=skip,
            limit=limit,
        )
        return [
            await self.update_contract_status(contract.id, rental_status=S.ACTIVE.value)
            for contract in contracts
        ]

    async def close_terminated_leases(self, skip: int = 0, limit: int = 100) -> List[TransitionOutcome]:
        """Close active leases whose end date has passed."""
        now = self.clock()
        contracts = await self.repository.find(
            Guard().eq("rentalMeta.status", S.ACTIVE.value).lt("rentalMeta.contractEndDate", now),
            skip=skip,
            limit=limit,
        )
        return [
            await self.update_contract_status(contract.id, rental_status=S.CLOSED.value)
            for contract in contracts
        ]

    # =====================================
    # AFTER-HOOKS
    # =====================================

    async def _run_effect(self, effect: str, contract_id: str, call: Callable[[], Awaitable[Any]]) -> None:
        started = time.perf_counter()
        try:
            await call()
            logger.info("side_effect_completed", effect=effect, contract_id=contract_id)
        except Exception as e:
            self.metrics.record_side_effect_failure(effect)
            logger.error("side_effect_failed", effect=effect, contract_id=contract_id, error=str(e), exc_info=True)
            raise DownstreamFailureError(effect, contract_id) from e
        finally:
            self.metrics.record_side_effect_duration(effect, time.perf_counter() - started)

    async def after_status_update(
        self,
        previous: Contract,
        updated: Contract,
        context: TransitionContext,
        partner: Optional[PartnerSettings] = None,
    ) -> List[str]:
        """
        Run every side effect the transition calls for. All effects are
        attempted; the first failure is raised once the rest have run.
        """
        partner = partner or await self._settings(updated.partner_id)
        effects = await self.plan_side_effects(previous, updated, context, partner)
        completed: List[str] = []
        failure: Optional[DownstreamFailureError] = None
        for effect, call in effects:
            try:
                await self._run_effect(effect, updated.id, call)
                completed.append(effect)
            except DownstreamFailureError as e:
                failure = failure or e
        if failure is not None:
            raise failure
        return completed

    async def plan_side_effects(
        self, previous: Contract, updated: Contract, context: TransitionContext, partner: PartnerSettings
    ) -> List[Effect]:
        effects: List[Effect] = []
        prev_rental = previous.rental_status
        rental = updated.rental_status
        rental_changed = rental is not None and rental != prev_rental

        flags, unset = await self.property_flag_changes(previous, updated)
        if flags or unset:
            effects.append(("property_flags", lambda: self.property_service.update_flags(
                updated.property_id, updated.partner_id, flags, unset
            )))

        if rental_changed:
            for tenant_id in updated.tenant_ids():
                effects.append((f"tenant_status:{tenant_id}", lambda tenant_id=tenant_id: (
                    self.tenant_service.update_property_status(
                        tenant_id, updated.partner_id, updated.property_id, updated.id, rental
                    )
                )))

        if self.needs_credit_notes(previous, updated, partner):
            effects.append(("credit_notes", lambda: self.invoice_service.create_credit_note_invoices(
                updated.id,
                updated.partner_id,
                updated.rental_meta.contract_end_date,
                enabled_notification=updated.rental_meta.enabled_notification,
                user_id=context.user_id,
            )))

        if rental_changed and rental in (S.ACTIVE, S.UPCOMING):
            if self.needs_welcome_lease(previous, updated, partner):
                effects.append(("welcome_lease", lambda: self._queue_welcome_lease(updated)))
            effects.append(("rent_invoice_queue", lambda: self._queue_rent_invoices(updated, context)))

        if rental_changed and previous.rental_meta is not None:
            effects.append(("lease_status_log", lambda: self.log_service.create_log(LogEntry(
                action="updated_lease",
                partner_id=updated.partner_id,
                contract_id=updated.id,
                property_id=updated.property_id,
                account_id=updated.account_id,
                tenant_id=updated.rental_meta.tenant_id,
                lease_serial=updated.lease_serial,
                created_by=context.user_id,
                is_change_log=True,
                changes=[{"field": "status", "type": "text", "oldText": prev_rental, "newText": rental}],
                visibility=["property", "account", "tenant"],
            ))))
        return effects

    # -------------------------------------
    # Checklist items
    # -------------------------------------

    async def _sibling_exists(self, contract: Contract, field_name: str, status: ContractStatus) -> bool:
        return await self.repository.exists(
            Guard()
            .eq("partnerId", contract.partner_id)
            .eq("propertyId", contract.property_id)
            .ne("_id", contract.id)
            .eq(field_name, status.value)
        )

    async def property_flag_changes(self, previous: Contract, updated: Contract) -> Tuple[Dict[str, Any], List[str]]:
        flags: Dict[str, Any] = {}
        unset: List[str] = []
        prev_rental, rental = previous.rental_status, updated.rental_status
        rental_meta = updated.rental_meta

        if updated.status in (S.UPCOMING, S.ACTIVE) and previous.status != updated.status:
            flags["hasAssignment"] = True

        if rental == S.ACTIVE and prev_rental != S.ACTIVE:
            flags.update({"hasActiveLease": True, "hasUpcomingLease": False, "hasInProgressLease": False})
            flags["leaseStartDate"] = rental_meta.contract_start_date
            if rental_meta.contract_end_date:
                flags["leaseEndDate"] = rental_meta.contract_end_date
        elif rental == S.UPCOMING and prev_rental != S.UPCOMING:
            flags["hasUpcomingLease"] = True
            flags["leaseStartDate"] = rental_meta.contract_start_date
            if prev_rental == S.IN_PROGRESS:
                flags["hasInProgressLease"] = False
        elif rental == S.IN_PROGRESS and prev_rental != S.IN_PROGRESS:
            flags.update({"hasUpcomingLease": False, "hasInProgressLease": True})
        elif rental == S.CLOSED and prev_rental != S.CLOSED:
            unset.extend(["leaseStartDate", "leaseEndDate"])
            if prev_rental in (S.UPCOMING, S.IN_PROGRESS):
                flags["hasInProgressLease"] = False
            if not await self._sibling_exists(updated, "rentalMeta.status", S.UPCOMING):
                flags["hasUpcomingLease"] = False
            if not await self._sibling_exists(updated, "rentalMeta.status", S.ACTIVE):
                flags["hasActiveLease"] = False
        elif rental == S.ACTIVE and rental_meta.contract_end_date != previous.rental_meta.contract_end_date:
            if rental_meta.contract_end_date:
                flags["leaseEndDate"] = rental_meta.contract_end_date
            else:
                unset.append("leaseEndDate")

        if updated.status == S.CLOSED and previous.status != S.CLOSED:
            if not (
                await self._sibling_exists(updated, "status", S.ACTIVE)
                or await self._sibling_exists(updated, "status", S.UPCOMING)
            ):
                flags["hasAssignment"] = False
        return flags, unset

    @staticmethod
    def needs_credit_notes(previous: Contract, updated: Contract, partner: PartnerSettings) -> bool:
        """Credit invoiced periods after the end date once a lease closes."""
        if updated.rental_meta is None or not updated.has_rental_contract:
            return False
        closed_now = (
            (updated.status == S.CLOSED and previous.status != S.CLOSED)
            or (updated.rental_status == S.CLOSED and previous.rental_status != S.CLOSED)
        )
        if not closed_now:
            return False
        if partner.credit_whole_invoice:
            return True
        end_date = updated.rental_meta.contract_end_date
        invoiced_as_on = updated.rental_meta.invoiced_as_on
        return bool(end_date and invoiced_as_on and ensure_utc(end_date) < ensure_utc(invoiced_as_on))

    @staticmethod
    def needs_welcome_lease(previous: Contract, updated: Contract, partner: PartnerSettings) -> bool:
        rental_meta = updated.rental_meta
        if updated.rental_status == S.ACTIVE and previous.rental_status == S.UPCOMING:
            return False
        return bool(
            partner.sent_welcome_lease
            and rental_meta.enabled_notification
            and not rental_meta.lease_welcome_email_sent_at
            and not rental_meta.lease_welcome_email_sent_in_progress
        )

    async def _queue_welcome_lease(self, contract: Contract) -> None:
        async with self.repository.transaction() as tx:
            flagged = await self.repository.guarded_update(
                Guard.by_id(contract.id)
                .absent("rentalMeta.leaseWelcomeEmailSentAt")
                .ne("rentalMeta.leaseWelcomeEmailSentInProgress", True),
                Mutation().set_field("rentalMeta.leaseWelcomeEmailSentInProgress", True),
                tx=tx,
            )
            if flagged is None:
                logger.info("welcome_lease_already_queued", contract_id=contract.id)
                return
            await self.work_queue.enqueue(
                QueueTask.notification(
                    "send_welcome_lease", contract.partner_id, contract.id, priority=QueuePriority.IMMEDIATE
                ),
                tx=tx,
            )

    async def _queue_rent_invoices(self, contract: Contract, context: TransitionContext) -> None:
        now = self.clock()
        await self.work_queue.enqueue(
            QueueTask(
                event="create_rent_invoice",
                action="create_rent_invoice",
                destination="invoice",
                priority=QueuePriority.IMMEDIATE,
                params={
                    "contractId": contract.id,
                    "partnerId": contract.partner_id,
                    "enabledNotification": contract.rental_meta.enabled_notification,
                    "today": now,
                    "userId": context.user_id,
                },
                dedupe_key=f"create_rent_invoice:{contract.id}:{contract.rental_status}",
            )
        )
