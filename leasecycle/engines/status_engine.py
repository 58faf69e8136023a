# engines/status_engine.py - Guarded status transitions for assignments and leases

from datetime import datetime
from typing import Callable, List, Optional, Sequence

import structlog

from leasecycle.core.guards import Guard, Mutation
from leasecycle.core.store import TransactionContext
from leasecycle.engines.history import build_history_entry
from leasecycle.engines.transitions import (
    ASSIGNMENT_TRANSITIONS,
    RENTAL_TRANSITIONS,
    TransitionApplied,
    TransitionContext,
    TransitionOutcome,
    TransitionRejected,
    allowed_sources,
)
from leasecycle.metrics.metrics import MetricsCollector, get_metrics
from leasecycle.models.contract import (
    Addon,
    AddonType,
    Contract,
    ContractStatus,
    HistoryEntry,
    RentalMeta,
    SigningStatus,
    TenantRef,
)
from leasecycle.services.base import CounterService
from leasecycle.services.contract_repository import ContractRepository
from leasecycle.utils.date_helper import ensure_utc, utcnow
from leasecycle.utils.exceptions import InvalidTransitionError, ValidationFailedError

logger = structlog.get_logger(__name__)

S = ContractStatus


class StatusTransitionEngine:
    """
    Moves the assignment and lease sides of a contract through their status
    tables. Every change is a single guarded write whose guard states the
    allowed source statuses; a write that matches nothing is reported as a
    ``TransitionRejected`` value. Serial numbers are allocated in the same
    transaction as the write that first needs them.
    """

    def __init__(
        self,
        repository: ContractRepository,
        counter_service: CounterService,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self.counter_service = counter_service
        self.clock = clock
        self.metrics = metrics or get_metrics()

    # =====================================
    # STATUS TRANSITIONS
    # =====================================

    @staticmethod
    def validate_targets(target_status: Optional[str], target_rental_status: Optional[str]) -> None:
        if not target_status and not target_rental_status:
            raise ValidationFailedError("A target status is required", ["status", "rentalMeta.status"])
        if target_status and not allowed_sources(ASSIGNMENT_TRANSITIONS, target_status):
            raise InvalidTransitionError(f"Assignment cannot move to '{target_status}'", ["status"])
        if target_rental_status and not allowed_sources(RENTAL_TRANSITIONS, target_rental_status):
            raise InvalidTransitionError(f"Lease cannot move to '{target_rental_status}'", ["rentalMeta.status"])

    def build_guard(
        self,
        previous: Contract,
        target_status: Optional[str],
        target_rental_status: Optional[str],
        context: Optional[TransitionContext] = None,
    ) -> Guard:
        guard = Guard.by_id(previous.id)
        if target_status:
            guard = guard.in_("status", sorted(allowed_sources(ASSIGNMENT_TRANSITIONS, target_status)))
            if target_status == S.CLOSED and not target_rental_status:
                # the lease must be in the state we are about to close it from
                if previous.rental_meta is None:
                    guard = guard.absent("rentalMeta")
                elif previous.rental_status != S.CLOSED:
                    guard = guard.ne("rentalMeta.status", S.CLOSED.value)
        if target_rental_status:
            sources = allowed_sources(RENTAL_TRANSITIONS, target_rental_status)
            if context and context.rental_sources is not None:
                sources = sources & frozenset(context.rental_sources)
            guard = guard.in_("rentalMeta.status", sorted(sources))
            if target_rental_status == S.ACTIVE:
                guard = guard.ne("status", S.CLOSED.value)
        return guard

    def build_mutation(
        self,
        previous: Contract,
        target_status: Optional[str],
        target_rental_status: Optional[str],
        context: TransitionContext,
    ) -> Mutation:
        mutation = Mutation()
        if target_status:
            mutation.set_field("status", ContractStatus(target_status).value)
            if (
                target_status == S.CLOSED
                and not target_rental_status
                and previous.rental_meta is not None
                and previous.rental_status != S.CLOSED
            ):
                mutation.set_field("rentalMeta.status", S.CLOSED.value)
        if target_rental_status:
            mutation.set_field("rentalMeta.status", ContractStatus(target_rental_status).value)
        if context.extra:
            mutation.set_fields(context.extra)
        return mutation

    async def request_transition(
        self,
        contract_id: str,
        target_status: Optional[str] = None,
        target_rental_status: Optional[str] = None,
        context: Optional[TransitionContext] = None,
        tx: Optional[TransactionContext] = None,
    ) -> TransitionOutcome:
        self.validate_targets(target_status, target_rental_status)
        context = context or TransitionContext()
        log = logger.bind(
            contract_id=contract_id, target_status=target_status, target_rental_status=target_rental_status
        )

        async with self.repository.transaction(tx) as tx:
            previous = await self.repository.get_or_raise(contract_id, tx=tx)
            if target_rental_status and previous.rental_meta is None:
                raise ValidationFailedError("Contract has no lease to transition", ["rentalMeta"])

            guard = self.build_guard(previous, target_status, target_rental_status, context)
            mutation = self.build_mutation(previous, target_status, target_rental_status, context)
            updated = await self.repository.guarded_update(guard, mutation, tx=tx)
            if updated is None:
                self.metrics.record_transition("status", False)
                log.info("transition_rejected", status=previous.status, rental_status=previous.rental_status)
                return TransitionRejected(
                    contract_id=contract_id,
                    reason=(
                        f"Contract {contract_id} cannot move from "
                        f"{previous.status}/{previous.rental_status} to {target_status}/{target_rental_status}"
                    ),
                    guard=guard.to_filter(),
                )
            updated = await self.allocate_serials(updated, tx)

        self.metrics.record_transition("status", True)
        log.info("transition_applied", previous_status=previous.status, status=updated.status)
        return TransitionApplied(previous=previous, updated=updated)

    # =====================================
    # SERIALS
    # =====================================

    @staticmethod
    def needs_lease_serial(contract: Contract) -> bool:
        if contract.lease_serial or not contract.has_rental_contract:
            return False
        return contract.rental_status in (S.ACTIVE, S.UPCOMING)

    @staticmethod
    def needs_assignment_serial(contract: Contract) -> bool:
        return not contract.assignment_serial and contract.status in (S.UPCOMING, S.ACTIVE)

    async def allocate_serials(self, contract: Contract, tx: TransactionContext) -> Contract:
        """Assign missing lease/assignment serials; must run inside the status write's transaction."""
        if self.needs_lease_serial(contract):
            contract = await self._allocate(contract, "leaseSerial", f"lease-{contract.property_id}", tx)
        if self.needs_assignment_serial(contract):
            contract = await self._allocate(contract, "assignmentSerial", f"assignment-{contract.property_id}", tx)
        return contract

    async def _allocate(self, contract: Contract, field_name: str, counter_key: str, tx: TransactionContext) -> Contract:
        serial = await self.counter_service.increment_counter(counter_key, tx=tx)
        written = await self.repository.guarded_update(
            Guard.by_id(contract.id).absent(field_name),
            Mutation().set_field(field_name, serial),
            tx=tx,
        )
        if written is None:
            logger.warning("serial_already_assigned", contract_id=contract.id, field=field_name)
            return contract
        logger.info("serial_allocated", contract_id=contract.id, field=field_name, serial=serial)
        return written

    # =====================================
    # LEASE OPERATIONS
    # =====================================

    def initial_rental_status(self, rental_meta: RentalMeta) -> str:
        if rental_meta.enabled_lease_esigning:
            return S.IN_PROGRESS.value
        if ensure_utc(rental_meta.contract_start_date) <= self.clock():
            return S.ACTIVE.value
        return S.UPCOMING.value

    @staticmethod
    def validate_lease(rental_meta: RentalMeta) -> None:
        missing: List[str] = []
        if not rental_meta.tenant_id:
            missing.append("rentalMeta.tenantId")
        if rental_meta.contract_start_date is None:
            missing.append("rentalMeta.contractStartDate")
        if not rental_meta.monthly_rent_amount or rental_meta.monthly_rent_amount <= 0:
            missing.append("rentalMeta.monthlyRentAmount")
        if rental_meta.cpi_enabled and rental_meta.next_cpi_date is None:
            missing.append("rentalMeta.nextCpiDate")
        if (
            rental_meta.contract_end_date is not None
            and rental_meta.contract_start_date is not None
            and ensure_utc(rental_meta.contract_end_date) < ensure_utc(rental_meta.contract_start_date)
        ):
            missing.append("rentalMeta.contractEndDate")
        if missing:
            raise ValidationFailedError("Lease data is incomplete or invalid", missing)

    async def create_lease(
        self,
        contract_id: str,
        rental_meta: RentalMeta,
        addons: Sequence[Addon] = (),
        context: Optional[TransitionContext] = None,
        tx: Optional[TransactionContext] = None,
    ) -> TransitionOutcome:
        """
        Attach a lease to an existing assignment. Only a contract without a
        lease, or whose lease is still ``new``, accepts it; the assignment
        status is left as it is.
        """
        self.validate_lease(rental_meta)
        context = context or TransitionContext()
        status = self.initial_rental_status(rental_meta)

        lease = rental_meta.model_copy(update={"status": status})
        if lease.tenant_id and not lease.tenants:
            lease.tenants = [TenantRef(tenant_id=lease.tenant_id)]
        if lease.enabled_lease_esigning:
            lease.landlord_lease_signing_status = lease.landlord_lease_signing_status or SigningStatus()
            if not lease.tenant_lease_signing_status:
                lease.tenant_lease_signing_status = [
                    SigningStatus(tenant_id=tenant_id) for tenant_id in lease.tenant_ids()
                ]

        async with self.repository.transaction(tx) as tx:
            previous = await self.repository.get_or_raise(contract_id, tx=tx)
            guard = (
                Guard.by_id(contract_id)
                .ne("status", S.CLOSED.value)
                .any_of(Guard().absent("rentalMeta"), Guard().eq("rentalMeta.status", S.NEW.value))
            )
            mutation = Mutation().set_fields({"hasRentalContract": True, "rentalMeta": lease.to_document()})
            lease_addons = [addon.to_document() for addon in addons if addon.type == AddonType.LEASE]
            if lease_addons:
                mutation.push_items("addons", lease_addons)

            updated = await self.repository.guarded_update(guard, mutation, tx=tx)
            if updated is None:
                self.metrics.record_transition("create_lease", False)
                logger.info("lease_create_rejected", contract_id=contract_id, rental_status=previous.rental_status)
                return TransitionRejected(
                    contract_id=contract_id,
                    reason=f"Contract {contract_id} already has a lease in progress",
                    guard=guard.to_filter(),
                    operation="create_lease",
                )
            if self.needs_lease_serial(updated):
                updated = await self._allocate(updated, "leaseSerial", f"lease-{updated.property_id}", tx)

        self.metrics.record_transition("create_lease", True)
        logger.info("lease_created", contract_id=contract_id, rental_status=status, user_id=context.user_id)
        return TransitionApplied(previous=previous, updated=updated, operation="create_lease")

    async def apply_history(
        self, contract_id: str, entries: Sequence[HistoryEntry], tx: Optional[TransactionContext] = None
    ) -> Optional[Contract]:
        """Record field changes; only ``commissions`` keeps more than one entry per name."""
        return await self.repository.record_history(contract_id, entries, tx=tx)

    async def terminate_lease(
        self,
        contract_id: str,
        contract_end_date: datetime,
        terminated_by: str,
        reason: Optional[str] = None,
        notice_period: Optional[int] = None,
        context: Optional[TransitionContext] = None,
        tx: Optional[TransactionContext] = None,
    ) -> TransitionOutcome:
        """
        Record a termination on an active lease. An end date that has already
        passed closes the lease in the same write.
        """
        if contract_end_date is None or not terminated_by:
            raise ValidationFailedError(
                "Termination needs an end date and who terminated", ["contractEndDate", "terminatedBy"]
            )
        context = context or TransitionContext()
        contract_end_date = ensure_utc(contract_end_date)
        now = self.clock()

        async with self.repository.transaction(tx) as tx:
            previous = await self.repository.get_or_raise(contract_id, tx=tx)
            guard = (
                Guard.by_id(contract_id)
                .eq("rentalMeta.status", S.ACTIVE.value)
                .absent("rentalMeta.terminatedBy")
            )
            sets = {
                "rentalMeta.contractEndDate": contract_end_date,
                "rentalMeta.terminatedBy": terminated_by,
            }
            if reason:
                sets["rentalMeta.terminationReason"] = reason
            if notice_period is not None:
                sets["rentalMeta.noticePeriod"] = notice_period
            if contract_end_date <= now:
                sets["rentalMeta.status"] = S.CLOSED.value

            updated = await self.repository.guarded_update(guard, Mutation().set_fields(sets), tx=tx)
            if updated is None:
                self.metrics.record_transition("terminate_lease", False)
                logger.info("lease_termination_rejected", contract_id=contract_id, rental_status=previous.rental_status)
                return TransitionRejected(
                    contract_id=contract_id,
                    reason=f"Lease of contract {contract_id} is not active or already terminated",
                    guard=guard.to_filter(),
                    operation="terminate_lease",
                )
            old_end_date = previous.rental_meta.contract_end_date if previous.rental_meta else None
            updated = await self.apply_history(
                contract_id,
                [build_history_entry(
                    "contractEndDate",
                    old_end_date,
                    contract_end_date,
                    old_updated_at=previous.updated_at,
                    new_updated_at=now,
                )],
                tx=tx,
            )

        self.metrics.record_transition("terminate_lease", True)
        logger.info("lease_terminated", contract_id=contract_id, terminated_by=terminated_by, user_id=context.user_id)
        return TransitionApplied(previous=previous, updated=updated, operation="terminate_lease")

    async def cancel_lease_termination(
        self,
        contract_id: str,
        context: Optional[TransitionContext] = None,
        tx: Optional[TransactionContext] = None,
    ) -> TransitionOutcome:
        """Undo a pending termination, restoring the end date the lease had before it."""
        context = context or TransitionContext()
        now = self.clock()

        async with self.repository.transaction(tx) as tx:
            previous = await self.repository.get_or_raise(contract_id, tx=tx)
            guard = (
                Guard.by_id(contract_id)
                .eq("rentalMeta.status", S.ACTIVE.value)
                .exists("rentalMeta.terminatedBy")
            )
            recorded = next((entry for entry in previous.history if entry.name == "contractEndDate"), None)
            restored_end_date = recorded.old_value if recorded else None

            mutation = Mutation().unset_field(
                "rentalMeta.terminatedBy",
                "rentalMeta.terminationReason",
                "rentalMeta.soonTerminatedNoticeSendDate",
            )
            if restored_end_date:
                mutation.set_field("rentalMeta.contractEndDate", restored_end_date)
            else:
                mutation.unset_field("rentalMeta.contractEndDate")

            updated = await self.repository.guarded_update(guard, mutation, tx=tx)
            if updated is None:
                self.metrics.record_transition("cancel_lease_termination", False)
                logger.info("termination_cancel_rejected", contract_id=contract_id)
                return TransitionRejected(
                    contract_id=contract_id,
                    reason=f"Lease of contract {contract_id} has no pending termination",
                    guard=guard.to_filter(),
                    operation="cancel_lease_termination",
                )
            current_end_date = previous.rental_meta.contract_end_date if previous.rental_meta else None
            updated = await self.apply_history(
                contract_id,
                [build_history_entry(
                    "contractEndDate",
                    current_end_date,
                    restored_end_date,
                    old_updated_at=previous.updated_at,
                    new_updated_at=now,
                )],
                tx=tx,
            )

        self.metrics.record_transition("cancel_lease_termination", True)
        logger.info("lease_termination_canceled", contract_id=contract_id, user_id=context.user_id)
        return TransitionApplied(previous=previous, updated=updated, operation="cancel_lease_termination")
