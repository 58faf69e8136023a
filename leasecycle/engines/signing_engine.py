# engines/signing_engine.py - Signature events for assignments, leases and moving protocols

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from leasecycle.core.guards import Guard, Mutation
from leasecycle.core.store import TransactionContext
from leasecycle.metrics.metrics import MetricsCollector, get_metrics
from leasecycle.models.contract import Contract, ContractStatus
from leasecycle.models.log import LogEntry
from leasecycle.models.property_item import MovingType, PropertyItem
from leasecycle.services.base import LogService
from leasecycle.services.contract_repository import ContractRepository
from leasecycle.services.property_items import PropertyItemRepository
from leasecycle.utils.date_helper import ensure_utc, utcnow
from leasecycle.utils.exceptions import ValidationFailedError

logger = structlog.get_logger(__name__)


class SigningEventKind(str, Enum):
    ASSIGNMENT = "assignment"
    LEASE = "lease"
    MOVING_IN = "moving_in"
    MOVING_OUT = "moving_out"
    DEPOSIT_ACCOUNT = "deposit_account"


class Signer(str, Enum):
    LANDLORD = "landlord"
    AGENT = "agent"
    TENANT = "tenant"


@dataclass(frozen=True)
class SigningEvent:
    """One signature reported by the e-signing vendor, already verified upstream"""
    kind: SigningEventKind
    contract_id: str
    signer: Signer = Signer.TENANT
    tenant_id: Optional[str] = None
    moving_id: Optional[str] = None
    signed_at: Optional[datetime] = None
    user_id: str = "SYSTEM"


@dataclass
class SigningResult:
    kind: SigningEventKind
    applied: bool
    contract: Optional[Contract] = None
    item: Optional[PropertyItem] = None
    completed: bool = False
    reason: Optional[str] = None


def _unsigned() -> Guard:
    return Guard().ne("signed", True)


class SigningEngine:
    """
    Records signatures with guarded writes. A signer that already signed, or a
    document that left its signing state, makes the write match nothing; the
    event is then reported as not applied instead of being recorded twice.
    """

    def __init__(
        self,
        repository: ContractRepository,
        property_items: PropertyItemRepository,
        log_service: LogService,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self.property_items = property_items
        self.log_service = log_service
        self.clock = clock
        self.metrics = metrics or get_metrics()

    def _signed_at(self, event: SigningEvent) -> datetime:
        return ensure_utc(event.signed_at) if event.signed_at else self.clock()

    def _result(self, event: SigningEvent, operation: str, **kwargs) -> SigningResult:
        result = SigningResult(kind=event.kind, **kwargs)
        self.metrics.record_transition(operation, result.applied)
        logger.info(
            "signing_event_recorded" if result.applied else "signing_event_ignored",
            contract_id=event.contract_id,
            kind=event.kind.value,
            signer=event.signer.value,
            completed=result.completed,
        )
        return result

    async def _signed_log(self, contract: Contract, event: SigningEvent, action: str, tx) -> None:
        await self.log_service.create_log(
            LogEntry(
                action=action,
                partner_id=contract.partner_id,
                contract_id=contract.id,
                property_id=contract.property_id,
                account_id=contract.account_id,
                agent_id=contract.agent_id,
                tenant_id=event.tenant_id,
                lease_serial=contract.lease_serial,
                created_by=event.user_id,
                meta=[{"field": "signer", "value": event.signer.value}],
            ),
            tx=tx,
        )

    # =====================================
    # ASSIGNMENT
    # =====================================

    async def sign_assignment(self, event: SigningEvent, tx: Optional[TransactionContext] = None) -> SigningResult:
        if event.signer not in (Signer.LANDLORD, Signer.AGENT):
            raise ValidationFailedError("Assignments are signed by the landlord or the agent", ["signer"])
        status_field = f"{event.signer.value}AssignmentSigningStatus"

        async with self.repository.transaction(tx) as tx:
            guard = (
                Guard.by_id(event.contract_id)
                .eq("status", ContractStatus.IN_PROGRESS.value)
                .exists(status_field)
                .ne(f"{status_field}.signed", True)
            )
            updated = await self.repository.guarded_update(
                guard,
                Mutation().set_fields({
                    f"{status_field}.signed": True,
                    f"{status_field}.signedAt": self._signed_at(event),
                }),
                tx=tx,
            )
            if updated is None:
                return self._result(event, "sign_assignment", applied=False, reason="Signer already signed")
            await self._signed_log(updated, event, "assignment_signed", tx)

        completed = all(
            status is None or status.signed
            for status in (updated.landlord_assignment_signing_status, updated.agent_assignment_signing_status)
        )
        return self._result(event, "sign_assignment", applied=True, contract=updated, completed=completed)

    # =====================================
    # LEASE
    # =====================================

    async def sign_lease(self, event: SigningEvent, tx: Optional[TransactionContext] = None) -> SigningResult:
        """``completed`` is set once every tenant and the landlord have signed."""
        signed_at = self._signed_at(event)
        base = Guard.by_id(event.contract_id).eq("rentalMeta.status", ContractStatus.IN_PROGRESS.value)

        if event.signer == Signer.TENANT:
            if not event.tenant_id:
                raise ValidationFailedError("Tenant signature without tenant", ["tenantId"])
            guard = base.elem_match(
                "rentalMeta.tenantLeaseSigningStatus", _unsigned().eq("tenantId", event.tenant_id)
            )
            mutation = Mutation().set_fields({
                "rentalMeta.tenantLeaseSigningStatus.$.signed": True,
                "rentalMeta.tenantLeaseSigningStatus.$.signedAt": signed_at,
            })
        elif event.signer == Signer.LANDLORD:
            guard = base.exists("rentalMeta.landlordLeaseSigningStatus").ne(
                "rentalMeta.landlordLeaseSigningStatus.signed", True
            )
            mutation = Mutation().set_fields({
                "rentalMeta.landlordLeaseSigningStatus.signed": True,
                "rentalMeta.landlordLeaseSigningStatus.signedAt": signed_at,
            })
        else:
            raise ValidationFailedError("Leases are signed by tenants and the landlord", ["signer"])

        async with self.repository.transaction(tx) as tx:
            updated = await self.repository.guarded_update(guard, mutation, tx=tx)
            if updated is None:
                return self._result(event, "sign_lease", applied=False, reason="Signer already signed")
            completed = updated.rental_meta.all_tenants_signed() and bool(
                updated.rental_meta.landlord_lease_signing_status
                and updated.rental_meta.landlord_lease_signing_status.signed
            )
            if completed:
                updated = await self.repository.guarded_update(
                    Guard.by_id(event.contract_id).absent("rentalMeta.signedAt"),
                    Mutation().set_field("rentalMeta.signedAt", signed_at),
                    tx=tx,
                ) or updated
            await self._signed_log(updated, event, "lease_signed", tx)

        return self._result(event, "sign_lease", applied=True, contract=updated, completed=completed)

    async def mark_deposit_data_sent(
        self, event: SigningEvent, tx: Optional[TransactionContext] = None
    ) -> SigningResult:
        """Deposit account data was handed to the bank for one signed tenant."""
        if not event.tenant_id:
            raise ValidationFailedError("Deposit account event without tenant", ["tenantId"])
        guard = Guard.by_id(event.contract_id).elem_match(
            "rentalMeta.tenantLeaseSigningStatus",
            Guard().eq("tenantId", event.tenant_id).eq("signed", True).ne("isSentDepositDataToBank", True),
        )
        updated = await self.repository.guarded_update(
            guard,
            Mutation().set_field("rentalMeta.tenantLeaseSigningStatus.$.isSentDepositDataToBank", True),
            tx=tx,
        )
        if updated is None:
            return self._result(event, "deposit_account", applied=False, reason="Deposit data already sent")
        completed = all(
            status.is_sent_deposit_data_to_bank for status in updated.rental_meta.tenant_lease_signing_status
        )
        return self._result(event, "deposit_account", applied=True, contract=updated, completed=completed)

    # =====================================
    # MOVING IN / OUT
    # =====================================

    async def sign_moving_protocol(
        self, event: SigningEvent, tx: Optional[TransactionContext] = None
    ) -> SigningResult:
        if not event.moving_id:
            raise ValidationFailedError("Moving signature without moving protocol", ["movingId"])
        moving_type = MovingType.IN if event.kind == SigningEventKind.MOVING_IN else MovingType.OUT
        signed_at = self._signed_at(event)
        guard = (
            Guard.by_id(event.moving_id)
            .eq("contractId", event.contract_id)
            .eq("type", moving_type.value)
            .eq("isEsigningInitiate", True)
        )
        if event.signer == Signer.TENANT:
            if not event.tenant_id:
                raise ValidationFailedError("Tenant signature without tenant", ["tenantId"])
            guard = guard.elem_match("tenantSigningStatus", _unsigned().eq("tenantId", event.tenant_id))
            mutation = Mutation().set_fields({
                "tenantSigningStatus.$.signed": True,
                "tenantSigningStatus.$.signedAt": signed_at,
            })
        else:
            status_field = f"{event.signer.value}SigningStatus"
            guard = guard.exists(status_field).ne(f"{status_field}.signed", True)
            mutation = Mutation().set_fields({f"{status_field}.signed": True, f"{status_field}.signedAt": signed_at})

        item = await self.property_items.guarded_update(guard, mutation, tx=tx)
        if item is None:
            return self._result(event, f"sign_{event.kind.value}", applied=False, reason="Signer already signed")
        completed = item.all_tenants_signed() and all(
            status is None or status.signed for status in (item.agent_signing_status, item.landlord_signing_status)
        )
        return self._result(event, f"sign_{event.kind.value}", applied=True, item=item, completed=completed)
