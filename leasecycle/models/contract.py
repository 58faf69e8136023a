from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# ============================================
# Enums
# ============================================

class ContractStatus(str, Enum):
    """Status shared by the assignment side and the lease side of a contract"""
    NEW = "new"
    UPCOMING = "upcoming"
    IN_PROGRESS = "in_progress"
    ACTIVE = "active"
    CLOSED = "closed"


class EvictionCaseStatus(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELED = "canceled"


OPEN_EVICTION_STATUSES = (EvictionCaseStatus.NEW.value, EvictionCaseStatus.IN_PROGRESS.value)
TERMINAL_EVICTION_STATUSES = (EvictionCaseStatus.COMPLETED.value, EvictionCaseStatus.CANCELED.value)


class AddonType(str, Enum):
    ASSIGNMENT = "assignment"
    LEASE = "lease"


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, extra="allow")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ============================================
# Embedded documents
# ============================================

class SigningStatus(_Document):
    """Signing state of one signer (landlord, agent or a single tenant)"""
    signed: bool = False
    signed_at: Optional[datetime] = Field(None, alias="signedAt")
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    is_sent_deposit_data_to_bank: Optional[bool] = Field(None, alias="isSentDepositDataToBank")


class TenantRef(_Document):
    tenant_id: str = Field(alias="tenantId")


class HistoryEntry(_Document):
    name: str
    old_value: Any = Field(None, alias="oldValue")
    old_updated_at: Optional[datetime] = Field(None, alias="oldUpdatedAt")
    new_value: Any = Field(None, alias="newValue")
    new_updated_at: Optional[datetime] = Field(None, alias="newUpdatedAt")


class Addon(_Document):
    addon_id: str = Field(alias="addonId")
    type: AddonType
    total: float = 0
    description: Optional[str] = None


class EvictionCase(_Document):
    invoice_id: str = Field(alias="invoiceId")
    status: EvictionCaseStatus = EvictionCaseStatus.NEW
    eviction_invoice_ids: List[str] = Field(default_factory=list, alias="evictionInvoiceIds")
    amount: float = 0
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    lease_serial: Optional[int] = Field(None, alias="leaseSerial")
    has_paid: Optional[bool] = Field(None, alias="hasPaid")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_EVICTION_STATUSES


class RentalMeta(_Document):
    status: ContractStatus = ContractStatus.NEW
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    tenants: List[TenantRef] = Field(default_factory=list)
    enabled_jointly_liable: Optional[bool] = Field(None, alias="enabledJointlyLiable")
    enabled_lease_esigning: bool = Field(False, alias="enabledLeaseEsigning")
    landlord_lease_signing_status: Optional[SigningStatus] = Field(None, alias="landlordLeaseSigningStatus")
    tenant_lease_signing_status: List[SigningStatus] = Field(default_factory=list, alias="tenantLeaseSigningStatus")
    contract_start_date: Optional[datetime] = Field(None, alias="contractStartDate")
    contract_end_date: Optional[datetime] = Field(None, alias="contractEndDate")
    signed_at: Optional[datetime] = Field(None, alias="signedAt")
    monthly_rent_amount: Optional[float] = Field(None, alias="monthlyRentAmount")
    deposit_amount: Optional[float] = Field(None, alias="depositAmount")
    deposit_type: Optional[str] = Field(None, alias="depositType")
    enabled_notification: bool = Field(False, alias="enabledNotification")
    invoiced_as_on: Optional[datetime] = Field(None, alias="invoicedAsOn")

    # CPI
    cpi_enabled: bool = Field(False, alias="cpiEnabled")
    next_cpi_date: Optional[datetime] = Field(None, alias="nextCpiDate")
    last_cpi_date: Optional[datetime] = Field(None, alias="lastCpiDate")
    last_cpi_notification_sent_on: Optional[datetime] = Field(None, alias="lastCPINotificationSentOn")
    future_rent_amount: Optional[float] = Field(None, alias="futureRentAmount")
    cpi_notification_sent_history: List[datetime] = Field(default_factory=list, alias="cpiNotificationSentHistory")
    cpi_from_month: Optional[datetime] = Field(None, alias="cpiFromMonth")
    cpi_in_month: Optional[datetime] = Field(None, alias="cpiInMonth")

    # Termination
    terminated_by: Optional[str] = Field(None, alias="terminatedBy")
    termination_reason: Optional[str] = Field(None, alias="terminationReason")
    notice_period: Optional[int] = Field(None, alias="noticePeriod")
    natural_terminated_notice_send_date: Optional[datetime] = Field(None, alias="naturalTerminatedNoticeSendDate")
    soon_terminated_notice_send_date: Optional[datetime] = Field(None, alias="soonTerminatedNoticeSendDate")

    # Reminder stamps
    esign_reminder_to_tenant_sent_at: Optional[datetime] = Field(None, alias="eSignReminderToTenantForLeaseSendAt")
    esign_reminder_to_landlord_sent_at: Optional[datetime] = Field(None, alias="eSignReminderToLandlordForLeaseSendAt")

    # Welcome lease email
    lease_welcome_email_sent_at: Optional[datetime] = Field(None, alias="leaseWelcomeEmailSentAt")
    lease_welcome_email_sent_in_progress: Optional[bool] = Field(None, alias="leaseWelcomeEmailSentInProgress")

    def tenant_ids(self) -> List[str]:
        ids = [self.tenant_id] if self.tenant_id else []
        for tenant in self.tenants:
            if tenant.tenant_id not in ids:
                ids.append(tenant.tenant_id)
        return ids

    def all_tenants_signed(self) -> bool:
        return bool(self.tenant_lease_signing_status) and all(
            s.signed for s in self.tenant_lease_signing_status
        )


# ============================================
# Contract
# ============================================

class Contract(_Document):
    """One evolving record for the assignment and the lease layered on it"""

    id: str = Field(alias="_id")
    partner_id: str = Field(alias="partnerId")
    property_id: str = Field(alias="propertyId")
    account_id: Optional[str] = Field(None, alias="accountId")
    agent_id: Optional[str] = Field(None, alias="agentId")
    branch_id: Optional[str] = Field(None, alias="branchId")
    status: ContractStatus = ContractStatus.NEW
    rental_meta: Optional[RentalMeta] = Field(None, alias="rentalMeta")
    has_rental_contract: bool = Field(False, alias="hasRentalContract")
    is_defaulted: Optional[bool] = Field(None, alias="isDefaulted")
    lease_serial: Optional[int] = Field(None, alias="leaseSerial")
    assignment_serial: Optional[int] = Field(None, alias="assignmentSerial")

    enabled_esigning: bool = Field(False, alias="enabledEsigning")
    landlord_assignment_signing_status: Optional[SigningStatus] = Field(None, alias="landlordAssignmentSigningStatus")
    agent_assignment_signing_status: Optional[SigningStatus] = Field(None, alias="agentAssignmentSigningStatus")
    assignment_esigning_reminder_sent_at: Optional[datetime] = Field(
        None, alias="assignmentESigningReminderToLandlordSentAt"
    )

    eviction_cases: List[EvictionCase] = Field(default_factory=list, alias="evictionCases")
    history: List[HistoryEntry] = Field(default_factory=list)
    addons: List[Addon] = Field(default_factory=list)

    created_by: Optional[str] = Field(None, alias="createdBy")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    @property
    def rental_status(self) -> Optional[str]:
        return self.rental_meta.status if self.rental_meta else None

    def tenant_ids(self) -> List[str]:
        return self.rental_meta.tenant_ids() if self.rental_meta else []

    def find_eviction_case(self, invoice_id: str) -> Optional[EvictionCase]:
        """The open case triggered by, or tracking, ``invoice_id``."""
        for case in self.eviction_cases:
            if case.is_open and (case.invoice_id == invoice_id or invoice_id in case.eviction_invoice_ids):
                return case
        return None

    def open_eviction_case(self) -> Optional[EvictionCase]:
        return next((case for case in self.eviction_cases if case.is_open), None)
