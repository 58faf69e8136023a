from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PartnerAccountType(str, Enum):
    BROKER = "broker"
    DIRECT = "direct"


class EsignReminderSetting(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    notice_days: Optional[int] = Field(None, alias="noticeDays")


class PartnerSettings(BaseModel):
    """Partner-level switches the engines consult; loaded per request, never cached"""
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, extra="allow")

    partner_id: str = Field(alias="partnerId")
    timezone: str = Field("UTC", alias="timezone")
    account_type: PartnerAccountType = Field(PartnerAccountType.BROKER, alias="accountType")

    eviction_package_enabled: bool = Field(False, alias="isCreateEvictionPackage")
    notify_tenant_pays_all_due_during_eviction: bool = Field(False, alias="tenantPaysAllDueDuringEviction")

    sent_welcome_lease: bool = Field(False, alias="sentWelcomeLease")
    credit_whole_invoice: bool = Field(False, alias="creditWholeInvoice")

    cpi_settlement_months: int = Field(0, alias="cpiSettlementMonths")
    stop_cpi_regulation: bool = Field(False, alias="stopCPIRegulation")

    assignment_esign_reminder: EsignReminderSetting = Field(
        default_factory=EsignReminderSetting, alias="assignmentESignReminder"
    )
    lease_esign_reminder: EsignReminderSetting = Field(
        default_factory=EsignReminderSetting, alias="leaseESignReminder"
    )
    moving_esign_reminder: EsignReminderSetting = Field(
        default_factory=EsignReminderSetting, alias="movingInOutESignReminder"
    )

    @property
    def is_broker(self) -> bool:
        return self.account_type == PartnerAccountType.BROKER
