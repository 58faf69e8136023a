from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Invoice(BaseModel):
    """Read-only view of an invoice as delivered with invoice events"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(alias="_id")
    partner_id: str = Field(alias="partnerId")
    contract_id: Optional[str] = Field(None, alias="contractId")
    property_id: Optional[str] = Field(None, alias="propertyId")
    account_id: Optional[str] = Field(None, alias="accountId")
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    status: Optional[str] = None
    invoice_total: float = Field(0, alias="invoiceTotal")
    total_paid: float = Field(0, alias="totalPaid")
    due_date: Optional[datetime] = Field(None, alias="dueDate")
    is_defaulted: Optional[bool] = Field(None, alias="isDefaulted")
    eviction_due_reminder_sent: Optional[bool] = Field(None, alias="evictionDueReminderSent")

    @property
    def total_due(self) -> float:
        return round(self.invoice_total - self.total_paid, 2)

    @property
    def is_fully_paid(self) -> bool:
        return self.total_due <= 0
