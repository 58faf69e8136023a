from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LogEntry(BaseModel):
    """Audit record written for every user-visible contract change"""
    model_config = ConfigDict(populate_by_name=True)

    action: str
    context: str = "property"
    partner_id: str = Field(alias="partnerId")
    contract_id: Optional[str] = Field(None, alias="contractId")
    property_id: Optional[str] = Field(None, alias="propertyId")
    account_id: Optional[str] = Field(None, alias="accountId")
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    invoice_id: Optional[str] = Field(None, alias="invoiceId")
    lease_serial: Optional[int] = Field(None, alias="leaseSerial")
    agent_id: Optional[str] = Field(None, alias="agentId")
    created_by: str = Field("SYSTEM", alias="createdBy")
    is_change_log: bool = Field(False, alias="isChangeLog")
    changes: List[Dict[str, Any]] = Field(default_factory=list)
    meta: List[Dict[str, Any]] = Field(default_factory=list)
    visibility: List[str] = Field(default_factory=lambda: ["property"])
    created_at: Optional[datetime] = Field(None, alias="createdAt")
