from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from leasecycle.models.contract import SigningStatus


class MovingType(str, Enum):
    IN = "in"
    OUT = "out"


class PropertyItem(BaseModel):
    """Moving-in / moving-out protocol attached to a contract"""
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, extra="allow")

    id: str = Field(alias="_id")
    partner_id: str = Field(alias="partnerId")
    contract_id: str = Field(alias="contractId")
    property_id: Optional[str] = Field(None, alias="propertyId")
    type: MovingType
    is_esigning_initiated: bool = Field(False, alias="isEsigningInitiate")
    tenant_signing_status: List[SigningStatus] = Field(default_factory=list, alias="tenantSigningStatus")
    agent_signing_status: Optional[SigningStatus] = Field(None, alias="agentSigningStatus")
    landlord_signing_status: Optional[SigningStatus] = Field(None, alias="landlordSigningStatus")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    def reminder_stamp_field(self, audience: str) -> str:
        """``eSignReminderToTenantForMoveInSentAt`` and friends"""
        direction = "MoveIn" if self.type == MovingType.IN.value else "MoveOut"
        return f"eSignReminderTo{audience.capitalize()}For{direction}SentAt"

    def reminder_stamp(self, audience: str) -> Optional[datetime]:
        return (self.model_extra or {}).get(self.reminder_stamp_field(audience))

    def all_tenants_signed(self) -> bool:
        return bool(self.tenant_signing_status) and all(s.signed for s in self.tenant_signing_status)
