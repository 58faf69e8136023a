from leasecycle.models.contract import (
    Addon,
    AddonType,
    Contract,
    ContractStatus,
    EvictionCase,
    EvictionCaseStatus,
    HistoryEntry,
    RentalMeta,
    SigningStatus,
    TenantRef,
)
from leasecycle.models.invoice import Invoice
from leasecycle.models.log import LogEntry
from leasecycle.models.partner import EsignReminderSetting, PartnerAccountType, PartnerSettings
from leasecycle.models.property_item import MovingType, PropertyItem
from leasecycle.models.queue import QueuePriority, QueueRecord, QueueStatus, QueueTask
