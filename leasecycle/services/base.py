from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from leasecycle.core.store import TransactionContext
from leasecycle.models.invoice import Invoice
from leasecycle.models.log import LogEntry
from leasecycle.models.partner import PartnerSettings
from leasecycle.models.queue import QueueTask


class InvoiceService(ABC):
    """Invoice arithmetic lives elsewhere; the engine only asks and instructs."""

    @abstractmethod
    async def create_credit_note_invoices(
        self,
        contract_id: str,
        partner_id: str,
        termination_date: datetime,
        enabled_notification: bool = False,
        user_id: str = "SYSTEM",
        tx: Optional[TransactionContext] = None,
    ) -> List[Dict[str, Any]]:
        """Credit invoices issued for periods after ``termination_date``."""
        pass

    @abstractmethod
    async def find_overdue_invoices(
        self, contract_id: str, tx: Optional[TransactionContext] = None
    ) -> List[Invoice]:
        """Overdue invoices of the contract with an amount still due."""
        pass

    @abstractmethod
    async def find_defaulted_invoice(
        self, contract_id: str, exclude_invoice_id: Optional[str] = None, tx: Optional[TransactionContext] = None
    ) -> Optional[Invoice]:
        pass


class PropertyService(ABC):

    @abstractmethod
    async def update_flags(
        self,
        property_id: str,
        partner_id: str,
        flags: Dict[str, Any],
        unset: Iterable[str] = (),
        tx: Optional[TransactionContext] = None,
    ) -> None:
        """Set ``hasActiveLease``-style flags and lease dates on the property."""
        pass


class TenantService(ABC):

    @abstractmethod
    async def update_property_status(
        self,
        tenant_id: str,
        partner_id: str,
        property_id: str,
        contract_id: str,
        status: str,
        tx: Optional[TransactionContext] = None,
    ) -> None:
        pass


class CounterService(ABC):

    @abstractmethod
    async def increment_counter(self, key: str, tx: Optional[TransactionContext] = None) -> int:
        """Return the next value of the monotonic counter ``key``."""
        pass


class LogService(ABC):

    @abstractmethod
    async def create_log(self, entry: LogEntry, tx: Optional[TransactionContext] = None) -> Dict[str, Any]:
        pass


class WorkQueue(ABC):

    @abstractmethod
    async def enqueue(self, task: QueueTask, tx: Optional[TransactionContext] = None) -> Optional[str]:
        """Persist ``task``; returns its id, or ``None`` when a task with the same dedupe key exists."""
        pass

    @abstractmethod
    async def mark_completed(self, queue_id: str, tx: Optional[TransactionContext] = None) -> bool:
        pass


class PartnerSettingService(ABC):

    @abstractmethod
    async def get_settings(self, partner_id: str, tx: Optional[TransactionContext] = None) -> Optional[PartnerSettings]:
        pass


class CpiIndexService(ABC):
    """Consumer price index table keyed by month (``2024M05``)."""

    @abstractmethod
    async def get_index(self, month: str) -> Optional[float]:
        pass

    @abstractmethod
    async def latest_month(self) -> Optional[str]:
        pass
