from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class QueuePriority(str, Enum):
    IMMEDIATE = "immediate"
    REGULAR = "regular"


class QueueStatus(str, Enum):
    NEW = "new"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueTask(BaseModel):
    """A unit of asynchronous work handed to an external consumer"""
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    event: str
    action: str
    destination: str
    params: Dict[str, Any] = Field(default_factory=dict)
    priority: QueuePriority = QueuePriority.REGULAR
    dedupe_key: Optional[str] = Field(None, alias="dedupeKey")

    @classmethod
    def notification(
        cls,
        event: str,
        partner_id: str,
        collection_id: str,
        options: Optional[Dict[str, Any]] = None,
        priority: QueuePriority = QueuePriority.REGULAR,
        dedupe_key: Optional[str] = None,
        collection_name: str = "contracts",
    ) -> "QueueTask":
        params: Dict[str, Any] = {
            "partnerId": partner_id,
            "collectionId": collection_id,
            "collectionNameStr": collection_name,
        }
        if options:
            params["options"] = options
        return cls(
            event=event,
            action="send_notification",
            destination="notifier",
            params=params,
            priority=priority,
            dedupe_key=dedupe_key,
        )


class QueueRecord(QueueTask):
    id: str = Field(alias="_id")
    status: QueueStatus = QueueStatus.NEW
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")
