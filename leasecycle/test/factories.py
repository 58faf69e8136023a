# tests/factories.py - Document builders shared by the engine tests

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

NOW = datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc)
PARTNER_ID = "partner-1"
PROPERTY_ID = "property-1"
TENANT_ID = "tenant-1"


def days_ago(days: int) -> datetime:
    return NOW - timedelta(days=days)


def days_ahead(days: int) -> datetime:
    return NOW + timedelta(days=days)


def rental_meta_doc(status: str = "active", **fields) -> Dict[str, Any]:
    doc = {
        "status": status,
        "tenantId": TENANT_ID,
        "tenants": [{"tenantId": TENANT_ID}],
        "contractStartDate": days_ago(30),
        "monthlyRentAmount": 1000,
    }
    doc.update(fields)
    return doc


def contract_doc(
    contract_id: str = "contract-1",
    status: str = "active",
    rental: Optional[Dict[str, Any]] = None,
    **fields,
) -> Dict[str, Any]:
    doc = {
        "_id": contract_id,
        "partnerId": PARTNER_ID,
        "propertyId": PROPERTY_ID,
        "accountId": "account-1",
        "status": status,
        "createdAt": days_ago(60),
        "updatedAt": days_ago(60),
    }
    if rental is not None:
        doc["rentalMeta"] = rental
        doc["hasRentalContract"] = True
    doc.update(fields)
    return doc


def partner_doc(**fields) -> Dict[str, Any]:
    doc = {
        "partnerId": PARTNER_ID,
        "timezone": "UTC",
        "accountType": "broker",
    }
    doc.update(fields)
    return doc


def queue_doc(queue_id: str, action: str, status: str = "new", **fields) -> Dict[str, Any]:
    doc = {
        "_id": queue_id,
        "event": action,
        "action": action,
        "destination": "contract",
        "params": {"contractId": "contract-1"},
        "priority": "regular",
        "status": status,
        "createdAt": NOW,
    }
    doc.update(fields)
    return doc
