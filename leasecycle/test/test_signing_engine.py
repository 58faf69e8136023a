# tests/test_signing_engine.py - Signature events on assignments, leases and moving protocols

import pytest

from leasecycle.engines.signing_engine import SigningEngine, SigningEvent, SigningEventKind, Signer
from leasecycle.services.audit import LOGS, MongoLogService
from leasecycle.services.contract_repository import ContractRepository
from leasecycle.services.property_items import PROPERTY_ITEMS, PropertyItemRepository
from leasecycle.test.factories import NOW, TENANT_ID, contract_doc, days_ago, rental_meta_doc
from leasecycle.utils.exceptions import ValidationFailedError


@pytest.fixture
def engine(store, clock):
    return SigningEngine(
        ContractRepository(store, clock=clock),
        PropertyItemRepository(store, clock=clock),
        MongoLogService(store, clock=clock),
        clock=clock,
    )


def signing_lease(status="in_progress", tenants=(TENANT_ID, "tenant-2"), **fields):
    lease = rental_meta_doc(
        status=status,
        enabledLeaseEsigning=True,
        tenants=[{"tenantId": tenant_id} for tenant_id in tenants],
        tenantLeaseSigningStatus=[{"tenantId": tenant_id, "signed": False} for tenant_id in tenants],
        landlordLeaseSigningStatus={"signed": False},
    )
    lease.update(fields)
    return lease


class TestAssignmentSigning:

    @pytest.mark.asyncio
    async def test_landlord_then_agent_completes(self, store, engine):
        store.seed("contracts", contract_doc(
            status="in_progress",
            enabledEsigning=True,
            landlordAssignmentSigningStatus={"signed": False},
            agentAssignmentSigningStatus={"signed": False},
        ))

        landlord = await engine.sign_assignment(
            SigningEvent(SigningEventKind.ASSIGNMENT, "contract-1", signer=Signer.LANDLORD, signed_at=days_ago(1))
        )
        agent = await engine.sign_assignment(
            SigningEvent(SigningEventKind.ASSIGNMENT, "contract-1", signer=Signer.AGENT)
        )

        assert landlord.applied and not landlord.completed
        assert agent.applied and agent.completed
        contract = agent.contract
        assert contract.landlord_assignment_signing_status.signed_at == days_ago(1)
        assert contract.agent_assignment_signing_status.signed_at == NOW
        assert [log["action"] for log in store.dump(LOGS)] == ["assignment_signed", "assignment_signed"]

    @pytest.mark.asyncio
    async def test_repeated_signature_is_ignored(self, store, engine):
        store.seed("contracts", contract_doc(
            status="in_progress", landlordAssignmentSigningStatus={"signed": True, "signedAt": days_ago(2)}
        ))

        result = await engine.sign_assignment(
            SigningEvent(SigningEventKind.ASSIGNMENT, "contract-1", signer=Signer.LANDLORD)
        )

        assert result.applied is False
        assert store.dump("contracts")[0]["landlordAssignmentSigningStatus"]["signedAt"] == days_ago(2)
        assert store.dump(LOGS) == []

    @pytest.mark.asyncio
    async def test_tenant_cannot_sign_assignment(self, engine):
        with pytest.raises(ValidationFailedError):
            await engine.sign_assignment(SigningEvent(SigningEventKind.ASSIGNMENT, "contract-1"))


class TestLeaseSigning:
    """Tenants sign positionally; the landlord's signature completes the lease"""

    @pytest.mark.asyncio
    async def test_all_signatures_complete_lease(self, store, engine):
        store.seed("contracts", contract_doc(rental=signing_lease()))

        second = await engine.sign_lease(SigningEvent(SigningEventKind.LEASE, "contract-1", tenant_id="tenant-2"))
        first = await engine.sign_lease(SigningEvent(SigningEventKind.LEASE, "contract-1", tenant_id=TENANT_ID))
        landlord = await engine.sign_lease(
            SigningEvent(SigningEventKind.LEASE, "contract-1", signer=Signer.LANDLORD)
        )

        statuses = store.dump("contracts")[0]["rentalMeta"]["tenantLeaseSigningStatus"]
        assert [status["signed"] for status in statuses] == [True, True]
        assert second.applied and not second.completed
        assert first.applied and not first.completed
        assert landlord.completed is True
        assert landlord.contract.rental_meta.signed_at == NOW

    @pytest.mark.asyncio
    async def test_tenant_signature_only_touches_that_tenant(self, store, engine):
        store.seed("contracts", contract_doc(rental=signing_lease()))

        await engine.sign_lease(SigningEvent(SigningEventKind.LEASE, "contract-1", tenant_id="tenant-2"))

        statuses = store.dump("contracts")[0]["rentalMeta"]["tenantLeaseSigningStatus"]
        assert statuses[0] == {"tenantId": TENANT_ID, "signed": False}
        assert statuses[1]["signed"] is True

    @pytest.mark.asyncio
    async def test_lease_no_longer_in_progress_is_ignored(self, store, engine):
        store.seed("contracts", contract_doc(rental=signing_lease(status="closed")))

        result = await engine.sign_lease(SigningEvent(SigningEventKind.LEASE, "contract-1", tenant_id=TENANT_ID))

        assert result.applied is False
        assert result.reason == "Signer already signed"

    @pytest.mark.asyncio
    async def test_agent_cannot_sign_lease(self, engine):
        with pytest.raises(ValidationFailedError):
            await engine.sign_lease(SigningEvent(SigningEventKind.LEASE, "contract-1", signer=Signer.AGENT))

    @pytest.mark.asyncio
    async def test_deposit_data_sent_once_per_tenant(self, store, engine):
        store.seed("contracts", contract_doc(rental=signing_lease(
            tenants=(TENANT_ID,),
            tenantLeaseSigningStatus=[{"tenantId": TENANT_ID, "signed": True}],
        )))
        event = SigningEvent(SigningEventKind.DEPOSIT_ACCOUNT, "contract-1", tenant_id=TENANT_ID)

        first = await engine.mark_deposit_data_sent(event)
        second = await engine.mark_deposit_data_sent(event)

        assert first.applied and first.completed
        assert second.applied is False


class TestMovingProtocolSigning:

    @pytest.fixture
    def moving_item(self, store):
        store.seed(PROPERTY_ITEMS, {
            "_id": "moving-1",
            "partnerId": "partner-1",
            "contractId": "contract-1",
            "type": "in",
            "isEsigningInitiate": True,
            "tenantSigningStatus": [{"tenantId": TENANT_ID, "signed": False}],
            "agentSigningStatus": {"signed": False},
        })

    @pytest.mark.asyncio
    async def test_tenant_and_agent_complete_protocol(self, store, engine, moving_item):
        tenant = await engine.sign_moving_protocol(SigningEvent(
            SigningEventKind.MOVING_IN, "contract-1", tenant_id=TENANT_ID, moving_id="moving-1"
        ))
        agent = await engine.sign_moving_protocol(SigningEvent(
            SigningEventKind.MOVING_IN, "contract-1", signer=Signer.AGENT, moving_id="moving-1"
        ))

        assert tenant.applied and not tenant.completed
        assert agent.applied and agent.completed
        assert agent.item.agent_signing_status.signed_at == NOW

    @pytest.mark.asyncio
    async def test_wrong_direction_is_ignored(self, engine, moving_item):
        result = await engine.sign_moving_protocol(SigningEvent(
            SigningEventKind.MOVING_OUT, "contract-1", tenant_id=TENANT_ID, moving_id="moving-1"
        ))

        assert result.applied is False

    @pytest.mark.asyncio
    async def test_moving_signature_requires_protocol(self, engine):
        with pytest.raises(ValidationFailedError):
            await engine.sign_moving_protocol(SigningEvent(SigningEventKind.MOVING_IN, "contract-1"))
