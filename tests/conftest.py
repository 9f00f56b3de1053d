"""
Shared fixtures for the KYC workflow tests.
"""

from datetime import date, datetime, timezone

import pytest

from kyc_workflow.config import Settings
from kyc_workflow.schemas import (
    Capabilities,
    ClientKycRecord,
    ClientProfile,
    KycHistoryEvent,
    KycStatus,
    NextOfKinIn,
    RefereeIn,
    ReturnedItem,
)
from kyc_workflow.services.applications import ApplicationService
from kyc_workflow.services.clients import ClientService
from kyc_workflow.services.kyc import KycTransitionEngine
from kyc_workflow.utils.files import StoredFile

REVIEWER = Capabilities(may_review=True, may_delete=True)
ADMIN = Capabilities(may_review=True, may_delete=True, may_administer=True)
CLIENT_ONLY = Capabilities()

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def kyc_record(status: KycStatus) -> ClientKycRecord:
    """A consistent record sitting in `status`, with the history that got it there."""
    if status == KycStatus.UNVERIFIED:
        return ClientKycRecord()
    history = [KycHistoryEvent(from_status="UNVERIFIED", to_status="PENDING_REVIEW",
                               performed_by="client-1", created_at=T0)]
    if status == KycStatus.PENDING_REVIEW:
        return ClientKycRecord(status=status, history=history)
    if status == KycStatus.VERIFIED:
        history.append(KycHistoryEvent(from_status="PENDING_REVIEW", to_status="VERIFIED",
                                       performed_by="officer-1", created_at=T0))
        return ClientKycRecord(status=status, verified_at=T0, verified_by="officer-1", history=history)
    if status == KycStatus.REJECTED:
        history.append(KycHistoryEvent(from_status="PENDING_REVIEW", to_status="REJECTED",
                                       reason="ID unclear", performed_by="officer-1", created_at=T0))
        return ClientKycRecord(status=status, history=history)
    history.append(KycHistoryEvent(from_status="PENDING_REVIEW", to_status="RETURNED",
                                   reason="fix docs", performed_by="officer-1", created_at=T0))
    return ClientKycRecord(
        status=status,
        return_reason="fix docs",
        returned_items=[ReturnedItem(type="document", document_type="NATIONAL_ID", message="blurry")],
        history=history,
    )


def stored_file(name: str = "id.jpg") -> StoredFile:
    return StoredFile(file_name=name, path=f"/tmp/{name}", mime_type="image/jpeg", size_bytes=2048)


@pytest.fixture
def engine():
    return KycTransitionEngine()


@pytest.fixture
def settings(tmp_path):
    return Settings(UPLOAD_DIR=str(tmp_path / "uploads"), NOTIFY_WEBHOOK_URL=None)


@pytest.fixture
def clients(settings):
    return ClientService(settings)


@pytest.fixture
def applications(settings, clients):
    return ApplicationService(settings, clients)


@pytest.fixture
def profile():
    return ClientProfile(
        first_name="Jane",
        last_name="Wanjiku",
        id_number="12345678",
        date_of_birth=date(1990, 5, 17),
        phone_primary="+254700000001",
        residential_address="Kilimani, Nairobi",
    )


@pytest.fixture
def ready_client(clients, profile):
    """A client that satisfies every readiness item."""
    client = clients.create_client(profile, "officer-1")
    clients.add_next_of_kin(client.id, NextOfKinIn(full_name="John Wanjiku", relation="Brother", phone="+254700000002"))
    clients.add_referee(client.id, RefereeIn(full_name="Ref One", phone="+254700000003"))
    clients.add_referee(client.id, RefereeIn(full_name="Ref Two", phone="+254700000004"))
    clients.add_document(client.id, "NATIONAL_ID", stored_file(), "client-1")
    return clients.get_client(client.id)
