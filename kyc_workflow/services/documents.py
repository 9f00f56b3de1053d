"""
Document registry and KYC readiness checks.

Scan and review statuses are written on behalf of external collaborators
(the virus scanner and document reviewers); everything else about a
document is fixed at upload. Soft-deleted documents drop out of every count.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from kyc_workflow.errors import InvalidTransition, NotFound, ValidationError
from kyc_workflow.schemas import (
    ApplicationStatus,
    ClientDocument,
    ClientRecord,
    DocumentType,
    KycStatus,
    ReadinessItem,
    ReadinessReport,
    ReviewStatus,
    ScanStatus,
    utcnow,
)
from kyc_workflow.utils.files import StoredFile

logger = logging.getLogger(__name__)

KYC_UPLOAD_STATUSES = (KycStatus.UNVERIFIED, KycStatus.RETURNED)
APPLICATION_UPLOAD_STATUSES = (ApplicationStatus.DRAFT, ApplicationStatus.RETURNED)


def active(documents: Iterable[ClientDocument]) -> List[ClientDocument]:
    return [d for d in documents if not d.is_deleted]


def find(documents: Iterable[ClientDocument], document_id: str) -> ClientDocument:
    for document in documents:
        if document.id == document_id and not document.is_deleted:
            return document
    raise NotFound("Document not found")


class DocumentRegistry:
    """
    Operates on the document list of a working copy of its owner.

    `upload_statuses` are the owner statuses that accept new uploads;
    application registries also track a review status per document.
    """

    def __init__(self, upload_statuses=KYC_UPLOAD_STATUSES, for_application: bool = False):
        self.upload_statuses = tuple(upload_statuses)
        self.for_application = for_application

    def ensure_accepts(self, owner_status) -> None:
        if owner_status not in self.upload_statuses:
            raise InvalidTransition(owner_status, "upload a document")

    def add(
        self,
        documents: List[ClientDocument],
        owner_status,
        document_type,
        stored: StoredFile,
        uploaded_by: str,
    ) -> ClientDocument:
        self.ensure_accepts(owner_status)
        try:
            document_type = DocumentType(document_type)
        except ValueError:
            raise ValidationError("Invalid document type") from None

        document = ClientDocument(
            document_type=document_type,
            file_name=stored.file_name,
            file_path=stored.path,
            mime_type=stored.mime_type,
            size_bytes=stored.size_bytes,
            uploaded_by=uploaded_by,
            scan_status=ScanStatus.PENDING,
            review_status=ReviewStatus.PENDING if self.for_application else None,
        )
        documents.append(document)
        logger.info("Document %s (%s) added by %s", document.id, document_type.value, uploaded_by)
        return document

    def soft_delete(self, documents: List[ClientDocument], document_id: str) -> ClientDocument:
        document = find(documents, document_id)
        document.is_deleted = True
        return document

    def record_scan_result(self, documents: List[ClientDocument], document_id: str, scan_status) -> ClientDocument:
        document = find(documents, document_id)
        try:
            scan_status = ScanStatus(scan_status)
        except ValueError:
            raise ValidationError(f"Invalid scan status: {scan_status}") from None
        if scan_status == ScanStatus.PENDING:
            raise ValidationError("A scan result must be clean or infected")
        document.scan_status = scan_status
        if scan_status == ScanStatus.INFECTED:
            logger.warning("Document %s reported infected", document_id)
        return document

    def review(
        self,
        documents: List[ClientDocument],
        document_id: str,
        status,
        reviewer: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ClientDocument:
        document = find(documents, document_id)
        if document.review_status is None:
            raise ValidationError("Only loan application documents are reviewed")
        try:
            status = ReviewStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid review status: {status}") from None
        if status == ReviewStatus.PENDING:
            raise ValidationError("A review must verify or reject the document")

        document.review_status = status
        document.review_notes = notes if status == ReviewStatus.REJECTED else None
        document.reviewed_at = now or utcnow()
        document.reviewed_by = reviewer
        return document


def _present(value) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def readiness_report(client: ClientRecord, min_referees: int = 2, min_next_of_kin: int = 1) -> ReadinessReport:
    """Checklist shown before a client is submitted for KYC review."""
    profile = client.profile
    items = [
        ReadinessItem(key="id_number", label="Identity number", satisfied=_present(profile.id_number)),
        ReadinessItem(key="date_of_birth", label="Date of birth", satisfied=_present(profile.date_of_birth)),
        ReadinessItem(key="phone_primary", label="Primary phone", satisfied=_present(profile.phone_primary)),
        ReadinessItem(key="residential_address", label="Address",
                      satisfied=_present(profile.residential_address)),
        ReadinessItem(key="next_of_kin", label=f"At least {min_next_of_kin} next of kin",
                      satisfied=len(client.next_of_kin) >= min_next_of_kin),
        ReadinessItem(key="referees", label=f"At least {min_referees} referees",
                      satisfied=len(client.referees) >= min_referees),
        ReadinessItem(key="documents", label="At least 1 document",
                      satisfied=len(active(client.documents)) >= 1),
    ]
    return ReadinessReport(ready=all(i.satisfied for i in items), items=items)


def is_ready_for_submission(client: ClientRecord, min_referees: int = 2, min_next_of_kin: int = 1) -> bool:
    return readiness_report(client, min_referees, min_next_of_kin).ready
