from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# Wire synonyms accepted at the boundary
_SYNONYMS = {"RETURNED_TO_CLIENT": "RETURNED"}


class _CaseInsensitiveEnum(str, Enum):
    @classmethod
    def _missing_(cls, value):
        if not isinstance(value, str):
            return None
        key = value.strip().upper()
        key = _SYNONYMS.get(key, key)
        for member in cls:
            if member.value.upper() == key:
                return member
        return None


def _parse_with(enum_cls):
    def _parse(value):
        if isinstance(value, str) and not isinstance(value, enum_cls):
            return enum_cls(value)
        return value
    return _parse


class KycStatus(_CaseInsensitiveEnum):
    UNVERIFIED = "UNVERIFIED"
    PENDING_REVIEW = "PENDING_REVIEW"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    RETURNED = "RETURNED"


class ApplicationStatus(_CaseInsensitiveEnum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RETURNED = "RETURNED"


class RiskRating(_CaseInsensitiveEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class DocumentType(_CaseInsensitiveEnum):
    ID_FRONT = "ID_FRONT"
    ID_BACK = "ID_BACK"
    PASSPORT_PHOTO = "PASSPORT_PHOTO"
    NATIONAL_ID = "NATIONAL_ID"
    PASSPORT = "PASSPORT"
    PAYSLIP = "PAYSLIP"
    BANK_STATEMENT = "BANK_STATEMENT"
    EMPLOYMENT_LETTER = "EMPLOYMENT_LETTER"
    CONTRACT = "CONTRACT"
    PROOF_OF_RESIDENCE = "PROOF_OF_RESIDENCE"
    OTHER = "OTHER"


class ScanStatus(_CaseInsensitiveEnum):
    PENDING = "pending"
    CLEAN = "clean"
    INFECTED = "infected"


class ReviewStatus(_CaseInsensitiveEnum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class ReturnedItemType(_CaseInsensitiveEnum):
    DOCUMENT = "document"
    FIELD = "field"
    AMOUNT = "amount"
    TERM = "term"
    PURPOSE = "purpose"
    PERSONAL_INFO = "personal_info"
    EMPLOYMENT = "employment"
    OTHER = "other"


KycStatusIn = Annotated[KycStatus, BeforeValidator(_parse_with(KycStatus))]
ApplicationStatusIn = Annotated[ApplicationStatus, BeforeValidator(_parse_with(ApplicationStatus))]
RiskRatingIn = Annotated[RiskRating, BeforeValidator(_parse_with(RiskRating))]
DocumentTypeIn = Annotated[DocumentType, BeforeValidator(_parse_with(DocumentType))]
ScanStatusIn = Annotated[ScanStatus, BeforeValidator(_parse_with(ScanStatus))]
ReviewStatusIn = Annotated[ReviewStatus, BeforeValidator(_parse_with(ReviewStatus))]
ReturnedItemTypeIn = Annotated[ReturnedItemType, BeforeValidator(_parse_with(ReturnedItemType))]


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python; both accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Capabilities(BaseModel):
    may_review: bool = False  # approve / reject / return / risk rating
    may_delete: bool = False
    may_administer: bool = False  # profile edit lock


# ---------------------------------------------------------------------------
# KYC record
# ---------------------------------------------------------------------------

class ReturnedItem(WireModel):
    type: ReturnedItemTypeIn
    document_type: Optional[DocumentTypeIn] = None
    field: Optional[str] = None
    message: str

    @model_validator(mode="after")
    def _check_target(self) -> "ReturnedItem":
        if not self.message or not self.message.strip():
            raise ValueError("message is required")
        if self.type == ReturnedItemType.DOCUMENT and self.document_type is None:
            raise ValueError("documentType is required for document items")
        if self.type == ReturnedItemType.FIELD and not (self.field or "").strip():
            raise ValueError("field is required for field items")
        return self


REASON_REQUIRED = (KycStatus.REJECTED, KycStatus.RETURNED)


class KycHistoryEvent(WireModel):
    id: str = Field(default_factory=new_id)
    from_status: KycStatusIn
    to_status: KycStatusIn
    reason: Optional[str] = None
    notes: Optional[str] = None
    performed_by: str
    created_at: datetime = Field(default_factory=utcnow)
    risk_rating: Optional[RiskRatingIn] = None  # risk-rating audit entries only

    @model_validator(mode="after")
    def _check_reason(self) -> "KycHistoryEvent":
        if self.to_status in REASON_REQUIRED and not (self.reason or "").strip():
            raise ValueError(f"reason is required for events into {self.to_status.value}")
        return self


class ClientKycRecord(WireModel):
    status: KycStatusIn = KycStatus.UNVERIFIED
    risk_rating: Optional[RiskRatingIn] = None
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    return_reason: Optional[str] = None
    returned_items: List[ReturnedItem] = Field(default_factory=list)
    history: List[KycHistoryEvent] = Field(default_factory=list)

    @property
    def ever_verified(self) -> bool:
        return self.status == KycStatus.VERIFIED or any(
            e.to_status == KycStatus.VERIFIED for e in self.history
        )

    @model_validator(mode="after")
    def _check_invariants(self) -> "ClientKycRecord":
        if self.risk_rating is not None and not self.ever_verified:
            raise ValueError("riskRating requires a verified record")
        if self.status != KycStatus.VERIFIED and (self.verified_at or self.verified_by):
            raise ValueError("verifiedAt/verifiedBy are only set while VERIFIED")
        if self.status == KycStatus.RETURNED:
            if not (self.return_reason or "").strip() or not self.returned_items:
                raise ValueError("a RETURNED record needs returnReason and returnedItems")
        return self


# ---------------------------------------------------------------------------
# Documents, contacts, profile
# ---------------------------------------------------------------------------

class ClientDocument(WireModel):
    id: str = Field(default_factory=new_id)
    document_type: DocumentTypeIn
    file_name: str
    file_path: str
    mime_type: str
    size_bytes: int
    uploaded_by: str
    uploaded_at: datetime = Field(default_factory=utcnow)
    scan_status: ScanStatusIn = ScanStatus.PENDING
    review_status: Optional[ReviewStatusIn] = None  # application documents only
    review_notes: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    is_deleted: bool = False


class NextOfKinIn(WireModel):
    full_name: str
    relation: str
    phone: str
    email: Optional[str] = None
    address: Optional[str] = None
    is_primary: bool = False


class NextOfKin(NextOfKinIn):
    id: str = Field(default_factory=new_id)


class RefereeIn(WireModel):
    full_name: str
    phone: str
    relation: Optional[str] = None
    id_number: Optional[str] = None
    employer_name: Optional[str] = None
    address: Optional[str] = None


class Referee(RefereeIn):
    id: str = Field(default_factory=new_id)


class ClientProfile(WireModel):
    first_name: str
    last_name: str
    other_names: Optional[str] = None
    id_type: str = "NATIONAL_ID"
    id_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    phone_primary: Optional[str] = None
    phone_secondary: Optional[str] = None
    email: Optional[str] = None
    residential_address: Optional[str] = None
    employer_name: Optional[str] = None
    occupation: Optional[str] = None
    monthly_income: Optional[Decimal] = None


class ProfileUpdate(WireModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    other_names: Optional[str] = None
    id_type: Optional[str] = None
    id_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    phone_primary: Optional[str] = None
    phone_secondary: Optional[str] = None
    email: Optional[str] = None
    residential_address: Optional[str] = None
    employer_name: Optional[str] = None
    occupation: Optional[str] = None
    monthly_income: Optional[Decimal] = None


class ClientRecord(WireModel):
    id: str = Field(default_factory=new_id)
    client_code: str = ""  # assigned by the store on insert
    profile: ClientProfile
    next_of_kin: List[NextOfKin] = Field(default_factory=list)
    referees: List[Referee] = Field(default_factory=list)
    documents: List[ClientDocument] = Field(default_factory=list)
    kyc: ClientKycRecord = Field(default_factory=ClientKycRecord)
    allow_profile_edits_after_kyc: bool = False
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0


# ---------------------------------------------------------------------------
# Loan applications
# ---------------------------------------------------------------------------

class ApplicationEvent(WireModel):
    id: str = Field(default_factory=new_id)
    event_type: str
    from_status: Optional[ApplicationStatusIn] = None
    to_status: Optional[ApplicationStatusIn] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    performed_by: str
    created_at: datetime = Field(default_factory=utcnow)


class LoanApplication(WireModel):
    id: str = Field(default_factory=new_id)
    application_number: str
    client_id: str
    requested_amount: Decimal
    term_months: int
    purpose: Optional[str] = None
    status: ApplicationStatusIn = ApplicationStatus.DRAFT
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    return_reason: Optional[str] = None
    returned_items: List[ReturnedItem] = Field(default_factory=list)
    documents: List[ClientDocument] = Field(default_factory=list)
    events: List[ApplicationEvent] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @model_validator(mode="after")
    def _check_returned(self) -> "LoanApplication":
        if self.status == ApplicationStatus.RETURNED:
            if not (self.return_reason or "").strip() or not self.returned_items:
                raise ValueError("a RETURNED application needs returnReason and returnedItems")
        return self


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class NotesRequest(WireModel):
    notes: Optional[str] = None


class RejectRequest(WireModel):
    reason: str = ""
    notes: Optional[str] = None


class ReturnRequest(WireModel):
    reason: str = ""
    returned_items: List[Dict[str, Any]] = Field(default_factory=list)
    notes: Optional[str] = None


class RiskRatingRequest(WireModel):
    risk_rating: RiskRatingIn
    notes: Optional[str] = None


class ProfileEditsRequest(WireModel):
    allow_profile_edits_after_kyc: bool


class ScanResultRequest(WireModel):
    scan_status: ScanStatusIn


class ReviewDocumentRequest(WireModel):
    status: ReviewStatusIn
    notes: Optional[str] = None


class BulkApproveRequest(WireModel):
    ids: List[str]
    notes: Optional[str] = None


class BulkRejectRequest(WireModel):
    ids: List[str]
    reason: str = ""
    notes: Optional[str] = None


class CreateApplicationRequest(WireModel):
    client_id: str
    requested_amount: Decimal = Field(gt=0)
    term_months: int = Field(gt=0)
    purpose: Optional[str] = None


class UpdateApplicationRequest(WireModel):
    requested_amount: Optional[Decimal] = Field(default=None, gt=0)
    term_months: Optional[int] = Field(default=None, gt=0)
    purpose: Optional[str] = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ReadinessItem(WireModel):
    key: str
    label: str
    satisfied: bool


class ReadinessReport(WireModel):
    ready: bool
    items: List[ReadinessItem]

    @property
    def missing(self) -> List[str]:
        return [item.label for item in self.items if not item.satisfied]


class CorrectionCues(WireModel):
    upload_documents: List[ReturnedItem] = Field(default_factory=list)
    edit_fields: List[ReturnedItem] = Field(default_factory=list)


class TimelineEntry(WireModel):
    type: str  # "kyc_event" or "document"
    date: datetime
    data: Dict[str, Any]


class BulkActionError(WireModel):
    id: str
    message: str


class BulkActionResult(WireModel):
    requested: int = 0
    succeeded: int = 0
    failed: int = 0
    succeeded_ids: List[str] = Field(default_factory=list)
    errors: List[BulkActionError] = Field(default_factory=list)
