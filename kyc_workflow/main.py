import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from kyc_workflow.config import Settings, get_settings
from kyc_workflow.errors import (
    ConflictError,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
    WorkflowError,
)
from kyc_workflow.schemas import (
    ApplicationEvent,
    BulkActionResult,
    BulkApproveRequest,
    BulkRejectRequest,
    Capabilities,
    ClientDocument,
    ClientKycRecord,
    ClientProfile,
    ClientRecord,
    CorrectionCues,
    CreateApplicationRequest,
    KycHistoryEvent,
    KycStatus,
    LoanApplication,
    NextOfKin,
    NextOfKinIn,
    NotesRequest,
    ProfileEditsRequest,
    ProfileUpdate,
    ReadinessReport,
    Referee,
    RefereeIn,
    RejectRequest,
    ReturnRequest,
    ReviewDocumentRequest,
    RiskRating,
    RiskRatingRequest,
    ScanResultRequest,
    TimelineEntry,
    UpdateApplicationRequest,
)
from kyc_workflow.services.applications import ApplicationService
from kyc_workflow.services.clients import ClientService
from kyc_workflow.services.notifications import Notifier
from kyc_workflow.utils.files import discard, save_upload
from kyc_workflow.utils.roles import capabilities_for

settings: Settings = get_settings()
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="KYC Workflow", version="0.1.0")

# Service singletons (lazy init)
_client_service: Optional[ClientService] = None
_application_service: Optional[ApplicationService] = None


def _notifier() -> Notifier:
    return Notifier(settings.NOTIFY_WEBHOOK_URL, timeout=settings.NOTIFY_TIMEOUT, portal_url=settings.PORTAL_URL)


def client_service() -> ClientService:
    global _client_service
    if _client_service is None:
        _client_service = ClientService(settings, notifier=_notifier())
    return _client_service


def application_service() -> ApplicationService:
    global _application_service
    if _application_service is None:
        _application_service = ApplicationService(settings, client_service(), notifier=_notifier())
    return _application_service


class Caller(BaseModel):
    user_id: str
    role: str
    capabilities: Capabilities


def caller(x_user_id: str = Header(...), x_role: str = Header("CLIENT")) -> Caller:
    # Identity and role come from the upstream auth layer
    return Caller(user_id=x_user_id, role=x_role, capabilities=capabilities_for(x_role, settings))


def _notes(body: Optional[NotesRequest]) -> Optional[str]:
    return body.notes if body else None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

_STATUS_CODES = [
    (InvalidTransition, 400),
    (ValidationError, 422),
    (NotFound, 404),
    (ConflictError, 409),
    (Forbidden, 403),
]


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    status_code = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 400)
    content = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, InvalidTransition):
        content["currentStatus"] = getattr(exc.current, "value", exc.current)
        content["attempted"] = exc.attempted
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("%s %s failed", request.method, request.url, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error", "error": str(exc)},
    )


@app.get("/api/health")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

@app.post("/api/clients", response_model=ClientRecord, status_code=201)
def create_client(profile: ClientProfile, who: Caller = Depends(caller),
                  service: ClientService = Depends(client_service)):
    return service.create_client(profile, who.user_id)


@app.get("/api/clients", response_model=List[ClientRecord])
def list_clients(kyc_status: Optional[str] = Query(None, alias="kycStatus"),
                 risk_rating: Optional[str] = Query(None, alias="riskRating"),
                 service: ClientService = Depends(client_service)):
    try:
        status = KycStatus(kyc_status) if kyc_status else None
        rating = RiskRating(risk_rating) if risk_rating else None
    except ValueError as e:
        raise ValidationError(str(e)) from None
    return service.list_clients(status, rating)


@app.get("/api/clients/{client_id}", response_model=ClientRecord)
def get_client(client_id: str, service: ClientService = Depends(client_service)):
    return service.get_client(client_id)


@app.patch("/api/clients/{client_id}", response_model=ClientRecord)
def update_client(client_id: str, changes: ProfileUpdate, service: ClientService = Depends(client_service)):
    return service.update_profile(client_id, changes)


@app.post("/api/clients/{client_id}/next-of-kin", response_model=NextOfKin, status_code=201)
def add_next_of_kin(client_id: str, body: NextOfKinIn, service: ClientService = Depends(client_service)):
    return service.add_next_of_kin(client_id, body)


@app.delete("/api/clients/{client_id}/next-of-kin/{nok_id}")
def remove_next_of_kin(client_id: str, nok_id: str, service: ClientService = Depends(client_service)):
    service.remove_next_of_kin(client_id, nok_id)
    return {"message": "Next of kin removed successfully"}


@app.post("/api/clients/{client_id}/referees", response_model=Referee, status_code=201)
def add_referee(client_id: str, body: RefereeIn, service: ClientService = Depends(client_service)):
    return service.add_referee(client_id, body)


@app.delete("/api/clients/{client_id}/referees/{referee_id}")
def remove_referee(client_id: str, referee_id: str, service: ClientService = Depends(client_service)):
    service.remove_referee(client_id, referee_id)
    return {"message": "Referee removed successfully"}


# ---------------------------------------------------------------------------
# Client documents
# ---------------------------------------------------------------------------

@app.get("/api/clients/{client_id}/documents", response_model=List[ClientDocument])
def list_documents(client_id: str, service: ClientService = Depends(client_service)):
    return service.list_documents(client_id)


@app.post("/api/clients/{client_id}/documents", response_model=ClientDocument, status_code=201)
async def upload_document(
    client_id: str,
    document_type: str = Form(...),
    file: UploadFile = File(...),
    who: Caller = Depends(caller),
    service: ClientService = Depends(client_service),
):
    service.ensure_upload_allowed(client_id)
    stored = await save_upload(file, service.settings.UPLOAD_DIR, service.settings.MAX_UPLOAD_BYTES)
    try:
        return service.add_document(client_id, document_type, stored, who.user_id)
    except Exception:
        discard(stored)
        raise


@app.delete("/api/clients/{client_id}/documents/{document_id}")
def delete_document(client_id: str, document_id: str, who: Caller = Depends(caller),
                    service: ClientService = Depends(client_service)):
    service.delete_document(client_id, document_id, who.capabilities)
    return {"message": "Document deleted successfully"}


@app.post("/api/clients/{client_id}/documents/{document_id}/scan-result", response_model=ClientDocument)
def client_scan_result(client_id: str, document_id: str, body: ScanResultRequest,
                       service: ClientService = Depends(client_service)):
    return service.record_scan_result(client_id, document_id, body.scan_status)


# ---------------------------------------------------------------------------
# KYC workflow
# ---------------------------------------------------------------------------

@app.post("/api/kyc/bulk/approve", response_model=BulkActionResult)
def bulk_approve_kyc(body: BulkApproveRequest, who: Caller = Depends(caller),
                     service: ClientService = Depends(client_service)):
    return service.bulk_approve(body.ids, who.user_id, who.capabilities, body.notes)


@app.post("/api/kyc/bulk/reject", response_model=BulkActionResult)
def bulk_reject_kyc(body: BulkRejectRequest, who: Caller = Depends(caller),
                    service: ClientService = Depends(client_service)):
    return service.bulk_reject(body.ids, who.user_id, who.capabilities, body.reason, body.notes)


@app.get("/api/clients/{client_id}/kyc")
def get_kyc(client_id: str, service: ClientService = Depends(client_service)):
    kyc = service.get_client(client_id).kyc
    return {
        **kyc.model_dump(by_alias=True, exclude_none=True, mode="json"),
        "allowedActions": list(service.engine.allowed_actions(kyc.status)),
    }


@app.get("/api/clients/{client_id}/kyc/readiness", response_model=ReadinessReport)
def kyc_readiness(client_id: str, service: ClientService = Depends(client_service)):
    return service.readiness(client_id)


@app.get("/api/clients/{client_id}/kyc/cues", response_model=CorrectionCues)
def kyc_cues(client_id: str, service: ClientService = Depends(client_service)):
    return service.correction_cues(client_id)


@app.get("/api/clients/{client_id}/kyc/history", response_model=List[KycHistoryEvent])
def kyc_history(client_id: str, order: str = Query("desc", pattern="^(asc|desc)$"),
                service: ClientService = Depends(client_service)):
    return list(service.kyc_history(client_id, newest_first=order == "desc"))


@app.post("/api/clients/{client_id}/kyc/submit", response_model=ClientKycRecord)
def submit_kyc(client_id: str, body: Optional[NotesRequest] = None, who: Caller = Depends(caller),
               service: ClientService = Depends(client_service)):
    return service.submit_kyc(client_id, who.user_id, _notes(body)).kyc


@app.post("/api/clients/{client_id}/kyc/approve", response_model=ClientKycRecord)
def approve_kyc(client_id: str, body: Optional[NotesRequest] = None, who: Caller = Depends(caller),
                service: ClientService = Depends(client_service)):
    return service.approve_kyc(client_id, who.user_id, who.capabilities, _notes(body)).kyc


@app.post("/api/clients/{client_id}/kyc/reject", response_model=ClientKycRecord)
def reject_kyc(client_id: str, body: RejectRequest, who: Caller = Depends(caller),
               service: ClientService = Depends(client_service)):
    return service.reject_kyc(client_id, who.user_id, who.capabilities, body.reason, body.notes).kyc


@app.post("/api/clients/{client_id}/kyc/return", response_model=ClientKycRecord)
def return_kyc(client_id: str, body: ReturnRequest, who: Caller = Depends(caller),
               service: ClientService = Depends(client_service)):
    return service.return_kyc(
        client_id, who.user_id, who.capabilities, body.reason, body.returned_items, body.notes
    ).kyc


@app.post("/api/clients/{client_id}/kyc/resubmit", response_model=ClientKycRecord)
def resubmit_kyc(client_id: str, body: Optional[NotesRequest] = None, who: Caller = Depends(caller),
                 service: ClientService = Depends(client_service)):
    return service.resubmit_kyc(client_id, who.user_id, _notes(body)).kyc


@app.post("/api/clients/{client_id}/kyc/risk-rating", response_model=ClientKycRecord)
def update_risk_rating(client_id: str, body: RiskRatingRequest, who: Caller = Depends(caller),
                       service: ClientService = Depends(client_service)):
    return service.update_risk_rating(client_id, who.user_id, who.capabilities, body.risk_rating, body.notes).kyc


@app.post("/api/clients/{client_id}/kyc/profile-edits", response_model=ClientRecord)
def set_profile_edits(client_id: str, body: ProfileEditsRequest, who: Caller = Depends(caller),
                      service: ClientService = Depends(client_service)):
    return service.set_profile_edits_after_kyc(client_id, body.allow_profile_edits_after_kyc, who.capabilities)


@app.get("/api/clients/{client_id}/timeline", response_model=List[TimelineEntry])
def timeline(client_id: str, limit: int = Query(20, ge=1, le=100),
             service: ClientService = Depends(client_service)):
    return service.timeline(client_id, limit)


# ---------------------------------------------------------------------------
# Loan applications
# ---------------------------------------------------------------------------

@app.post("/api/applications/bulk/approve", response_model=BulkActionResult)
def bulk_approve_applications(body: BulkApproveRequest, who: Caller = Depends(caller),
                              service: ApplicationService = Depends(application_service)):
    return service.bulk_approve(body.ids, who.user_id, who.capabilities, body.notes)


@app.post("/api/applications/bulk/reject", response_model=BulkActionResult)
def bulk_reject_applications(body: BulkRejectRequest, who: Caller = Depends(caller),
                             service: ApplicationService = Depends(application_service)):
    return service.bulk_reject(body.ids, who.user_id, who.capabilities, body.reason, body.notes)


@app.post("/api/applications", response_model=LoanApplication, status_code=201)
def create_application(body: CreateApplicationRequest, who: Caller = Depends(caller),
                       service: ApplicationService = Depends(application_service)):
    return service.create(body, who.user_id)


@app.get("/api/applications/{application_id}", response_model=LoanApplication)
def get_application(application_id: str, service: ApplicationService = Depends(application_service)):
    return service.get(application_id)


@app.patch("/api/applications/{application_id}", response_model=LoanApplication)
def update_application(application_id: str, body: UpdateApplicationRequest,
                       service: ApplicationService = Depends(application_service)):
    return service.update(application_id, body)


@app.post("/api/applications/{application_id}/submit", response_model=LoanApplication)
def submit_application(application_id: str, body: Optional[NotesRequest] = None,
                       who: Caller = Depends(caller),
                       service: ApplicationService = Depends(application_service)):
    return service.submit(application_id, who.user_id, _notes(body))


@app.post("/api/applications/{application_id}/review", response_model=LoanApplication)
def start_application_review(application_id: str, who: Caller = Depends(caller),
                             service: ApplicationService = Depends(application_service)):
    return service.start_review(application_id, who.user_id, who.capabilities)


@app.post("/api/applications/{application_id}/approve", response_model=LoanApplication)
def approve_application(application_id: str, body: Optional[NotesRequest] = None,
                        who: Caller = Depends(caller),
                        service: ApplicationService = Depends(application_service)):
    return service.approve(application_id, who.user_id, who.capabilities, _notes(body))


@app.post("/api/applications/{application_id}/reject", response_model=LoanApplication)
def reject_application(application_id: str, body: RejectRequest, who: Caller = Depends(caller),
                       service: ApplicationService = Depends(application_service)):
    return service.reject(application_id, who.user_id, who.capabilities, body.reason, body.notes)


@app.post("/api/applications/{application_id}/return", response_model=LoanApplication)
def return_application(application_id: str, body: ReturnRequest, who: Caller = Depends(caller),
                       service: ApplicationService = Depends(application_service)):
    return service.return_to_client(
        application_id, who.user_id, who.capabilities, body.reason, body.returned_items, body.notes
    )


@app.post("/api/applications/{application_id}/resubmit", response_model=LoanApplication)
def resubmit_application(application_id: str, body: Optional[NotesRequest] = None,
                         who: Caller = Depends(caller),
                         service: ApplicationService = Depends(application_service)):
    return service.resubmit(application_id, who.user_id, _notes(body))


@app.get("/api/applications/{application_id}/events", response_model=List[ApplicationEvent])
def application_events(application_id: str, order: str = Query("desc", pattern="^(asc|desc)$"),
                       service: ApplicationService = Depends(application_service)):
    return list(service.events(application_id, newest_first=order == "desc"))


@app.get("/api/applications/{application_id}/cues", response_model=CorrectionCues)
def application_cues(application_id: str, service: ApplicationService = Depends(application_service)):
    return service.correction_cues(application_id)


@app.post("/api/applications/{application_id}/documents", response_model=ClientDocument, status_code=201)
async def upload_application_document(
    application_id: str,
    document_type: str = Form(...),
    file: UploadFile = File(...),
    who: Caller = Depends(caller),
    service: ApplicationService = Depends(application_service),
):
    service.ensure_upload_allowed(application_id)
    stored = await save_upload(file, service.settings.UPLOAD_DIR, service.settings.MAX_UPLOAD_BYTES)
    try:
        return service.add_document(application_id, document_type, stored, who.user_id)
    except Exception:
        discard(stored)
        raise


@app.delete("/api/applications/{application_id}/documents/{document_id}")
def delete_application_document(application_id: str, document_id: str, who: Caller = Depends(caller),
                                service: ApplicationService = Depends(application_service)):
    service.delete_document(application_id, document_id, who.capabilities)
    return {"message": "Document deleted successfully"}


@app.post("/api/applications/{application_id}/documents/{document_id}/review", response_model=ClientDocument)
def review_application_document(application_id: str, document_id: str, body: ReviewDocumentRequest,
                                who: Caller = Depends(caller),
                                service: ApplicationService = Depends(application_service)):
    return service.review_document(application_id, document_id, body.status, who.user_id,
                                   who.capabilities, body.notes)


@app.post("/api/applications/{application_id}/documents/{document_id}/scan-result",
          response_model=ClientDocument)
def application_scan_result(application_id: str, document_id: str, body: ScanResultRequest,
                            service: ApplicationService = Depends(application_service)):
    return service.record_scan_result(application_id, document_id, body.scan_status)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("kyc_workflow.main:app", host="0.0.0.0", port=8000)
