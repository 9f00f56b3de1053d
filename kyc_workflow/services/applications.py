"""
Loan-application workflow. Same transition shape as KYC, own vocabulary:

    DRAFT          --submit-->       SUBMITTED
    SUBMITTED      --start_review--> UNDER_REVIEW
    UNDER_REVIEW   --approve-->      APPROVED
    UNDER_REVIEW   --reject-->       REJECTED
    SUBMITTED,
    UNDER_REVIEW   --return-->       RETURNED
    RETURNED       --resubmit-->     SUBMITTED
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Union

from kyc_workflow.config import Settings
from kyc_workflow.errors import Forbidden, InvalidTransition, ValidationError
from kyc_workflow.schemas import (
    ApplicationEvent,
    ApplicationStatus,
    BulkActionResult,
    Capabilities,
    ClientDocument,
    CorrectionCues,
    CreateApplicationRequest,
    LoanApplication,
    ReturnedItem,
    ReviewStatus,
    UpdateApplicationRequest,
    utcnow,
)
from kyc_workflow.services import documents as docs
from kyc_workflow.services import returns
from kyc_workflow.services.clients import ClientService
from kyc_workflow.services.history import HistoryView
from kyc_workflow.services.notifications import Notifier
from kyc_workflow.services.workflow import TransitionTable, run_bulk
from kyc_workflow.utils.files import StoredFile
from kyc_workflow.utils.store import VersionedStore

logger = logging.getLogger(__name__)


APPLICATION_TRANSITIONS = TransitionTable(
    ApplicationStatus,
    {
        ApplicationStatus.DRAFT: {"submit": ApplicationStatus.SUBMITTED},
        ApplicationStatus.SUBMITTED: {
            "start_review": ApplicationStatus.UNDER_REVIEW,
            "return": ApplicationStatus.RETURNED,
        },
        ApplicationStatus.UNDER_REVIEW: {
            "approve": ApplicationStatus.APPROVED,
            "reject": ApplicationStatus.REJECTED,
            "return": ApplicationStatus.RETURNED,
        },
        ApplicationStatus.APPROVED: {},
        ApplicationStatus.REJECTED: {},
        ApplicationStatus.RETURNED: {"resubmit": ApplicationStatus.SUBMITTED},
    },
)

EVENT_TYPES = {
    "submit": "application_submitted",
    "start_review": "moved_to_under_review",
    "approve": "application_approved",
    "reject": "application_rejected",
    "return": "application_returned",
    "resubmit": "application_resubmitted",
}

EDITABLE_STATUSES = (ApplicationStatus.DRAFT, ApplicationStatus.RETURNED)


class LoanApplicationEngine:
    def __init__(self, table: TransitionTable = APPLICATION_TRANSITIONS):
        self.table = table

    def _apply(self, application: LoanApplication, action: str, actor: str,
               reason: Optional[str] = None, notes: Optional[str] = None,
               now: Optional[datetime] = None, **changes) -> LoanApplication:
        current = application.status
        target = self.table.target(current, action)
        now = now or utcnow()

        working = application.model_copy(deep=True)
        for name, value in changes.items():
            setattr(working, name, value)
        working.status = target
        working.events.append(ApplicationEvent(
            event_type=EVENT_TYPES[action],
            from_status=current,
            to_status=target,
            reason=reason,
            notes=notes,
            performed_by=actor,
            created_at=now,
        ))
        updated = LoanApplication.model_validate(working.model_dump())
        logger.info("Application %s %s: %s -> %s by %s",
                    application.application_number, action, current.value, target.value, actor)
        return updated

    def submit(self, application, actor, notes=None, now=None):
        now = now or utcnow()
        return self._apply(application, "submit", actor, notes=notes, now=now, submitted_at=now)

    def start_review(self, application, actor, capabilities: Capabilities, now=None):
        if not capabilities.may_review:
            raise Forbidden("Not permitted to review applications")
        now = now or utcnow()
        return self._apply(application, "start_review", actor, now=now, reviewed_at=now, reviewed_by=actor)

    def approve(self, application, actor, capabilities: Capabilities, notes=None, now=None):
        if not capabilities.may_review:
            raise Forbidden("Not permitted to approve applications")
        now = now or utcnow()
        return self._apply(application, "approve", actor, notes=notes, now=now,
                           approved_at=now, approved_by=actor)

    def reject(self, application, actor, capabilities: Capabilities, reason, notes=None, now=None):
        if not capabilities.may_review:
            raise Forbidden("Not permitted to reject applications")
        reason = returns.require_reason(reason, "reject")
        now = now or utcnow()
        return self._apply(application, "reject", actor, reason=reason, notes=notes, now=now,
                           rejected_at=now, rejected_by=actor, rejection_reason=reason)

    def return_to_client(self, application, actor, capabilities: Capabilities, reason,
                         items: Iterable[Union[ReturnedItem, dict]], notes=None, now=None):
        if not capabilities.may_review:
            raise Forbidden("Not permitted to return applications")
        reason = returns.require_reason(reason, "return")
        items = returns.coerce_items(items)
        return self._apply(application, "return", actor, reason=reason, notes=notes, now=now,
                           return_reason=reason, returned_items=items)

    def resubmit(self, application, actor, notes=None, now=None):
        now = now or utcnow()
        return self._apply(application, "resubmit", actor, notes=notes, now=now, submitted_at=now)


class ApplicationService:
    def __init__(
        self,
        settings: Settings,
        clients: ClientService,
        store: Optional[VersionedStore] = None,
        engine: Optional[LoanApplicationEngine] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = settings
        self.clients = clients
        self.store: VersionedStore[LoanApplication] = store or VersionedStore("Application")
        self.engine = engine or LoanApplicationEngine()
        self.notifier = notifier or Notifier(None)
        self.registry = docs.DocumentRegistry(docs.APPLICATION_UPLOAD_STATUSES, for_application=True)

    def _next_number(self) -> str:
        base = f"APP-{utcnow().year}-{len(self.store) + 1:06d}"
        if self.store.find(lambda a: a.application_number == base) is None:
            return base
        return f"{base}-{int(utcnow().timestamp() * 1000)}"

    def _update(self, application_id: str, change: Callable[[LoanApplication], None]) -> LoanApplication:
        application = self.store.get(application_id)
        expected = application.version
        change(application)
        return self.store.commit(application, expected)

    def _transition(self, application_id: str,
                    apply: Callable[[LoanApplication], LoanApplication]) -> LoanApplication:
        application = self.store.get(application_id)
        expected = application.version
        updated = apply(application)
        saved = self.store.commit(updated, expected)
        event = saved.events[-1]
        self.notifier.application_status_changed(saved, event.event_type, event.reason)
        return saved

    def create(self, request: CreateApplicationRequest, actor: str) -> LoanApplication:
        self.clients.get_client(request.client_id)
        application = LoanApplication(
            application_number=self._next_number(),
            client_id=request.client_id,
            requested_amount=request.requested_amount,
            term_months=request.term_months,
            purpose=request.purpose,
            created_by=actor,
        )
        created = self.store.add(application)
        logger.info("Application %s created for client %s", created.application_number, created.client_id)
        return created

    def get(self, application_id: str) -> LoanApplication:
        return self.store.get(application_id)

    def update(self, application_id: str, request: UpdateApplicationRequest) -> LoanApplication:
        updates = request.model_dump(exclude_unset=True, exclude_none=True)

        def change(application: LoanApplication) -> None:
            if application.status not in EDITABLE_STATUSES:
                raise InvalidTransition(application.status, "edit the application")
            for name, value in updates.items():
                setattr(application, name, value)

        return self._update(application_id, change)

    def submit(self, application_id: str, actor: str, notes: Optional[str] = None) -> LoanApplication:
        return self._transition(application_id, lambda a: self.engine.submit(a, actor, notes))

    def start_review(self, application_id: str, actor: str, capabilities: Capabilities) -> LoanApplication:
        return self._transition(application_id, lambda a: self.engine.start_review(a, actor, capabilities))

    def approve(self, application_id: str, actor: str, capabilities: Capabilities,
                notes: Optional[str] = None) -> LoanApplication:
        def apply(application: LoanApplication) -> LoanApplication:
            if any(d.review_status == ReviewStatus.REJECTED for d in docs.active(application.documents)):
                raise ValidationError("Rejected documents must be replaced before approval")
            return self.engine.approve(application, actor, capabilities, notes)

        return self._transition(application_id, apply)

    def reject(self, application_id: str, actor: str, capabilities: Capabilities,
               reason: Optional[str], notes: Optional[str] = None) -> LoanApplication:
        return self._transition(application_id,
                                lambda a: self.engine.reject(a, actor, capabilities, reason, notes))

    def return_to_client(self, application_id: str, actor: str, capabilities: Capabilities,
                         reason: Optional[str], items, notes: Optional[str] = None) -> LoanApplication:
        return self._transition(
            application_id,
            lambda a: self.engine.return_to_client(a, actor, capabilities, reason, items, notes),
        )

    def resubmit(self, application_id: str, actor: str, notes: Optional[str] = None) -> LoanApplication:
        return self._transition(application_id, lambda a: self.engine.resubmit(a, actor, notes))

    def ensure_upload_allowed(self, application_id: str) -> None:
        self.registry.ensure_accepts(self.store.get(application_id).status)

    def add_document(self, application_id: str, document_type, stored: StoredFile, actor: str) -> ClientDocument:
        added: List[ClientDocument] = []

        def change(application: LoanApplication) -> None:
            added.append(self.registry.add(application.documents, application.status,
                                           document_type, stored, actor))

        self._update(application_id, change)
        return added[0]

    def delete_document(self, application_id: str, document_id: str,
                        capabilities: Capabilities) -> LoanApplication:
        if not capabilities.may_delete:
            raise Forbidden("Not permitted to delete documents")
        return self._update(application_id, lambda a: self.registry.soft_delete(a.documents, document_id))

    def review_document(self, application_id: str, document_id: str, status, reviewer: str,
                        capabilities: Capabilities, notes: Optional[str] = None) -> ClientDocument:
        if not capabilities.may_review:
            raise Forbidden("Not permitted to review documents")
        reviewed: List[ClientDocument] = []

        def change(application: LoanApplication) -> None:
            reviewed.append(self.registry.review(application.documents, document_id, status, reviewer, notes))

        self._update(application_id, change)
        return reviewed[0]

    def record_scan_result(self, application_id: str, document_id: str, scan_status) -> ClientDocument:
        updated: List[ClientDocument] = []

        def change(application: LoanApplication) -> None:
            updated.append(self.registry.record_scan_result(application.documents, document_id, scan_status))

        self._update(application_id, change)
        return updated[0]

    def events(self, application_id: str, newest_first: bool = False) -> HistoryView:
        return HistoryView(self.store.get(application_id).events, newest_first=newest_first)

    def correction_cues(self, application_id: str) -> CorrectionCues:
        return returns.correction_cues(self.store.get(application_id), ApplicationStatus.RETURNED)

    def bulk_approve(self, ids: Iterable[str], actor: str, capabilities: Capabilities,
                     notes: Optional[str] = None) -> BulkActionResult:
        return run_bulk(ids, lambda aid: self.approve(aid, actor, capabilities, notes), "approve")

    def bulk_reject(self, ids: Iterable[str], actor: str, capabilities: Capabilities,
                    reason: Optional[str], notes: Optional[str] = None) -> BulkActionResult:
        return run_bulk(ids, lambda aid: self.reject(aid, actor, capabilities, reason, notes), "reject")
