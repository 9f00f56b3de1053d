"""
Client orchestration: every write loads the client, changes a copy, and
commits it against the version it read. A KYC status change and its history
event are part of the same committed record, so they appear together.
"""

import logging
from typing import Callable, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from kyc_workflow.config import Settings
from kyc_workflow.errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from kyc_workflow.schemas import (
    BulkActionResult,
    Capabilities,
    ClientDocument,
    ClientProfile,
    ClientRecord,
    CorrectionCues,
    KycStatus,
    NextOfKin,
    NextOfKinIn,
    ProfileUpdate,
    ReadinessReport,
    Referee,
    RefereeIn,
    ReturnedItem,
    ReturnedItemType,
    RiskRating,
    TimelineEntry,
)
from kyc_workflow.services import documents as docs
from kyc_workflow.services import returns
from kyc_workflow.services.history import HistoryView, KycHistoryLedger
from kyc_workflow.services.kyc import KycTransitionEngine
from kyc_workflow.services.notifications import Notifier
from kyc_workflow.services.workflow import run_bulk
from kyc_workflow.utils.files import StoredFile
from kyc_workflow.utils.store import UniqueKeys, VersionedStore

logger = logging.getLogger(__name__)


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


UNIQUE_PROFILE_KEYS = {
    "ID number already registered": lambda c: _blank_to_none(c.profile.id_number),
    "Phone number already registered": lambda c: _blank_to_none(c.profile.phone_primary),
}


def _assign_client_code(client: ClientRecord, existing: List[ClientRecord]) -> None:
    taken = {c.client_code for c in existing}
    code = f"CL-{len(existing) + 1:06d}"
    suffix = 2
    candidate = code
    while candidate in taken:
        candidate = f"{code}-{suffix}"
        suffix += 1
    client.client_code = candidate


class ClientService:
    def __init__(
        self,
        settings: Settings,
        store: Optional[VersionedStore] = None,
        engine: Optional[KycTransitionEngine] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = settings
        self.store: VersionedStore[ClientRecord] = store or VersionedStore("Client")
        self.engine = engine or KycTransitionEngine()
        self.notifier = notifier or Notifier(None)
        self.registry = docs.DocumentRegistry(docs.KYC_UPLOAD_STATUSES)
        self.ledger = KycHistoryLedger(self.store)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _update(self, client_id: str, change: Callable[[ClientRecord], None],
                unique: Optional[UniqueKeys] = None) -> ClientRecord:
        client = self.store.get(client_id)
        expected = client.version
        change(client)
        return self.store.commit(client, expected, unique=unique)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def create_client(self, profile: ClientProfile, actor: str) -> ClientRecord:
        client = ClientRecord(profile=profile, created_by=actor)
        created = self.store.add(client, unique=UNIQUE_PROFILE_KEYS, prepare=_assign_client_code)
        logger.info("Client %s (%s) created by %s", created.id, created.client_code, actor)
        return created

    def get_client(self, client_id: str) -> ClientRecord:
        return self.store.get(client_id)

    def update_profile(self, client_id: str, changes: ProfileUpdate) -> ClientRecord:
        updates = changes.model_dump(exclude_unset=True)

        def change(client: ClientRecord) -> None:
            status = client.kyc.status
            if status == KycStatus.PENDING_REVIEW:
                raise InvalidTransition(status, "edit the profile")
            if status == KycStatus.VERIFIED and not client.allow_profile_edits_after_kyc:
                raise InvalidTransition(status, "edit the profile",
                                        "Profile edits are locked after KYC verification")
            merged = {**client.profile.model_dump(), **updates}
            try:
                client.profile = ClientProfile.model_validate(merged)
            except PydanticValidationError as e:
                problems = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                )
                raise ValidationError(f"Invalid profile: {problems}") from e

        return self._update(client_id, change, unique=UNIQUE_PROFILE_KEYS)

    def set_profile_edits_after_kyc(self, client_id: str, allow: bool, capabilities: Capabilities) -> ClientRecord:
        if not capabilities.may_administer:
            raise Forbidden("Not permitted to change the profile edit lock")

        def change(client: ClientRecord) -> None:
            if client.kyc.status != KycStatus.VERIFIED:
                raise InvalidTransition(
                    client.kyc.status, "change the profile edit lock",
                    f"Cannot change profile edit lock when status is: {client.kyc.status.value}",
                )
            client.allow_profile_edits_after_kyc = allow

        return self._update(client_id, change)

    # ------------------------------------------------------------------
    # Next of kin / referees
    # ------------------------------------------------------------------

    def add_next_of_kin(self, client_id: str, data: NextOfKinIn) -> NextOfKin:
        nok = NextOfKin(**data.model_dump())
        self._update(client_id, lambda c: c.next_of_kin.append(nok))
        return nok

    def remove_next_of_kin(self, client_id: str, nok_id: str) -> ClientRecord:
        def change(client: ClientRecord) -> None:
            kept = [n for n in client.next_of_kin if n.id != nok_id]
            if len(kept) == len(client.next_of_kin):
                raise NotFound("Next of kin not found")
            client.next_of_kin = kept

        return self._update(client_id, change)

    def add_referee(self, client_id: str, data: RefereeIn) -> Referee:
        referee = Referee(**data.model_dump())
        self._update(client_id, lambda c: c.referees.append(referee))
        return referee

    def remove_referee(self, client_id: str, referee_id: str) -> ClientRecord:
        def change(client: ClientRecord) -> None:
            kept = [r for r in client.referees if r.id != referee_id]
            if len(kept) == len(client.referees):
                raise NotFound("Referee not found")
            client.referees = kept

        return self._update(client_id, change)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def ensure_upload_allowed(self, client_id: str) -> None:
        self.registry.ensure_accepts(self.store.get(client_id).kyc.status)

    def add_document(self, client_id: str, document_type, stored: StoredFile, actor: str) -> ClientDocument:
        added: List[ClientDocument] = []

        def change(client: ClientRecord) -> None:
            added.append(self.registry.add(client.documents, client.kyc.status, document_type, stored, actor))

        self._update(client_id, change)
        return added[0]

    def list_documents(self, client_id: str) -> List[ClientDocument]:
        client = self.store.get(client_id)
        return sorted(docs.active(client.documents), key=lambda d: d.uploaded_at, reverse=True)

    def delete_document(self, client_id: str, document_id: str, capabilities: Capabilities) -> ClientRecord:
        if not capabilities.may_delete:
            raise Forbidden("Not permitted to delete documents")
        return self._update(client_id, lambda c: self.registry.soft_delete(c.documents, document_id))

    def record_scan_result(self, client_id: str, document_id: str, scan_status) -> ClientDocument:
        updated: List[ClientDocument] = []

        def change(client: ClientRecord) -> None:
            updated.append(self.registry.record_scan_result(client.documents, document_id, scan_status))

        self._update(client_id, change)
        return updated[0]

    def readiness(self, client_id: str) -> ReadinessReport:
        client = self.store.get(client_id)
        return docs.readiness_report(client, self.settings.MIN_REFEREES, self.settings.MIN_NEXT_OF_KIN)

    # ------------------------------------------------------------------
    # KYC transitions
    # ------------------------------------------------------------------

    def _transition(self, client_id: str, apply: Callable[[ClientRecord], None]) -> ClientRecord:
        client = self.store.get(client_id)
        expected = client.version
        before = client.kyc.status
        apply(client)
        saved = self.store.commit(client, expected)
        self._notify(saved, before)
        return saved

    def _notify(self, client: ClientRecord, before: KycStatus) -> None:
        after = client.kyc.status
        if after == before:
            return
        event = client.kyc.history[-1]
        if after == KycStatus.RETURNED:
            self.notifier.kyc_returned(client.id, client.kyc.return_reason, client.kyc.returned_items)
        else:
            self.notifier.kyc_status_changed(client.id, before.value, after.value, event.reason)

    def submit_kyc(self, client_id: str, actor: str, notes: Optional[str] = None) -> ClientRecord:
        def apply(client: ClientRecord) -> None:
            if self.settings.REQUIRE_KYC_READINESS:
                report = docs.readiness_report(client, self.settings.MIN_REFEREES, self.settings.MIN_NEXT_OF_KIN)
                if not report.ready:
                    raise ValidationError("Client is not ready for KYC review: missing " + ", ".join(report.missing))
            client.kyc = self.engine.submit(client.kyc, actor, notes)

        return self._transition(client_id, apply)

    def approve_kyc(self, client_id: str, actor: str, capabilities: Capabilities,
                    notes: Optional[str] = None) -> ClientRecord:
        def apply(client: ClientRecord) -> None:
            client.kyc = self.engine.approve(client.kyc, actor, capabilities, notes)
            client.allow_profile_edits_after_kyc = False

        return self._transition(client_id, apply)

    def reject_kyc(self, client_id: str, actor: str, capabilities: Capabilities,
                   reason: Optional[str], notes: Optional[str] = None) -> ClientRecord:
        def apply(client: ClientRecord) -> None:
            client.kyc = self.engine.reject(client.kyc, actor, capabilities, reason, notes)

        return self._transition(client_id, apply)

    def return_kyc(self, client_id: str, actor: str, capabilities: Capabilities, reason: Optional[str],
                   items: Iterable[Union[ReturnedItem, dict]], notes: Optional[str] = None) -> ClientRecord:
        def apply(client: ClientRecord) -> None:
            client.kyc = self.engine.return_to_client(client.kyc, actor, capabilities, reason, items, notes)

        return self._transition(client_id, apply)

    def resubmit_kyc(self, client_id: str, actor: str, notes: Optional[str] = None) -> ClientRecord:
        def apply(client: ClientRecord) -> None:
            if self.settings.RESUBMIT_REQUIRES_NEW_DOCUMENT and client.kyc.status == KycStatus.RETURNED:
                self._require_upload_since_return(client)
            client.kyc = self.engine.resubmit(client.kyc, actor, notes)

        return self._transition(client_id, apply)

    def _require_upload_since_return(self, client: ClientRecord) -> None:
        wants_documents = any(i.type == ReturnedItemType.DOCUMENT for i in client.kyc.returned_items)
        if not wants_documents:
            return
        returned = HistoryView(
            e for e in client.kyc.history if e.to_status == KycStatus.RETURNED
        ).latest()
        if returned is None:
            return
        if not any(d.uploaded_at >= returned.created_at for d in docs.active(client.documents)):
            raise ValidationError("Upload the requested documents before resubmitting")

    def update_risk_rating(self, client_id: str, actor: str, capabilities: Capabilities,
                           rating: Union[RiskRating, str], notes: Optional[str] = None) -> ClientRecord:
        def apply(client: ClientRecord) -> None:
            client.kyc = self.engine.update_risk_rating(client.kyc, actor, capabilities, rating, notes)

        return self._transition(client_id, apply)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def kyc_history(self, client_id: str, newest_first: bool = False) -> HistoryView:
        return self.ledger.list_for(client_id, newest_first=newest_first)

    def correction_cues(self, client_id: str) -> CorrectionCues:
        client = self.store.get(client_id)
        return returns.correction_cues(client.kyc, KycStatus.RETURNED)

    def timeline(self, client_id: str, limit: int = 20) -> List[TimelineEntry]:
        client = self.store.get(client_id)
        events = list(HistoryView(client.kyc.history, newest_first=True))[:limit]
        documents = sorted(docs.active(client.documents), key=lambda d: d.uploaded_at, reverse=True)[:limit]
        entries = [
            TimelineEntry(type="kyc_event", date=e.created_at, data=e.model_dump(by_alias=True, mode="json"))
            for e in events
        ] + [
            TimelineEntry(type="document", date=d.uploaded_at, data=d.model_dump(by_alias=True, mode="json"))
            for d in documents
        ]
        entries.sort(key=lambda entry: entry.date, reverse=True)
        return entries

    def list_clients(self, status: Optional[KycStatus] = None,
                     risk_rating: Optional[RiskRating] = None) -> List[ClientRecord]:
        clients = self.store.values()
        if status is not None:
            clients = [c for c in clients if c.kyc.status == status]
        if risk_rating is not None:
            clients = [c for c in clients if c.kyc.risk_rating == risk_rating]
        return sorted(clients, key=lambda c: c.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Bulk actions
    # ------------------------------------------------------------------

    def bulk_approve(self, ids: Iterable[str], actor: str, capabilities: Capabilities,
                     notes: Optional[str] = None) -> BulkActionResult:
        return run_bulk(ids, lambda cid: self.approve_kyc(cid, actor, capabilities, notes), "approve")

    def bulk_reject(self, ids: Iterable[str], actor: str, capabilities: Capabilities,
                    reason: Optional[str], notes: Optional[str] = None) -> BulkActionResult:
        return run_bulk(ids, lambda cid: self.reject_kyc(cid, actor, capabilities, reason, notes), "reject")
