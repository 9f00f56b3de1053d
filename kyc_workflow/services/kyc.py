"""
KYC transition engine.

Moves a ClientKycRecord between statuses:

    UNVERIFIED      --submit-->             PENDING_REVIEW
    PENDING_REVIEW  --approve-->            VERIFIED
    PENDING_REVIEW  --reject-->             REJECTED
    PENDING_REVIEW  --return-->             RETURNED
    RETURNED        --resubmit-->           PENDING_REVIEW
    VERIFIED        --update_risk_rating--> VERIFIED

Every operation works on a copy. The caller's record is never touched, so a
failed call leaves status, history and returned items exactly as they were.
A successful call returns the new record with exactly one new history event.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional, Tuple, Union

from kyc_workflow.errors import Forbidden, ValidationError
from kyc_workflow.schemas import (
    Capabilities,
    ClientKycRecord,
    KycHistoryEvent,
    KycStatus,
    ReturnedItem,
    RiskRating,
    utcnow,
)
from kyc_workflow.services import history, returns
from kyc_workflow.services.workflow import TransitionTable

logger = logging.getLogger(__name__)


SUBMIT = "submit"
APPROVE = "approve"
REJECT = "reject"
RETURN = "return"
RESUBMIT = "resubmit"
UPDATE_RISK_RATING = "update_risk_rating"

KYC_TRANSITIONS = TransitionTable(
    KycStatus,
    {
        KycStatus.UNVERIFIED: {SUBMIT: KycStatus.PENDING_REVIEW},
        KycStatus.PENDING_REVIEW: {
            APPROVE: KycStatus.VERIFIED,
            REJECT: KycStatus.REJECTED,
            RETURN: KycStatus.RETURNED,
        },
        KycStatus.VERIFIED: {UPDATE_RISK_RATING: KycStatus.VERIFIED},
        KycStatus.REJECTED: {},
        KycStatus.RETURNED: {RESUBMIT: KycStatus.PENDING_REVIEW},
    },
)


def _require_review(capabilities: Optional[Capabilities], action: str) -> None:
    if capabilities is None or not capabilities.may_review:
        raise Forbidden(f"Not permitted to {action} KYC")


class KycTransitionEngine:
    def __init__(self, table: TransitionTable = KYC_TRANSITIONS):
        self.table = table

    def allowed_actions(self, status: KycStatus) -> Tuple[str, ...]:
        return self.table.allowed_actions(status)

    def _apply(
        self,
        record: ClientKycRecord,
        action: str,
        actor: str,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
        **changes,
    ) -> ClientKycRecord:
        current = record.status
        target = self.table.target(current, action)
        if not actor:
            raise ValidationError("Missing authenticated user")

        working = record.model_copy(deep=True)
        for name, value in changes.items():
            setattr(working, name, value)
        working.status = target
        history.append(
            working,
            KycHistoryEvent(
                from_status=current,
                to_status=target,
                reason=reason,
                notes=notes,
                performed_by=actor,
                created_at=now or utcnow(),
                risk_rating=changes.get("risk_rating") if action == UPDATE_RISK_RATING else None,
            ),
        )
        # Re-validate so a broken record can never be handed back
        updated = ClientKycRecord.model_validate(working.model_dump())
        logger.info("KYC %s: %s -> %s by %s", action, current.value, target.value, actor)
        return updated

    def submit(self, record: ClientKycRecord, actor: str, notes: Optional[str] = None,
               now: Optional[datetime] = None) -> ClientKycRecord:
        return self._apply(record, SUBMIT, actor, notes=notes, now=now)

    def approve(self, record: ClientKycRecord, actor: str, capabilities: Capabilities,
                notes: Optional[str] = None, now: Optional[datetime] = None) -> ClientKycRecord:
        _require_review(capabilities, APPROVE)
        now = now or utcnow()
        return self._apply(record, APPROVE, actor, notes=notes, now=now,
                           verified_at=now, verified_by=actor)

    def reject(self, record: ClientKycRecord, actor: str, capabilities: Capabilities,
               reason: Optional[str], notes: Optional[str] = None,
               now: Optional[datetime] = None) -> ClientKycRecord:
        _require_review(capabilities, REJECT)
        reason = returns.require_reason(reason, REJECT)
        return self._apply(record, REJECT, actor, reason=reason, notes=notes, now=now)

    def return_to_client(self, record: ClientKycRecord, actor: str, capabilities: Capabilities,
                         reason: Optional[str], items: Iterable[Union[ReturnedItem, dict]],
                         notes: Optional[str] = None,
                         now: Optional[datetime] = None) -> ClientKycRecord:
        _require_review(capabilities, RETURN)
        reason = returns.require_reason(reason, RETURN)
        items = returns.coerce_items(items)
        return self._apply(record, RETURN, actor, reason=reason, notes=notes, now=now,
                           return_reason=reason, returned_items=items)

    def resubmit(self, record: ClientKycRecord, actor: str, notes: Optional[str] = None,
                 now: Optional[datetime] = None) -> ClientKycRecord:
        # return_reason / returned_items are kept for audit
        return self._apply(record, RESUBMIT, actor, notes=notes, now=now)

    def update_risk_rating(self, record: ClientKycRecord, actor: str, capabilities: Capabilities,
                           rating: Union[RiskRating, str], notes: Optional[str] = None,
                           now: Optional[datetime] = None) -> ClientKycRecord:
        _require_review(capabilities, "rate")
        try:
            rating = RiskRating(rating)
        except ValueError:
            raise ValidationError(f"Invalid risk rating: {rating}") from None
        return self._apply(record, UPDATE_RISK_RATING, actor, notes=notes, now=now,
                           risk_rating=rating)
