"""
Tests for the KYC transition engine.

Verifies:
1. Every valid (status, action) pair lands on the right status with one event
2. Every invalid pair fails with InvalidTransition and changes nothing
3. Reason / item validation
4. Capability checks
5. The documented scenarios
"""

import pytest

from kyc_workflow.errors import Forbidden, InvalidTransition, ValidationError
from kyc_workflow.schemas import KycStatus, ReturnedItem, RiskRating
from kyc_workflow.services.kyc import KYC_TRANSITIONS

from conftest import CLIENT_ONLY, REVIEWER, kyc_record


ITEMS = [{"type": "document", "documentType": "NATIONAL_ID", "message": "blurry"}]


def run(engine, action, record):
    """Call `action` with valid arguments."""
    if action == "submit":
        return engine.submit(record, "client-1")
    if action == "approve":
        return engine.approve(record, "officer-1", REVIEWER)
    if action == "reject":
        return engine.reject(record, "officer-1", REVIEWER, reason="ID unclear")
    if action == "return":
        return engine.return_to_client(record, "officer-1", REVIEWER, reason="fix docs", items=ITEMS)
    if action == "resubmit":
        return engine.resubmit(record, "client-1")
    if action == "update_risk_rating":
        return engine.update_risk_rating(record, "officer-1", REVIEWER, RiskRating.HIGH)
    raise AssertionError(action)


ACTIONS = ["submit", "approve", "reject", "return", "resubmit", "update_risk_rating"]

VALID = {
    (KycStatus.UNVERIFIED, "submit"): KycStatus.PENDING_REVIEW,
    (KycStatus.PENDING_REVIEW, "approve"): KycStatus.VERIFIED,
    (KycStatus.PENDING_REVIEW, "reject"): KycStatus.REJECTED,
    (KycStatus.PENDING_REVIEW, "return"): KycStatus.RETURNED,
    (KycStatus.RETURNED, "resubmit"): KycStatus.PENDING_REVIEW,
    (KycStatus.VERIFIED, "update_risk_rating"): KycStatus.VERIFIED,
}

INVALID = [(s, a) for s in KycStatus for a in ACTIONS if (s, a) not in VALID]


class TestTransitionTable:

    def test_every_status_has_a_guard(self):
        for status in KycStatus:
            # Raises KeyError if a status were missing
            KYC_TRANSITIONS.allowed_actions(status)

    def test_terminal_statuses(self):
        assert KYC_TRANSITIONS.allowed_actions(KycStatus.REJECTED) == ()
        assert KYC_TRANSITIONS.allowed_actions(KycStatus.VERIFIED) == ("update_risk_rating",)


class TestValidTransitions:

    @pytest.mark.parametrize("source,action", list(VALID))
    def test_valid_pair(self, engine, source, action):
        record = kyc_record(source)
        before = len(record.history)

        updated = run(engine, action, record)

        assert updated.status == VALID[(source, action)]
        assert len(updated.history) == before + 1
        event = updated.history[-1]
        assert event.from_status == source
        assert event.to_status == VALID[(source, action)]

    @pytest.mark.parametrize("source,action", list(VALID))
    def test_input_record_untouched(self, engine, source, action):
        record = kyc_record(source)
        snapshot = record.model_dump()

        run(engine, action, record)

        assert record.model_dump() == snapshot


class TestInvalidTransitions:

    @pytest.mark.parametrize("source,action", INVALID)
    def test_invalid_pair(self, engine, source, action):
        record = kyc_record(source)
        snapshot = record.model_dump()

        with pytest.raises(InvalidTransition) as exc_info:
            run(engine, action, record)

        assert exc_info.value.current == source
        assert exc_info.value.attempted == action
        assert record.model_dump() == snapshot


class TestValidation:

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_reject_requires_reason(self, engine, reason):
        record = kyc_record(KycStatus.PENDING_REVIEW)
        with pytest.raises(ValidationError):
            engine.reject(record, "officer-1", REVIEWER, reason=reason)
        assert record.status == KycStatus.PENDING_REVIEW
        assert len(record.history) == 1

    def test_return_requires_reason(self, engine):
        with pytest.raises(ValidationError):
            engine.return_to_client(kyc_record(KycStatus.PENDING_REVIEW), "officer-1", REVIEWER,
                                    reason="", items=ITEMS)

    def test_return_requires_items(self, engine):
        with pytest.raises(ValidationError):
            engine.return_to_client(kyc_record(KycStatus.PENDING_REVIEW), "officer-1", REVIEWER,
                                    reason="fix docs", items=[])

    @pytest.mark.parametrize("item", [
        {"type": "document", "message": "blurry"},
        {"type": "field", "message": "wrong"},
        {"type": "other", "message": "  "},
        {"type": "mystery", "message": "x"},
    ])
    def test_return_rejects_malformed_items(self, engine, item):
        with pytest.raises(ValidationError):
            engine.return_to_client(kyc_record(KycStatus.PENDING_REVIEW), "officer-1", REVIEWER,
                                    reason="fix", items=[item])

    def test_unknown_risk_rating(self, engine):
        with pytest.raises(ValidationError):
            engine.update_risk_rating(kyc_record(KycStatus.VERIFIED), "officer-1", REVIEWER, "EXTREME")

    def test_missing_actor(self, engine):
        with pytest.raises(ValidationError):
            engine.submit(kyc_record(KycStatus.UNVERIFIED), "")


class TestCapabilities:

    def test_approve_needs_review_capability(self, engine):
        record = kyc_record(KycStatus.PENDING_REVIEW)
        with pytest.raises(Forbidden):
            engine.approve(record, "client-1", CLIENT_ONLY)
        assert record.status == KycStatus.PENDING_REVIEW

    def test_reject_needs_review_capability(self, engine):
        with pytest.raises(Forbidden):
            engine.reject(kyc_record(KycStatus.PENDING_REVIEW), "client-1", CLIENT_ONLY, reason="no")

    def test_return_needs_review_capability(self, engine):
        with pytest.raises(Forbidden):
            engine.return_to_client(kyc_record(KycStatus.PENDING_REVIEW), "client-1", CLIENT_ONLY,
                                    reason="fix", items=ITEMS)

    def test_risk_rating_needs_review_capability(self, engine):
        record = kyc_record(KycStatus.VERIFIED)
        snapshot = record.model_dump()
        with pytest.raises(Forbidden):
            engine.update_risk_rating(record, "client-1", CLIENT_ONLY, RiskRating.LOW)
        assert record.model_dump() == snapshot


class TestSideEffects:

    def test_submit_event_has_no_reason(self, engine):
        updated = engine.submit(kyc_record(KycStatus.UNVERIFIED), "client-1", notes="all uploaded")
        assert updated.history[-1].reason is None
        assert updated.history[-1].notes == "all uploaded"
        assert updated.history[-1].performed_by == "client-1"

    def test_approve_sets_verification_metadata(self, engine):
        updated = engine.approve(kyc_record(KycStatus.PENDING_REVIEW), "officer-9", REVIEWER)
        assert updated.verified_by == "officer-9"
        assert updated.verified_at == updated.history[-1].created_at

    def test_return_persists_reason_and_items(self, engine):
        updated = engine.return_to_client(kyc_record(KycStatus.PENDING_REVIEW), "officer-1", REVIEWER,
                                          reason="fix docs", items=ITEMS, notes="see list")
        assert updated.return_reason == "fix docs"
        assert updated.returned_items == [
            ReturnedItem(type="document", document_type="NATIONAL_ID", message="blurry")
        ]
        assert updated.history[-1].reason == "fix docs"

    def test_risk_rating_twice_keeps_both_entries(self, engine):
        record = kyc_record(KycStatus.VERIFIED)
        once = engine.update_risk_rating(record, "officer-1", REVIEWER, RiskRating.MEDIUM)
        twice = engine.update_risk_rating(once, "officer-1", REVIEWER, RiskRating.MEDIUM)

        audits = [e for e in twice.history if e.from_status == e.to_status == KycStatus.VERIFIED]
        assert len(audits) == 2
        assert all(e.risk_rating == RiskRating.MEDIUM for e in audits)
        assert twice.risk_rating == RiskRating.MEDIUM

    def test_risk_rating_accepts_lowercase(self, engine):
        updated = engine.update_risk_rating(kyc_record(KycStatus.VERIFIED), "officer-1", REVIEWER, "low")
        assert updated.risk_rating == RiskRating.LOW


class TestScenarios:

    def test_a_submit(self, engine):
        updated = engine.submit(kyc_record(KycStatus.UNVERIFIED), "client-1")
        assert updated.status == KycStatus.PENDING_REVIEW
        assert len(updated.history) == 1
        assert updated.history[0].to_status == KycStatus.PENDING_REVIEW

    def test_b_reject(self, engine):
        updated = engine.reject(kyc_record(KycStatus.PENDING_REVIEW), "officer-1", REVIEWER,
                                reason="ID unclear")
        assert updated.status == KycStatus.REJECTED
        assert updated.history[-1].reason == "ID unclear"

    def test_c_return_then_resubmit(self, engine):
        record = engine.submit(kyc_record(KycStatus.UNVERIFIED), "client-1")
        record = engine.return_to_client(record, "officer-1", REVIEWER, reason="fix docs", items=ITEMS)
        assert record.status == KycStatus.RETURNED

        resubmitted = engine.resubmit(record, "client-1")

        assert resubmitted.status == KycStatus.PENDING_REVIEW
        assert resubmitted.returned_items == record.returned_items
        assert resubmitted.return_reason == "fix docs"
        # submit + return + resubmit
        assert [e.to_status for e in resubmitted.history][-2:] == [KycStatus.RETURNED, KycStatus.PENDING_REVIEW]

    def test_c_from_pending_review_counts_two_events(self, engine):
        record = kyc_record(KycStatus.PENDING_REVIEW).model_copy(update={"history": []})
        record = engine.return_to_client(record, "officer-1", REVIEWER, reason="fix docs", items=ITEMS)
        record = engine.resubmit(record, "client-1")
        assert len(record.history) == 2

    def test_d_update_risk_rating(self, engine):
        updated = engine.update_risk_rating(kyc_record(KycStatus.VERIFIED), "officer-1", REVIEWER, RiskRating.HIGH)
        assert updated.risk_rating == RiskRating.HIGH
        assert updated.status == KycStatus.VERIFIED

    def test_e_approve_unverified(self, engine):
        record = kyc_record(KycStatus.UNVERIFIED)
        with pytest.raises(InvalidTransition):
            engine.approve(record, "officer-1", REVIEWER)
        assert record.status == KycStatus.UNVERIFIED
        assert record.history == []
