import logging
import time

import pytest
import requests

from kyc_workflow.schemas import ReturnedItem
from kyc_workflow.services.notifications import Notifier


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


@pytest.fixture
def posted(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "timeout": timeout})
        return FakeResponse()

    monkeypatch.setattr(requests, "post", fake_post)
    return calls


class TestNotifier:

    def test_disabled_without_url(self, posted):
        Notifier(None, background=False).kyc_status_changed("c1", "UNVERIFIED", "PENDING_REVIEW")
        assert posted == []

    def test_status_changed_payload(self, posted):
        notifier = Notifier("http://hooks.test/notify", timeout=3, background=False)
        notifier.kyc_status_changed("c1", "PENDING_REVIEW", "REJECTED", "ID unclear")

        assert len(posted) == 1
        call = posted[0]
        assert call["url"] == "http://hooks.test/notify"
        assert call["timeout"] == 3
        assert call["json"]["title"] == "KYC Rejected"
        assert call["json"]["type"] == "warning"
        assert call["json"]["message"].endswith("ID unclear")

    def test_returned_payload(self, posted):
        notifier = Notifier("http://hooks.test/notify", portal_url="https://portal.test/", background=False)
        items = [
            ReturnedItem(type="document", document_type="ID_FRONT", message="Photo is blurry"),
            ReturnedItem(type="field", field="dateOfBirth", message="Does not match ID"),
        ]
        notifier.kyc_returned("c1", "Please fix", items)

        payload = posted[0]["json"]
        assert payload["title"] == "Action Required: KYC Needs Correction"
        assert payload["actionUrl"] == "https://portal.test/portal/kyc?returned=true"
        assert payload["summary"] == "• Photo is blurry\n• Does not match ID"
        assert payload["items"] == [
            {"label": "ID_FRONT", "message": "Photo is blurry"},
            {"label": "dateOfBirth", "message": "Does not match ID"},
        ]
        assert payload["returnedItems"][0]["documentType"] == "ID_FRONT"

    def test_failures_are_logged_not_raised(self, monkeypatch, caplog):
        def failing_post(*args, **kwargs):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(requests, "post", failing_post)
        notifier = Notifier("http://hooks.test/notify", background=False)

        with caplog.at_level(logging.WARNING):
            notifier.kyc_status_changed("c1", "UNVERIFIED", "PENDING_REVIEW")

        assert "refused" in caplog.text

    def test_http_error_is_logged(self, monkeypatch, caplog):
        monkeypatch.setattr(requests, "post", lambda *a, **k: FakeResponse(502))
        notifier = Notifier("http://hooks.test/notify", background=False)

        with caplog.at_level(logging.WARNING):
            notifier.kyc_status_changed("c1", "UNVERIFIED", "PENDING_REVIEW")

        assert "502" in caplog.text

    def test_background_dispatch(self, posted):
        notifier = Notifier("http://hooks.test/notify")
        notifier.dispatch({"event": "ping"})
        for _ in range(100):
            if posted:
                break
            time.sleep(0.01)
        assert posted[0]["json"] == {"event": "ping"}
