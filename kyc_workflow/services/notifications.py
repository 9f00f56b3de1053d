import logging
import threading
from typing import Any, Dict, List, Optional

import requests

from kyc_workflow.schemas import ReturnedItem
from kyc_workflow.services.returns import item_label, summarize

logger = logging.getLogger(__name__)


class Notifier:
    """
    Posts workflow notifications to a webhook. Fire-and-forget: delivery runs
    on a daemon thread and failures are logged, never raised to the caller.
    Without a webhook URL nothing is sent.
    """

    def __init__(self, webhook_url: Optional[str], timeout: float = 10.0,
                 portal_url: str = "http://localhost:5173", background: bool = True):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.portal_url = portal_url.rstrip("/")
        self.background = background

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def _post(self, payload: Dict[str, Any]) -> None:
        try:
            resp = requests.post(
                self.webhook_url,
                json=payload,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Notification %s for %s failed: %s", payload.get("event"), payload.get("clientId"), e)

    def dispatch(self, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        if not self.background:
            self._post(payload)
            return
        thread = threading.Thread(
            target=self._post,
            args=(payload,),
            daemon=True,
            name=f"notify-{payload.get('event')}",
        )
        thread.start()

    # -- KYC ---------------------------------------------------------------

    def kyc_status_changed(self, client_id: str, from_status: str, to_status: str,
                           reason: Optional[str] = None) -> None:
        titles = {
            "PENDING_REVIEW": "KYC Submitted for Review",
            "VERIFIED": "KYC Verified",
            "REJECTED": "KYC Rejected",
        }
        message = f"Your KYC status changed from {from_status} to {to_status}."
        if reason:
            message += f" {reason}"
        self.dispatch({
            "event": "kyc_status_changed",
            "clientId": client_id,
            "type": "warning" if to_status == "REJECTED" else "info",
            "title": titles.get(to_status, "KYC Status Updated"),
            "message": message,
            "fromStatus": from_status,
            "toStatus": to_status,
            "reason": reason,
        })

    def kyc_returned(self, client_id: str, reason: str, items: List[ReturnedItem]) -> None:
        self.dispatch({
            "event": "kyc_returned",
            "clientId": client_id,
            "type": "warning",
            "title": "Action Required: KYC Needs Correction",
            "message": f"Your KYC verification needs corrections. {reason}",
            "summary": summarize(items),
            "items": [{"label": item_label(i), "message": i.message} for i in items],
            "actionUrl": f"{self.portal_url}/portal/kyc?returned=true",
            "actionLabel": "Fix Now",
            "reason": reason,
            "returnedItems": [i.model_dump(by_alias=True, exclude_none=True, mode="json") for i in items],
        })

    # -- Loan applications -------------------------------------------------

    def application_status_changed(self, application: Any, event_type: str,
                                   reason: Optional[str] = None) -> None:
        payload = {
            "event": event_type,
            "clientId": application.client_id,
            "applicationId": application.id,
            "applicationNumber": application.application_number,
            "toStatus": application.status.value,
            "reason": reason,
        }
        if application.status.value == "RETURNED":
            payload.update({
                "title": "Action Required: Application Needs Correction",
                "summary": summarize(application.returned_items),
                "actionUrl": f"{self.portal_url}/portal/applications/{application.id}",
                "returnedItems": [
                    i.model_dump(by_alias=True, exclude_none=True, mode="json")
                    for i in application.returned_items
                ],
            })
        self.dispatch(payload)
