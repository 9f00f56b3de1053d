from typing import Optional, Set

from kyc_workflow.config import Settings
from kyc_workflow.schemas import Capabilities


def _role_set(value: str) -> Set[str]:
    return {r.strip().upper() for r in (value or "").split(",") if r.strip()}


def capabilities_for(role: Optional[str], settings: Settings) -> Capabilities:
    """Translate a caller's role into the capabilities the workflow consumes."""
    role = (role or "").strip().upper()
    return Capabilities(
        may_review=role in _role_set(settings.REVIEWER_ROLES),
        may_delete=role in _role_set(settings.DELETE_ROLES),
        may_administer=role in _role_set(settings.ADMIN_ROLES),
    )
