import os
from functools import lru_cache
from pydantic import BaseModel


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y")


class Settings(BaseModel):
    # Submission gating
    REQUIRE_KYC_READINESS: bool = _env_flag("REQUIRE_KYC_READINESS")  # off: readiness is advisory
    RESUBMIT_REQUIRES_NEW_DOCUMENT: bool = _env_flag("RESUBMIT_REQUIRES_NEW_DOCUMENT")
    MIN_REFEREES: int = int(os.getenv("MIN_REFEREES", "2"))
    MIN_NEXT_OF_KIN: int = int(os.getenv("MIN_NEXT_OF_KIN", "1"))

    # Roles granted each capability (comma separated)
    REVIEWER_ROLES: str = os.getenv("REVIEWER_ROLES", "ADMIN,CREDIT_OFFICER")
    DELETE_ROLES: str = os.getenv("DELETE_ROLES", "ADMIN")
    ADMIN_ROLES: str = os.getenv("ADMIN_ROLES", "ADMIN")

    # Uploads
    UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", "uploads")
    MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

    # Notifications
    NOTIFY_WEBHOOK_URL: str | None = os.getenv("NOTIFY_WEBHOOK_URL") or None
    NOTIFY_TIMEOUT: float = float(os.getenv("NOTIFY_TIMEOUT", "10"))
    PORTAL_URL: str = os.getenv("PORTAL_URL", "http://localhost:5173")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


@lru_cache
def get_settings() -> Settings:
    return Settings()
