"""
HRMS Approvals - Application Configuration

All runtime settings are read once from the environment (a .env file next to
the backend is loaded first). Values here are defaults for local development.
"""

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent.parent
load_dotenv(ROOT_DIR / '.env')


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str = "") -> List[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "hrms")

# Bounds every store round-trip (server selection, socket reads)
MONGO_TIMEOUT_MS = int(os.environ.get("MONGO_TIMEOUT_MS", "30000"))


# =============================================================================
# AUTH
# =============================================================================

JWT_SECRET = os.environ.get("JWT_SECRET", "hrms-approvals-secret-key")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
JWT_EXPIRY_SECONDS = int(os.environ.get("JWT_EXPIRY_SECONDS", "86400"))


# =============================================================================
# WORKFLOW DEFAULTS (used when no active travel policy exists for a grade)
# =============================================================================

DEFAULT_ESCALATION_THRESHOLD = float(os.environ.get("DEFAULT_ESCALATION_THRESHOLD", "25000"))
DEFAULT_CLAIM_SUBMISSION_DEADLINE_DAYS = int(os.environ.get("DEFAULT_CLAIM_SUBMISSION_DEADLINE_DAYS", "30"))
DEFAULT_ADVANCE_PERCENTAGE = float(os.environ.get("DEFAULT_ADVANCE_PERCENTAGE", "80"))
DEFAULT_FINANCE_APPROVAL_THRESHOLD = float(os.environ.get("DEFAULT_FINANCE_APPROVAL_THRESHOLD", "50000"))


# =============================================================================
# REQUEST GUARDS
# =============================================================================

RATE_LIMIT_PER_MIN = int(os.environ.get("RATE_LIMIT_PER_MIN", "200"))
RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "60"))

IP_WHITELIST_ENABLED = _env_bool("IP_WHITELIST_ENABLED")
ADMIN_IP_WHITELIST = _env_list("ADMIN_IP_WHITELIST")
ADMIN_PATH_PREFIXES = _env_list("ADMIN_PATH_PREFIXES", "/api/audit-logs,/api/travel/policies")

# Peers allowed to set X-Forwarded-For / X-Real-IP (exact IPs or CIDRs)
TRUSTED_PROXIES = _env_list("TRUSTED_PROXIES")


# =============================================================================
# SIDE EFFECTS
# =============================================================================

OUTBOX_MAX_ATTEMPTS = int(os.environ.get("OUTBOX_MAX_ATTEMPTS", "3"))
OUTBOX_RETRY_DELAY_SECONDS = float(os.environ.get("OUTBOX_RETRY_DELAY_SECONDS", "1.0"))

EMAIL_PROVIDER = os.environ.get("EMAIL_PROVIDER", "mock").lower()
EMAIL_FROM_ADDRESS = os.environ.get("EMAIL_FROM_ADDRESS", "HRMS <noreply@hrms.local>")
NOTIFICATION_WEBHOOK_URL = os.environ.get("NOTIFICATION_WEBHOOK_URL", "")


# =============================================================================
# HTTP
# =============================================================================

CORS_ORIGINS = _env_list("CORS_ORIGINS", "*")
