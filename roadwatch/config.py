import os
from dotenv import load_dotenv

# Load params from .env file
load_dotenv()

# Data storage
DB_PATH = os.getenv("ROADWATCH_DB_PATH", "data/roadwatch.db")

# Admission budgets (per role, fixed 15 minute windows)
DEFAULT_WINDOW_MS = 15 * 60 * 1000
DEFAULT_ROLE_BUDGETS = {
    "citizen": 100,
    "staff": 300,
    "admin": 500,
}

# Revision loop cap; 0 disables it
DEFAULT_MAX_REVISIONS = 5

# Progress percentages that notify the report owner
PROGRESS_MILESTONES = (25, 50, 75, 100)

# Report text limits
TITLE_MIN = 5
TITLE_MAX = 100
DESCRIPTION_MIN = 10
DESCRIPTION_MAX = 1000
REASON_MAX = 500

# Report listing pages
DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 100


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = str(raw).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= minimum else default


def get_store_backend() -> str:
    return (os.getenv("ROADWATCH_STORE") or "memory").strip().lower()


def get_db_path() -> str:
    return os.getenv("ROADWATCH_DB_PATH", DB_PATH)


def get_max_revisions() -> int:
    return _env_int("ROADWATCH_MAX_REVISIONS", DEFAULT_MAX_REVISIONS, minimum=0)


def owner_delete_pending_enabled() -> bool:
    """
    Lets an owner delete their own report while it is still Pending.
    Off by default: deletion is an administrator action.
    """
    return _env_bool("ROADWATCH_OWNER_DELETE_PENDING", False)


def get_notify_webhook_url() -> str:
    return (os.getenv("ROADWATCH_NOTIFY_WEBHOOK_URL") or "").strip()


def get_notify_timeout_seconds() -> float:
    raw = os.getenv("ROADWATCH_NOTIFY_TIMEOUT_SECONDS", "5")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 5.0
    return value if value > 0 else 5.0
