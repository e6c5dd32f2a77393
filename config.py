import logging as _logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path.home() / ".herald" / "credentials" / ".env")

_log = _logging.getLogger(__name__)


def _env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    """Parse an integer env var with safe fallback on invalid input."""
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw.strip())
        except ValueError:
            value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    """Parse a float env var with safe fallback on invalid input."""
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw.strip())
        except ValueError:
            value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_choice(name: str, default: str, choices: set[str]) -> str:
    raw = os.getenv(name, default).strip().lower()
    if raw not in choices:
        _log.warning("Invalid %s=%r, using %r", name, raw, default)
        return default
    return raw


# Web UI / manual trigger endpoint
WEB_HOST = os.getenv("HERALD_WEB_HOST", "127.0.0.1")
WEB_PORT = _env_int("HERALD_WEB_PORT", 8080)
WEB_AUTH_TOKEN = os.getenv("HERALD_WEB_TOKEN", "")  # simple bearer token

# Timing
POLL_INTERVAL = 2  # seconds (queue drain timeout, scheduler period)
TIMEZONE = os.getenv("HERALD_TIMEZONE", "UTC")
AUTOMATION_TICK_INTERVAL = _env_int("HERALD_AUTOMATION_TICK_INTERVAL", 20, minimum=1)  # seconds

# Paths
HERALD_HOME = Path(os.getenv("HERALD_HOME", str(Path.home() / ".herald"))).expanduser()
STORE_DIR = HERALD_HOME / "store"
DATA_DIR = HERALD_HOME / "data"
LOG_DIR = HERALD_HOME / "logs"
AUTOMATIONS_DIR = Path(
    os.getenv("HERALD_AUTOMATIONS_DIR", str(HERALD_HOME / "automations"))
).expanduser()
AUTOMATION_LOGS_DIR = LOG_DIR / "automations"

# Files
DATABASE_PATH = STORE_DIR / "messages.db"
AUTH_DIR = STORE_DIR / "auth"
AUTOMATIONS_STATE_FILE = DATA_DIR / "automations_state.json"

# Generative backend (Gemini REST)
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_BASE_URL = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
)
GENERATION_MODEL = os.getenv("GOOGLE_MODEL", "gemini-2.5-flash").strip()
EXTRACTION_MODEL = os.getenv("HERALD_EXTRACTION_MODEL", "gemini-2.5-flash-lite").strip()
GENERATION_MAX_OUTPUT_TOKENS = _env_int("HERALD_MAX_OUTPUT_TOKENS", 2048, minimum=256)
GENAI_TIMEOUT = _env_float("HERALD_GENAI_TIMEOUT", 90.0, minimum=5.0)

if not GEMINI_API_KEY:
    _log.warning("GEMINI_API_KEY is empty; automation runs will fail at step 1")

# Pipeline
TRANSCRIPT_LIMIT = _env_int("HERALD_TRANSCRIPT_LIMIT", 100, minimum=1)
TRUNCATION_MIN_CHARS = _env_int("HERALD_TRUNCATION_MIN_CHARS", 100, minimum=0)
TRUNCATION_RATIO = _env_float("HERALD_TRUNCATION_RATIO", 0.3, minimum=0.0)
# permissive: only an explicit hasNewMessage=false blocks a send
# strict: only an explicit hasNewMessage=true allows a send
SEND_POLICY = _env_choice("HERALD_SEND_POLICY", "permissive", {"permissive", "strict"})
RUN_TIMEOUT = _env_float("HERALD_RUN_TIMEOUT", 300.0, minimum=10.0)  # seconds
SEND_RETRIES = _env_int("HERALD_SEND_RETRIES", 3, minimum=1)
SEND_RETRY_DELAY = _env_float("HERALD_SEND_RETRY_DELAY", 2.0, minimum=0.0)

# Execution log store
LOG_MAX_ENTRIES_PER_FILE = _env_int("HERALD_LOG_MAX_ENTRIES_PER_FILE", 5000, minimum=1)
LOG_MAX_FILE_BYTES = _env_int("HERALD_LOG_MAX_FILE_BYTES", 10 * 1024 * 1024, minimum=1024)
EXECUTION_RECORDS_KEEP = _env_int("HERALD_EXECUTION_RECORDS_KEEP", 200, minimum=1)
