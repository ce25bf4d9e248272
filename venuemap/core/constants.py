"""
Shared constants for venuemap.
Single source of truth — imported by every other module.
"""

import os
import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "venuemap"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

ENV_HOME = "VENUEMAP_HOME"
DEFAULT_APP_HOME = HOME / ".venuemap"

# Relative to the app home
DB_FILENAME = "venuemap.db"
CONFIG_FILENAME = "config.json"
TEMP_DIRNAME = "temp"
LOG_DIRNAME = "logs"
LOG_FILENAME = "worker.log"
COOKIES_FILENAME = "cookies.txt"


def app_home() -> pathlib.Path:
    """Resolved on every call so a VENUEMAP_HOME loaded from .env applies."""
    return pathlib.Path(os.environ.get(ENV_HOME) or DEFAULT_APP_HOME).expanduser()


# ── Secrets (environment variable names, never values) ───────────────
ENV_GEMINI_API_KEY = "GEMINI_API_KEY"
ENV_GOOGLE_MAPS_API_KEY = "GOOGLE_MAPS_API_KEY"
ENV_PREFIX = "VENUEMAP_"

# ── Job status values (persisted, case-sensitive) ────────────────────
class JobStatus:
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}

# Legal predecessor(s) of each status; anything else is a regression.
STATUS_PREDECESSORS = {
    JobStatus.PROCESSING: (JobStatus.QUEUED,),
    JobStatus.COMPLETED: (JobStatus.PROCESSING,),
    JobStatus.FAILED: (JobStatus.PROCESSING,),
}

# ── Pipeline stages (ordered) ────────────────────────────────────────
class JobStage:
    EXTRACTING_METADATA = "EXTRACTING_METADATA"
    DOWNLOADING_VIDEO = "DOWNLOADING_VIDEO"
    ANALYZING_VIDEO = "ANALYZING_VIDEO"
    GEOCODING_VENUE = "GEOCODING_VENUE"
    PERSISTING_RESULTS = "PERSISTING_RESULTS"
    CLEANUP = "CLEANUP"

# ── Queue entry states ───────────────────────────────────────────────
class QueueState:
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD = "dead"

# ── Rate-limited dependencies ────────────────────────────────────────
class Dependency:
    DOWNLOADER = "downloader"   # yt-dlp: metadata extraction and download
    ANALYSIS = "analysis"       # Gemini
    GEOCODING = "geocoding"     # Google Geocoding API

DEFAULT_RATE_LIMITS = {
    Dependency.DOWNLOADER: {'max_calls': 10, 'window_sec': 60.0},
    Dependency.ANALYSIS: {'max_calls': 15, 'window_sec': 60.0},
    Dependency.GEOCODING: {'max_calls': 50, 'window_sec': 1.0},
}

# ── Retry policy defaults ────────────────────────────────────────────
RETRY_MAX_ATTEMPTS = 3
RETRY_INITIAL_DELAY_SEC = 1.0
RETRY_MULTIPLIER = 2.0

# ── Per-adapter timeouts (seconds) ───────────────────────────────────
EXTRACT_TIMEOUT_SEC = 60
DOWNLOAD_TIMEOUT_SEC = 600
ANALYSIS_TIMEOUT_SEC = 300
GEOCODE_TIMEOUT_SEC = 10

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    INVALID_URL = "ERR_INVALID_URL"
    VIDEO_UNAVAILABLE = "ERR_VIDEO_UNAVAILABLE"
    RESTRICTED_CONTENT = "ERR_RESTRICTED_CONTENT"
    TOOL_MISSING = "ERR_TOOL_MISSING"
    CONFIG = "ERR_CONFIG"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    JOB_NOT_FOUND = "ERR_JOB_NOT_FOUND"
    ORPHANED = "ERR_ORPHANED"
    INVALID_JOB_ID = "ERR_INVALID_JOB_ID"

    # Retryable
    EXTRACTION_FAILED = "ERR_EXTRACTION_FAILED"
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    ANALYSIS_FAILED = "ERR_ANALYSIS_FAILED"
    ANALYSIS_INVALID_RESPONSE = "ERR_ANALYSIS_INVALID_RESPONSE"
    ANALYSIS_TIMEOUT = "ERR_ANALYSIS_TIMEOUT"
    GEOCODE_QUOTA = "ERR_GEOCODE_QUOTA"
    GEOCODE_FAILED = "ERR_GEOCODE_FAILED"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"
    TIMEOUT = "ERR_TIMEOUT"
    STORE_WRITE = "ERR_STORE_WRITE"
    UNEXPECTED = "ERR_UNEXPECTED"

RETRYABLE_ERRORS = {
    ErrorCode.EXTRACTION_FAILED,
    ErrorCode.DOWNLOAD_FAILED,
    ErrorCode.ANALYSIS_FAILED,
    ErrorCode.ANALYSIS_INVALID_RESPONSE,
    ErrorCode.ANALYSIS_TIMEOUT,
    ErrorCode.GEOCODE_QUOTA,
    ErrorCode.GEOCODE_FAILED,
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.TIMEOUT,
    ErrorCode.STORE_WRITE,
    ErrorCode.UNEXPECTED,
}

MAX_ERROR_MESSAGE_LEN = 2000

# ── Analysis ──────────────────────────────────────────────────────────
UNKNOWN = "unknown"
ANALYSIS_FIELDS = ("country_name", "city_name", "venue_name", "summary")
GEMINI_MODEL = "gemini-2.5-flash-lite"
GEMINI_TEMPERATURE = 0.2
GEMINI_FILE_POLL_SEC = 2.0
VIDEO_MIME_TYPE = "video/mp4"

# ── Geocoding ─────────────────────────────────────────────────────────
GEOCODE_API_URL = "https://maps.googleapis.com/maps/api/geocode/json"
GEOCODE_STATUS_OK = "OK"
GEOCODE_STATUS_QUOTA = "OVER_QUERY_LIMIT"

# ── Download ──────────────────────────────────────────────────────────
YTDLP_BINARY = "yt-dlp"
PRIMARY_FORMAT = "best[ext=mp4]"
VIDEO_EXT = ".mp4"
# Short-form social sources that get the fallback download strategy
SHORT_FORM_HOSTS = ("tiktok.com",)
PARTIAL_SUFFIXES = (".part", ".ytdl")

class CookiesMode:
    OFF = "OFF"
    USE_FILE = "USE_FILE"

# ── Queue / worker defaults ──────────────────────────────────────────
DEFAULT_CONCURRENCY = 4
POLL_INTERVAL_SEC = 1.0
VISIBILITY_TIMEOUT_SEC = 300
# In-flight jobs renew their lease this many times per visibility timeout
LEASE_RENEWALS_PER_TIMEOUT = 3
MAX_DELIVERIES = 3
REDELIVERY_BASE_DELAY_SEC = 5.0
ORPHAN_TIMEOUT_SEC = 3600

# ── Misc ──────────────────────────────────────────────────────────────
URL_SCHEMES = ("http", "https")
JOB_ID_PATTERN = r'^[A-Za-z0-9_-]{1,64}$'
