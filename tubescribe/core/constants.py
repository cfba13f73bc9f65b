"""
Shared constants for TubeScribe.
Imported by every other module.
"""

import os
import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "TubeScribe"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

DATA_ROOT = pathlib.Path(os.environ.get("TUBESCRIBE_HOME", HOME / ".tubescribe"))
APP_CACHE_DIR = DATA_ROOT / "cache"
JOBS_CACHE_DIR = APP_CACHE_DIR / "jobs"
LOG_DIR = DATA_ROOT / "logs"
CONFIG_PATH = DATA_ROOT / "config.json"

# Cookies
DEFAULT_COOKIES_PATH = DATA_ROOT / "cookies.txt"

# ── Keychain identifiers ─────────────────────────────────────────────
KEYCHAIN_SERVICE = "TubeScribe:YouTubeLogin"

# ── Environment overrides ─────────────────────────────────────────────
ENV_LOGIN_EMAIL = "YOUTUBE_EMAIL"
ENV_LOGIN_SECRET = "YOUTUBE_PASSWORD"


# ── Job states (ordered) ──────────────────────────────────────────────
class JobState:
    QUEUED = "QUEUED"
    PROBING_DURATION = "PROBING_DURATION"
    ACQUIRING = "ACQUIRING"
    REFRESHING_CREDENTIALS = "REFRESHING_CREDENTIALS"
    CONVERTING = "CONVERTING"
    TRANSCRIBING = "TRANSCRIBING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATES = {JobState.COMPLETED, JobState.FAILED}


# ── Login flow steps ──────────────────────────────────────────────────
class LoginStep:
    LAUNCH = "LAUNCH"
    NAVIGATE_HOME = "NAVIGATE_HOME"
    CLICK_SIGN_IN = "CLICK_SIGN_IN"
    NAVIGATE_LOGIN = "NAVIGATE_LOGIN"
    SUBMIT_IDENTIFIER = "SUBMIT_IDENTIFIER"
    SUBMIT_SECRET = "SUBMIT_SECRET"
    HANDLE_CONSENT = "HANDLE_CONSENT"
    EXTRACT_COOKIES = "EXTRACT_COOKIES"
    PERSIST = "PERSIST"
    CLOSE = "CLOSE"


# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    INVALID_SOURCE = "ERR_INVALID_SOURCE"
    DURATION_EXCEEDED = "ERR_DURATION_EXCEEDED"
    SIZE_EXCEEDED = "ERR_SIZE_EXCEEDED"
    VIDEO_UNAVAILABLE = "ERR_VIDEO_UNAVAILABLE"
    FFMPEG_CONVERT = "ERR_FFMPEG_CONVERT"
    INFERENCE_FAILED = "ERR_INFERENCE_FAILED"
    CREDENTIAL_REFRESH_FAILED = "ERR_CREDENTIAL_REFRESH_FAILED"
    MISSING_CREDENTIALS = "ERR_MISSING_CREDENTIALS"
    LOGIN_FAILED = "ERR_LOGIN_FAILED"
    CANCELLED = "ERR_CANCELLED"
    UNEXPECTED = "ERR_UNEXPECTED"

    # Retryable
    AUTHORIZATION_FAILED = "ERR_AUTHORIZATION_FAILED"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    LOGIN_REQUIRED = "ERR_LOGIN_REQUIRED"
    FORBIDDEN = "ERR_FORBIDDEN"
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"
    LOGIN_TIMEOUT = "ERR_LOGIN_TIMEOUT"


RETRYABLE_ERRORS = {
    ErrorCode.AUTHORIZATION_FAILED,
    ErrorCode.RATE_LIMITED,
    ErrorCode.LOGIN_REQUIRED,
    ErrorCode.FORBIDDEN,
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.LOGIN_TIMEOUT,
}

AUTHORIZATION_ERRORS = {
    ErrorCode.RATE_LIMITED,
    ErrorCode.LOGIN_REQUIRED,
    ErrorCode.FORBIDDEN,
}

# ── Failure signatures in yt-dlp stderr ───────────────────────────────
# Matched case-insensitively, checked in this order.
RATE_LIMIT_MARKERS = [
    "http error 429",
    "too many requests",
    "rate-limited",
    "rate limited",
]
LOGIN_REQUIRED_MARKERS = [
    "sign in to confirm",
    "login required",
    "login_required",
    "use --cookies",
    "cookies for the authentication",
    "confirm your age",
]
FORBIDDEN_MARKERS = [
    "http error 403",
    "403: forbidden",
    "forbidden",
]
TRANSIENT_MARKERS = [
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "temporary failure in name resolution",
    "remote end closed connection",
    "http error 500",
    "http error 502",
    "http error 503",
    "http error 504",
    "incomplete read",
]
UNAVAILABLE_MARKERS = [
    "video unavailable",
    "is not available",
    "private video",
    "has been removed",
]

# ── Guards ────────────────────────────────────────────────────────────
MAX_DURATION_SEC = 2 * 3600
MAX_SIZE_BYTES = 500 * 1024 * 1024

# ── Retry / backoff ───────────────────────────────────────────────────
PROBE_MAX_ATTEMPTS = 3
DOWNLOAD_MAX_ATTEMPTS = 3
REFRESH_MAX_ATTEMPTS = 2       # one retry of the whole harvest on timeout
RETRY_BASE_DELAY_SEC = 5.0

# ── Stage timeouts (seconds) ──────────────────────────────────────────
PROBE_TIMEOUT_SEC = 60
DOWNLOAD_TIMEOUT_SEC = 600
CONVERT_TIMEOUT_SEC = 600
CHUNK_INFERENCE_TIMEOUT_SEC = 300
SIZE_ESTIMATE_TIMEOUT_SEC = 10

# ── Audio pipeline ────────────────────────────────────────────────────
SAMPLE_RATE = 16000
PCM_CHANNELS = 1
PCM_FORMAT = "f32le"
PCM_CODEC = "pcm_f32le"
PCM_BLOCK_SEC = 1.0             # streaming read granularity
CHUNK_LENGTH_SEC = 30
STRIDE_LENGTH_SEC = 5
SILENCE_PEAK_THRESHOLD = 1e-4

# ── ASR model ─────────────────────────────────────────────────────────
ASR_TASK = "automatic-speech-recognition"
ASR_MODEL = "openai/whisper-tiny"
ASR_LANGUAGE = "english"
ASR_GENERATE_TASK = "transcribe"
INFERENCE_WORKERS = 1

# ── Credentials ───────────────────────────────────────────────────────
REQUIRED_COOKIE_NAMES = frozenset({
    "SID", "HSID", "SSID", "APISID", "SAPISID",
    "__Secure-1PSID", "__Secure-3PSID", "LOGIN_INFO",
})
REQUIRED_COOKIE_DOMAINS = ("youtube.com", "google.com")
COOKIE_HARVEST_URLS = ["https://www.youtube.com", "https://accounts.google.com"]

YOUTUBE_HOME_URL = "https://www.youtube.com"
GOOGLE_LOGIN_URL = (
    "https://accounts.google.com/ServiceLogin"
    "?service=youtube&continue=https%3A%2F%2Fwww.youtube.com%2F"
)
LOGIN_NAVIGATION_TIMEOUT_SEC = 30
OPTIONAL_STEP_TIMEOUT_SEC = 3
BROWSER_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]

# Request fingerprint shared by yt-dlp and the browser session
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
ACCEPT_LANGUAGE = "en-US,en;q=0.9"

# ── Misc ──────────────────────────────────────────────────────────────
STDERR_SNIPPET_LEN = 300
YOUTUBE_URL_PATTERNS = [
    r'(?:https?://)?(?:www\.)?youtube\.com/watch\?(?:.*&)?v=([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?youtu\.be/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/embed/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/v/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/shorts/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/live/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?m\.youtube\.com/watch\?(?:.*&)?v=([a-zA-Z0-9_-]{11})',
]
VIDEO_ID_PATTERN = r'^[a-zA-Z0-9_-]{11}$'
