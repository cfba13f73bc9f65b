"""
Standardised error handling for TubeScribe.

Every failure the pipeline knows about is a JobError carrying a stable code.
The PipelineController catches these at its boundary and turns them into a
result object; nothing below it needs to worry about the caller.
"""

import re

from tubescribe.core.constants import (
    ErrorCode, RETRYABLE_ERRORS, AUTHORIZATION_ERRORS, STDERR_SNIPPET_LEN,
    RATE_LIMIT_MARKERS, LOGIN_REQUIRED_MARKERS, FORBIDDEN_MARKERS,
    TRANSIENT_MARKERS, UNAVAILABLE_MARKERS,
)


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    default_code = ErrorCode.UNEXPECTED

    def __init__(self, message: str, code: str | None = None,
                 retryable: bool | None = None):
        self.code = code or self.default_code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (self.code in RETRYABLE_ERRORS)
        super().__init__(f"[{self.code}] {message}")


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS


def is_authorization_error(code: str) -> bool:
    return code in AUTHORIZATION_ERRORS


# ── Guards ────────────────────────────────────────────────────────────

class GuardRejected(JobError):
    """Pre-flight or post-download guard refused the job. Never retried."""


class DurationExceeded(GuardRejected):
    default_code = ErrorCode.DURATION_EXCEEDED

    def __init__(self, duration_sec: float, limit_sec: float):
        self.duration_sec = duration_sec
        self.limit_sec = limit_sec
        super().__init__(
            f"Video duration {duration_sec:.0f}s exceeds the {limit_sec:.0f}s limit"
        )


class SizeExceeded(GuardRejected):
    default_code = ErrorCode.SIZE_EXCEEDED

    def __init__(self, size_bytes: int, limit_bytes: int, estimated: bool = False):
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        self.estimated = estimated
        what = "Estimated audio size" if estimated else "Audio size"
        super().__init__(
            f"{what} {_fmt_mb(size_bytes)} exceeds the {_fmt_mb(limit_bytes)} limit"
        )


def _fmt_mb(n: int) -> str:
    return f"{n / (1024 * 1024):.1f} MB"


# ── Source / download ─────────────────────────────────────────────────

class InvalidSource(JobError):
    default_code = ErrorCode.INVALID_SOURCE


class DownloadError(JobError):
    """A typed failure reported by the metadata/download tool."""

    default_code = ErrorCode.DOWNLOAD_FAILED

    def __init__(self, message: str, stderr: str = "", **kwargs):
        self.stderr = stderr
        super().__init__(message, **kwargs)


class RateLimited(DownloadError):
    default_code = ErrorCode.RATE_LIMITED


class LoginRequired(DownloadError):
    default_code = ErrorCode.LOGIN_REQUIRED


class Forbidden(DownloadError):
    default_code = ErrorCode.FORBIDDEN


class TransientDownloadError(DownloadError):
    default_code = ErrorCode.NETWORK_TRANSIENT


class VideoUnavailable(DownloadError):
    default_code = ErrorCode.VIDEO_UNAVAILABLE


class OtherDownloadError(DownloadError):
    default_code = ErrorCode.DOWNLOAD_FAILED

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message, stderr=stderr, retryable=False)


class AuthorizationFailed(JobError):
    """Authorization-class failures persisted after refresh + retries."""
    default_code = ErrorCode.AUTHORIZATION_FAILED


class DownloadFailed(JobError):
    default_code = ErrorCode.DOWNLOAD_FAILED

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('retryable', False)
        super().__init__(message, **kwargs)


class TransientNetworkFailure(DownloadFailed):
    default_code = ErrorCode.NETWORK_TRANSIENT

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('retryable', True)
        super().__init__(message, **kwargs)


def classify_download_failure(stderr: str, returncode: int | None = None) -> DownloadError:
    """
    Map yt-dlp stderr onto a typed DownloadError.
    Authorization markers win over transient ones: a 429 page often also
    mentions a timeout.
    """
    text = (stderr or "").lower()
    snippet = (stderr or "").strip()[-STDERR_SNIPPET_LEN:]
    rc = f" (rc={returncode})" if returncode is not None else ""

    if _has_marker(text, RATE_LIMIT_MARKERS):
        return RateLimited(f"Rate limited by source platform{rc}: {snippet}", stderr=stderr)
    if _has_marker(text, LOGIN_REQUIRED_MARKERS):
        return LoginRequired(f"Source platform requires login{rc}: {snippet}", stderr=stderr)
    if _has_marker(text, FORBIDDEN_MARKERS):
        return Forbidden(f"Source platform refused access{rc}: {snippet}", stderr=stderr)
    if _has_marker(text, UNAVAILABLE_MARKERS):
        return VideoUnavailable(f"Video unavailable: {snippet}", stderr=stderr)
    if _has_marker(text, TRANSIENT_MARKERS):
        return TransientDownloadError(f"Transient network failure{rc}: {snippet}", stderr=stderr)
    return OtherDownloadError(f"yt-dlp failed{rc}: {snippet}", stderr=stderr)


def _has_marker(text: str, markers: list[str]) -> bool:
    return any(m in text for m in markers)


# ── Conversion / inference ────────────────────────────────────────────

class ConversionFailed(JobError):
    default_code = ErrorCode.FFMPEG_CONVERT

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class InferenceFailed(JobError):
    default_code = ErrorCode.INFERENCE_FAILED

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


# ── Credentials ───────────────────────────────────────────────────────

class CredentialRefreshFailed(JobError):
    default_code = ErrorCode.CREDENTIAL_REFRESH_FAILED


class MissingCredentials(CredentialRefreshFailed):
    default_code = ErrorCode.MISSING_CREDENTIALS


class LoginFailed(CredentialRefreshFailed):
    default_code = ErrorCode.LOGIN_FAILED


class LoginTimeout(CredentialRefreshFailed):
    default_code = ErrorCode.LOGIN_TIMEOUT


# ── Cancellation ──────────────────────────────────────────────────────

class Cancelled(JobError):
    default_code = ErrorCode.CANCELLED

    def __init__(self, message: str = "Job cancelled"):
        super().__init__(message, retryable=False)


# ── User-facing messages ──────────────────────────────────────────────

_TRACE_RE = re.compile(r'^(?:Traceback \(most recent call last\):|\s*File ".*|\s+at \S+.*)$',
                       re.MULTILINE)
# a URL's path (after scheme://host) is not a local path
_PATH_RE = re.compile(r'(?<![\w:/])(?:[A-Za-z]:)?(?:[\\/][\w.\-:]+){2,}[\\/]?')


def sanitize_error_message(message: str) -> str:
    """Strip file paths and traceback fragments before a message leaves the pipeline."""
    cleaned = _TRACE_RE.sub('', message or '')
    cleaned = _PATH_RE.sub('<path>', cleaned)
    cleaned = re.sub(r'\s+', ' ', cleaned).strip()
    return cleaned or "An unexpected error occurred"
