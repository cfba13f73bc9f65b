"""
YouTube metadata probing via yt-dlp.
"""

import json
import logging
import subprocess
import threading
from pathlib import Path

import requests

from tubescribe.core.security_utils import run_subprocess_cancellable
from tubescribe.core.error_codes import (
    TransientDownloadError, classify_download_failure,
)
from tubescribe.core.constants import (
    PROBE_TIMEOUT_SEC, SIZE_ESTIMATE_TIMEOUT_SEC, USER_AGENT, ACCEPT_LANGUAGE,
)
from tubescribe.core.models import MediaMetadata

logger = logging.getLogger(__name__)


def ytdlp_base_args(cookies_path: Path | None = None) -> list[str]:
    """Common yt-dlp flags: no playlists, a browser fingerprint, optional cookies."""
    args = [
        "yt-dlp",
        "--no-playlist",
        "--no-warnings",
        "--user-agent", USER_AGENT,
        "--add-header", f"Accept-Language:{ACCEPT_LANGUAGE}",
    ]
    if cookies_path is not None and cookies_path.exists():
        args.extend(["--cookies", str(cookies_path)])
    return args


def fetch_metadata(video_url: str, cookies_path: Path | None = None,
                   timeout: float = PROBE_TIMEOUT_SEC,
                   cancel_event: threading.Event | None = None) -> dict:
    """
    Fetch video metadata using yt-dlp --dump-json.
    Returns dict with at least 'id', 'title', 'duration', 'formats'.
    Failures are raised as typed DownloadErrors.
    """
    args = ytdlp_base_args(cookies_path) + [
        "--dump-json",
        "--skip-download",
        video_url,
    ]

    try:
        result = run_subprocess_cancellable(args, timeout=timeout, cancel_event=cancel_event)
    except subprocess.TimeoutExpired:
        raise TransientDownloadError(f"Metadata probe timed out after {timeout:.0f}s")
    except FileNotFoundError:
        raise TransientDownloadError("yt-dlp executable not found", retryable=False)

    if result.returncode != 0:
        raise classify_download_failure(result.stderr or "", result.returncode)

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise TransientDownloadError(f"Failed to parse yt-dlp JSON: {e}")


def get_video_duration(metadata: dict) -> float:
    """Get video duration in seconds from metadata."""
    try:
        return float(metadata.get('duration') or 0)
    except (TypeError, ValueError):
        return 0.0


def select_audio_format(metadata: dict) -> dict | None:
    """
    The audio-only format yt-dlp's 'bestaudio' would pick: highest abr among
    formats with no video codec.
    """
    audio = [
        f for f in metadata.get('formats') or []
        if f.get('vcodec') in ('none', None) and f.get('acodec') not in ('none', None)
    ]
    if not audio:
        return None
    return max(audio, key=lambda f: float(f.get('abr') or 0))


def estimate_audio_size(metadata: dict, session: requests.Session | None = None) -> int | None:
    """
    Best-effort size of the audio download in bytes.
    Uses filesize / filesize_approx from the format, else a HEAD request on
    the format URL. Returns None when nothing is known.
    """
    fmt = select_audio_format(metadata)
    if fmt is None:
        approx = metadata.get('filesize') or metadata.get('filesize_approx')
        return int(approx) if approx else None

    for key in ('filesize', 'filesize_approx'):
        if fmt.get(key):
            try:
                return int(fmt[key])
            except (TypeError, ValueError):
                pass

    url = fmt.get('url')
    if not url:
        return None
    http = session or requests
    try:
        resp = http.head(url, allow_redirects=True, timeout=SIZE_ESTIMATE_TIMEOUT_SEC,
                         headers=fmt.get('http_headers') or {"User-Agent": USER_AGENT})
        length = resp.headers.get('Content-Length')
        if resp.status_code == 200 and length:
            return int(length)
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.debug("Size estimate HEAD failed: %s", e)
    return None


def to_media_metadata(metadata: dict, video_id: str,
                      session: requests.Session | None = None) -> MediaMetadata:
    fmt = select_audio_format(metadata)
    return MediaMetadata(
        video_id=metadata.get('id') or video_id,
        title=metadata.get('title') or f"video_{video_id}",
        duration_sec=get_video_duration(metadata),
        estimated_size_bytes=estimate_audio_size(metadata, session),
        format_id=fmt.get('format_id') if fmt else None,
    )
