"""
Diagnostics: tool version detection and cookie bundle status.
"""

import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path

from tubescribe.core.security_utils import run_subprocess_capture
from tubescribe.core.constants import DEFAULT_COOKIES_PATH
from tubescribe.core.cookie_store import CredentialStore

logger = logging.getLogger(__name__)


def _tool_version(args: list[str]) -> str:
    try:
        result = run_subprocess_capture(args, timeout=10)
        if result.returncode == 0:
            lines = result.stdout.strip().splitlines()
            return lines[0] if lines else "unknown"
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except (subprocess.TimeoutExpired, OSError) as e:
        return f"Error: {type(e).__name__}"


def get_ytdlp_version() -> str:
    """Return yt-dlp version string, or error message."""
    return _tool_version(["yt-dlp", "--version"])


def get_ffmpeg_version() -> str:
    """Return the first line of ffmpeg -version, or error message."""
    return _tool_version(["ffmpeg", "-version"])


def check_cookies_file(cookies_path: Path | None = None) -> dict:
    """Report whether the cookie bundle exists and would pass validation."""
    store = CredentialStore(cookies_path or DEFAULT_COOKIES_PATH)
    info = {
        "detected": False,
        "path": str(store.path),
        "last_modified": None,
        "records": 0,
        "valid": False,
    }
    if not store.path.exists():
        return info

    info["detected"] = True
    info["last_modified"] = datetime.fromtimestamp(
        store.path.stat().st_mtime, tz=timezone.utc
    ).isoformat()
    try:
        bundle = store.load()
    except OSError as e:
        logger.warning("Could not read cookie file: %s", e)
        return info
    if bundle is not None:
        info["records"] = len(bundle)
        info["valid"] = store.is_valid(bundle)
    return info


def get_diagnostics(cookies_path: Path | None = None) -> dict:
    """Gather all diagnostic information."""
    return {
        "ytdlp_version": get_ytdlp_version(),
        "ffmpeg_version": get_ffmpeg_version(),
        "cookies": check_cookies_file(cookies_path),
    }
