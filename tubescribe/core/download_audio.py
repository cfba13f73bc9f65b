"""
Audio download via yt-dlp.
"""

import logging
import re
import subprocess
import threading
from pathlib import Path

from tubescribe.core.security_utils import run_subprocess_cancellable
from tubescribe.core.error_codes import (
    SizeExceeded, TransientDownloadError, OtherDownloadError, classify_download_failure,
)
from tubescribe.core.constants import DOWNLOAD_TIMEOUT_SEC
from tubescribe.core.yt_metadata import ytdlp_base_args

logger = logging.getLogger(__name__)

SOURCE_STEM = "source"
_MAX_FILESIZE_MARKER = "larger than max-filesize"
_MAX_FILESIZE_RE = re.compile(r"\((\d+) bytes > \d+ bytes\)")


def source_files(output_dir: Path) -> list[Path]:
    """Everything a download attempt may have left behind, partial files included."""
    if not output_dir.exists():
        return []
    return sorted(p for p in output_dir.glob(f"{SOURCE_STEM}.*") if p.is_file())


def remove_partial_downloads(output_dir: Path) -> int:
    removed = 0
    for path in source_files(output_dir):
        try:
            path.unlink()
            removed += 1
        except FileNotFoundError:
            pass
    if removed:
        logger.debug("Removed %d leftover download file(s) in %s", removed, output_dir)
    return removed


def download_audio(video_url: str, output_dir: Path,
                   cookies_path: Path | None = None,
                   max_size_bytes: int | None = None,
                   timeout: float = DOWNLOAD_TIMEOUT_SEC,
                   cancel_event: threading.Event | None = None) -> Path:
    """
    Download the best audio-only stream using yt-dlp.
    Returns path to the downloaded file. The size limit is enforced twice:
    by yt-dlp's --max-filesize and by a hard check on the finished file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    output_template = str(output_dir / f"{SOURCE_STEM}.%(ext)s")

    args = ytdlp_base_args(cookies_path) + [
        "-f", "bestaudio/best",
        "-o", output_template,
        "--no-progress",
        "--retries", "2",
    ]
    if max_size_bytes:
        args.extend(["--max-filesize", str(int(max_size_bytes))])
    args.append(video_url)

    try:
        result = run_subprocess_cancellable(args, timeout=timeout, cancel_event=cancel_event)
    except subprocess.TimeoutExpired:
        raise TransientDownloadError(f"Audio download timed out after {timeout:.0f}s")
    except FileNotFoundError:
        raise OtherDownloadError("yt-dlp executable not found")

    output = (result.stdout or "") + (result.stderr or "")
    if max_size_bytes and _MAX_FILESIZE_MARKER in output:
        remove_partial_downloads(output_dir)
        m = _MAX_FILESIZE_RE.search(output)
        reported = int(m.group(1)) if m else max_size_bytes + 1
        raise SizeExceeded(reported, max_size_bytes)

    if result.returncode != 0:
        raise classify_download_failure(result.stderr or "", result.returncode)

    finished = [p for p in source_files(output_dir) if not p.name.endswith((".part", ".ytdl"))]
    if not finished:
        raise OtherDownloadError("No audio file found after download")

    downloaded = finished[0]
    size = downloaded.stat().st_size
    if max_size_bytes and size > max_size_bytes:
        remove_partial_downloads(output_dir)
        raise SizeExceeded(size, max_size_bytes)

    logger.info("Downloaded audio: %s (%d bytes)", downloaded, size)
    return downloaded
