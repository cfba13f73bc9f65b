"""
Source acquisition: probe, guard, authenticate, download.

Order of operations for one fetch:
  1. probe metadata (unless the caller already did) and reject over-long
     videos before any download is attempted
  2. reject on the estimated size when one is available
  3. cold path: refresh cookies first if the stored bundle is unusable
  4. download, retrying authorization-class failures after a refresh and
     transient failures as they are, within one shared attempt budget

yt-dlp is always handed a private copy of the cookie bundle, never the
store's own file.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

import requests

from tubescribe.core.constants import (
    PROBE_MAX_ATTEMPTS, DOWNLOAD_MAX_ATTEMPTS, RETRY_BASE_DELAY_SEC,
    PROBE_TIMEOUT_SEC, DOWNLOAD_TIMEOUT_SEC,
)
from tubescribe.core.cookie_refresh import CredentialRefresher
from tubescribe.core.cookie_store import CredentialStore
from tubescribe.core.download_audio import download_audio, remove_partial_downloads
from tubescribe.core.error_codes import (
    DownloadError, DurationExceeded, SizeExceeded, AuthorizationFailed,
    DownloadFailed, TransientNetworkFailure, TransientDownloadError,
    is_authorization_error,
)
from tubescribe.core.models import AudioAsset, MediaMetadata
from tubescribe.core.retry import retry_with_backoff
from tubescribe.core.url_parse import validate_source, canonical_url
from tubescribe.core.yt_metadata import fetch_metadata, to_media_metadata

logger = logging.getLogger(__name__)


def _retryable(e: BaseException) -> bool:
    return isinstance(e, DownloadError) and e.retryable


def check_duration(metadata: MediaMetadata, max_duration_sec: float):
    if max_duration_sec and metadata.duration_sec > max_duration_sec:
        raise DurationExceeded(metadata.duration_sec, max_duration_sec)


def check_estimated_size(metadata: MediaMetadata, max_size_bytes: int):
    est = metadata.estimated_size_bytes
    if max_size_bytes and est is not None and est > max_size_bytes:
        raise SizeExceeded(est, max_size_bytes, estimated=True)


class SourceAcquirer:
    """Downloads audio for a source id under duration/size limits."""

    def __init__(self, store: CredentialStore, refresher: CredentialRefresher,
                 probe_fn: Callable[..., dict] = fetch_metadata,
                 download_fn: Callable[..., Path] = download_audio,
                 http_session: requests.Session | None = None,
                 probe_attempts: int = PROBE_MAX_ATTEMPTS,
                 download_attempts: int = DOWNLOAD_MAX_ATTEMPTS,
                 base_delay: float = RETRY_BASE_DELAY_SEC,
                 probe_timeout: float = PROBE_TIMEOUT_SEC,
                 download_timeout: float = DOWNLOAD_TIMEOUT_SEC,
                 sleep: Callable[[float], None] | None = None):
        self.store = store
        self.refresher = refresher
        self.probe_fn = probe_fn
        self.download_fn = download_fn
        self.http_session = http_session
        self.probe_attempts = probe_attempts
        self.download_attempts = download_attempts
        self.base_delay = base_delay
        self.probe_timeout = probe_timeout
        self.download_timeout = download_timeout
        self._sleep = sleep

    # ── Metadata ──────────────────────────────────────────────────────

    def probe(self, source_id: str,
              cancel_event: threading.Event | None = None,
              on_refresh: Callable[[bool], None] | None = None,
              workdir: Path | None = None) -> MediaMetadata:
        """Probe duration (and estimated size) with retry. Cookie copies go in workdir."""
        video_id = validate_source(source_id)
        url = canonical_url(video_id)
        seen = [self.refresher.generation]

        def attempt(ctx):
            seen[0] = self.refresher.generation
            with self.store.private_copy(workdir) as cookies:
                return self.probe_fn(url, cookies_path=cookies,
                                     timeout=self.probe_timeout, cancel_event=cancel_event)

        raw = self._with_retry(attempt, "metadata probe", self.probe_attempts,
                               seen, cancel_event, on_refresh)
        metadata = to_media_metadata(raw, video_id, self.http_session)
        logger.info("Probed %s: duration=%.0fs estimated_size=%s",
                    video_id, metadata.duration_sec, metadata.estimated_size_bytes)
        return metadata

    # ── Download ──────────────────────────────────────────────────────

    def fetch_audio(self, source_id: str, max_duration_sec: float, max_size_bytes: int,
                    output_dir: Path,
                    metadata: Optional[MediaMetadata] = None,
                    cancel_event: threading.Event | None = None,
                    on_refresh: Callable[[bool], None] | None = None) -> AudioAsset:
        video_id = validate_source(source_id)
        url = canonical_url(video_id)

        if metadata is None:
            metadata = self.probe(source_id, cancel_event, on_refresh, workdir=output_dir)
        check_duration(metadata, max_duration_sec)
        check_estimated_size(metadata, max_size_bytes)

        # Cold path: never hit the platform with a bundle we know is dead
        if not self.store.is_valid(self.store.load()):
            self._refresh(on_refresh, self.refresher.ensure_valid)

        seen = [self.refresher.generation]

        def attempt(ctx):
            remove_partial_downloads(output_dir)
            seen[0] = self.refresher.generation
            with self.store.private_copy(output_dir) as cookies:
                return self.download_fn(url, output_dir,
                                        cookies_path=cookies,
                                        max_size_bytes=max_size_bytes,
                                        timeout=self.download_timeout,
                                        cancel_event=cancel_event)

        try:
            path = self._with_retry(attempt, "audio download", self.download_attempts,
                                    seen, cancel_event, on_refresh)
        except SizeExceeded:
            remove_partial_downloads(output_dir)
            raise

        size = path.stat().st_size
        if max_size_bytes and size > max_size_bytes:
            path.unlink(missing_ok=True)
            raise SizeExceeded(size, max_size_bytes)

        return AudioAsset(path=path, size_bytes=size, duration_sec=metadata.duration_sec)

    # ── Shared retry policy ───────────────────────────────────────────

    @staticmethod
    def _refresh(on_refresh, refresh_fn):
        """Run a refresh, telling the caller when it starts (True) and ends (False)."""
        if on_refresh:
            on_refresh(True)
        try:
            return refresh_fn()
        finally:
            if on_refresh:
                on_refresh(False)

    def _with_retry(self, attempt, operation: str, max_attempts: int, seen: list[int],
                    cancel_event, on_refresh):
        def on_retry(ctx, err):
            if is_authorization_error(err.code):
                self._refresh(on_refresh,
                              lambda: self.refresher.refresh(seen_generation=seen[0]))

        try:
            return retry_with_backoff(
                attempt,
                operation=operation,
                max_attempts=max_attempts,
                base_delay=self.base_delay,
                is_retryable=_retryable,
                on_retry=on_retry,
                sleep=self._sleep,
                cancel_event=cancel_event,
            )
        except DownloadError as e:
            if is_authorization_error(e.code):
                raise AuthorizationFailed(
                    f"{operation} still unauthorized after {max_attempts} attempts: {e.message}"
                ) from e
            if isinstance(e, TransientDownloadError) and e.retryable:
                raise TransientNetworkFailure(
                    f"{operation} failed after {max_attempts} attempts: {e.message}"
                ) from e
            raise DownloadFailed(e.message, code=e.code) from e
