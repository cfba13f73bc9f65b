#!/usr/bin/env python3
"""
Unit tests for TubeScribe core modules.
Tests cover: URL parsing, error codes and classification, message sanitizing,
retry/backoff, single-flight, transcript merging, config.
"""

import sys
import os
import json
import tempfile
import threading
import time
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from tubescribe.core.constants import (
    ErrorCode, MAX_DURATION_SEC, MAX_SIZE_BYTES, ENV_LOGIN_EMAIL, ENV_LOGIN_SECRET,
)
from tubescribe.core.url_parse import (
    extract_video_id, validate_source, canonical_url, parse_input_lines, parse_txt_file,
)
from tubescribe.core.error_codes import (
    JobError, is_retryable, is_authorization_error, classify_download_failure,
    RateLimited, LoginRequired, Forbidden, TransientDownloadError, VideoUnavailable,
    OtherDownloadError, InvalidSource, DurationExceeded, SizeExceeded, GuardRejected,
    Cancelled, sanitize_error_message,
)
from tubescribe.core.retry import retry_with_backoff
from tubescribe.core.single_flight import SingleFlight
from tubescribe.core.merge import merge_transcripts, Transcript
from tubescribe.core.models import TranscriptChunk, TranscriptionResult
from tubescribe.core.config import AppConfig


class TestURLParsing(unittest.TestCase):
    """Test YouTube URL parsing and validation."""

    def test_standard_url(self):
        self.assertEqual(
            extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ"),
            "dQw4w9WgXcQ",
        )

    def test_short_url(self):
        self.assertEqual(
            extract_video_id("https://youtu.be/dQw4w9WgXcQ"),
            "dQw4w9WgXcQ",
        )

    def test_shorts_url(self):
        self.assertEqual(
            extract_video_id("https://www.youtube.com/shorts/dQw4w9WgXcQ"),
            "dQw4w9WgXcQ",
        )

    def test_url_with_params(self):
        self.assertEqual(
            extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=120"),
            "dQw4w9WgXcQ",
        )

    def test_bare_video_id(self):
        self.assertEqual(extract_video_id("dQw4w9WgXcQ"), "dQw4w9WgXcQ")

    def test_invalid_url(self):
        self.assertIsNone(extract_video_id("https://www.google.com"))
        self.assertIsNone(extract_video_id("not a url"))
        self.assertIsNone(extract_video_id(""))

    def test_validate_raises_on_invalid(self):
        with self.assertRaises(InvalidSource) as cm:
            validate_source("https://example.com/video")
        self.assertEqual(cm.exception.code, ErrorCode.INVALID_SOURCE)
        self.assertFalse(cm.exception.retryable)

    def test_canonical_url(self):
        self.assertEqual(canonical_url("dQw4w9WgXcQ"),
                         "https://www.youtube.com/watch?v=dQw4w9WgXcQ")

    def test_parse_input_lines(self):
        text = """
        https://www.youtube.com/watch?v=dQw4w9WgXcQ
        # a comment
        not a url

        https://youtu.be/abc123def45
        """
        self.assertEqual(parse_input_lines(text), [
            "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
            "https://youtu.be/abc123def45",
        ])

    def test_parse_txt_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "urls.txt"
            path.write_text("dQw4w9WgXcQ\n# skip\nhttps://youtu.be/abc123def45\n")
            self.assertEqual(parse_txt_file(str(path)),
                             ["dQw4w9WgXcQ", "https://youtu.be/abc123def45"])


class TestErrorCodes(unittest.TestCase):
    """Test error code classification."""

    def test_retryable_errors(self):
        self.assertTrue(is_retryable(ErrorCode.RATE_LIMITED))
        self.assertTrue(is_retryable(ErrorCode.NETWORK_TRANSIENT))
        self.assertTrue(is_retryable(ErrorCode.LOGIN_TIMEOUT))

    def test_non_retryable_errors(self):
        self.assertFalse(is_retryable(ErrorCode.DURATION_EXCEEDED))
        self.assertFalse(is_retryable(ErrorCode.FFMPEG_CONVERT))
        self.assertFalse(is_retryable(ErrorCode.INFERENCE_FAILED))

    def test_authorization_errors(self):
        for code in (ErrorCode.RATE_LIMITED, ErrorCode.LOGIN_REQUIRED, ErrorCode.FORBIDDEN):
            self.assertTrue(is_authorization_error(code))
        self.assertFalse(is_authorization_error(ErrorCode.NETWORK_TRANSIENT))

    def test_job_error_auto_retryable(self):
        err = JobError("slow down", code=ErrorCode.RATE_LIMITED)
        self.assertTrue(err.retryable)
        err = JobError("too long", code=ErrorCode.DURATION_EXCEEDED)
        self.assertFalse(err.retryable)
        self.assertIn(ErrorCode.DURATION_EXCEEDED, str(err))

    def test_guards_are_not_retryable(self):
        err = DurationExceeded(200, 120)
        self.assertIsInstance(err, GuardRejected)
        self.assertFalse(err.retryable)
        self.assertIn("200s", err.message)
        self.assertIn("120s", err.message)
        self.assertFalse(SizeExceeded(10, 5).retryable)

    def test_cancelled(self):
        err = Cancelled()
        self.assertEqual(err.code, ErrorCode.CANCELLED)
        self.assertFalse(err.retryable)


class TestDownloadClassification(unittest.TestCase):
    """yt-dlp stderr → typed DownloadError."""

    def test_rate_limited(self):
        err = classify_download_failure("ERROR: HTTP Error 429: Too Many Requests", 1)
        self.assertIsInstance(err, RateLimited)
        self.assertTrue(err.retryable)

    def test_login_required(self):
        err = classify_download_failure(
            "ERROR: [youtube] abc: Sign in to confirm you're not a bot. Use --cookies", 1)
        self.assertIsInstance(err, LoginRequired)

    def test_forbidden(self):
        err = classify_download_failure("ERROR: unable to download: HTTP Error 403: Forbidden", 1)
        self.assertIsInstance(err, Forbidden)

    def test_rate_limit_wins_over_transient(self):
        err = classify_download_failure("HTTP Error 429; read timed out", 1)
        self.assertIsInstance(err, RateLimited)

    def test_transient(self):
        err = classify_download_failure("ERROR: Connection reset by peer", 1)
        self.assertIsInstance(err, TransientDownloadError)
        self.assertTrue(err.retryable)
        self.assertFalse(is_authorization_error(err.code))

    def test_unavailable(self):
        err = classify_download_failure("ERROR: [youtube] abc: Video unavailable", 1)
        self.assertIsInstance(err, VideoUnavailable)
        self.assertFalse(err.retryable)

    def test_other(self):
        err = classify_download_failure("ERROR: something odd", 2)
        self.assertIsInstance(err, OtherDownloadError)
        self.assertFalse(err.retryable)
        self.assertIn("rc=2", err.message)

    def test_stderr_is_truncated(self):
        err = classify_download_failure("x" * 5000, 1)
        self.assertLess(len(err.message), 400)


class TestSanitize(unittest.TestCase):

    def test_strips_paths(self):
        msg = sanitize_error_message(
            "ffmpeg failed on /home/alice/.tubescribe/cache/jobs/abc/source.webm")
        self.assertNotIn("/home/alice", msg)
        self.assertIn("<path>", msg)

    def test_keeps_urls(self):
        message = "Not a valid YouTube URL or video id: 'https://example.com/a/b'"
        self.assertEqual(sanitize_error_message(message), message)
        self.assertEqual(
            sanitize_error_message("Sign in at https://www.youtube.com/watch?v=dQw4w9WgXcQ"),
            "Sign in at https://www.youtube.com/watch?v=dQw4w9WgXcQ")

    def test_url_and_path_together(self):
        msg = sanitize_error_message(
            "https://www.youtube.com/watch?v=x failed writing C:\\Users\\bob\\jobs\\source.m4a")
        self.assertTrue(msg.startswith("https://www.youtube.com/watch?v=x failed writing "))
        self.assertNotIn("bob", msg)
        self.assertIn("<path>", msg)

    def test_strips_traceback(self):
        msg = sanitize_error_message(
            'Traceback (most recent call last):\n'
            '  File "/usr/lib/python3/x.py", line 3, in f\n'
            'ValueError: boom'
        )
        self.assertEqual(msg, "ValueError: boom")

    def test_keeps_plain_text(self):
        self.assertEqual(sanitize_error_message("Video duration 200s exceeds the 120s limit"),
                         "Video duration 200s exceeds the 120s limit")

    def test_empty(self):
        self.assertEqual(sanitize_error_message(""), "An unexpected error occurred")


class TestRetry(unittest.TestCase):

    def test_succeeds_after_retries(self):
        calls, sleeps = [], []

        def fn(ctx):
            calls.append(ctx.attempt)
            if ctx.attempt < 3:
                raise TransientDownloadError("flaky")
            return "ok"

        result = retry_with_backoff(fn, operation="test", max_attempts=3, base_delay=5,
                                    is_retryable=lambda e: True, sleep=sleeps.append)
        self.assertEqual(result, "ok")
        self.assertEqual(calls, [1, 2, 3])
        self.assertEqual(sleeps, [5, 10])

    def test_exhaustion_reraises_last_error(self):
        sleeps = []

        def fn(ctx):
            raise RateLimited(f"attempt {ctx.attempt}")

        with self.assertRaises(RateLimited) as cm:
            retry_with_backoff(fn, operation="test", max_attempts=3, base_delay=5,
                               is_retryable=lambda e: True, sleep=sleeps.append)
        self.assertEqual(cm.exception.message, "attempt 3")
        self.assertEqual(sleeps, [5, 10])

    def test_non_retryable_not_retried(self):
        calls = []

        def fn(ctx):
            calls.append(1)
            raise OtherDownloadError("nope")

        with self.assertRaises(OtherDownloadError):
            retry_with_backoff(fn, operation="test", max_attempts=3, base_delay=5,
                               is_retryable=lambda e: e.retryable, sleep=lambda d: None)
        self.assertEqual(len(calls), 1)

    def test_on_retry_called_between_attempts(self):
        seen = []

        def fn(ctx):
            if ctx.attempt == 1:
                raise RateLimited("429")
            return ctx.attempt

        result = retry_with_backoff(fn, operation="test", max_attempts=3, base_delay=1,
                                    is_retryable=lambda e: True, sleep=lambda d: None,
                                    on_retry=lambda ctx, e: seen.append((ctx.attempt, e.code)))
        self.assertEqual(result, 2)
        self.assertEqual(seen, [(1, ErrorCode.RATE_LIMITED)])

    def test_cancel_interrupts_backoff_wait(self):
        cancel = threading.Event()

        def fn(ctx):
            cancel.set()
            raise RateLimited("429")

        start = time.monotonic()
        with self.assertRaises(Cancelled):
            retry_with_backoff(fn, operation="test", max_attempts=3, base_delay=30,
                               is_retryable=lambda e: True, cancel_event=cancel)
        self.assertLess(time.monotonic() - start, 5)

    def test_cancelled_is_never_retried(self):
        calls = []

        def fn(ctx):
            calls.append(1)
            raise Cancelled()

        with self.assertRaises(Cancelled):
            retry_with_backoff(fn, operation="test", max_attempts=3, base_delay=1,
                               is_retryable=lambda e: True, sleep=lambda d: None)
        self.assertEqual(len(calls), 1)


class TestSingleFlight(unittest.TestCase):

    def test_concurrent_callers_share_one_call(self):
        flight = SingleFlight()
        started = threading.Event()
        release = threading.Event()
        calls = []

        def work():
            calls.append(1)
            started.set()
            release.wait(5)
            return "done"

        results = []
        threads = [threading.Thread(target=lambda: results.append(flight.do("k", work)))
                   for _ in range(5)]
        threads[0].start()
        started.wait(5)
        for t in threads[1:]:
            t.start()
        self.assertTrue(flight.in_flight("k"))
        # give followers time to join the in-flight call
        time.sleep(0.3)
        release.set()
        for t in threads:
            t.join(5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(results, ["done"] * 5)
        self.assertFalse(flight.in_flight("k"))

    def test_exception_shared_and_key_released(self):
        flight = SingleFlight()

        def boom():
            raise ValueError("x")

        with self.assertRaises(ValueError):
            flight.do("k", boom)
        self.assertEqual(flight.do("k", lambda: 42), 42)


class TestMerge(unittest.TestCase):
    """Test transcript merging."""

    def test_merge_orders_by_index(self):
        chunks = [TranscriptChunk(2, "three"), TranscriptChunk(0, "one"),
                  TranscriptChunk(1, "two")]
        self.assertEqual(merge_transcripts(chunks), "one two three")

    def test_empty_chunks_contribute_nothing(self):
        chunks = [TranscriptChunk(0, "hello"), TranscriptChunk(1, ""),
                  TranscriptChunk(2, "  "), TranscriptChunk(3, "world")]
        self.assertEqual(merge_transcripts(chunks), "hello world")

    def test_merge_empty(self):
        self.assertEqual(merge_transcripts([]), "")

    def test_duplicate_index_rejected(self):
        with self.assertRaises(ValueError):
            merge_transcripts([TranscriptChunk(0, "a"), TranscriptChunk(0, "b")])

    def test_transcript_text(self):
        t = Transcript()
        t.add(TranscriptChunk(1, "b"))
        t.add(TranscriptChunk(0, "a"))
        self.assertEqual(str(t), "a b")
        self.assertEqual(t.chunk_count, 2)


class TestResultShape(unittest.TestCase):

    def test_as_dict_has_exactly_three_keys(self):
        result = TranscriptionResult(error="bad", success=False, error_code="X", job_id="j")
        self.assertEqual(result.as_dict(),
                         {"transcription": "", "error": "bad", "success": False})


class TestConfig(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "config.json"

    def tearDown(self):
        self.tmp.cleanup()

    def test_defaults(self):
        cfg = AppConfig(self.path)
        self.assertEqual(cfg.max_duration_sec, MAX_DURATION_SEC)
        self.assertEqual(cfg.get('chunk_length_sec'), 30)
        self.assertTrue(cfg.get('streaming_conversion'))

    def test_set_persists_and_clamps(self):
        cfg = AppConfig(self.path)
        cfg.set('max_duration_sec', 1)
        self.assertEqual(cfg.max_duration_sec, 10)
        cfg.set('inference_workers', 99)
        self.assertEqual(cfg.get('inference_workers'), 8)
        reloaded = AppConfig(self.path)
        self.assertEqual(reloaded.max_duration_sec, 10)

    def test_invalid_number_falls_back_to_default(self):
        cfg = AppConfig(self.path)
        cfg.set('max_size_bytes', "lots")
        self.assertEqual(cfg.max_size_bytes, MAX_SIZE_BYTES)

    def test_secret_never_persisted(self):
        cfg = AppConfig(self.path)
        with self.assertRaises(ValueError):
            cfg.set('login_secret', 'hunter2')
        self.path.write_text(json.dumps({'login_secret': 'hunter2'}))
        self.assertIsNone(AppConfig(self.path).get('login_secret'))

    def test_env_overrides_login(self):
        cfg = AppConfig(self.path)
        with mock.patch.dict(os.environ, {ENV_LOGIN_EMAIL: "a@example.com",
                                          ENV_LOGIN_SECRET: "pw"}):
            self.assertEqual(cfg.login_email, "a@example.com")
            self.assertEqual(cfg.login_secret(), "pw")

    def test_secret_falls_back_to_keychain(self):
        cfg = AppConfig(self.path)
        env = {k: v for k, v in os.environ.items() if k not in (ENV_LOGIN_EMAIL, ENV_LOGIN_SECRET)}
        with mock.patch.dict(os.environ, env, clear=True), \
                mock.patch("tubescribe.core.config.keychain_get_secret", return_value="kc") as kc:
            cfg.set('login_email', "b@example.com")
            self.assertEqual(cfg.login_secret(), "kc")
            kc.assert_called_once_with("b@example.com")


if __name__ == "__main__":
    unittest.main()
