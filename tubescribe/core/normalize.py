"""
Audio conversion using ffmpeg.
Target: mono, 16kHz, 32-bit float PCM, delivered as numpy blocks.

Streaming mode reads ffmpeg's stdout pipe block by block so a long video is
never fully decoded into memory. Buffered mode captures the whole output in
one go; it is the fallback when streaming is disabled.
"""

import io
import logging
import subprocess
import threading
import time
from pathlib import Path
from typing import Iterator

import numpy as np

from tubescribe.core.security_utils import (
    run_subprocess_capture, run_subprocess_cancellable, popen, kill_process,
)
from tubescribe.core.error_codes import ConversionFailed, Cancelled
from tubescribe.core.constants import (
    SAMPLE_RATE, PCM_CHANNELS, PCM_FORMAT, PCM_CODEC, PCM_BLOCK_SEC,
    CONVERT_TIMEOUT_SEC, STDERR_SNIPPET_LEN,
)
from tubescribe.core.models import AudioAsset

logger = logging.getLogger(__name__)

_BYTES_PER_SAMPLE = np.dtype(np.float32).itemsize


def ffmpeg_pcm_args(input_path: Path, sample_rate: int = SAMPLE_RATE) -> list[str]:
    return [
        "ffmpeg",
        "-nostdin",
        "-hide_banner",
        "-loglevel", "error",
        "-i", str(input_path),
        "-vn",
        "-f", PCM_FORMAT,
        "-acodec", PCM_CODEC,
        "-ac", str(PCM_CHANNELS),
        "-ar", str(sample_rate),
        "pipe:1",
    ]


def _stderr_tail(text: str) -> str:
    return (text or "").strip()[-STDERR_SNIPPET_LEN:] or "unknown error"


class FormatConverter:
    """Transcodes a downloaded asset into float32 mono PCM at a fixed rate."""

    def __init__(self, sample_rate: int = SAMPLE_RATE,
                 block_sec: float = PCM_BLOCK_SEC,
                 timeout: float = CONVERT_TIMEOUT_SEC):
        self.sample_rate = sample_rate
        self.block_samples = max(1, int(block_sec * sample_rate))
        self.timeout = timeout

    def to_pcm(self, asset: AudioAsset, streaming: bool = True,
               cancel_event: threading.Event | None = None) -> Iterator[np.ndarray]:
        if not asset.path.exists():
            raise ConversionFailed("Audio file missing before conversion")
        if streaming:
            return self._stream(asset.path, cancel_event)
        return self._buffered(asset.path, cancel_event)

    def measure(self, asset: AudioAsset) -> AudioAsset:
        """Replace the declared duration with the measured one when ffprobe knows it."""
        measured = get_audio_duration(asset.path)
        if measured > 0:
            if asset.duration_sec and abs(measured - asset.duration_sec) > 5:
                logger.info("Declared duration %.0fs differs from measured %.0fs",
                            asset.duration_sec, measured)
            asset.duration_sec = measured
        return asset

    # ── Streaming ─────────────────────────────────────────────────────

    def _stream(self, path: Path, cancel_event) -> Iterator[np.ndarray]:
        args = ffmpeg_pcm_args(path, self.sample_rate)
        try:
            proc = popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError:
            raise ConversionFailed("ffmpeg executable not found")

        # drain stderr on the side so a chatty ffmpeg never blocks on a full pipe
        stderr_buf = io.BytesIO()
        drain = threading.Thread(target=_drain, args=(proc.stderr, stderr_buf), daemon=True)
        drain.start()

        # Only time spent waiting on ffmpeg counts against the timeout. ffmpeg
        # is paced by the consumer, which may take as long as it likes between
        # blocks.
        timed_out = threading.Event()
        budget = [float(self.timeout)]

        def on_timeout():
            timed_out.set()
            kill_process(proc)

        def waiting(fn, *args):
            timer = threading.Timer(max(budget[0], 0.0), on_timeout)
            timer.daemon = True
            started = time.monotonic()
            timer.start()
            try:
                return fn(*args)
            finally:
                timer.cancel()
                budget[0] -= time.monotonic() - started

        block_bytes = self.block_samples * _BYTES_PER_SAMPLE
        carry = b""
        total = 0
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise Cancelled("Conversion cancelled")
                data = waiting(proc.stdout.read, block_bytes)
                if not data:
                    break
                data = carry + data
                usable = len(data) - (len(data) % _BYTES_PER_SAMPLE)
                carry = data[usable:]
                if usable:
                    block = np.frombuffer(data[:usable], dtype=np.float32)
                    total += block.size
                    yield block

            waiting(proc.wait)
            drain.join(timeout=5)
            if timed_out.is_set():
                raise ConversionFailed(
                    f"ffmpeg conversion timed out after {self.timeout:.0f}s waiting for output")
            if proc.returncode != 0:
                raise ConversionFailed(
                    f"ffmpeg failed (rc={proc.returncode}): "
                    f"{_stderr_tail(stderr_buf.getvalue().decode('utf-8', 'replace'))}"
                )
            logger.info("Converted %s: %d samples (%.1fs)",
                        path.name, total, total / self.sample_rate)
        finally:
            # also runs on GeneratorExit when the consumer stops early
            kill_process(proc)
            proc.stdout.close()

    # ── Buffered ──────────────────────────────────────────────────────

    def _buffered(self, path: Path, cancel_event) -> Iterator[np.ndarray]:
        args = ffmpeg_pcm_args(path, self.sample_rate)
        try:
            result = run_subprocess_cancellable(
                args, timeout=self.timeout, cancel_event=cancel_event, text=False)
        except subprocess.TimeoutExpired:
            raise ConversionFailed(f"ffmpeg conversion timed out after {self.timeout:.0f}s")
        except FileNotFoundError:
            raise ConversionFailed("ffmpeg executable not found")

        if result.returncode != 0:
            raise ConversionFailed(
                f"ffmpeg failed (rc={result.returncode}): "
                f"{_stderr_tail(result.stderr.decode('utf-8', 'replace'))}"
            )

        raw = result.stdout
        usable = len(raw) - (len(raw) % _BYTES_PER_SAMPLE)
        samples = np.frombuffer(raw[:usable], dtype=np.float32)
        logger.info("Converted %s (buffered): %d samples", path.name, samples.size)
        return _blocks(samples, self.block_samples)


def _blocks(samples: np.ndarray, size: int) -> Iterator[np.ndarray]:
    for start in range(0, samples.size, size):
        yield samples[start:start + size]


def _drain(pipe, buf: io.BytesIO):
    try:
        for chunk in iter(lambda: pipe.read(4096), b""):
            buf.write(chunk)
    except (OSError, ValueError):
        pass
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def get_audio_duration(audio_path: Path) -> float:
    """Get audio duration in seconds using ffprobe."""
    args = [
        "ffprobe",
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(audio_path),
    ]

    try:
        result = run_subprocess_capture(args, timeout=30)
        if result.returncode == 0:
            return float(result.stdout.strip())
    except (subprocess.TimeoutExpired, FileNotFoundError, ValueError) as e:
        logger.debug("ffprobe failed for %s: %s", audio_path, e)

    return 0.0
