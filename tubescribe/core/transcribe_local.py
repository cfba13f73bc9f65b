"""
Chunked local transcription.

The PCM stream is cut into fixed, non-overlapping windows. Each window goes to
the shared model with a stride hint so the model can smooth the edges
internally. Windows may be submitted to a small worker pool; results are
always reassembled by window index.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Iterable, Iterator

import numpy as np

from tubescribe.core.asr_model import ModelHandle
from tubescribe.core.constants import (
    SAMPLE_RATE, CHUNK_LENGTH_SEC, STRIDE_LENGTH_SEC, SILENCE_PEAK_THRESHOLD,
    ASR_LANGUAGE, ASR_GENERATE_TASK, INFERENCE_WORKERS, CHUNK_INFERENCE_TIMEOUT_SEC,
)
from tubescribe.core.error_codes import JobError, InferenceFailed, Cancelled
from tubescribe.core.merge import Transcript
from tubescribe.core.models import TranscriptChunk

logger = logging.getLogger(__name__)


def iter_windows(pcm_stream: Iterable[np.ndarray], window_samples: int) -> Iterator[np.ndarray]:
    """
    Re-block a stream of sample arrays into windows of exactly window_samples.
    The last window holds whatever is left and may be shorter.
    """
    if window_samples <= 0:
        raise ValueError("window_samples must be positive")

    parts: list[np.ndarray] = []
    buffered = 0
    for block in pcm_stream:
        block = np.asarray(block, dtype=np.float32).reshape(-1)
        while block.size:
            take = min(window_samples - buffered, block.size)
            parts.append(block[:take])
            buffered += take
            block = block[take:]
            if buffered == window_samples:
                yield np.concatenate(parts)
                parts = []
                buffered = 0
    if buffered:
        yield np.concatenate(parts)


def is_silent(window: np.ndarray, threshold: float = SILENCE_PEAK_THRESHOLD) -> bool:
    if window.size == 0:
        return True
    return float(np.max(np.abs(window))) < threshold


def extract_text(output) -> str:
    """Pipeline output is a {'text': ...} dict or a list of them."""
    if output is None:
        return ""
    if isinstance(output, str):
        return output.strip()
    if isinstance(output, dict):
        return (output.get('text') or "").strip()
    if isinstance(output, (list, tuple)):
        return ' '.join(t for t in (extract_text(o) for o in output) if t)
    return ""


class InferenceOrchestrator:

    def __init__(self, model: ModelHandle,
                 language: str = ASR_LANGUAGE,
                 task: str = ASR_GENERATE_TASK,
                 max_workers: int = INFERENCE_WORKERS,
                 chunk_timeout: float = CHUNK_INFERENCE_TIMEOUT_SEC,
                 sample_rate: int = SAMPLE_RATE):
        self.model = model
        self.language = language
        self.task = task
        self.max_workers = max(1, int(max_workers))
        self.chunk_timeout = chunk_timeout
        self.sample_rate = sample_rate

    def options(self, chunk_duration_sec: float, stride_sec: float) -> dict:
        return {
            'chunk_length_s': chunk_duration_sec,
            'stride_length_s': stride_sec,
            'generate_kwargs': {'language': self.language, 'task': self.task},
        }

    def transcribe(self, pcm_stream: Iterable[np.ndarray],
                   chunk_duration_sec: float = CHUNK_LENGTH_SEC,
                   stride_sec: float = STRIDE_LENGTH_SEC,
                   cancel_event: threading.Event | None = None) -> Transcript:
        """
        Transcribe the stream window by window. Raises InferenceFailed on a
        model error or a chunk timeout and Cancelled when cancel_event is set.
        Silent or empty windows are not failures.
        """
        window_samples = int(chunk_duration_sec * self.sample_rate)
        options = self.options(chunk_duration_sec, stride_sec)
        transcript = Transcript()
        pending: dict = {}
        # bounds decoded audio held in memory while workers are busy
        max_in_flight = self.max_workers * 2

        windows = iter_windows(pcm_stream, window_samples)
        executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                      thread_name_prefix="asr")
        try:
            for index, window in enumerate(windows):
                _check_cancel(cancel_event)
                if is_silent(window):
                    transcript.silent_chunks += 1
                    logger.debug("Window %d is silent (%d samples)", index, window.size)
                pending[index] = executor.submit(self._infer_window, window, options)

                while len(pending) >= max_in_flight:
                    oldest = min(pending)
                    transcript.add(self._collect(oldest, pending.pop(oldest)))

            for index in sorted(pending):
                _check_cancel(cancel_event)
                transcript.add(self._collect(index, pending.pop(index)))
        finally:
            for future in pending.values():
                future.cancel()
            executor.shutdown(wait=False, cancel_futures=True)
            windows.close()
            close = getattr(pcm_stream, 'close', None)
            if close is not None:
                close()

        total = transcript.chunk_count
        if total and transcript.silent_chunks == total:
            logger.warning("All %d window(s) were silent; transcript is likely empty", total)
        elif transcript.silent_chunks:
            logger.info("%d of %d window(s) were silent", transcript.silent_chunks, total)
        logger.info("Transcribed %d window(s), %d chars", total, len(transcript.text))
        return transcript

    def _infer_window(self, window: np.ndarray, options: dict):
        # the pipeline pops keys from its input dict, so build a fresh one per call
        return self.model.infer({'raw': window, 'sampling_rate': self.sample_rate}, options)

    def _collect(self, index: int, future) -> TranscriptChunk:
        try:
            output = future.result(timeout=self.chunk_timeout)
        except FutureTimeout:
            raise InferenceFailed(
                f"Chunk {index} inference timed out after {self.chunk_timeout:.0f}s"
            )
        except JobError:
            raise
        except Exception as e:
            logger.error("Inference failed on chunk %d: %s", index, e, exc_info=True)
            raise InferenceFailed(f"Model error on chunk {index}: {type(e).__name__}: {e}") from e

        text = extract_text(output)
        if not text:
            logger.debug("Chunk %d produced no text", index)
        return TranscriptChunk(index=index, text=text)


def _check_cancel(cancel_event: threading.Event | None):
    if cancel_event is not None and cancel_event.is_set():
        raise Cancelled("Transcription cancelled")
