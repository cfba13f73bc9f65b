#!/usr/bin/env python3
"""
Unit tests for the model handle and chunked transcription.
No model weights are loaded; the model is always a fake callable.
"""

import sys
import threading
import time
import types
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import numpy as np

from tubescribe.core.asr_model import ModelHandle, load_asr_pipeline
from tubescribe.core.error_codes import InferenceFailed, Cancelled
from tubescribe.core.transcribe_local import (
    InferenceOrchestrator, iter_windows, is_silent, extract_text,
)

RATE = 16000


def windows_stream(n_windows: int, window_sec: float = 1.0, block: int = 7000):
    """Window i is filled with (i + 1) / 100, then the whole thing is re-cut into odd blocks."""
    size = int(window_sec * RATE)
    audio = np.concatenate([np.full(size, (i + 1) / 100, dtype=np.float32)
                            for i in range(n_windows)])
    return [audio[i:i + block] for i in range(0, audio.size, block)]


def window_index(samples: dict) -> int:
    return int(round(float(samples['raw'][0]) * 100)) - 1


class FakeHandle:
    """Handle without the inference mutex so windows really overlap."""

    def __init__(self, fn):
        self.fn = fn
        self.calls = []
        self._lock = threading.Lock()

    def infer(self, samples, options=None):
        with self._lock:
            self.calls.append((samples, options))
        return self.fn(samples, options)


class TestWindows(unittest.TestCase):

    def test_reblocks_to_exact_windows(self):
        blocks = [np.ones(7000, dtype=np.float32)] * 5          # 35000 samples
        windows = list(iter_windows(blocks, 16000))
        self.assertEqual([w.size for w in windows], [16000, 16000, 3000])

    def test_exact_multiple_has_no_tail(self):
        blocks = [np.zeros(8000, dtype=np.float32)] * 4
        self.assertEqual([w.size for w in iter_windows(blocks, 16000)], [16000, 16000])

    def test_preserves_sample_order(self):
        audio = np.arange(50, dtype=np.float32)
        blocks = [audio[:13], audio[13:14], audio[14:]]
        joined = np.concatenate(list(iter_windows(blocks, 8)))
        np.testing.assert_array_equal(joined, audio)

    def test_empty_stream(self):
        self.assertEqual(list(iter_windows([], 16000)), [])

    def test_rejects_bad_window(self):
        with self.assertRaises(ValueError):
            list(iter_windows([np.zeros(4, dtype=np.float32)], 0))


class TestSilence(unittest.TestCase):

    def test_zero_and_near_zero(self):
        self.assertTrue(is_silent(np.zeros(100, dtype=np.float32)))
        self.assertTrue(is_silent(np.full(100, 5e-5, dtype=np.float32)))
        self.assertTrue(is_silent(np.array([], dtype=np.float32)))

    def test_audible(self):
        self.assertFalse(is_silent(np.array([0.0, -0.2, 0.0], dtype=np.float32)))


class TestExtractText(unittest.TestCase):

    def test_shapes(self):
        self.assertEqual(extract_text({"text": " hello "}), "hello")
        self.assertEqual(extract_text([{"text": "a"}, {"text": ""}, {"text": "b"}]), "a b")
        self.assertEqual(extract_text(None), "")
        self.assertEqual(extract_text({"chunks": []}), "")


class TestOrchestrator(unittest.TestCase):

    def test_order_preserved_with_parallel_workers(self):
        n = 6

        def slow_early(samples, options):
            idx = window_index(samples)
            # earlier windows finish last
            time.sleep((n - idx) * 0.02)
            return {"text": f"w{idx}"}

        orchestrator = InferenceOrchestrator(FakeHandle(slow_early), max_workers=3)
        transcript = orchestrator.transcribe(windows_stream(n), chunk_duration_sec=1,
                                             stride_sec=0.2)
        self.assertEqual(transcript.text, "w0 w1 w2 w3 w4 w5")
        self.assertEqual(transcript.chunk_count, n)

    def test_passes_window_and_options(self):
        handle = FakeHandle(lambda s, o: {"text": "x"})
        orchestrator = InferenceOrchestrator(handle, language="english", task="transcribe")
        orchestrator.transcribe(windows_stream(2), chunk_duration_sec=1, stride_sec=0.2)

        samples, options = handle.calls[0]
        self.assertEqual(samples['sampling_rate'], RATE)
        self.assertEqual(samples['raw'].dtype, np.float32)
        self.assertEqual(samples['raw'].size, RATE)
        self.assertEqual(options['chunk_length_s'], 1)
        self.assertEqual(options['stride_length_s'], 0.2)
        self.assertEqual(options['generate_kwargs'], {"language": "english", "task": "transcribe"})

    def test_silent_audio_gives_empty_transcript(self):
        handle = FakeHandle(lambda s, o: {"text": ""})
        stream = [np.zeros(RATE, dtype=np.float32) for _ in range(3)]
        transcript = InferenceOrchestrator(handle).transcribe(stream, chunk_duration_sec=1,
                                                              stride_sec=0.2)
        self.assertEqual(transcript.text, "")
        self.assertEqual(transcript.silent_chunks, 3)
        # silence is still sent to the model
        self.assertEqual(len(handle.calls), 3)

    def test_empty_stream_gives_empty_transcript(self):
        transcript = InferenceOrchestrator(FakeHandle(lambda s, o: {"text": "x"})).transcribe([])
        self.assertEqual(transcript.text, "")

    def test_list_output(self):
        handle = FakeHandle(lambda s, o: [{"text": "a"}, {"text": "b"}])
        transcript = InferenceOrchestrator(handle).transcribe(windows_stream(1),
                                                              chunk_duration_sec=1, stride_sec=0)
        self.assertEqual(transcript.text, "a b")

    def test_model_error_is_inference_failed_and_handle_kept(self):
        calls = []

        def broken(samples, **options):
            calls.append(1)
            raise RuntimeError("CUDA out of memory")

        handle = ModelHandle("fake", loader=lambda name: broken)
        with self.assertRaises(InferenceFailed) as cm:
            InferenceOrchestrator(handle).transcribe(windows_stream(2), chunk_duration_sec=1,
                                                     stride_sec=0.2)
        self.assertIn("RuntimeError", cm.exception.message)
        self.assertFalse(cm.exception.retryable)
        self.assertTrue(handle.loaded)
        self.assertEqual(handle.load_count, 1)

    def test_chunk_timeout(self):
        release = threading.Event()

        def stuck(samples, options):
            release.wait(5)
            return {"text": "late"}

        orchestrator = InferenceOrchestrator(FakeHandle(stuck), chunk_timeout=0.05)
        try:
            with self.assertRaises(InferenceFailed) as cm:
                orchestrator.transcribe(windows_stream(1), chunk_duration_sec=1, stride_sec=0)
            self.assertIn("timed out", cm.exception.message)
        finally:
            release.set()

    def test_cancel_stops_and_closes_stream(self):
        cancel = threading.Event()
        closed = []

        def stream():
            try:
                for block in windows_stream(5):
                    yield block
            finally:
                closed.append(True)

        def model(samples, options):
            cancel.set()
            return {"text": "x"}

        handle = FakeHandle(model)
        with self.assertRaises(Cancelled):
            InferenceOrchestrator(handle).transcribe(stream(), chunk_duration_sec=1,
                                                     stride_sec=0.2, cancel_event=cancel)
        self.assertEqual(closed, [True])
        self.assertLess(len(handle.calls), 5)


class TestModelHandle(unittest.TestCase):

    def test_lazy_load(self):
        loads = []
        handle = ModelHandle("m", loader=lambda name: loads.append(name) or (lambda s, **o: s))
        self.assertEqual(loads, [])
        self.assertFalse(handle.loaded)
        self.assertEqual(handle.infer("x"), "x")
        handle.infer("y")
        self.assertEqual(loads, ["m"])

    def test_concurrent_first_use_loads_once(self):
        def loader(name):
            time.sleep(0.1)
            return lambda s, **o: s

        handle = ModelHandle("m", loader=loader)
        threads = [threading.Thread(target=handle.get) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        self.assertEqual(handle.load_count, 1)

    def test_failed_load_is_retried(self):
        attempts = []

        def loader(name):
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError("weights not found")
            return lambda s, **o: "ok"

        handle = ModelHandle("m", loader=loader)
        with self.assertRaises(OSError):
            handle.get()
        self.assertFalse(handle.loaded)
        self.assertEqual(handle.infer("x"), "ok")
        self.assertEqual(len(attempts), 2)

    def test_inference_is_serialized(self):
        state = {"active": 0, "peak": 0}
        lock = threading.Lock()

        def model(samples, **options):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.02)
            with lock:
                state["active"] -= 1
            return {"text": ""}

        handle = ModelHandle("m", loader=lambda name: model)
        threads = [threading.Thread(target=handle.infer, args=({},)) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        self.assertEqual(state["peak"], 1)

    def test_default_loader_builds_pipeline(self):
        fake_transformers = types.SimpleNamespace(pipeline=mock.Mock(return_value="asr"))
        fake_torch = types.SimpleNamespace(cuda=types.SimpleNamespace(is_available=lambda: False))
        with mock.patch.dict(sys.modules, {"transformers": fake_transformers, "torch": fake_torch}):
            self.assertEqual(load_asr_pipeline("openai/whisper-tiny"), "asr")
        fake_transformers.pipeline.assert_called_once_with(
            "automatic-speech-recognition", model="openai/whisper-tiny", device=-1)


if __name__ == "__main__":
    unittest.main()
