"""
Lazily loaded, shared speech-recognition model.

One handle is created per process and injected wherever inference happens.
Loading happens on first use under a lock so concurrent first callers wait
for the same load instead of starting their own. Inference calls are
serialized; the Hugging Face pipeline is not safe for parallel calls on one
model instance.
"""

import logging
import threading
import time
from typing import Any, Callable, Optional

from tubescribe.core.constants import ASR_TASK, ASR_MODEL

logger = logging.getLogger(__name__)


def default_device() -> int:
    import torch
    return 0 if torch.cuda.is_available() else -1


def load_asr_pipeline(model_name: str, device: Optional[int] = None):
    """Build a transformers ASR pipeline. Imports are deferred; they are slow."""
    from transformers import pipeline

    if device is None:
        device = default_device()
    return pipeline(ASR_TASK, model=model_name, device=device)


class ModelHandle:

    def __init__(self, model_name: str = ASR_MODEL,
                 loader: Callable[[str], Any] | None = None,
                 device: Optional[int] = None):
        self.model_name = model_name
        self.device = device
        self._loader = loader or (lambda name: load_asr_pipeline(name, self.device))
        self._model = None
        self._init_lock = threading.Lock()
        self._infer_lock = threading.Lock()
        self.load_count = 0

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def get(self):
        """Return the model, loading it on first call. A failed load is retried next time."""
        if self._model is not None:
            return self._model
        with self._init_lock:
            if self._model is None:
                logger.info("Loading ASR model %s", self.model_name)
                start = time.monotonic()
                model = self._loader(self.model_name)
                self.load_count += 1
                self._model = model
                logger.info("ASR model ready in %.1fs", time.monotonic() - start)
        return self._model

    def infer(self, samples, options: dict | None = None):
        model = self.get()
        with self._infer_lock:
            return model(samples, **(options or {}))
