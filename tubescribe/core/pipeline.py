"""
Pipeline controller.
Runs one transcription job at a time per call:
probe → guard → acquire → convert → transcribe, with cleanup on every exit.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

import requests

from tubescribe.core.acquire import SourceAcquirer, check_duration
from tubescribe.core.asr_model import ModelHandle
from tubescribe.core.cleanup import cleanup_job
from tubescribe.core.config import AppConfig
from tubescribe.core.constants import (
    JobState, TERMINAL_STATES, ErrorCode, JOBS_CACHE_DIR, MAX_DURATION_SEC, MAX_SIZE_BYTES,
    CHUNK_LENGTH_SEC, STRIDE_LENGTH_SEC,
)
from tubescribe.core.cookie_refresh import CredentialRefresher, harvest_cookies
from tubescribe.core.cookie_store import CredentialStore
from tubescribe.core.error_codes import JobError, Cancelled, sanitize_error_message
from tubescribe.core.models import TranscriptionJob, TranscriptionResult
from tubescribe.core.normalize import FormatConverter
from tubescribe.core.transcribe_local import InferenceOrchestrator
from tubescribe.core.url_parse import validate_source

logger = logging.getLogger(__name__)


class PipelineController:
    """
    Drives a TranscriptionJob through its states and turns every outcome
    into a TranscriptionResult. Nothing raised inside a job escapes run().
    """

    def __init__(self, acquirer: SourceAcquirer, converter: FormatConverter,
                 orchestrator: InferenceOrchestrator,
                 jobs_dir: Path = JOBS_CACHE_DIR,
                 max_duration_sec: float = MAX_DURATION_SEC,
                 max_size_bytes: int = MAX_SIZE_BYTES,
                 chunk_length_sec: float = CHUNK_LENGTH_SEC,
                 stride_length_sec: float = STRIDE_LENGTH_SEC,
                 streaming: bool = True,
                 keep_debug: bool = False):
        self.acquirer = acquirer
        self.converter = converter
        self.orchestrator = orchestrator
        self.jobs_dir = Path(jobs_dir)
        self.max_duration_sec = max_duration_sec
        self.max_size_bytes = max_size_bytes
        self.chunk_length_sec = chunk_length_sec
        self.stride_length_sec = stride_length_sec
        self.streaming = streaming
        self.keep_debug = keep_debug

    # ── Public entry point ────────────────────────────────────────────

    def run(self, source_id: str,
            cancel_event: threading.Event | None = None) -> TranscriptionResult:
        job = TranscriptionJob(source_url=source_id)
        if cancel_event is not None:
            job.cancel_event = cancel_event
        logger.info("Job %s queued for %s", job.id, source_id)

        try:
            text = self._process(job)
            self._transition(job, JobState.COMPLETED)
            logger.info("Job %s completed (%d chars)", job.id, len(text))
            return TranscriptionResult(transcription=text, success=True, job_id=job.id)
        except JobError as e:
            return self._fail(job, e.code, e.message)
        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job.id, e, exc_info=True)
            return self._fail(job, ErrorCode.UNEXPECTED,
                              f"Unexpected error: {type(e).__name__}: {e}")
        finally:
            cleanup_job(job, self.keep_debug)

    # ── Stages ────────────────────────────────────────────────────────

    def _process(self, job: TranscriptionJob) -> str:
        source_id = job.source_url
        job.video_id = validate_source(source_id)
        job.workspace = self.jobs_dir / job.id
        job.workspace.mkdir(parents=True, exist_ok=True)
        on_refresh = self._refresh_callback(job)

        # ── Stage 1: Probe duration ──
        self._transition(job, JobState.PROBING_DURATION)
        metadata = self.acquirer.probe(source_id, cancel_event=job.cancel_event,
                                       on_refresh=on_refresh, workdir=job.workspace)
        check_duration(metadata, self.max_duration_sec)

        # ── Stage 2: Acquire audio ──
        self._transition(job, JobState.ACQUIRING)
        asset = self.acquirer.fetch_audio(
            source_id, self.max_duration_sec, self.max_size_bytes,
            job.workspace,
            metadata=metadata,
            cancel_event=job.cancel_event,
            on_refresh=on_refresh,
        )
        job.register_asset(asset)
        self.converter.measure(asset)
        logger.info("Job %s acquired %s (%d bytes, %.0fs)", job.id, asset.path.name,
                    asset.size_bytes, asset.duration_sec or 0)

        # ── Stage 3: Convert ──
        # Streaming conversion runs lazily, interleaved with transcription
        self._transition(job, JobState.CONVERTING)
        pcm = self.converter.to_pcm(asset, streaming=self.streaming,
                                    cancel_event=job.cancel_event)

        # ── Stage 4: Transcribe ──
        self._transition(job, JobState.TRANSCRIBING)
        transcript = self.orchestrator.transcribe(
            pcm, self.chunk_length_sec, self.stride_length_sec,
            cancel_event=job.cancel_event,
        )
        return transcript.text

    # ── State helpers ─────────────────────────────────────────────────

    def _transition(self, job: TranscriptionJob, state: str):
        if state not in TERMINAL_STATES and job.cancel_event.is_set():
            raise Cancelled()
        logger.info("Job %s: %s -> %s", job.id, job.state, state)
        job.state = state
        job.state_history.append(state)

    def _refresh_callback(self, job: TranscriptionJob):
        resume: list[str] = []

        def on_refresh(active: bool):
            if active:
                resume.append(job.state)
                self._transition(job, JobState.REFRESHING_CREDENTIALS)
            elif resume:
                state = resume.pop()
                # a cancelled job keeps failing through the normal path
                if not job.cancel_event.is_set():
                    self._transition(job, state)

        return on_refresh

    def _fail(self, job: TranscriptionJob, code: str, message: str) -> TranscriptionResult:
        job.error_code = code
        job.error_message = sanitize_error_message(message)
        self._transition(job, JobState.FAILED)
        logger.warning("Job %s failed [%s]: %s", job.id, code, job.error_message)
        return TranscriptionResult(
            error=job.error_message,
            success=False,
            error_code=code,
            job_id=job.id,
        )


# ── Default wiring ────────────────────────────────────────────────────

def build_default_controller(config: AppConfig | None = None) -> PipelineController:
    """Wire a controller from AppConfig. The model is loaded on first use, not here."""
    config = config or AppConfig()

    store = CredentialStore(config.cookies_path)
    headless = bool(config.get('headless', True))
    refresher = CredentialRefresher(
        store,
        credentials=lambda: (config.login_email, config.login_secret()),
        harvester=lambda email, secret: harvest_cookies(email, secret, headless=headless),
    )
    acquirer = SourceAcquirer(store, refresher, http_session=requests.Session())

    model = ModelHandle(config.get('model_name'))
    orchestrator = InferenceOrchestrator(
        model,
        language=config.get('language'),
        task=config.get('task'),
        max_workers=config.get('inference_workers', 1),
    )

    return PipelineController(
        acquirer, FormatConverter(), orchestrator,
        jobs_dir=config.jobs_dir,
        max_duration_sec=config.max_duration_sec,
        max_size_bytes=config.max_size_bytes,
        chunk_length_sec=config.get('chunk_length_sec', CHUNK_LENGTH_SEC),
        stride_length_sec=config.get('stride_length_sec', STRIDE_LENGTH_SEC),
        streaming=bool(config.get('streaming_conversion', True)),
        keep_debug=config.keep_debug_artifacts,
    )


_default_controller: Optional[PipelineController] = None
_default_lock = threading.Lock()


def get_default_controller() -> PipelineController:
    global _default_controller
    with _default_lock:
        if _default_controller is None:
            _default_controller = build_default_controller()
        return _default_controller


def set_default_controller(controller: Optional[PipelineController]):
    global _default_controller
    with _default_lock:
        _default_controller = controller


def submit_transcription_job(source_id: str) -> dict:
    """Synchronous entry point for the request layer: {transcription, error, success}."""
    return get_default_controller().run(source_id).as_dict()
