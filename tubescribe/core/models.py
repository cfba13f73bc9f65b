"""
Pipeline data models (plain dataclasses) for TubeScribe.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from tubescribe.core.constants import JobState

logger = logging.getLogger(__name__)


@dataclass
class MediaMetadata:
    video_id: str
    title: str = ""
    duration_sec: float = 0.0
    estimated_size_bytes: Optional[int] = None
    format_id: Optional[str] = None


@dataclass
class AudioAsset:
    """A transient audio file owned by exactly one job."""
    path: Path
    size_bytes: int = 0
    duration_sec: Optional[float] = None
    kind: str = "source"

    def exists(self) -> bool:
        return self.path.exists()

    def delete(self) -> bool:
        """Remove the file. Returns True if something was deleted."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Deleted asset: %s", self.path)
        return True


@dataclass
class TranscriptChunk:
    index: int
    text: str


@dataclass
class TranscriptionJob:
    source_url: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    video_id: Optional[str] = None
    state: str = JobState.QUEUED
    state_history: list[str] = field(default_factory=lambda: [JobState.QUEUED])
    workspace: Optional[Path] = None
    assets: list[AudioAsset] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    cleaned_up: bool = False
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def register_asset(self, asset: AudioAsset) -> AudioAsset:
        self.assets.append(asset)
        return asset


@dataclass
class TranscriptionResult:
    transcription: str = ""
    error: str = ""
    success: bool = False
    error_code: Optional[str] = None
    job_id: Optional[str] = None

    def as_dict(self) -> dict:
        """The shape handed back to the request layer."""
        return {
            'transcription': self.transcription,
            'error': self.error,
            'success': self.success,
        }
