"""
Merge transcript chunks into a single text.
Chunks are ordered by their window index, never by completion order.
"""

import logging
from dataclasses import dataclass, field

from tubescribe.core.models import TranscriptChunk

logger = logging.getLogger(__name__)


def merge_transcripts(chunks: list[TranscriptChunk]) -> str:
    """
    Join chunk texts with a single space in ascending index order.
    Empty or whitespace-only chunks contribute nothing.
    """
    ordered = sorted(chunks, key=lambda c: c.index)
    indices = [c.index for c in ordered]
    if len(set(indices)) != len(indices):
        raise ValueError(f"Duplicate chunk indices: {indices}")

    texts = [c.text.strip() for c in ordered if c.text and c.text.strip()]
    return ' '.join(texts)


@dataclass
class Transcript:
    chunks: list[TranscriptChunk] = field(default_factory=list)
    silent_chunks: int = 0

    def add(self, chunk: TranscriptChunk):
        self.chunks.append(chunk)

    @property
    def text(self) -> str:
        return merge_transcripts(self.chunks)

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    def __str__(self) -> str:
        return self.text
