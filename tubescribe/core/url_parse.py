"""
YouTube URL / video id parsing and validation.
"""

import re
from urllib.parse import urlparse, parse_qs

from tubescribe.core.constants import YOUTUBE_URL_PATTERNS, VIDEO_ID_PATTERN
from tubescribe.core.error_codes import InvalidSource


def extract_video_id(source: str) -> str | None:
    """
    Extract the 11-character video_id from a YouTube URL or a bare id.
    Returns None if the input is neither.
    """
    source = (source or "").strip()
    if not source:
        return None

    if re.match(VIDEO_ID_PATTERN, source):
        return source

    for pattern in YOUTUBE_URL_PATTERNS:
        m = re.search(pattern, source)
        if m:
            return m.group(1)

    # Fallback: parse query string for 'v' parameter
    try:
        parsed = urlparse(source)
    except ValueError:
        return None
    if 'youtube.com' in parsed.netloc:
        v = parse_qs(parsed.query).get('v', [None])[0]
        if v and re.match(VIDEO_ID_PATTERN, v):
            return v

    return None


def validate_source(source: str) -> str:
    """
    Validate a source identifier and return the video_id.
    Raises InvalidSource if it is not a YouTube URL or id.
    """
    video_id = extract_video_id(source)
    if not video_id:
        raise InvalidSource(f"Not a valid YouTube URL or video id: {source!r}"[:200])
    return video_id


def canonical_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def parse_input_lines(text: str) -> list[str]:
    """
    Parse pasted text into a list of sources.
    - Trims whitespace
    - Ignores empty lines and '#' comments
    - Silently skips anything that is not a YouTube URL or id
    """
    sources = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        if extract_video_id(line):
            sources.append(line)
    return sources


def parse_txt_file(filepath: str) -> list[str]:
    """Parse a .txt file containing one URL per line."""
    with open(filepath, 'r', encoding='utf-8', errors='replace') as f:
        return parse_input_lines(f.read())
