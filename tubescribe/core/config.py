"""
Application configuration manager.
Stores settings in a JSON file under the data root; login credentials come
from the environment or the Keychain and are never written to the file.
"""

import json
import logging
import os
from pathlib import Path

from tubescribe.core.constants import (
    CONFIG_PATH, DEFAULT_COOKIES_PATH, JOBS_CACHE_DIR,
    MAX_DURATION_SEC, MAX_SIZE_BYTES, CHUNK_LENGTH_SEC, STRIDE_LENGTH_SEC,
    ASR_MODEL, ASR_LANGUAGE, ASR_GENERATE_TASK, INFERENCE_WORKERS,
    ENV_LOGIN_EMAIL, ENV_LOGIN_SECRET,
)
from tubescribe.core.security_utils import keychain_get_secret

# Validation bounds
_MAX_DURATION_MIN = 10
_MAX_DURATION_MAX = 24 * 3600
_MAX_SIZE_MIN = 1024 * 1024
_MAX_SIZE_MAX = 10 * 1024 * 1024 * 1024
_CHUNK_LENGTH_MIN = 5
_CHUNK_LENGTH_MAX = 600
_WORKERS_MAX = 8

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'cookies_path': str(DEFAULT_COOKIES_PATH),
    'jobs_dir': str(JOBS_CACHE_DIR),
    'max_duration_sec': MAX_DURATION_SEC,
    'max_size_bytes': MAX_SIZE_BYTES,
    'chunk_length_sec': CHUNK_LENGTH_SEC,
    'stride_length_sec': STRIDE_LENGTH_SEC,
    'model_name': ASR_MODEL,
    'language': ASR_LANGUAGE,
    'task': ASR_GENERATE_TASK,
    'inference_workers': INFERENCE_WORKERS,
    'streaming_conversion': True,
    'headless': True,
    'login_email': '',
    'keep_debug_artifacts': False,
}

# Never persisted, even if someone calls set() with them
_SECRET_KEYS = {'login_secret', 'login_password'}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    if key in _SECRET_KEYS:
                        continue
                    self._data[key] = self._validate(key, value)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        if key in _SECRET_KEYS:
            raise ValueError(f"{key} cannot be stored in the config file")
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'max_duration_sec':
            return _clamp_number(key, value, int, MAX_DURATION_SEC,
                                 _MAX_DURATION_MIN, _MAX_DURATION_MAX)

        if key == 'max_size_bytes':
            return _clamp_number(key, value, int, MAX_SIZE_BYTES,
                                 _MAX_SIZE_MIN, _MAX_SIZE_MAX)

        if key == 'chunk_length_sec':
            return _clamp_number(key, value, float, CHUNK_LENGTH_SEC,
                                 _CHUNK_LENGTH_MIN, _CHUNK_LENGTH_MAX)

        if key == 'stride_length_sec':
            # the model needs stride on both sides to fit inside one chunk
            chunk = float(self._data.get('chunk_length_sec', CHUNK_LENGTH_SEC))
            return _clamp_number(key, value, float, STRIDE_LENGTH_SEC,
                                 0, max(0.0, chunk / 2 - 0.5))

        if key == 'inference_workers':
            return int(_clamp_number(key, value, int, INFERENCE_WORKERS, 1, _WORKERS_MAX))

        if key in ('streaming_conversion', 'headless', 'keep_debug_artifacts'):
            return bool(value)

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    # ── Typed accessors ───────────────────────────────────────────────

    @property
    def cookies_path(self) -> Path:
        return Path(self._data.get('cookies_path', str(DEFAULT_COOKIES_PATH)))

    @property
    def jobs_dir(self) -> Path:
        return Path(self._data.get('jobs_dir', str(JOBS_CACHE_DIR)))

    @property
    def max_duration_sec(self) -> int:
        return self._data.get('max_duration_sec', MAX_DURATION_SEC)

    @property
    def max_size_bytes(self) -> int:
        return self._data.get('max_size_bytes', MAX_SIZE_BYTES)

    @property
    def keep_debug_artifacts(self) -> bool:
        return self._data.get('keep_debug_artifacts', False)

    @property
    def login_email(self) -> str:
        return os.environ.get(ENV_LOGIN_EMAIL) or self._data.get('login_email', '')

    def login_secret(self) -> str | None:
        """Environment first, then the Keychain entry for login_email."""
        secret = os.environ.get(ENV_LOGIN_SECRET)
        if secret:
            return secret
        return keychain_get_secret(self.login_email)


def _clamp_number(key, value, cast, default, lo, hi):
    try:
        value = cast(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r, using default", key, value)
        return default
    return max(lo, min(hi, value))
