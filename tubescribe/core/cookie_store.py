"""
Persisted cookie bundle for the source platform.

On disk this is the Netscape cookies.txt format that yt-dlp reads with
--cookies: one record per line, seven tab-separated fields

    domain  include_subdomains  path  secure  expires  name  value

Comment lines start with '#'. The '#HttpOnly_' domain prefix written by
browsers and yt-dlp is not a comment: it is stripped on read and kept as the
record's http_only flag, then written back when the bundle is saved.
"""

import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional

from tubescribe.core.constants import REQUIRED_COOKIE_NAMES, REQUIRED_COOKIE_DOMAINS

logger = logging.getLogger(__name__)

NETSCAPE_HEADER = (
    "# Netscape HTTP Cookie File\n"
    "# This file is generated by TubeScribe. Edit at your own risk.\n"
)
_HTTPONLY_PREFIX = "#HttpOnly_"


@dataclass(frozen=True)
class CookieRecord:
    domain: str
    path: str
    name: str
    value: str
    expires: int = 0            # epoch seconds, 0 = session cookie
    secure: bool = False
    host_only: bool = False
    http_only: bool = False

    def is_live(self, now: float) -> bool:
        return self.expires > now


@dataclass
class CredentialBundle:
    records: list[CookieRecord] = field(default_factory=list)

    def __len__(self):
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def copy(self) -> "CredentialBundle":
        return CredentialBundle(list(self.records))

    def names(self) -> list[str]:
        return [r.name for r in self.records]


# ── Netscape format ───────────────────────────────────────────────────

def _flag(value: bool) -> str:
    return "TRUE" if value else "FALSE"


def format_record(record: CookieRecord) -> str:
    domain = record.domain
    if record.http_only:
        domain = _HTTPONLY_PREFIX + domain
    return "\t".join([
        domain,
        _flag(not record.host_only),
        record.path,
        _flag(record.secure),
        str(int(record.expires)),
        record.name,
        record.value,
    ])


def format_bundle(bundle: CredentialBundle) -> str:
    lines = [format_record(r) for r in bundle.records]
    return NETSCAPE_HEADER + "\n" + "\n".join(lines) + ("\n" if lines else "")


def parse_line(line: str) -> Optional[CookieRecord]:
    """Parse one cookies.txt line. Returns None for blanks and comments."""
    line = line.rstrip("\r\n")
    http_only = False
    if line.startswith(_HTTPONLY_PREFIX):
        http_only = True
        line = line[len(_HTTPONLY_PREFIX):]
    elif not line.strip() or line.lstrip().startswith("#"):
        return None

    parts = line.split("\t")
    if len(parts) != 7:
        raise ValueError(f"expected 7 tab-separated fields, got {len(parts)}")

    domain, include_subdomains, path, secure, expires, name, value = parts
    try:
        expiry = int(float(expires)) if expires.strip() else 0
    except ValueError:
        raise ValueError(f"bad expiry {expires!r}")

    return CookieRecord(
        domain=domain,
        path=path,
        name=name,
        value=value,
        expires=max(expiry, 0),
        secure=secure.upper() == "TRUE",
        host_only=include_subdomains.upper() != "TRUE",
        http_only=http_only,
    )


def parse_bundle(text: str) -> CredentialBundle:
    records = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        try:
            record = parse_line(line)
        except ValueError as e:
            logger.warning("Skipping malformed cookie line %d: %s", lineno, e)
            continue
        if record is not None:
            records.append(record)
    return CredentialBundle(records)


# ── Validity ──────────────────────────────────────────────────────────

def is_valid(bundle: Optional[CredentialBundle],
             required_names: Iterable[str] = REQUIRED_COOKIE_NAMES,
             required_domain_substrings: Iterable[str] = REQUIRED_COOKIE_DOMAINS,
             now: float | None = None) -> bool:
    """
    A bundle is valid when at least one record is on a required domain,
    has a required name and has not expired.
    """
    if not bundle:
        return False
    now = time.time() if now is None else now
    names = set(required_names)
    domains = tuple(required_domain_substrings)
    for record in bundle.records:
        if (any(d in record.domain for d in domains)
                and record.name in names
                and record.is_live(now)):
            return True
    return False


# ── Store ─────────────────────────────────────────────────────────────

class CredentialStore:
    """Owns the cookie file. Readers get a fresh copy; writes replace the file atomically."""

    def __init__(self, path: Path,
                 required_names: Iterable[str] = REQUIRED_COOKIE_NAMES,
                 required_domains: Iterable[str] = REQUIRED_COOKIE_DOMAINS):
        self.path = Path(path)
        self.required_names = frozenset(required_names)
        self.required_domains = tuple(required_domains)
        self._write_lock = threading.Lock()

    def load(self) -> Optional[CredentialBundle]:
        """Return the persisted bundle, or None if there is no cookie file."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return parse_bundle(text)

    def save(self, bundle: CredentialBundle):
        """Overwrite the whole file (write temp, fsync, rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = format_bundle(bundle)
        with self._write_lock:
            fd, tmp = tempfile.mkstemp(prefix=".cookies-", suffix=".tmp",
                                       dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp, 0o600)
                os.replace(tmp, self.path)
            except BaseException:
                try:
                    os.unlink(tmp)
                except FileNotFoundError:
                    pass
                raise
        logger.info("Saved %d cookies to %s", len(bundle), self.path)

    def is_valid(self, bundle: Optional[CredentialBundle], now: float | None = None) -> bool:
        return is_valid(bundle, self.required_names, self.required_domains, now=now)

    def load_valid(self) -> Optional[CredentialBundle]:
        bundle = self.load()
        return bundle if self.is_valid(bundle) else None

    @contextmanager
    def private_copy(self, directory: Path | None = None) -> Iterator[Optional[Path]]:
        """
        Write the current bundle to a throwaway 0600 file and yield its path.

        yt-dlp rewrites its --cookies file on exit, so it only ever gets one of
        these, never self.path. The copy is deleted on exit. Yields None when
        there is no bundle.
        """
        bundle = self.load()
        if bundle is None:
            yield None
            return

        if directory is not None:
            directory.mkdir(parents=True, exist_ok=True)
        # mkstemp creates the file 0600
        fd, tmp = tempfile.mkstemp(prefix=".ytdlp-cookies-", suffix=".txt",
                                   dir=str(directory) if directory is not None else None)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(format_bundle(bundle))
            yield Path(tmp)
        finally:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass


def records_from_browser(cookies: list[dict]) -> list[CookieRecord]:
    """Convert browser cookie dicts (Playwright shape) into records."""
    records = []
    for c in cookies:
        domain = c.get("domain", "")
        expires = c.get("expires") or 0
        try:
            expires = int(float(expires))
        except (TypeError, ValueError):
            expires = 0
        records.append(CookieRecord(
            domain=domain,
            path=c.get("path", "/") or "/",
            name=c.get("name", ""),
            value=c.get("value", ""),
            expires=max(expires, 0),
            secure=bool(c.get("secure", False)),
            host_only=not domain.startswith("."),
            http_only=bool(c.get("httpOnly", False)),
        ))
    return records
