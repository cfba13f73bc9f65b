"""
Security utilities for TubeScribe.
- Safe subprocess execution (argument arrays only)
- Cancellable subprocess waits
- Keychain integration (macOS)
"""

import subprocess
import threading
import time
import logging

from tubescribe.core.constants import KEYCHAIN_SERVICE
from tubescribe.core.error_codes import Cancelled

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SEC = 0.2


# ── Subprocess safety ─────────────────────────────────────────────────

def _check_args(args):
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")


def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    _check_args(args)

    # Force shell=False: remove any caller-supplied value, then set it once
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


def popen(args: list[str], **kwargs) -> subprocess.Popen:
    """Start a subprocess (argument arrays only, never a shell)."""
    _check_args(args)
    kwargs.pop('shell', None)
    logger.debug("Starting subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.Popen(args, shell=False, **kwargs)


def kill_process(proc: subprocess.Popen):
    """Kill and reap a child process. Safe to call on an exited process."""
    if proc.poll() is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit after kill", proc.pid)


def run_subprocess_cancellable(args: list[str], timeout: float,
                               cancel_event: threading.Event | None = None,
                               text: bool = True) -> subprocess.CompletedProcess:
    """
    Run a subprocess capturing its output, killing it when cancel_event is set
    or the timeout expires.

    Raises Cancelled on cancellation and subprocess.TimeoutExpired on timeout;
    the child is always reaped before either propagates.
    """
    proc = popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=text)
    deadline = time.monotonic() + timeout
    try:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise Cancelled(f"{args[0]} aborted by cancellation")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise subprocess.TimeoutExpired(args, timeout)
            try:
                stdout, stderr = proc.communicate(timeout=min(_POLL_INTERVAL_SEC, remaining))
            except subprocess.TimeoutExpired:
                continue
            return subprocess.CompletedProcess(args, proc.returncode, stdout, stderr)
    finally:
        if proc.returncode is None:
            kill_process(proc)
            # drain pipes so file descriptors are released
            try:
                proc.communicate(timeout=5)
            except (subprocess.TimeoutExpired, ValueError, OSError):
                pass


# ── Keychain integration (macOS) ──────────────────────────────────────

def keychain_get_secret(account: str, service: str = KEYCHAIN_SERVICE) -> str | None:
    """Retrieve a login secret from macOS Keychain, or None if unavailable."""
    if not account:
        return None
    try:
        result = run_subprocess_capture([
            "security", "find-generic-password",
            "-s", service,
            "-a", account,
            "-w",  # print password only
        ], timeout=10)
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        pass
    except Exception as e:
        logger.warning("Keychain read failed: %s", type(e).__name__)
    return None
