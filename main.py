#!/usr/bin/env python3
"""
TubeScribe v1.0.0 — command-line entry point.

    python3 main.py transcribe URL [URL ...] [--file urls.txt] [--cancel-after SEC]
    python3 main.py refresh-cookies [--force]
    python3 main.py diagnostics
"""

import argparse
import json
import logging
import os
import shutil
import sys
import threading
import traceback
from datetime import datetime
from pathlib import Path

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tubescribe.core.constants import APP_NAME, APP_VERSION, LOG_DIR  # noqa: E402

LOG_FILE = LOG_DIR / "app.log"

logger = logging.getLogger("tubescribe")


def setup_logging(verbose: bool = False):
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
    )


def check_prerequisites():
    """Check that yt-dlp and ffmpeg are available, exit if not."""
    missing = []
    if not shutil.which("yt-dlp"):
        missing.append("yt-dlp (install with: pip install yt-dlp)")
    if not shutil.which("ffmpeg"):
        missing.append("ffmpeg (install with your package manager)")

    if missing:
        logger.error("Missing tools. PATH = %s", os.environ.get("PATH", ""))
        print("Missing required tools:\n  " + "\n  ".join(missing), file=sys.stderr)
        sys.exit(1)

    # Log found paths for debugging
    logger.info("yt-dlp found at: %s", shutil.which("yt-dlp"))
    logger.info("ffmpeg found at: %s", shutil.which("ffmpeg"))


# ── Commands ──────────────────────────────────────────────────────────

def cmd_transcribe(args) -> int:
    from tubescribe.core.pipeline import get_default_controller
    from tubescribe.core.url_parse import parse_txt_file

    check_prerequisites()
    sources = list(args.urls)
    if args.file:
        sources.extend(parse_txt_file(args.file))
    if not sources:
        print("No sources given", file=sys.stderr)
        return 2

    controller = get_default_controller()
    failures = 0
    for source in sources:
        cancel_event = threading.Event()
        timer = None
        if args.cancel_after:
            timer = threading.Timer(args.cancel_after, cancel_event.set)
            timer.daemon = True
            timer.start()
        try:
            result = controller.run(source, cancel_event=cancel_event)
        finally:
            if timer is not None:
                timer.cancel()
        if not result.success:
            failures += 1
        print(json.dumps({"source": source, **result.as_dict()}, ensure_ascii=False))
        sys.stdout.flush()
    return 1 if failures else 0


def cmd_refresh_cookies(args) -> int:
    from tubescribe.core.config import AppConfig
    from tubescribe.core.cookie_refresh import CredentialRefresher, harvest_cookies
    from tubescribe.core.cookie_store import CredentialStore
    from tubescribe.core.error_codes import JobError, sanitize_error_message

    config = AppConfig()
    store = CredentialStore(config.cookies_path)
    headless = bool(config.get('headless', True))
    refresher = CredentialRefresher(
        store,
        credentials=lambda: (config.login_email, config.login_secret()),
        harvester=lambda email, secret: harvest_cookies(email, secret, headless=headless),
    )
    try:
        bundle = refresher.refresh_if_stale(force=args.force)
    except JobError as e:
        print(json.dumps({"success": False, "error_code": e.code,
                          "error": sanitize_error_message(e.message)}))
        return 1
    print(json.dumps({"success": True, "records": len(bundle), "path": str(store.path)}))
    return 0


def cmd_diagnostics(args) -> int:
    from tubescribe.core.config import AppConfig
    from tubescribe.core.diagnostics import get_diagnostics

    config = AppConfig()
    print(json.dumps(get_diagnostics(config.cookies_path), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tubescribe",
                                     description=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("transcribe", help="transcribe one or more videos")
    p.add_argument("urls", nargs="*", help="YouTube URLs or video ids")
    p.add_argument("--file", help="text file with one URL per line")
    p.add_argument("--cancel-after", type=float, default=None, metavar="SEC",
                   help="cancel each job after SEC seconds")
    p.set_defaults(func=cmd_transcribe)

    p = sub.add_parser("refresh-cookies", help="log in and store fresh cookies")
    p.add_argument("--force", action="store_true",
                   help="log in even if the stored cookies look valid")
    p.set_defaults(func=cmd_refresh_cookies)

    p = sub.add_parser("diagnostics", help="show tool versions and cookie status")
    p.set_defaults(func=cmd_diagnostics)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Project root: %s", PROJECT_ROOT)
    logger.info("=" * 60)

    try:
        sys.exit(args.func(args))
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        logger.critical("Fatal error: %s\n%s", error_msg, traceback.format_exc())
        print(f"Fatal error: {error_msg} (see {LOG_FILE})", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
