"""
Diagnostics: downloader tool check, credentials, cookies and queue state.
Used by `venuemap diagnose`.
"""

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

from venuemap.core.security_utils import run_subprocess_capture, mask_secret
from venuemap.core.constants import (
    app_home, COOKIES_FILENAME, YTDLP_BINARY, ENV_GEMINI_API_KEY, ENV_GOOGLE_MAPS_API_KEY,
)
from venuemap.core.config import get_secret

logger = logging.getLogger(__name__)


def check_downloader(binary: str = YTDLP_BINARY) -> dict:
    """Locate yt-dlp and ask it for its version."""
    info = {"path": shutil.which(binary), "version": None, "error": None}
    try:
        result = run_subprocess_capture([binary, "--version"], timeout=10)
    except FileNotFoundError:
        info["error"] = "Not installed"
        return info
    except Exception as e:
        logger.warning("yt-dlp version check failed: %s", e)
        info["error"] = str(e)
        return info

    if result.returncode == 0:
        info["version"] = result.stdout.strip()
    else:
        info["error"] = f"rc={result.returncode}"
    return info


def check_cookies_file(cookies_path: Path | None = None) -> dict:
    path = cookies_path or app_home() / COOKIES_FILENAME
    if not path.exists():
        return {"detected": False, "path": str(path), "last_modified": None}
    modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    return {"detected": True, "path": str(path), "last_modified": modified.isoformat()}


def check_credentials() -> dict:
    """API keys are reported masked, never in full."""
    return {name: mask_secret(get_secret(name))
            for name in (ENV_GEMINI_API_KEY, ENV_GOOGLE_MAPS_API_KEY)}


def get_diagnostics(db=None, cookies_path: Path | None = None) -> dict:
    info = {
        "downloader": check_downloader(),
        "cookies": check_cookies_file(cookies_path),
        "credentials": check_credentials(),
    }
    if db is not None:
        info["jobs"] = db.count_by_status()
        info["queue"] = db.queue_counts()
    return info
