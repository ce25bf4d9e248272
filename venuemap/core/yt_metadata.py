"""
Video metadata extraction via yt-dlp.
"""

import json
import logging
import re
import subprocess
from pathlib import Path

from venuemap.core.security_utils import run_subprocess_async
from venuemap.core.error_codes import JobError
from venuemap.core.models import VideoMetadata
from venuemap.core.constants import (
    ErrorCode, CookiesMode, app_home, COOKIES_FILENAME, YTDLP_BINARY, EXTRACT_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)

_AGE_GATE = re.compile(r'\bage[- ]restricted\b|\bconfirm your age\b')


def cookies_args(cookies_mode: str, cookies_path: Path | None) -> list[str]:
    if cookies_mode == CookiesMode.USE_FILE:
        cp = cookies_path or app_home() / COOKIES_FILENAME
        if cp.exists():
            return ["--cookies", str(cp)]
    return []


def classify_ytdlp_failure(stderr: str, returncode: int, default_code: str) -> JobError:
    """Map yt-dlp stderr to a JobError; unavailable/restricted videos are final."""
    stderr = stderr or ""
    lowered = stderr.lower()
    if "Video unavailable" in stderr or "is not available" in stderr:
        return JobError(ErrorCode.VIDEO_UNAVAILABLE, f"Video unavailable: {stderr[:200]}")
    if "Sign in" in stderr or _AGE_GATE.search(lowered) or "consent" in lowered:
        return JobError(ErrorCode.RESTRICTED_CONTENT,
                        f"Restricted content (login/age required): {stderr[:200]}")
    return JobError(default_code, f"yt-dlp failed (rc={returncode}): {stderr[:300]}")


class YtDlpMetadataExtractor:
    """Pulls structured metadata for a URL with `yt-dlp --dump-json`."""

    def __init__(self, timeout_sec: float = EXTRACT_TIMEOUT_SEC,
                 cookies_mode: str = CookiesMode.OFF, cookies_path: Path | None = None,
                 runner=run_subprocess_async, binary: str = YTDLP_BINARY):
        self.timeout_sec = timeout_sec
        self.cookies_mode = cookies_mode
        self.cookies_path = cookies_path
        self._run = runner
        self.binary = binary

    def build_args(self, video_url: str) -> list[str]:
        args = [
            self.binary,
            "--dump-json",
            "--no-playlist",
            "--skip-download",
        ]
        args.extend(cookies_args(self.cookies_mode, self.cookies_path))
        args.append(video_url)
        return args

    async def extract(self, video_url: str) -> VideoMetadata:
        logger.info("Extracting metadata for %s", video_url)
        try:
            result = await self._run(self.build_args(video_url), timeout=self.timeout_sec)
        except subprocess.TimeoutExpired:
            raise JobError(ErrorCode.TIMEOUT,
                           f"yt-dlp metadata fetch timed out after {self.timeout_sec}s")
        except FileNotFoundError:
            raise JobError(ErrorCode.TOOL_MISSING, "yt-dlp is not installed or not on PATH")
        except OSError as e:
            raise JobError(ErrorCode.EXTRACTION_FAILED, f"yt-dlp metadata fetch failed: {e}")

        if result.returncode != 0:
            raise classify_ytdlp_failure(result.stderr, result.returncode,
                                         ErrorCode.EXTRACTION_FAILED)

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise JobError(ErrorCode.EXTRACTION_FAILED, f"Failed to parse yt-dlp JSON: {e}")
        if not isinstance(data, dict):
            raise JobError(ErrorCode.EXTRACTION_FAILED, "yt-dlp JSON is not an object")

        metadata = VideoMetadata.from_ytdlp(data)
        logger.debug("Extracted metadata: %s", metadata)
        return metadata
