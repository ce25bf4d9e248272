"""
Video download via yt-dlp.

Primary strategy: best MP4 stream. Short-form social sources (TikTok) get a
second, more permissive strategy (generic extractor) when the primary fails.
"""

import logging
import subprocess
from pathlib import Path

from venuemap.core.security_utils import run_subprocess_async
from venuemap.core.error_codes import JobError
from venuemap.core.url_parse import is_short_form_source
from venuemap.core.cleanup import remove_job_artifact
from venuemap.core.yt_metadata import cookies_args, classify_ytdlp_failure
from venuemap.core.constants import (
    ErrorCode, CookiesMode, YTDLP_BINARY, PRIMARY_FORMAT, DOWNLOAD_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)


class YtDlpDownloader:
    """Writes exactly one file at the destination path, or raises JobError."""

    def __init__(self, timeout_sec: float = DOWNLOAD_TIMEOUT_SEC,
                 cookies_mode: str = CookiesMode.OFF, cookies_path: Path | None = None,
                 runner=run_subprocess_async, binary: str = YTDLP_BINARY):
        self.timeout_sec = timeout_sec
        self.cookies_mode = cookies_mode
        self.cookies_path = cookies_path
        self._run = runner
        self.binary = binary

    def primary_args(self, video_url: str, destination: Path) -> list[str]:
        args = [
            self.binary,
            "-f", PRIMARY_FORMAT,
            "--no-warnings",
            "--no-playlist",
            "-o", str(destination),
        ]
        args.extend(cookies_args(self.cookies_mode, self.cookies_path))
        if is_short_form_source(video_url):
            args.append("--force-keyframes-at-cuts")
        args.append(video_url)
        return args

    def fallback_args(self, video_url: str, destination: Path) -> list[str]:
        args = [
            self.binary,
            "--no-warnings",
            "--force-generic-extractor",
            "-o", str(destination),
        ]
        args.extend(cookies_args(self.cookies_mode, self.cookies_path))
        args.append(video_url)
        return args

    async def download(self, video_url: str, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self._attempt(self.primary_args(video_url, destination), destination)
        except JobError as e:
            if e.code == ErrorCode.TOOL_MISSING or not is_short_form_source(video_url):
                raise
            logger.warning("Primary download failed for %s (%s) — trying generic extractor",
                           video_url, e.message)
            remove_job_artifact(destination)
            await self._attempt(self.fallback_args(video_url, destination), destination)

        logger.info("Downloaded video: %s", destination)
        return destination

    async def _attempt(self, args: list[str], destination: Path):
        try:
            result = await self._run(args, timeout=self.timeout_sec)
        except subprocess.TimeoutExpired:
            remove_job_artifact(destination)
            raise JobError(ErrorCode.TIMEOUT,
                           f"yt-dlp download timed out after {self.timeout_sec}s")
        except FileNotFoundError:
            raise JobError(ErrorCode.TOOL_MISSING, "yt-dlp is not installed or not on PATH")
        except OSError as e:
            raise JobError(ErrorCode.DOWNLOAD_FAILED, f"Video download failed: {e}")

        if result.returncode != 0:
            remove_job_artifact(destination)
            raise classify_ytdlp_failure(result.stderr, result.returncode,
                                         ErrorCode.DOWNLOAD_FAILED)

        if not destination.exists():
            raise JobError(ErrorCode.DOWNLOAD_FAILED, "Video file was not created after download")
