"""
Security utilities for venuemap.
- Job-scoped temp path construction with path traversal protection
- Safe subprocess execution (argument arrays only), sync and async
- Secret masking for logs
"""

import asyncio
import re
import subprocess
import pathlib
import logging

from venuemap.core.constants import JOB_ID_PATTERN, VIDEO_EXT, ErrorCode
from venuemap.core.error_codes import JobError

logger = logging.getLogger(__name__)


# ── Filename / path safety ────────────────────────────────────────────

def job_temp_path(temp_dir: pathlib.Path, job_id: str) -> pathlib.Path:
    """
    Build the job-scoped download path <temp_dir>/<job_id>.mp4.
    Enforces that realpath(result) stays inside realpath(temp_dir).
    """
    if not job_id or not re.match(JOB_ID_PATTERN, job_id):
        raise JobError(ErrorCode.INVALID_JOB_ID,
                       f"Rejected job id {job_id!r}: only letters, digits, _ and - are allowed")

    candidate = temp_dir / f"{job_id}{VIDEO_EXT}"
    real_root = temp_dir.resolve(strict=False)
    real_candidate = candidate.resolve(strict=False)
    if real_candidate.parent != real_root:
        raise JobError(ErrorCode.INVALID_JOB_ID, f"Rejected job id {job_id!r}: path traversal")
    return candidate


def mask_secret(value: str | None) -> str:
    """Render a secret for logs: presence and last 4 characters only."""
    if not value:
        return "Missing"
    if len(value) <= 8:
        return "Present"
    return f"Present (…{value[-4:]})"


# ── Subprocess safety ─────────────────────────────────────────────────

def _check_args(args) -> None:
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")


def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    _check_args(args)

    # Force shell=False: drop any caller-supplied value, then set it once
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: float = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


async def run_subprocess_async(args: list[str], timeout: float = 300) -> subprocess.CompletedProcess:
    """
    Async counterpart of run_subprocess_capture.
    The child is killed on timeout and subprocess.TimeoutExpired is raised.
    """
    _check_args(args)
    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))

    proc = await asyncio.create_subprocess_exec(
        *[str(a) for a in args],
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise subprocess.TimeoutExpired(list(args), timeout)

    return subprocess.CompletedProcess(
        list(args),
        proc.returncode,
        stdout.decode('utf-8', errors='replace'),
        stderr.decode('utf-8', errors='replace'),
    )
