"""
Video URL parsing and validation.
"""

from urllib.parse import urlparse

from venuemap.core.constants import URL_SCHEMES, SHORT_FORM_HOSTS
from venuemap.core.error_codes import JobError, ErrorCode


def _hostname(url: str) -> str | None:
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return None
    if parsed.scheme.lower() not in URL_SCHEMES:
        return None
    return (parsed.hostname or "").lower() or None


def is_video_url(url: str) -> bool:
    """Quick check if a string looks like an http(s) URL with a host."""
    if not url:
        return False
    return _hostname(url) is not None


def validate_video_url(url: str) -> str:
    """
    Validate a submitted video URL and return it stripped.
    Raises JobError if invalid.
    """
    url = (url or "").strip()
    if not is_video_url(url):
        raise JobError(ErrorCode.INVALID_URL, f"Not a valid video URL: {url}")
    return url


def is_short_form_source(url: str) -> bool:
    """True for short-form social sources that get the fallback download strategy."""
    host = _hostname(url)
    if not host:
        return False
    return any(host == h or host.endswith("." + h) for h in SHORT_FORM_HOSTS)


def parse_input_lines(text: str) -> list[str]:
    """
    Parse pasted text into a list of video URLs.
    - Trims whitespace
    - Ignores empty lines and '#' comments
    - Rejects non-URLs (silently skips)
    """
    urls = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        if is_video_url(line):
            urls.append(line)
    return urls


def parse_txt_file(filepath: str) -> list[str]:
    """Parse a .txt file containing one URL per line."""
    with open(filepath, 'r', encoding='utf-8', errors='replace') as f:
        return parse_input_lines(f.read())
