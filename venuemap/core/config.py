"""
Worker configuration manager.
Stores settings in a JSON file under the app home, merged over defaults,
with VENUEMAP_<KEY> environment overrides. Secrets come only from the
environment (optionally populated from a .env file).
"""

import copy
import json
import logging
import os
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from venuemap.core.constants import (
    ENV_HOME, DEFAULT_APP_HOME, DB_FILENAME, CONFIG_FILENAME, TEMP_DIRNAME, COOKIES_FILENAME,
    ENV_PREFIX, CookiesMode,
    DEFAULT_RATE_LIMITS, RETRY_MAX_ATTEMPTS, RETRY_INITIAL_DELAY_SEC, RETRY_MULTIPLIER,
    EXTRACT_TIMEOUT_SEC, DOWNLOAD_TIMEOUT_SEC, ANALYSIS_TIMEOUT_SEC, GEOCODE_TIMEOUT_SEC,
    DEFAULT_CONCURRENCY, POLL_INTERVAL_SEC, VISIBILITY_TIMEOUT_SEC, MAX_DELIVERIES,
    ORPHAN_TIMEOUT_SEC, GEMINI_MODEL,
)

# Validation bounds
_CONCURRENCY_MIN = 1
_CONCURRENCY_MAX = 64
_ATTEMPTS_MIN = 1
_ATTEMPTS_MAX = 10

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'cookies_mode': CookiesMode.OFF,
    'concurrency': DEFAULT_CONCURRENCY,
    'poll_interval_sec': POLL_INTERVAL_SEC,
    'visibility_timeout_sec': VISIBILITY_TIMEOUT_SEC,
    'max_deliveries': MAX_DELIVERIES,
    'orphan_timeout_sec': ORPHAN_TIMEOUT_SEC,
    'gemini_model': GEMINI_MODEL,
    'retry': {
        'max_attempts': RETRY_MAX_ATTEMPTS,
        'initial_delay_sec': RETRY_INITIAL_DELAY_SEC,
        'multiplier': RETRY_MULTIPLIER,
    },
    'rate_limits': DEFAULT_RATE_LIMITS,
    'timeouts': {
        'extract': EXTRACT_TIMEOUT_SEC,
        'download': DOWNLOAD_TIMEOUT_SEC,
        'analysis': ANALYSIS_TIMEOUT_SEC,
        'geocode': GEOCODE_TIMEOUT_SEC,
    },
}


def _defaults(home: Path) -> dict:
    defaults = copy.deepcopy(_DEFAULTS)
    defaults.update({
        'db_path': str(home / DB_FILENAME),
        'temp_dir': str(home / TEMP_DIRNAME),
        'cookies_path': str(home / COOKIES_FILENAME),
    })
    return defaults


def load_environment(env_file: str | Path | None = None) -> bool:
    """
    Load a .env file into os.environ without overriding existing values.
    Without an explicit file, .env is searched for from the working directory up.
    """
    return load_dotenv(dotenv_path=env_file or find_dotenv(usecwd=True), override=False)


def get_secret(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


class AppConfig:
    """Manages worker configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None, environ: dict | None = None):
        self._environ = os.environ if environ is None else environ
        self.home = Path(self._environ.get(ENV_HOME) or DEFAULT_APP_HOME).expanduser()
        self.path = config_path or self.home / CONFIG_FILENAME
        self._defaults = _defaults(self.home)
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults, then apply env overrides."""
        self._data = copy.deepcopy(self._defaults)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._merge(key, value)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)
        self._apply_env_overrides()

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        self._merge(key, value)
        self.save()

    def override(self, key: str, value):
        """Validated change for this process only (not saved)."""
        self._merge(key, value)

    def _merge(self, key: str, value):
        current = self._data.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged = copy.deepcopy(current)
            for sub_key, sub_value in value.items():
                if isinstance(merged.get(sub_key), dict) and isinstance(sub_value, dict):
                    merged[sub_key].update(sub_value)
                else:
                    merged[sub_key] = sub_value
            value = merged
        self._data[key] = self._validate(key, value)

    def _apply_env_overrides(self):
        for key, default in self._defaults.items():
            if isinstance(default, dict):
                continue
            raw = self._environ.get(ENV_PREFIX + key.upper())
            if raw is None or raw == "":
                continue
            self._data[key] = self._validate(key, raw)

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'concurrency':
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid concurrency %r — using default", value)
                return DEFAULT_CONCURRENCY
            return max(_CONCURRENCY_MIN, min(_CONCURRENCY_MAX, value))

        if key in ('poll_interval_sec', 'visibility_timeout_sec', 'orphan_timeout_sec'):
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r — using default", key, value)
                return _DEFAULTS[key]
            return max(0.01, value)

        if key == 'max_deliveries':
            try:
                return max(1, int(value))
            except (TypeError, ValueError):
                logger.warning("Invalid max_deliveries %r — using default", value)
                return MAX_DELIVERIES

        if key == 'cookies_mode':
            if value not in (CookiesMode.OFF, CookiesMode.USE_FILE):
                logger.warning("Invalid cookies_mode %r — using OFF", value)
                return CookiesMode.OFF

        if key == 'retry':
            return self._validate_retry(value)

        if key == 'rate_limits':
            return self._validate_rate_limits(value)

        if key == 'timeouts':
            timeouts = dict(_DEFAULTS['timeouts'])
            for name, seconds in (value or {}).items():
                try:
                    timeouts[name] = max(1.0, float(seconds))
                except (TypeError, ValueError):
                    logger.warning("Invalid timeout %s=%r — using default", name, seconds)
            return timeouts

        return value

    @staticmethod
    def _validate_retry(value) -> dict:
        retry = dict(_DEFAULTS['retry'])
        value = value or {}
        try:
            attempts = int(value.get('max_attempts', retry['max_attempts']))
            retry['max_attempts'] = max(_ATTEMPTS_MIN, min(_ATTEMPTS_MAX, attempts))
            retry['initial_delay_sec'] = max(0.0, float(value.get('initial_delay_sec',
                                                                  retry['initial_delay_sec'])))
            retry['multiplier'] = max(1.0, float(value.get('multiplier', retry['multiplier'])))
        except (TypeError, ValueError, AttributeError):
            logger.warning("Invalid retry settings %r — using defaults", value)
            return dict(_DEFAULTS['retry'])
        return retry

    @staticmethod
    def _validate_rate_limits(value) -> dict:
        limits = copy.deepcopy(DEFAULT_RATE_LIMITS)
        for name, spec in (value or {}).items():
            try:
                limits[name] = {
                    'max_calls': max(1, int(spec['max_calls'])),
                    'window_sec': max(0.001, float(spec['window_sec'])),
                }
            except (TypeError, ValueError, KeyError):
                logger.warning("Invalid rate limit for %s: %r — using default", name, spec)
        return limits

    def as_dict(self) -> dict:
        return copy.deepcopy(self._data)

    # ── Typed accessors ───────────────────────────────────────────────

    @property
    def db_path(self) -> Path:
        return Path(self._data['db_path'])

    @property
    def temp_dir(self) -> Path:
        return Path(self._data['temp_dir'])

    @property
    def cookies_mode(self) -> str:
        return self._data.get('cookies_mode', CookiesMode.OFF)

    @property
    def cookies_path(self) -> Path:
        return Path(self._data.get('cookies_path', self._defaults['cookies_path']))

    @property
    def concurrency(self) -> int:
        return self._data['concurrency']

    @property
    def retry(self) -> dict:
        return dict(self._data['retry'])

    @property
    def rate_limits(self) -> dict:
        return copy.deepcopy(self._data['rate_limits'])

    def timeout(self, name: str) -> float:
        return float(self._data['timeouts'][name])
