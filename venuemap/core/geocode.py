"""
Google Geocoding API integration.

Expected absences (unknown venue/city/country, no match, non-OK statuses)
resolve to null coordinates. A quota-exceeded answer is different: it is
propagated as a retryable failure so the retry policy backs off.
"""

import asyncio
import logging

import requests

from venuemap.core.error_codes import JobError
from venuemap.core.models import Coordinates, NULL_COORDINATES
from venuemap.core.constants import (
    ErrorCode, UNKNOWN, GEOCODE_API_URL, GEOCODE_STATUS_OK, GEOCODE_STATUS_QUOTA,
    GEOCODE_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)


def is_unknown(value: str | None) -> bool:
    return value is None or value.strip().lower() in ("", UNKNOWN)


def parse_geocode_response(data: dict, query: str = "") -> Coordinates:
    """Turn a Geocoding API body into coordinates (or null coordinates)."""
    status = data.get('status')
    results = data.get('results') or []

    if status == GEOCODE_STATUS_QUOTA:
        raise JobError(ErrorCode.GEOCODE_QUOTA,
                       f"Geocoding quota exceeded: {(data.get('error_message') or '')[:200]}")

    if status != GEOCODE_STATUS_OK or not results:
        logger.warning("No geocoding results for %r (status=%s)", query, status)
        return NULL_COORDINATES

    try:
        location = results[0]['geometry']['location']
        coordinates = Coordinates(float(location['lat']), float(location['lng']))
    except (KeyError, IndexError, TypeError, ValueError) as e:
        logger.warning("Malformed geocoding result for %r: %s", query, e)
        return NULL_COORDINATES

    logger.debug("Found coordinates for %r: %s", query, coordinates)
    return coordinates


class GoogleGeocoder:
    """venue, city, country -> Coordinates."""

    def __init__(self, api_key: str | None = None, timeout_sec: float = GEOCODE_TIMEOUT_SEC,
                 session: requests.Session | None = None, base_url: str = GEOCODE_API_URL):
        self.api_key = api_key
        self.timeout_sec = timeout_sec
        self.session = session or requests.Session()
        self.base_url = base_url

    async def geocode(self, venue_name: str, city_name: str, country_name: str) -> Coordinates:
        if is_unknown(venue_name) or is_unknown(city_name) or is_unknown(country_name):
            logger.info("Cannot geocode unknown venue, city, or country")
            return NULL_COORDINATES

        query = f"{venue_name}, {city_name}, {country_name}"
        logger.info("Geocoding %r", query)
        data = await asyncio.to_thread(self._request, query)
        return parse_geocode_response(data, query)

    def _request(self, query: str) -> dict:
        if not self.api_key:
            raise JobError(ErrorCode.CONFIG, "GOOGLE_MAPS_API_KEY not configured")

        try:
            resp = self.session.get(
                self.base_url,
                params={"address": query, "key": self.api_key},
                timeout=self.timeout_sec,
            )
        except requests.exceptions.Timeout:
            raise JobError(ErrorCode.TIMEOUT, "Geocoding request timed out")
        except requests.exceptions.ConnectionError:
            raise JobError(ErrorCode.NETWORK_TRANSIENT, "Network error connecting to geocoder")
        except requests.exceptions.RequestException as e:
            raise JobError(ErrorCode.GEOCODE_FAILED, f"Geocoding request failed: {type(e).__name__}")

        if resp.status_code == 429:
            raise JobError(ErrorCode.GEOCODE_QUOTA, "Geocoding rate limited (429)")
        if resp.status_code >= 500:
            raise JobError(ErrorCode.GEOCODE_FAILED, f"Geocoder returned {resp.status_code}")
        if resp.status_code != 200:
            # Sanitize error message (never log API key)
            logger.warning("Geocoder returned %s for %r", resp.status_code, query)
            return {'status': f"HTTP_{resp.status_code}", 'results': []}

        try:
            return resp.json()
        except ValueError:
            raise JobError(ErrorCode.GEOCODE_FAILED, "Failed to parse geocoding response JSON")
