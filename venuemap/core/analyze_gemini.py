"""
Gemini venue analysis.
Uploads the downloaded video through the Files API, asks the model for a
strict JSON venue object and validates it against the VenueAnalysis schema.
"""

import asyncio
import json
import logging
import re
from pathlib import Path

from google import genai
from google.genai import types

from venuemap.core.error_codes import JobError
from venuemap.core.models import VenueAnalysis, VideoMetadata
from venuemap.core.constants import (
    ErrorCode, GEMINI_MODEL, GEMINI_TEMPERATURE, GEMINI_FILE_POLL_SEC,
    ANALYSIS_TIMEOUT_SEC, VIDEO_MIME_TYPE, UNKNOWN,
)

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r'```(?:json)?[ \t]*\n?', re.IGNORECASE)

PROMPT_TEMPLATE = """
Analyze this video based on the video itself and its metadata:
Title: {title}
Description: {description}
Duration: {duration} seconds
Uploader: {uploader}
Upload Date: {upload_date}
Views: {view_count}
Likes: {like_count}
Comments: {comment_count}

Please provide a JSON response with the following structure:
{{
  "country_name": "The country the video is about, based on title, description and the video itself. Put '{unknown}' if you can't determine the country.",
  "city_name": "The city the video is about, based on title, description and the video itself. Put '{unknown}' if you can't determine the city.",
  "venue_name": "The name of the venue, based on title, description and the video itself. Put '{unknown}' if you can't determine the venue name.",
  "summary": "A brief summary of the venue's pros, cons and pricing based on the video, title and description."
}}

IMPORTANT: Return ONLY the JSON object, without any markdown formatting or additional text.
"""


def build_prompt(metadata: VideoMetadata) -> str:
    return PROMPT_TEMPLATE.format(unknown=UNKNOWN, **metadata.as_dict())


def strip_code_fences(text: str) -> str:
    """Remove ```json / ``` fences the model sometimes wraps around its answer."""
    return _CODE_FENCE.sub('', text or '').strip()


def parse_analysis_response(text: str) -> VenueAnalysis:
    """Parse the model's answer; any schema violation is a retryable failure."""
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise JobError(ErrorCode.ANALYSIS_INVALID_RESPONSE, "Gemini returned an empty response")
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise JobError(ErrorCode.ANALYSIS_INVALID_RESPONSE,
                       f"Failed to parse Gemini response JSON: {e}")
    try:
        return VenueAnalysis.from_payload(payload)
    except ValueError as e:
        raise JobError(ErrorCode.ANALYSIS_INVALID_RESPONSE, f"Invalid analysis: {e}")


def _state_name(file) -> str:
    state = getattr(file, 'state', None)
    return str(getattr(state, 'name', None) or state or "").upper()


class GeminiAnalysisClient:
    """Submits video + metadata to Gemini and returns a VenueAnalysis."""

    def __init__(self, api_key: str | None = None, model: str = GEMINI_MODEL,
                 timeout_sec: float = ANALYSIS_TIMEOUT_SEC,
                 poll_interval_sec: float = GEMINI_FILE_POLL_SEC, client=None):
        self.api_key = api_key
        self.model = model
        self.timeout_sec = timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self._client = client

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise JobError(ErrorCode.CONFIG, "GEMINI_API_KEY not configured")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def analyze(self, video_path: Path, metadata: VideoMetadata) -> VenueAnalysis:
        client = self._get_client()
        logger.info("Analyzing %s with %s", video_path.name, self.model)
        try:
            text = await asyncio.wait_for(self._generate(client, video_path, metadata),
                                          timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            raise JobError(ErrorCode.ANALYSIS_TIMEOUT,
                           f"Gemini analysis timed out after {self.timeout_sec}s")
        except JobError:
            raise
        except Exception as e:
            raise JobError(ErrorCode.ANALYSIS_FAILED, f"Gemini request failed: {e}")

        logger.debug("Raw Gemini response: %s", text)
        analysis = parse_analysis_response(text)
        logger.info("Gemini analysis: venue=%r city=%r country=%r",
                    analysis.venue_name, analysis.city_name, analysis.country_name)
        return analysis

    async def _generate(self, client, video_path: Path, metadata: VideoMetadata) -> str:
        uploaded = await client.aio.files.upload(
            file=str(video_path),
            config=types.UploadFileConfig(mime_type=VIDEO_MIME_TYPE),
        )
        try:
            uploaded = await self._wait_until_active(client, uploaded)
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=[uploaded, build_prompt(metadata)],
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    temperature=GEMINI_TEMPERATURE,
                ),
            )
        finally:
            try:
                await client.aio.files.delete(name=uploaded.name)
            except Exception as e:
                logger.warning("Failed to delete uploaded file %s: %s", uploaded.name, e)

        return response.text or ""

    async def _wait_until_active(self, client, uploaded):
        while _state_name(uploaded) == "PROCESSING":
            await asyncio.sleep(self.poll_interval_sec)
            uploaded = await client.aio.files.get(name=uploaded.name)

        state = _state_name(uploaded)
        if state == "FAILED":
            raise JobError(ErrorCode.ANALYSIS_FAILED, f"Gemini could not process {uploaded.name}")
        return uploaded
