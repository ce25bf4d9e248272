"""
Data models (plain dataclasses) for venuemap.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Optional

from venuemap.core.constants import JobStatus, UNKNOWN, ANALYSIS_FIELDS


@dataclass
class VideoRecord:
    id: str                          # jobId
    url: str
    user_id: Optional[str] = None
    status: str = JobStatus.QUEUED
    title: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[float] = None
    uploader: Optional[str] = None
    upload_date: Optional[str] = None
    view_count: Optional[int] = None
    like_count: Optional[int] = None
    comment_count: Optional[int] = None
    venue_name: Optional[str] = None
    country_name: Optional[str] = None
    city_name: Optional[str] = None
    gemini_analysis: Optional[dict] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass(frozen=True)
class JobMessage:
    """Inbound queue payload: {jobId, userId, videoUrl}."""
    job_id: str
    user_id: Optional[str]
    video_url: str

    @classmethod
    def from_payload(cls, payload: dict) -> "JobMessage":
        job_id = payload.get('jobId') or payload.get('videoId') or payload.get('job_id')
        video_url = payload.get('videoUrl') or payload.get('video_url')
        if not job_id or not video_url:
            raise ValueError(f"Malformed job payload: {payload!r}")
        user_id = payload.get('userId', payload.get('user_id'))
        return cls(job_id=str(job_id), user_id=user_id, video_url=str(video_url))

    def to_payload(self) -> dict:
        return {'jobId': self.job_id, 'userId': self.user_id, 'videoUrl': self.video_url}


@dataclass
class VideoMetadata:
    title: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[float] = None
    uploader: Optional[str] = None
    upload_date: Optional[str] = None
    view_count: Optional[int] = None
    like_count: Optional[int] = None
    comment_count: Optional[int] = None

    @classmethod
    def from_ytdlp(cls, info: dict) -> "VideoMetadata":
        return cls(
            title=info.get('title'),
            description=info.get('description'),
            duration=info.get('duration'),
            uploader=info.get('uploader'),
            upload_date=info.get('upload_date'),
            view_count=info.get('view_count'),
            like_count=info.get('like_count'),
            comment_count=info.get('comment_count'),
        )

    def as_dict(self) -> dict:
        return asdict(self)


def _is_unknown(value: str) -> bool:
    return value.strip().lower() == UNKNOWN


@dataclass(frozen=True)
class VenueAnalysis:
    country_name: str
    city_name: str
    venue_name: str
    summary: str

    @classmethod
    def from_payload(cls, payload: Any) -> "VenueAnalysis":
        """
        Build from the model's JSON object.
        Every field is required and must be a string; blank strings
        collapse to the "unknown" sentinel. Raises ValueError otherwise.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"Analysis must be a JSON object, got {type(payload).__name__}")
        missing = [k for k in ANALYSIS_FIELDS if k not in payload]
        if missing:
            raise ValueError(f"Analysis is missing field(s): {', '.join(missing)}")
        values = {}
        for key in ANALYSIS_FIELDS:
            value = payload[key]
            if value is None:
                value = UNKNOWN
            if not isinstance(value, str):
                raise ValueError(f"Analysis field {key!r} must be a string")
            values[key] = value.strip() or UNKNOWN
        return cls(**values)

    @property
    def has_unknown_location(self) -> bool:
        return any(_is_unknown(v) for v in (self.venue_name, self.city_name, self.country_name))

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Coordinates:
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def __post_init__(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("Coordinates must be both set or both null")

    @property
    def is_null(self) -> bool:
        return self.latitude is None


NULL_COORDINATES = Coordinates()


@dataclass(frozen=True)
class RateDecision:
    proceed: bool
    defer_until: Optional[float] = None


@dataclass(frozen=True)
class RetryResult:
    value: Any
    attempts: int


@dataclass
class JobOutcome:
    job_id: str
    status: str
    analysis: Optional[VenueAnalysis] = None
    coordinates: Coordinates = field(default_factory=Coordinates)
    skipped: bool = False


@dataclass(frozen=True)
class Delivery:
    """One claimed queue entry."""
    entry_id: int
    message: JobMessage
    deliveries: int
