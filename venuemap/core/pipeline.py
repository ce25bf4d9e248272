"""
Pipeline orchestrator.
Takes one job from queued to completed or failed:

    processing → extract → download → analyze → geocode → persist → cleanup → completed

Each external call goes through the rate-limit gate and the retry policy.
Any failure after `processing` is written removes the downloaded file, marks
the job failed (best-effort) and re-raises for the queue to handle.
"""

import logging
from pathlib import Path
from typing import Awaitable, Callable

from venuemap.core.constants import JobStatus, JobStage, Dependency
from venuemap.core.error_codes import JobError, ErrorCode, error_code_of, error_summary
from venuemap.core.models import (
    JobMessage, JobOutcome, VenueAnalysis, Coordinates, NULL_COORDINATES,
)
from venuemap.core.rate_limiter import RateLimitGate
from venuemap.core.retry import RetryPolicy
from venuemap.core.security_utils import job_temp_path
from venuemap.core.cleanup import remove_job_artifact, remove_job_artifact_quietly

logger = logging.getLogger(__name__)


class PipelineOrchestrator:

    def __init__(self, store, extractor, downloader, analyzer, geocoder,
                 gate: RateLimitGate, retry_policy: RetryPolicy, temp_dir: Path,
                 sleep=None):
        self.store = store
        self.extractor = extractor
        self.downloader = downloader
        self.analyzer = analyzer
        self.geocoder = geocoder
        self.gate = gate
        self.retry_policy = retry_policy
        self.temp_dir = temp_dir
        self._sleep = sleep

    async def process(self, message: JobMessage) -> JobOutcome:
        job_id = message.job_id
        record = await self.store.get_video(job_id)
        if record is None:
            raise JobError(ErrorCode.JOB_NOT_FOUND, f"Video {job_id} not found", retryable=False)
        if record.status != JobStatus.QUEUED:
            logger.warning("Job %s is already %s, skipping redelivery", job_id, record.status)
            return JobOutcome(job_id=job_id, status=record.status, skipped=True)

        temp_path = job_temp_path(self.temp_dir, job_id)

        # Not inside the try: a job that never reached processing must not be marked failed
        await self.store.set_status(job_id, JobStatus.PROCESSING)

        try:
            metadata = await self._external(
                JobStage.EXTRACTING_METADATA, Dependency.DOWNLOADER,
                lambda: self.extractor.extract(message.video_url))

            await self._external(
                JobStage.DOWNLOADING_VIDEO, Dependency.DOWNLOADER,
                lambda: self.downloader.download(message.video_url, temp_path))

            analysis = await self._external(
                JobStage.ANALYZING_VIDEO, Dependency.ANALYSIS,
                lambda: self.analyzer.analyze(temp_path, metadata))

            coordinates = await self._geocode(analysis)

            await self._stage(
                JobStage.PERSISTING_RESULTS,
                lambda: self.store.persist_results(job_id, metadata, analysis, coordinates))

            logger.info("[%s] %s", job_id, JobStage.CLEANUP)
            remove_job_artifact(temp_path)

            await self.store.set_status(job_id, JobStatus.COMPLETED)

        except Exception as e:
            logger.error("Job %s failed: %s", job_id, e, exc_info=True)
            remove_job_artifact_quietly(temp_path)
            await self._mark_failed(job_id, e)
            raise

        return JobOutcome(job_id=job_id, status=JobStatus.COMPLETED,
                          analysis=analysis, coordinates=coordinates)

    async def _geocode(self, analysis: VenueAnalysis) -> Coordinates:
        if analysis.has_unknown_location:
            logger.info("Venue, city or country unknown, skipping geocoding")
            return NULL_COORDINATES
        return await self._external(
            JobStage.GEOCODING_VENUE, Dependency.GEOCODING,
            lambda: self.geocoder.geocode(analysis.venue_name, analysis.city_name,
                                          analysis.country_name))

    async def _external(self, stage: str, dependency: str,
                        call: Callable[[], Awaitable]):
        """Rate-limit every attempt of an external call, retrying the whole thing."""
        async def attempt():
            await self.gate.acquire(dependency)
            return await call()

        return await self._stage(stage, attempt)

    async def _stage(self, stage: str, operation: Callable[[], Awaitable]):
        logger.info("Stage %s", stage)
        kwargs = {'label': stage}
        if self._sleep is not None:
            kwargs['sleep'] = self._sleep
        try:
            result = await self.retry_policy.run(operation, **kwargs)
        except JobError as e:
            if e.stage is None:
                e.stage = stage
            raise
        return result.value

    async def _mark_failed(self, job_id: str, error: BaseException):
        """Best-effort: a failed status write must not mask the original error."""
        try:
            await self.store.set_status(job_id, JobStatus.FAILED,
                                        error_code=error_code_of(error),
                                        error_message=error_summary(error))
        except Exception as status_error:
            logger.error("Failed to update status to failed for %s: %s", job_id, status_error)
