"""
Async status store adapter over the SQLite database.
Every call runs in a worker thread; every status transition is written
through immediately, nothing is cached in-process.
"""

import asyncio
import logging

from venuemap.core.db_sqlite import Database
from venuemap.core.models import VideoRecord, VideoMetadata, VenueAnalysis, Coordinates

logger = logging.getLogger(__name__)


class SqliteStatusStore:

    def __init__(self, db: Database):
        self.db = db

    async def get_video(self, job_id: str) -> VideoRecord | None:
        return await asyncio.to_thread(self.db.get_video, job_id)

    async def set_status(self, job_id: str, status: str, error_code: str | None = None,
                         error_message: str | None = None):
        await asyncio.to_thread(self.db.update_status, job_id, status, error_code, error_message)
        logger.info("Job %s -> %s", job_id, status)

    async def persist_results(self, job_id: str, metadata: VideoMetadata,
                              analysis: VenueAnalysis, coordinates: Coordinates):
        await asyncio.to_thread(self.db.save_results, job_id, metadata, analysis, coordinates)
