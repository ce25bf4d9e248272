#!/usr/bin/env python3
"""
Tests for the job queue consumer, lease renewal, redelivery/dead-lettering and submission.
"""

import sys
import asyncio
import subprocess
import tempfile
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from venuemap.core.constants import JobStatus, ErrorCode, QueueState, DEFAULT_RATE_LIMITS
from venuemap.core.error_codes import JobError
from venuemap.core.models import JobOutcome, VideoMetadata, VenueAnalysis, Coordinates
from venuemap.core.db_sqlite import Database
from venuemap.core.status_store import SqliteStatusStore
from venuemap.core.rate_limiter import RateLimiter, RateLimitGate
from venuemap.core.retry import RetryPolicy
from venuemap.core.download_video import YtDlpDownloader
from venuemap.core.pipeline import PipelineOrchestrator
from venuemap.core.job_queue import JobQueue, JobQueueConsumer, submit_urls


class FakeOrchestrator:
    def __init__(self, error=None, delay=0.0):
        self.error = error
        self.delay = delay
        self.processed = []
        self.active = 0
        self.max_active = 0

    async def process(self, message):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.processed.append(message.job_id)
            if self.error:
                raise self.error
            return JobOutcome(job_id=message.job_id, status=JobStatus.COMPLETED)
        finally:
            self.active -= 1


class TestSubmitUrls(unittest.TestCase):

    def setUp(self):
        self.db = Database(Path(tempfile.mkdtemp()) / "test.db")

    def tearDown(self):
        self.db.close()

    def test_submit_creates_records_and_messages(self):
        videos = submit_urls(self.db, [" https://example.com/v1 ", "not a url",
                                       "https://www.tiktok.com/@a/video/2"], user_id="u1")
        self.assertEqual([v.url for v in videos],
                         ["https://example.com/v1", "https://www.tiktok.com/@a/video/2"])
        for video in videos:
            stored = self.db.get_video(video.id)
            self.assertEqual(stored.status, JobStatus.QUEUED)
            self.assertEqual(stored.user_id, "u1")
        self.assertEqual(self.db.queue_counts(), {QueueState.WAITING: 2})

        delivery = self.db.claim(60)
        self.assertEqual(delivery.message.job_id, videos[0].id)
        self.assertEqual(delivery.message.to_payload(),
                         {"jobId": videos[0].id, "userId": "u1", "videoUrl": "https://example.com/v1"})


class TestJobQueueConsumer(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.db = Database(Path(tempfile.mkdtemp()) / "test.db")
        self.queue = JobQueue(self.db, visibility_timeout_sec=60, max_deliveries=3,
                              redelivery_base_delay_sec=0)

    def tearDown(self):
        self.db.close()

    def submit(self, n):
        return submit_urls(self.db, [f"https://example.com/v{i}" for i in range(n)])

    async def test_drain_processes_every_job(self):
        videos = self.submit(3)
        orchestrator = FakeOrchestrator()
        consumer = JobQueueConsumer(self.queue, orchestrator, concurrency=2, poll_interval_sec=0.01)
        await asyncio.wait_for(consumer.run(drain=True), timeout=5)

        self.assertEqual(sorted(orchestrator.processed), sorted(v.id for v in videos))
        self.assertEqual(consumer.completed, 3)
        self.assertEqual(consumer.failed, 0)
        self.assertEqual(await self.queue.counts(), {QueueState.COMPLETED: 3})

    async def test_concurrency_is_bounded(self):
        self.submit(6)
        orchestrator = FakeOrchestrator(delay=0.02)
        consumer = JobQueueConsumer(self.queue, orchestrator, concurrency=2, poll_interval_sec=0.01)
        await asyncio.wait_for(consumer.run(drain=True), timeout=5)
        self.assertEqual(len(orchestrator.processed), 6)
        self.assertLessEqual(orchestrator.max_active, 2)
        self.assertEqual(orchestrator.max_active, 2)

    async def test_failures_are_redelivered_then_dead_lettered(self):
        videos = self.submit(1)
        orchestrator = FakeOrchestrator(error=JobError(ErrorCode.STORE_WRITE, "database is locked"))
        consumer = JobQueueConsumer(self.queue, orchestrator, concurrency=4, poll_interval_sec=0.01)
        await asyncio.wait_for(consumer.run(drain=True), timeout=5)

        self.assertEqual(orchestrator.processed, [videos[0].id] * 3)
        self.assertEqual(consumer.failed, 3)
        dead = await self.queue.dead_letters()
        self.assertEqual(len(dead), 1)
        self.assertEqual(dead[0]['job_id'], videos[0].id)
        self.assertIn("database is locked", dead[0]['last_error'])

    async def test_final_error_is_dead_lettered_without_redelivery(self):
        videos = self.submit(1)
        orchestrator = FakeOrchestrator(error=JobError(ErrorCode.INVALID_JOB_ID, "rejected"))
        consumer = JobQueueConsumer(self.queue, orchestrator, concurrency=1, poll_interval_sec=0.01)
        await asyncio.wait_for(consumer.run(drain=True), timeout=5)

        self.assertEqual(orchestrator.processed, [videos[0].id])
        self.assertEqual(await self.queue.counts(), {QueueState.DEAD: 1})

    async def test_lease_is_renewed_while_job_runs(self):
        self.submit(1)
        queue = JobQueue(self.db, visibility_timeout_sec=0.06, max_deliveries=3,
                         redelivery_base_delay_sec=0)
        orchestrator = FakeOrchestrator(delay=0.3)
        consumer = JobQueueConsumer(queue, orchestrator, concurrency=1, poll_interval_sec=0.01)
        task = asyncio.create_task(consumer.run(drain=True))

        while not orchestrator.active:
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.15)
        # Well past the original lease, but the entry is still held
        self.assertIsNone(self.db.claim(0.06))
        await asyncio.wait_for(task, timeout=5)

        self.assertEqual(consumer.completed, 1)
        self.assertEqual(await queue.counts(), {QueueState.COMPLETED: 1})

    async def test_stop_lets_in_flight_job_finish(self):
        self.submit(1)
        orchestrator = FakeOrchestrator(delay=0.05)
        consumer = JobQueueConsumer(self.queue, orchestrator, concurrency=1, poll_interval_sec=0.01)
        task = asyncio.create_task(consumer.run())

        while not orchestrator.active:
            await asyncio.sleep(0.005)
        self.assertTrue(consumer.is_running())
        consumer.stop()
        await asyncio.wait_for(task, timeout=5)

        self.assertFalse(consumer.is_running())
        self.assertEqual(consumer.completed, 1)
        self.assertEqual(consumer.in_flight, 0)
        self.assertEqual(await self.queue.counts(), {QueueState.COMPLETED: 1})

    async def test_idle_worker_stops_promptly(self):
        consumer = JobQueueConsumer(self.queue, FakeOrchestrator(), concurrency=1,
                                    poll_interval_sec=10)
        task = asyncio.create_task(consumer.run())
        await asyncio.sleep(0.02)
        consumer.stop()
        await asyncio.wait_for(task, timeout=1)


class FailingYtDlp:
    def __init__(self):
        self.calls = 0

    async def __call__(self, args, timeout=300):
        self.calls += 1
        return subprocess.CompletedProcess(args, 1, "", "ERROR: Unable to extract video data")


class FakeExtractor:
    async def extract(self, url):
        return VideoMetadata(title="Best cafe", duration=30.0)


class FakeDownloader:
    async def download(self, url, destination):
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"video")
        return destination


class FakeAnalyzer:
    async def analyze(self, video_path, metadata):
        return VenueAnalysis("USA", "New York", "Central Park Cafe", "Great coffee")


class FakeGeocoder:
    async def geocode(self, venue_name, city_name, country_name):
        return Coordinates(40.78, -73.96)


async def no_sleep(delay):
    pass


class TestConsumerWithPipeline(unittest.IsolatedAsyncioTestCase):
    """The consumer driving the real orchestrator and status store."""

    def setUp(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        self.db = Database(self.tmpdir / "test.db")
        self.queue = JobQueue(self.db, visibility_timeout_sec=60, max_deliveries=3,
                              redelivery_base_delay_sec=0)

    def tearDown(self):
        self.db.close()

    def orchestrator(self, downloader):
        return PipelineOrchestrator(
            store=SqliteStatusStore(self.db),
            extractor=FakeExtractor(),
            downloader=downloader,
            analyzer=FakeAnalyzer(),
            geocoder=FakeGeocoder(),
            gate=RateLimitGate(RateLimiter(DEFAULT_RATE_LIMITS)),
            retry_policy=RetryPolicy(max_attempts=3, initial_delay=1.0, multiplier=2.0),
            temp_dir=self.tmpdir / "temp",
            sleep=no_sleep,
        )

    async def drain(self, orchestrator):
        consumer = JobQueueConsumer(self.queue, orchestrator, concurrency=2, poll_interval_sec=0.01)
        await asyncio.wait_for(consumer.run(drain=True), timeout=5)
        return consumer

    async def test_failed_job_is_dead_lettered(self):
        video = submit_urls(self.db, ["https://example.com/v1"])[0]
        runner = FailingYtDlp()
        consumer = await self.drain(self.orchestrator(YtDlpDownloader(runner=runner)))

        stored = self.db.get_video(video.id)
        self.assertEqual(stored.status, JobStatus.FAILED)
        self.assertEqual(stored.error_code, ErrorCode.DOWNLOAD_FAILED)
        # Retried inside the pipeline, never redelivered by the queue
        self.assertEqual(runner.calls, 3)
        self.assertEqual((consumer.completed, consumer.failed), (0, 1))
        self.assertEqual(await self.queue.counts(), {QueueState.DEAD: 1})
        dead = await self.queue.dead_letters()
        self.assertEqual(dead[0]['job_id'], video.id)
        self.assertTrue(dead[0]['last_error'].startswith("DOWNLOADING_VIDEO:"))

    async def test_completed_job_is_acknowledged(self):
        video = submit_urls(self.db, ["https://example.com/v1"])[0]
        consumer = await self.drain(self.orchestrator(FakeDownloader()))

        stored = self.db.get_video(video.id)
        self.assertEqual(stored.status, JobStatus.COMPLETED)
        self.assertEqual((stored.latitude, stored.longitude), (40.78, -73.96))
        self.assertEqual((consumer.completed, consumer.failed), (1, 0))
        self.assertEqual(await self.queue.counts(), {QueueState.COMPLETED: 1})

    async def test_redelivered_failed_job_is_dead_lettered(self):
        video = submit_urls(self.db, ["https://example.com/v1"])[0]
        self.db.update_status(video.id, JobStatus.PROCESSING)
        self.db.update_status(video.id, JobStatus.FAILED, ErrorCode.ANALYSIS_FAILED, "boom")
        consumer = await self.drain(self.orchestrator(FakeDownloader()))

        self.assertEqual((consumer.completed, consumer.failed), (0, 1))
        self.assertEqual(await self.queue.counts(), {QueueState.DEAD: 1})
        self.assertEqual(self.db.get_video(video.id).error_code, ErrorCode.ANALYSIS_FAILED)


if __name__ == "__main__":
    unittest.main()
