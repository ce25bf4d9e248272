"""
Job queue and consumer.
The consumer claims jobs from the inbound queue, runs each one through the
pipeline in its own asyncio task, and reports completion or failure back so
the queue can redeliver or dead-letter. While a job runs its lease is renewed,
so a long download is never handed to a second worker.
"""

import asyncio
import logging

from venuemap.core.constants import (
    POLL_INTERVAL_SEC, VISIBILITY_TIMEOUT_SEC, MAX_DELIVERIES, REDELIVERY_BASE_DELAY_SEC,
    DEFAULT_CONCURRENCY, LEASE_RENEWALS_PER_TIMEOUT, JobStatus, ErrorCode,
)
from venuemap.core.db_sqlite import Database
from venuemap.core.error_codes import JobError, error_summary
from venuemap.core.models import Delivery, JobMessage, JobOutcome, VideoRecord
from venuemap.core.url_parse import validate_video_url

logger = logging.getLogger(__name__)


class JobQueue:
    """Async adapter over the SQLite-backed queue table."""

    def __init__(self, db: Database, visibility_timeout_sec: float = VISIBILITY_TIMEOUT_SEC,
                 max_deliveries: int = MAX_DELIVERIES,
                 redelivery_base_delay_sec: float = REDELIVERY_BASE_DELAY_SEC):
        self.db = db
        self.visibility_timeout_sec = visibility_timeout_sec
        self.max_deliveries = max_deliveries
        self.redelivery_base_delay_sec = redelivery_base_delay_sec

    async def enqueue(self, message: JobMessage, delay_sec: float = 0.0) -> int:
        return await asyncio.to_thread(self.db.enqueue, message, delay_sec)

    async def claim(self) -> Delivery | None:
        return await asyncio.to_thread(self.db.claim, self.visibility_timeout_sec)

    async def renew(self, delivery: Delivery) -> bool:
        return await asyncio.to_thread(self.db.renew_lease, delivery, self.visibility_timeout_sec)

    async def complete(self, delivery: Delivery) -> bool:
        return await asyncio.to_thread(self.db.complete_entry, delivery)

    async def fail(self, delivery: Delivery, error: BaseException, final: bool = False) -> str | None:
        """Redeliver later, or dead-letter when deliveries ran out or `final` is set."""
        state = await asyncio.to_thread(
            self.db.fail_entry, delivery, error_summary(error),
            self.max_deliveries, self.redelivery_base_delay_sec, final,
        )
        logger.info("Queue entry %s for job %s -> %s (delivery %d/%d)",
                    delivery.entry_id, delivery.message.job_id, state,
                    delivery.deliveries, self.max_deliveries)
        return state

    async def job_status(self, job_id: str) -> str | None:
        video = await asyncio.to_thread(self.db.get_video, job_id)
        return video.status if video else None

    async def dead_letters(self) -> list[dict]:
        return await asyncio.to_thread(self.db.dead_letters)

    async def counts(self) -> dict:
        return await asyncio.to_thread(self.db.queue_counts)


def submit_urls(db: Database, urls: list[str], user_id: str | None = None) -> list[VideoRecord]:
    """
    Job submission: create a queued record per URL, then enqueue it.
    Invalid URLs are skipped.
    """
    videos = []
    for url in urls:
        try:
            url = validate_video_url(url)
        except JobError as e:
            logger.warning("Skipping %r: %s", url, e.message)
            continue

        video = db.create_video(url=url, user_id=user_id)
        db.enqueue(JobMessage(job_id=video.id, user_id=user_id, video_url=url))
        logger.info("Queued job %s for %s", video.id, url)
        videos.append(video)

    return videos


class JobQueueConsumer:
    """
    Runs up to `concurrency` jobs at once, one task per job, and settles each
    delivery with the queue once the pipeline returns or raises.
    """

    def __init__(self, queue: JobQueue, orchestrator, concurrency: int = DEFAULT_CONCURRENCY,
                 poll_interval_sec: float = POLL_INTERVAL_SEC):
        self.queue = queue
        self.orchestrator = orchestrator
        self.concurrency = concurrency
        self.poll_interval_sec = poll_interval_sec
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self.completed = 0
        self.failed = 0

    def stop(self):
        """Stop claiming new jobs; in-flight jobs run to a terminal state."""
        self._stop_event.set()

    def is_running(self) -> bool:
        return not self._stop_event.is_set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def run(self, drain: bool = False):
        """
        Main consumer loop. With drain=True, returns once the queue has no
        claimable entries and nothing is in flight.
        """
        self._stop_event.clear()
        slots = asyncio.Semaphore(self.concurrency)
        logger.info("Consumer started (concurrency=%d)", self.concurrency)
        try:
            while not self._stop_event.is_set():
                await slots.acquire()
                if self._stop_event.is_set():
                    slots.release()
                    break
                try:
                    delivery = await self.queue.claim()
                except Exception as e:
                    slots.release()
                    logger.error("Failed to claim from queue: %s", e, exc_info=True)
                    await self._idle()
                    continue

                if delivery is None:
                    slots.release()
                    if drain and not self._tasks:
                        break
                    await self._idle()
                    continue

                task = asyncio.create_task(self._handle(delivery),
                                           name=f"job:{delivery.message.job_id}")
                self._tasks.add(task)
                task.add_done_callback(lambda t: (self._tasks.discard(t), slots.release()))
        finally:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info("Consumer stopped (completed=%d, failed=%d)", self.completed, self.failed)

    async def _idle(self):
        if self._tasks:
            # Wake as soon as a job finishes
            await asyncio.wait(set(self._tasks), timeout=self.poll_interval_sec,
                               return_when=asyncio.FIRST_COMPLETED)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_sec)
        except asyncio.TimeoutError:
            pass

    async def _handle(self, delivery: Delivery):
        message = delivery.message
        logger.info("Processing job %s (delivery %d)", message.job_id, delivery.deliveries)
        heartbeat = asyncio.create_task(self._keep_leased(delivery),
                                        name=f"lease:{message.job_id}")
        outcome = None
        error = None
        try:
            outcome = await self.orchestrator.process(message)
        except Exception as e:
            error = e
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        try:
            if error is not None:
                self.failed += 1
                logger.error("Job %s failed: %s", message.job_id, error)
                await self._fail(delivery, error)
            elif outcome.skipped and outcome.status != JobStatus.COMPLETED:
                await self._settle_skipped(delivery, outcome)
            else:
                self.completed += 1
                logger.info("Job %s finished: %s", message.job_id, outcome.status)
                await self.queue.complete(delivery)
        except Exception as report_error:
            logger.error("Failed to settle job %s with the queue: %s", message.job_id, report_error)

    async def _fail(self, delivery: Delivery, error: BaseException):
        """
        Dead-letter at once when a redelivery cannot help: the error is final,
        or the pipeline already moved the record to failed.
        """
        final = isinstance(error, JobError) and not error.retryable
        if not final:
            final = await self.queue.job_status(delivery.message.job_id) == JobStatus.FAILED
        await self.queue.fail(delivery, error, final=final)

    async def _settle_skipped(self, delivery: Delivery, outcome: JobOutcome):
        job_id = outcome.job_id
        if outcome.status == JobStatus.FAILED:
            # An earlier delivery failed the job but never reached the queue
            self.failed += 1
            await self.queue.fail(delivery, JobError(ErrorCode.INVALID_TRANSITION,
                                                     f"Job {job_id} already failed",
                                                     retryable=False), final=True)
        else:
            # Still processing under a lease this delivery replaced; look again later
            await self.queue.fail(delivery, JobError(ErrorCode.INVALID_TRANSITION,
                                                     f"Job {job_id} is {outcome.status}"))

    async def _keep_leased(self, delivery: Delivery):
        interval = self.queue.visibility_timeout_sec / LEASE_RENEWALS_PER_TIMEOUT
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.renew(delivery):
                    logger.warning("Lost the lease on queue entry %s (job %s)",
                                   delivery.entry_id, delivery.message.job_id)
                    return
            except Exception as e:
                logger.error("Failed to renew lease for job %s: %s", delivery.message.job_id, e)
