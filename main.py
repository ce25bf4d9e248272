#!/usr/bin/env python3
"""
venuemap v1.0.0 — Main entry point.

    venuemap worker [--drain] [--concurrency N]
    venuemap submit URL... [--user ID] [--file PATH]
    venuemap status [JOB_ID] [--state S] [--limit N]
    venuemap diagnose
    venuemap config [KEY [VALUE]]
"""

import sys
import os
import json
import asyncio
import argparse
import logging
import shutil
import signal
import traceback
from dataclasses import asdict
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from venuemap.core.constants import (
    APP_NAME, APP_VERSION, LOG_DIRNAME, LOG_FILENAME, YTDLP_BINARY, REDELIVERY_BASE_DELAY_SEC,
    ENV_GEMINI_API_KEY, ENV_GOOGLE_MAPS_API_KEY, JobStatus, app_home,
)
from venuemap.core.config import AppConfig, load_environment, get_secret

logger = logging.getLogger(APP_NAME)


def setup_logging():
    """Log to <app_home>/logs/worker.log and stderr."""
    log_dir = app_home() / LOG_DIRNAME
    log_dir.mkdir(parents=True, exist_ok=True)
    level = os.environ.get("VENUEMAP_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_dir / LOG_FILENAME, encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
    )


def check_prerequisites():
    """Check that yt-dlp is available."""
    path = shutil.which(YTDLP_BINARY)
    if not path:
        logger.error("Missing tool: yt-dlp (install with: pip install yt-dlp). PATH = %s",
                     os.environ.get("PATH", ""))
        sys.exit(1)
    logger.info("yt-dlp found at: %s", path)


# ── Wiring ────────────────────────────────────────────────────────────

def build_orchestrator(config: AppConfig, db):
    from venuemap.core.status_store import SqliteStatusStore
    from venuemap.core.yt_metadata import YtDlpMetadataExtractor
    from venuemap.core.download_video import YtDlpDownloader
    from venuemap.core.analyze_gemini import GeminiAnalysisClient
    from venuemap.core.geocode import GoogleGeocoder
    from venuemap.core.rate_limiter import RateLimiter, RateLimitGate
    from venuemap.core.retry import RetryPolicy
    from venuemap.core.pipeline import PipelineOrchestrator

    return PipelineOrchestrator(
        store=SqliteStatusStore(db),
        extractor=YtDlpMetadataExtractor(
            timeout_sec=config.timeout('extract'),
            cookies_mode=config.cookies_mode,
            cookies_path=config.cookies_path,
        ),
        downloader=YtDlpDownloader(
            timeout_sec=config.timeout('download'),
            cookies_mode=config.cookies_mode,
            cookies_path=config.cookies_path,
        ),
        analyzer=GeminiAnalysisClient(
            api_key=get_secret(ENV_GEMINI_API_KEY),
            model=config.get('gemini_model'),
            timeout_sec=config.timeout('analysis'),
        ),
        geocoder=GoogleGeocoder(
            api_key=get_secret(ENV_GOOGLE_MAPS_API_KEY),
            timeout_sec=config.timeout('geocode'),
        ),
        gate=RateLimitGate(RateLimiter(config.rate_limits)),
        retry_policy=RetryPolicy.from_config(config.retry),
        temp_dir=config.temp_dir,
    )


def reap_orphans(config: AppConfig, db):
    """Fail jobs a crashed worker left in processing and sweep their downloads."""
    from venuemap.core.cleanup import sweep_stale_artifacts

    max_age = config.get('orphan_timeout_sec')
    orphaned = db.fail_stale_processing(max_age)
    for job_id in orphaned:
        logger.warning("Job %s was orphaned in processing", job_id)
    swept = sweep_stale_artifacts(config.temp_dir, max_age)
    if swept:
        logger.info("Removed %d stale download(s) from %s", swept, config.temp_dir)


async def run_worker(config: AppConfig, db, drain: bool):
    from venuemap.core.job_queue import JobQueue, JobQueueConsumer

    queue = JobQueue(
        db,
        visibility_timeout_sec=config.get('visibility_timeout_sec'),
        max_deliveries=config.get('max_deliveries'),
        redelivery_base_delay_sec=REDELIVERY_BASE_DELAY_SEC,
    )
    consumer = JobQueueConsumer(
        queue,
        build_orchestrator(config, db),
        concurrency=config.concurrency,
        poll_interval_sec=config.get('poll_interval_sec'),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, consumer.stop)
        except (NotImplementedError, RuntimeError):
            pass  # Not supported on this platform

    await consumer.run(drain=drain)
    dead = await queue.dead_letters()
    if dead:
        logger.warning("%d job(s) in the dead-letter queue", len(dead))


# ── Commands ──────────────────────────────────────────────────────────

def cmd_worker(args, config: AppConfig) -> int:
    from venuemap.core.db_sqlite import Database

    check_prerequisites()
    if args.concurrency:
        config.override('concurrency', args.concurrency)
    if not get_secret(ENV_GEMINI_API_KEY):
        logger.warning("%s is not set; analysis will fail", ENV_GEMINI_API_KEY)
    if not get_secret(ENV_GOOGLE_MAPS_API_KEY):
        logger.warning("%s is not set; geocoding will fail", ENV_GOOGLE_MAPS_API_KEY)

    db = Database(config.db_path)
    try:
        reap_orphans(config, db)
        asyncio.run(run_worker(config, db, drain=args.drain))
    finally:
        db.close()
    return 0


def cmd_submit(args, config: AppConfig) -> int:
    from venuemap.core.db_sqlite import Database
    from venuemap.core.job_queue import submit_urls
    from venuemap.core.url_parse import parse_txt_file

    urls = list(args.urls)
    if args.file:
        urls.extend(parse_txt_file(args.file))
    if not urls:
        print("No URLs given", file=sys.stderr)
        return 2

    db = Database(config.db_path)
    try:
        videos = submit_urls(db, urls, user_id=args.user)
    finally:
        db.close()
    for video in videos:
        print(f"{video.id}\t{video.url}")
    return 0 if len(videos) == len(urls) else 1


def cmd_status(args, config: AppConfig) -> int:
    from venuemap.core.db_sqlite import Database

    db = Database(config.db_path)
    try:
        if not args.job_id:
            videos = db.list_videos(status=args.state, limit=args.limit)
            for video in videos:
                print(f"{video.id}\t{video.status}\t{video.url}")
            return 0
        video = db.get_video(args.job_id)
    finally:
        db.close()
    if video is None:
        print(f"Job {args.job_id} not found", file=sys.stderr)
        return 1
    print(json.dumps(asdict(video), indent=2, default=str))
    return 0


def cmd_config(args, config: AppConfig) -> int:
    if args.key is None:
        print(json.dumps(config.as_dict(), indent=2))
        return 0
    if args.value is not None:
        try:
            value = json.loads(args.value)
        except json.JSONDecodeError:
            value = args.value
        config.set(args.key, value)
        logger.info("Saved %s to %s", args.key, config.path)
    print(json.dumps(config.get(args.key), indent=2))
    return 0


def cmd_diagnose(args, config: AppConfig) -> int:
    from venuemap.core.db_sqlite import Database
    from venuemap.core.diagnostics import get_diagnostics

    db = Database(config.db_path)
    try:
        info = get_diagnostics(db, config.cookies_path)
    finally:
        db.close()
    info["config"] = config.as_dict()
    print(json.dumps(info, indent=2, default=str))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=APP_NAME, description="Find and geocode the venue shown in a video.")
    parser.add_argument("--env-file", help="Path to a .env file")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Consume jobs from the queue")
    worker.add_argument("--drain", action="store_true", help="Exit once the queue is empty")
    worker.add_argument("--concurrency", type=int, help="Jobs processed in parallel")
    worker.set_defaults(func=cmd_worker)

    submit = sub.add_parser("submit", help="Queue one or more video URLs")
    submit.add_argument("urls", nargs="*", metavar="URL")
    submit.add_argument("--user", help="User id to attach to the jobs")
    submit.add_argument("--file", type=Path, help="Text file with one URL per line")
    submit.set_defaults(func=cmd_submit)

    status = sub.add_parser("status", help="Show a job's record, or list recent jobs")
    status.add_argument("job_id", nargs="?")
    status.add_argument("--state", choices=[JobStatus.QUEUED, JobStatus.PROCESSING,
                                           JobStatus.COMPLETED, JobStatus.FAILED],
                        help="Only list jobs in this status")
    status.add_argument("--limit", type=int, default=20)
    status.set_defaults(func=cmd_status)

    diagnose = sub.add_parser("diagnose", help="Check tools, credentials and queue state")
    diagnose.set_defaults(func=cmd_diagnose)

    conf = sub.add_parser("config", help="Show or change saved settings")
    conf.add_argument("key", nargs="?")
    conf.add_argument("value", nargs="?", help="JSON value (plain strings allowed)")
    conf.set_defaults(func=cmd_config)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    load_environment(args.env_file)
    setup_logging()

    logger.info("%s v%s starting at %s (%s)", APP_NAME, APP_VERSION,
                datetime.now().isoformat(), args.command)

    try:
        config = AppConfig(args.config)
        return args.func(args, config)
    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        return 1


if __name__ == "__main__":
    sys.exit(main())
