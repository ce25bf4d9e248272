"""
SQLite database layer for venuemap.
Holds the video records (system of record for job status) and the inbound
job queue. Thread-safe via check_same_thread=False + explicit locking, so
the async adapters can call it from worker threads.
"""

import json
import sqlite3
import threading
import time
import uuid
import logging
from datetime import datetime, timezone, timedelta
from pathlib import Path

from venuemap.core.constants import (
    app_home, DB_FILENAME, JobStatus, QueueState, STATUS_PREDECESSORS, TERMINAL_STATUSES, ErrorCode,
    MAX_ERROR_MESSAGE_LEN,
)
from venuemap.core.error_codes import JobError
from venuemap.core.models import (
    VideoRecord, JobMessage, Delivery, VideoMetadata, VenueAnalysis, Coordinates,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    user_id TEXT,
    status TEXT NOT NULL DEFAULT 'queued',
    title TEXT,
    description TEXT,
    duration REAL,
    uploader TEXT,
    upload_date TEXT,
    view_count INTEGER,
    like_count INTEGER,
    comment_count INTEGER,
    venue_name TEXT,
    country_name TEXT,
    city_name TEXT,
    gemini_analysis TEXT,
    latitude REAL,
    longitude REAL,
    error_code TEXT,
    error_message TEXT,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_videos_created_at ON videos(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status);

CREATE TABLE IF NOT EXISTS queue_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    user_id TEXT,
    video_url TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'waiting',
    deliveries INTEGER DEFAULT 0,
    available_at REAL NOT NULL,
    leased_until REAL,
    last_error TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_queue_state_available ON queue_entries(state, available_at);
"""


class Database:
    """SQLite database wrapper for venuemap."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or app_home() / DB_FILENAME
        self._ensure_dirs()
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            # Set schema version
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_video(row: sqlite3.Row) -> VideoRecord:
        data = dict(row)
        if data.get('gemini_analysis'):
            data['gemini_analysis'] = json.loads(data['gemini_analysis'])
        return VideoRecord(**data)

    def _write(self, sql: str, params) -> int:
        """Execute a write; store failures surface as retryable JobErrors."""
        try:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise JobError(ErrorCode.STORE_WRITE, f"Store rejected write: {e}")
        return cur.rowcount

    def _transition_error(self, job_id: str, target: str) -> JobError:
        row = self.conn.execute("SELECT status FROM videos WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return JobError(ErrorCode.JOB_NOT_FOUND, f"Video {job_id} not found")
        return JobError(ErrorCode.INVALID_TRANSITION,
                        f"Video {job_id} cannot move from {row['status']} to {target}")

    # ── Video CRUD ────────────────────────────────────────────────────

    def create_video(self, url: str, user_id: str | None = None,
                     job_id: str | None = None) -> VideoRecord:
        now = self._now()
        video = VideoRecord(
            id=job_id or uuid.uuid4().hex,
            url=url,
            user_id=user_id,
            status=JobStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._write(
                """INSERT INTO videos (id, url, user_id, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (video.id, video.url, video.user_id, video.status,
                 video.created_at, video.updated_at),
            )
        return video

    def get_video(self, job_id: str) -> VideoRecord | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM videos WHERE id = ?", (job_id,)
            ).fetchone()
        return self._row_to_video(row) if row else None

    def list_videos(self, status: str | None = None, limit: int = 100) -> list[VideoRecord]:
        with self._lock:
            if status:
                rows = self.conn.execute(
                    "SELECT * FROM videos WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (status, limit),
                ).fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT * FROM videos ORDER BY created_at DESC LIMIT ?", (limit,)
                ).fetchall()
        return [self._row_to_video(r) for r in rows]

    def count_by_status(self) -> dict:
        with self._lock:
            rows = self.conn.execute(
                "SELECT status, COUNT(*) AS n FROM videos GROUP BY status"
            ).fetchall()
        return {r['status']: r['n'] for r in rows}

    def update_status(self, job_id: str, status: str, error_code: str | None = None,
                      error_message: str | None = None):
        """
        Move a video to `status`. The predecessor check and the write happen
        in one UPDATE, so a status can never regress.
        """
        predecessors = STATUS_PREDECESSORS.get(status)
        if predecessors is None:
            raise ValueError(f"Unknown target status: {status!r}")

        now = self._now()
        fields = {'status': status, 'updated_at': now}
        if status in TERMINAL_STATUSES:
            fields['completed_at'] = now
        if status == JobStatus.FAILED:
            fields['error_code'] = error_code
            fields['error_message'] = (error_message or "")[:MAX_ERROR_MESSAGE_LEN]

        sets = ', '.join(f"{k} = ?" for k in fields)
        marks = ', '.join('?' for _ in predecessors)
        with self._lock:
            affected = self._write(
                f"UPDATE videos SET {sets} WHERE id = ? AND status IN ({marks})",
                list(fields.values()) + [job_id] + list(predecessors),
            )
            if affected == 0:
                raise self._transition_error(job_id, status)
        logger.debug("Video %s status -> %s", job_id, status)

    def save_results(self, job_id: str, metadata: VideoMetadata, analysis: VenueAnalysis,
                     coordinates: Coordinates):
        """Write metadata, analysis and coordinates onto a processing video."""
        fields = {
            'title': metadata.title,
            'description': metadata.description,
            'duration': metadata.duration,
            'uploader': metadata.uploader,
            'upload_date': metadata.upload_date,
            'view_count': metadata.view_count,
            'like_count': metadata.like_count,
            'comment_count': metadata.comment_count,
            'venue_name': analysis.venue_name,
            'country_name': analysis.country_name,
            'city_name': analysis.city_name,
            'gemini_analysis': json.dumps(analysis.as_dict()),
            'latitude': coordinates.latitude,
            'longitude': coordinates.longitude,
            'updated_at': self._now(),
        }
        sets = ', '.join(f"{k} = ?" for k in fields)
        with self._lock:
            affected = self._write(
                f"UPDATE videos SET {sets} WHERE id = ? AND status = ?",
                list(fields.values()) + [job_id, JobStatus.PROCESSING],
            )
            if affected == 0:
                raise self._transition_error(job_id, "results")

    def fail_stale_processing(self, older_than_sec: float, now: datetime | None = None) -> list[str]:
        """
        Orphan reaper: videos stuck in `processing` (worker crashed mid-job)
        for longer than older_than_sec are moved to `failed`. A video whose
        queue entry still holds a live lease belongs to a running worker and
        is left alone.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(seconds=older_than_sec)).isoformat()
        stamp = now.isoformat()
        with self._lock:
            rows = self.conn.execute(
                """SELECT id FROM videos WHERE status = ? AND updated_at < ?
                   AND NOT EXISTS (
                       SELECT 1 FROM queue_entries q WHERE q.job_id = videos.id
                       AND q.state = ? AND q.leased_until >= ?)""",
                (JobStatus.PROCESSING, cutoff, QueueState.ACTIVE, now.timestamp()),
            ).fetchall()
            ids = [r['id'] for r in rows]
            for job_id in ids:
                self._write(
                    """UPDATE videos SET status = ?, error_code = ?, error_message = ?,
                       completed_at = ?, updated_at = ? WHERE id = ? AND status = ?""",
                    (JobStatus.FAILED, ErrorCode.ORPHANED,
                     "Worker stopped while the job was processing", stamp, stamp,
                     job_id, JobStatus.PROCESSING),
                )
        if ids:
            logger.warning("Marked %d orphaned job(s) as failed", len(ids))
        return ids

    # ── Queue ─────────────────────────────────────────────────────────

    def enqueue(self, message: JobMessage, delay_sec: float = 0.0,
                now: float | None = None) -> int:
        now = time.time() if now is None else now
        stamp = self._now()
        with self._lock:
            try:
                cur = self.conn.execute(
                    """INSERT INTO queue_entries
                       (job_id, user_id, video_url, state, deliveries, available_at,
                        created_at, updated_at)
                       VALUES (?, ?, ?, ?, 0, ?, ?, ?)""",
                    (message.job_id, message.user_id, message.video_url,
                     QueueState.WAITING, now + delay_sec, stamp, stamp),
                )
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise JobError(ErrorCode.STORE_WRITE, f"Queue rejected enqueue: {e}")
        return cur.lastrowid

    def claim(self, visibility_timeout_sec: float, now: float | None = None) -> Delivery | None:
        """
        Lease the oldest available entry. Entries whose lease expired
        (worker died) go back to waiting first.
        """
        now = time.time() if now is None else now
        stamp = self._now()
        with self._lock:
            self._write(
                """UPDATE queue_entries SET state = ?, leased_until = NULL, updated_at = ?
                   WHERE state = ? AND leased_until < ?""",
                (QueueState.WAITING, stamp, QueueState.ACTIVE, now),
            )
            row = self.conn.execute(
                """SELECT * FROM queue_entries WHERE state = ? AND available_at <= ?
                   ORDER BY available_at ASC, id ASC LIMIT 1""",
                (QueueState.WAITING, now),
            ).fetchone()
            if row is None:
                return None
            self._write(
                """UPDATE queue_entries SET state = ?, deliveries = deliveries + 1,
                   leased_until = ?, updated_at = ? WHERE id = ?""",
                (QueueState.ACTIVE, now + visibility_timeout_sec, stamp, row['id']),
            )
        message = JobMessage(job_id=row['job_id'], user_id=row['user_id'],
                             video_url=row['video_url'])
        return Delivery(entry_id=row['id'], message=message, deliveries=row['deliveries'] + 1)

    def renew_lease(self, delivery: Delivery, visibility_timeout_sec: float,
                    now: float | None = None) -> bool:
        """Extend the lease of an in-flight delivery. False once it lost the lease."""
        now = time.time() if now is None else now
        with self._lock:
            affected = self._write(
                """UPDATE queue_entries SET leased_until = ?, updated_at = ?
                   WHERE id = ? AND state = ? AND deliveries = ?""",
                (now + visibility_timeout_sec, self._now(), delivery.entry_id,
                 QueueState.ACTIVE, delivery.deliveries),
            )
        return affected > 0

    def complete_entry(self, delivery: Delivery) -> bool:
        with self._lock:
            affected = self._write(
                """UPDATE queue_entries SET state = ?, leased_until = NULL, updated_at = ?
                   WHERE id = ? AND state = ? AND deliveries = ?""",
                (QueueState.COMPLETED, self._now(), delivery.entry_id,
                 QueueState.ACTIVE, delivery.deliveries),
            )
        if not affected:
            logger.warning("Queue entry %s no longer leased to delivery %d, not completing",
                           delivery.entry_id, delivery.deliveries)
        return affected > 0

    def fail_entry(self, delivery: Delivery, error_message: str, max_deliveries: int,
                   base_delay_sec: float, final: bool = False,
                   now: float | None = None) -> str | None:
        """
        Redeliver later with exponential delay, or dead-letter once deliveries
        run out (or at once when `final`). Returns the new state, or None when
        the entry is no longer leased to this delivery.
        """
        now = time.time() if now is None else now
        deliveries = delivery.deliveries
        if final or deliveries >= max_deliveries:
            state, available_at = QueueState.DEAD, now
        else:
            state = QueueState.WAITING
            available_at = now + base_delay_sec * (2 ** (deliveries - 1))

        with self._lock:
            affected = self._write(
                """UPDATE queue_entries SET state = ?, available_at = ?, leased_until = NULL,
                   last_error = ?, updated_at = ? WHERE id = ? AND state = ? AND deliveries = ?""",
                (state, available_at, (error_message or "")[:MAX_ERROR_MESSAGE_LEN],
                 self._now(), delivery.entry_id, QueueState.ACTIVE, deliveries),
            )
        if not affected:
            logger.warning("Queue entry %s no longer leased to delivery %d, not failing",
                           delivery.entry_id, deliveries)
            return None
        return state

    def dead_letters(self) -> list[dict]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM queue_entries WHERE state = ? ORDER BY id", (QueueState.DEAD,)
            ).fetchall()
        return [dict(r) for r in rows]

    def queue_counts(self) -> dict:
        with self._lock:
            rows = self.conn.execute(
                "SELECT state, COUNT(*) AS n FROM queue_entries GROUP BY state"
            ).fetchall()
        return {r['state']: r['n'] for r in rows}
