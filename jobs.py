"""
Job queue boundary.

A job is a row in the `jobs` table plus an rq job that runs
`worker.run_job(job_id)`. The row is the source of truth for status; rq only
carries the id and handles retries with backoff.
"""

import json
import logging
import threading

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry

import config
import store

logger = logging.getLogger("photodesk.jobs")

PENDING = "PENDING"
PROCESSING = "PROCESSING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)

IMAGE_CROP = "IMAGE_CROP"
IMAGE_SMART_CROP = "IMAGE_SMART_CROP"
IMAGE_RESIZE = "IMAGE_RESIZE"
ZIP_CREATE = "ZIP_CREATE"
VIDEO_TRANSCODE = "VIDEO_TRANSCODE"

# type -> (queue name, attempts, backoff intervals in seconds)
JOB_POLICIES = {
    IMAGE_CROP: ("images", 3, [2, 4]),
    IMAGE_SMART_CROP: ("images", 3, [2, 4]),
    IMAGE_RESIZE: ("images", 3, [2, 4]),
    ZIP_CREATE: ("archives", 2, [5]),
    VIDEO_TRANSCODE: ("videos", 2, [10]),
}

QUEUE_NAMES = ("images", "archives", "videos")

_redis_lock = threading.Lock()
_redis = None


class QueueUnavailable(Exception):
    pass


class JobError(Exception):
    pass


def get_redis():
    global _redis

    with _redis_lock:
        if _redis is None:
            _redis = Redis.from_url(config.REDIS_URL, socket_connect_timeout=5)
        return _redis


def get_queue(name):
    return Queue(name, connection=get_redis())


def job_timeout_for(job_type):
    """rq hard limit for one attempt; transcodes outlive the ffmpeg timeout."""
    timeout = store.get_int_setting(store.get_runtime_settings(), "job_timeout_seconds")
    if job_type == VIDEO_TRANSCODE:
        # ffprobe, transcode, poster frame
        return max(timeout, config.FFMPEG_TIMEOUT_SECONDS + 2 * config.FFMPEG_QUICK_TIMEOUT_SECONDS + 60)
    return timeout


def queue_available():
    try:
        return bool(get_redis().ping())
    except RedisError:
        return False


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


def _loads(raw):
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def serialize_job(row):
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "type": row["type"],
        "status": row["status"],
        "data": _loads(row["data"]) or {},
        "result": _loads(row["result"]),
        "error": row["error"],
        "attempts": row["attempts"],
        "queue_job_id": row["queue_job_id"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "started_at": row["started_at"],
        "completed_at": row["completed_at"],
    }


def get_job(job_id):
    with store.get_db_conn() as conn:
        return conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()


def create_job(user_id, job_type, payload):
    if job_type not in JOB_POLICIES:
        raise JobError(f"unknown job type: {job_type}")
    with store.get_db_conn() as conn:
        cur = conn.execute(
            """
            INSERT INTO jobs(user_id, type, status, data, created_at, updated_at)
            VALUES (?, ?, 'PENDING', ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
            """,
            (user_id, job_type, json.dumps(payload, ensure_ascii=False)),
        )
        return cur.lastrowid


def submit_job(user_id, job_type, payload):
    """Record a PENDING job and hand it to the queue. Returns the serialized job."""
    job_id = create_job(user_id, job_type, payload)
    queue_name, attempts, intervals = JOB_POLICIES[job_type]

    try:
        queue = get_queue(queue_name)
        retry = Retry(max=attempts - 1, interval=intervals) if attempts > 1 else None
        rq_job = queue.enqueue(
            "worker.run_job",
            job_id,
            retry=retry,
            job_timeout=job_timeout_for(job_type),
            result_ttl=86400,
            failure_ttl=7 * 86400,
            description=f"{job_type} #{job_id}",
        )
    except RedisError as exc:
        logger.error("Could not enqueue job %s (%s): %s", job_id, job_type, exc)
        mark_failed(job_id, f"queue_unavailable: {exc}")
        raise QueueUnavailable(str(exc)) from exc

    with store.get_db_conn() as conn:
        conn.execute(
            "UPDATE jobs SET queue_job_id = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (str(rq_job.id), job_id),
        )

    logger.info("Queued job %s (%s) on %s as %s", job_id, job_type, queue_name, rq_job.id)
    return serialize_job(get_job(job_id))


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def mark_processing(job_id):
    """PENDING/FAILED -> PROCESSING. Returns the row, or None when not claimable."""
    with store.get_db_conn() as conn:
        cur = conn.execute(
            """
            UPDATE jobs
            SET status = 'PROCESSING', attempts = attempts + 1, error = NULL,
                started_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND status IN ('PENDING', 'FAILED')
            """,
            (job_id,),
        )
        if cur.rowcount == 0:
            return None
        return conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()


def mark_completed(job_id, result):
    with store.get_db_conn() as conn:
        conn.execute(
            """
            UPDATE jobs
            SET status = 'COMPLETED', result = ?, error = NULL,
                completed_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (json.dumps(result, ensure_ascii=False), job_id),
        )


def mark_failed(job_id, error):
    with store.get_db_conn() as conn:
        conn.execute(
            "UPDATE jobs SET status = 'FAILED', error = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (str(error)[:2000], job_id),
        )
