#!/usr/bin/env python3
"""
Background worker.

Runs an rq worker on the image, archive and video queues. Each rq job carries
only a row id from the `jobs` table; `run_job` drives the row through
PROCESSING -> COMPLETED | FAILED around the matching processor.
"""

import argparse
import logging

from rq import Worker

import jobs
import store
from processors import PROCESSORS

logger = logging.getLogger("photodesk.worker")


def run_job(job_id):
    row = jobs.mark_processing(job_id)
    if row is None:
        current = jobs.get_job(job_id)
        if current is None:
            logger.warning("Job %s does not exist, skipping", job_id)
        else:
            logger.info("Job %s is %s, nothing to do", job_id, current["status"])
        return None

    job = jobs.serialize_job(row)
    logger.info("Job %s (%s) started, attempt %s", job_id, job["type"], job["attempts"])

    try:
        processor = PROCESSORS.get(job["type"])
        if processor is None:
            raise jobs.JobError(f"no processor for job type {job['type']}")
        result = processor(job)
    except Exception as exc:
        logger.exception("Job %s (%s) failed", job_id, job["type"])
        jobs.mark_failed(job_id, exc)
        raise

    jobs.mark_completed(job_id, result)
    logger.info("Job %s (%s) completed", job_id, job["type"])
    return result


def main(argv=None):
    parser = argparse.ArgumentParser(description="PhotoDesk background worker")
    parser.add_argument("--burst", action="store_true", help="exit once the queues are empty")
    parser.add_argument(
        "--queues",
        nargs="+",
        default=list(jobs.QUEUE_NAMES),
        choices=list(jobs.QUEUE_NAMES),
        help="queues to listen on",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    store.init_db()

    connection = jobs.get_redis()
    worker = Worker(args.queues, connection=connection)
    logger.info("Worker listening on %s", ", ".join(args.queues))
    worker.work(with_scheduler=True, burst=args.burst)


if __name__ == "__main__":
    main()
