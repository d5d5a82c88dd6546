#!/usr/bin/env python3
"""
Job cleanup service for the ingestion and deletion queues.

Periodically purges completed and failed jobs older than the retention window
so job records do not pile up in Redis. Run it as a separate process or
container, or once with --once (e.g. from cron).
"""

import os
import time
import logging
import argparse
from datetime import datetime, timedelta

import redis

from src.config.settings import settings
from src.core.background.common import create_redis_client
from src.core.background.job_queue import JobQueue
from src.core.background.job_tracker import JobTracker
from src.core.background.priority_queue import PriorityQueueManager
from src.models.enums import JobState, QueueName
from src.utils.logging import setup_logger

logger = setup_logger("job_cleanup", level=settings.log_level, log_file=os.path.join("logs", "job_cleanup.log"),
                      log_format="[%(asctime)s] [%(levelname)s] - %(message)s")

CLEANUP_INTERVAL = int(os.environ.get("CLEANUP_INTERVAL", "3600"))  # 1 hour by default


def build_job_queue(redis_client) -> JobQueue:
    prefix = settings.redis_key_prefix
    return JobQueue(
        tracker=JobTracker(redis_client, prefix),
        priority_queue=PriorityQueueManager(redis_client, prefix),
        queue_options=settings.queue_options(),
    )


def clean_old_jobs(job_queue: JobQueue, retention_days: float = 7) -> int:
    """Remove finished jobs older than retention_days from every queue."""
    total = 0
    for queue_name in QueueName:
        deleted = job_queue.clean(queue_name, older_than_days=retention_days,
                                  states=(JobState.COMPLETED, JobState.FAILED))
        if deleted:
            logger.info(f"Deleted {deleted} old jobs from {queue_name.value}")
        total += deleted

    logger.info(f"Cleanup complete: deleted {total} old jobs")
    return total


def log_queue_stats(job_queue: JobQueue) -> None:
    for queue_name in QueueName:
        stats = job_queue.get_queue_stats(queue_name)
        logger.info(f"{queue_name.value}: waiting={stats.waiting}, delayed={stats.delayed}, "
                    f"active={stats.active}, completed={stats.completed}, failed={stats.failed}")


def get_redis_stats(redis_client):
    """Get Redis memory stats."""
    try:
        info = redis_client.info("memory")
    except redis.RedisError as e:
        logger.error(f"Error getting Redis stats: {str(e)}")
        return {}

    logger.info(f"Redis memory: Used={info.get('used_memory_human', 'unknown')}, "
                f"Peak={info.get('used_memory_peak_human', 'unknown')}")
    return info


def run_cleanup_cycle(retention_days: float) -> int:
    redis_client = create_redis_client(settings)
    try:
        job_queue = build_job_queue(redis_client)
        get_redis_stats(redis_client)
        deleted = clean_old_jobs(job_queue, retention_days)
        log_queue_stats(job_queue)
        return deleted
    finally:
        redis_client.close()


def run_cleanup_service(retention_days: float = 7, interval: int = 3600):
    """Run the cleanup service continuously."""
    logger.info("Starting job cleanup service")
    logger.info(f"Redis connection: {settings.redis_host}:{settings.redis_port}")
    logger.info(f"Job retention period: {retention_days} days")
    logger.info(f"Cleanup interval: {interval} seconds")

    while True:
        try:
            run_cleanup_cycle(retention_days)
        except redis.RedisError as e:
            logger.error(f"Error during cleanup cycle: {str(e)}")

        next_run = datetime.now() + timedelta(seconds=interval)
        logger.info(f"Next cleanup scheduled at: {next_run.strftime('%Y-%m-%d %H:%M:%S')}")
        time.sleep(interval)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Job cleanup service")
    parser.add_argument("--retention-days", type=float, default=settings.job_retention_days,
                        help="Number of days to retain completed and failed jobs")
    parser.add_argument("--interval", type=int, default=CLEANUP_INTERVAL,
                        help="Cleanup interval in seconds")
    parser.add_argument("--once", action="store_true", help="Run a single cleanup cycle and exit")
    args = parser.parse_args()

    if args.once:
        run_cleanup_cycle(args.retention_days)
    else:
        run_cleanup_service(retention_days=args.retention_days, interval=args.interval)
