"""
Dramatiq worker entry point.

Run with:

    dramatiq src.core.background.worker --queues document-processing embedding-generation file-deletion

Importing this module configures logging, validates the configuration,
builds the service container and declares the per-queue drain actors.
"""

import logging

from src.config.settings import settings
from src.core.background.common import create_broker, create_redis_client
from src.models.enums import QueueName
from src.services.dependencies import ServiceContainer, build_services
from src.utils.logging import setup_logger

logger = setup_logger("src", level=settings.log_level, log_file=settings.log_file)


def bootstrap() -> ServiceContainer:
    """Build the worker's services and wake every queue once."""
    settings.validate_runtime()
    settings.log_configuration(logger)

    redis_client = create_redis_client(settings)
    broker = create_broker(settings, redis_client)
    services = build_services(settings, redis_client=redis_client, broker=broker)

    # Jobs queued while no worker was running still need a wake-up
    for queue_name in QueueName:
        stats = services.job_queue.get_queue_stats(queue_name)
        if stats.waiting or stats.delayed:
            logger.info(f"Queue {queue_name.value} has {stats.waiting} waiting and {stats.delayed} delayed jobs")
            services.queue_manager.notify(queue_name)

    logger.info(f"Worker ready: {services.queue_manager.get_dramatiq_info()}")
    return services


services = bootstrap()
broker = services.queue_manager.get_broker()
