"""
Queue manager with integrated dramatiq helpers.

Jobs themselves live in the Redis-backed JobQueue. Dramatiq only carries
wake-up messages: every enqueue (and every scheduled retry) sends one message
to the drain actor of the job's queue, and the actor runs the highest
priority runnable job. Priority and FIFO ordering therefore never depend on
the broker's own message order.
"""

import logging
from typing import Any, Dict, List

import dramatiq
from dramatiq.broker import Broker

from src.models.enums import QueueName

from .job_runner import JobRunner

logger = logging.getLogger(__name__)


class QueueManager:
    """
    Manages the dramatiq broker side of the job queue.
    """

    def __init__(self, broker: Broker, runner: JobRunner):
        self.broker = broker
        self.runner = runner
        self.actors: Dict[str, dramatiq.Actor] = {}

        for queue_name in self.get_all_queue_names():
            self.actors[queue_name] = self._declare_drain_actor(queue_name)

        logger.info(f"QueueManager initialized with drain actors for: {', '.join(self.actors)}")

    # ===============================================================================
    # DRAMATIQ INTEGRATION
    # ===============================================================================

    def create_task_decorator(self, queue_name: str, **kwargs):
        """
        Create a dramatiq actor decorator with the queue's configuration.

        Args:
            queue_name: Name of the queue (from QueueName enum)
            **kwargs: Additional dramatiq actor options (override defaults)

        Returns:
            Configured dramatiq actor decorator
        """
        if not self.validate_queue_name(queue_name):
            valid_queues = self.get_all_queue_names()
            raise ValueError(f"Invalid queue name: {queue_name}. Must be one of: {valid_queues}")

        default_config = self.get_queue_configuration().get(queue_name, {})

        dramatiq_config = {}
        for key, value in default_config.items():
            if key in ['max_retries', 'min_backoff', 'max_backoff', 'time_limit']:
                dramatiq_config[key] = value

        final_config = {**dramatiq_config, **kwargs}

        logger.debug(f"Creating dramatiq actor for queue '{queue_name}' with config: {final_config}")

        return dramatiq.actor(queue_name=queue_name, broker=self.broker, **final_config)

    def _declare_drain_actor(self, queue_name: str) -> dramatiq.Actor:
        runner = self.runner
        decorator = self.create_task_decorator(
            queue_name,
            actor_name=f"drain_{queue_name.replace('-', '_')}",
        )

        def drain_queue(queue: str):
            """Run the next runnable job of the queue, if any."""
            record = runner.run_next(QueueName(queue))
            if record is not None:
                logger.info(f"Worker finished job {record.job_id} on {queue} in state {record.state.value}")

        return decorator(drain_queue)

    def notify(self, queue_name: QueueName, delay_ms: int = 0) -> None:
        """Wake one worker of the queue, now or after delay_ms."""
        queue_name = QueueName(queue_name).value
        actor = self.actors[queue_name]
        if delay_ms:
            actor.send_with_options(args=(queue_name,), delay=delay_ms)
        else:
            actor.send(queue_name)

    def get_broker(self) -> Broker:
        return self.broker

    def get_dramatiq_info(self) -> Dict[str, Any]:
        """Get information about the dramatiq configuration."""
        return {
            "broker_type": type(self.broker).__name__,
            "available_queues": self.get_all_queue_names(),
            "actors": {name: actor.actor_name for name, actor in self.actors.items()},
            "handlers": [job_type.value for job_type in self.runner.registered_types()],
        }

    # ===============================================================================
    # QUEUE CONFIGURATION
    # ===============================================================================

    def validate_queue_name(self, queue_name: str) -> bool:
        return queue_name in self.get_all_queue_names()

    @staticmethod
    def get_all_queue_names() -> List[str]:
        return [queue.value for queue in QueueName]

    def get_queue_configuration(self) -> Dict[str, Dict[str, Any]]:
        """
        Dramatiq options for the drain actors.

        Job-level attempts and backoff are handled by the JobQueue; these
        retries only cover a drain message that crashed before it could
        record an outcome (for example a Redis outage).
        """
        base_config = {
            "max_retries": 3,
            "min_backoff": 1000,
            "max_backoff": 60000,
            "time_limit": 30 * 60 * 1000,
        }

        return {
            QueueName.DOCUMENT_PROCESSING.value: {
                **base_config,
                "time_limit": 15 * 60 * 1000,
            },
            QueueName.EMBEDDING_GENERATION.value: {
                **base_config,
                "time_limit": 30 * 60 * 1000,
            },
            QueueName.FILE_DELETION.value: {
                **base_config,
                "time_limit": 10 * 60 * 1000,
            },
        }
