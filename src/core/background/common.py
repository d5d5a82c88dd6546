import os
import time
import logging
import threading
from typing import Optional

import redis
import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.middleware import Middleware

from src.config.settings import Settings

# Set up logging
logger = logging.getLogger(__name__)

worker_type = os.environ.get("WORKER_TYPE", "ingestion")


def create_redis_client(settings: Settings) -> redis.Redis:
    """Create the Redis client used for job records, the file registry and chat history."""
    redis_kwargs = {
        "host": settings.redis_host,
        "port": settings.redis_port,
        "db": settings.redis_db,
        "decode_responses": True,  # strings in, strings out
        "socket_connect_timeout": 5,
        "socket_timeout": 5,
        "retry_on_timeout": True,
    }
    if settings.redis_password:
        redis_kwargs["password"] = settings.redis_password

    return redis.Redis(**redis_kwargs)


def create_broker(settings: Settings, redis_client: Optional[redis.Redis] = None) -> RedisBroker:
    """
    Create the dramatiq broker that carries queue wake-up messages.

    Args:
        settings: Application settings
        redis_client: Client used for worker heartbeats

    Returns:
        Configured RedisBroker, also installed as the global dramatiq broker
    """
    broker_kwargs = {
        "host": settings.redis_host,
        "port": settings.redis_port,
        "db": settings.redis_db,
        "max_connections": 20,
        "client_name": f"dramatiq-{worker_type}-{os.getpid()}",
    }
    if settings.redis_password:
        broker_kwargs["password"] = settings.redis_password

    redis_broker = RedisBroker(**broker_kwargs)
    if redis_client is not None:
        redis_broker.add_middleware(WorkerHeartbeat(redis_client, settings.redis_key_prefix))

    dramatiq.set_broker(redis_broker)
    logger.info(f"Dramatiq broker configured for {settings.redis_host}:{settings.redis_port}")
    return redis_broker


class WorkerHeartbeat(Middleware):
    """Publishes a heartbeat key while a dramatiq worker process is alive."""

    def __init__(self, redis_client, key_prefix: str = "rag_system", interval: int = 15):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.interval = interval
        self._thread = None
        self._stop_event = None

    def heartbeat_key(self, worker_id: str) -> str:
        return f"{self.key_prefix}:heartbeats:{worker_id}"

    def before_worker_boot(self, broker, worker):
        worker_id = f"{worker_type}-{os.getpid()}"
        logger.info(f"Initializing worker {worker_id} of type {worker_type}")
        self.start(worker_id)

    def after_worker_shutdown(self, broker, worker):
        logger.info("Worker shutting down, stopping heartbeat...")
        self.stop()

    def start(self, worker_id: str) -> None:
        heartbeat_key = self.heartbeat_key(worker_id)
        self._stop_event = threading.Event()

        def update_heartbeat():
            while not self._stop_event.is_set():
                try:
                    self.redis.set(heartbeat_key, str(time.time()), ex=self.interval * 4)
                except redis.RedisError as e:
                    logger.error(f"Failed to update heartbeat for {worker_id}: {e}")
                if self._stop_event.wait(timeout=self.interval):
                    break
            logger.info(f"Heartbeat stopped for {worker_id}")

        self._thread = threading.Thread(target=update_heartbeat, daemon=True)
        self._thread.start()
        logger.info(f"Heartbeat thread started for {worker_id}")

    def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
