"""
Pytest configuration for the document RAG pipeline.

This module provides fixtures and configurations used by the test suite.
Redis is replaced by fakeredis, Qdrant runs in memory, and the OpenAI and
S3 clients are test doubles.
"""

import io
import os
import sys
from types import SimpleNamespace
from typing import Dict, Generator, List, Optional
from unittest.mock import MagicMock

import fakeredis
import pytest
from botocore.exceptions import ClientError
from qdrant_client import QdrantClient

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from src.config.settings import Settings
from src.core.background.job_queue import JobQueue
from src.core.background.job_tracker import JobTracker
from src.core.background.priority_queue import PriorityQueueManager
from src.core.storage import ObjectStorage
from src.models.enums import QueueName
from src.services.dependencies import ServiceContainer, build_services

# Each embedding dimension counts one topic word; the last one keeps vectors non-zero
TOPICS = ["brake", "battery", "warranty", "engine", "tire", "seat"]
VECTOR_SIZE = len(TOPICS) + 1

SAMPLE_DOCUMENT = (
    "Brake maintenance. The brake pads should be inspected every 10,000 miles. "
    "Replace the brake fluid every two years to keep the brake system responsive.\n\n"
    "Battery care. The battery warranty covers eight years. Keep the battery charged "
    "between 20 and 80 percent for the longest battery life.\n\n"
    "Warranty terms. The basic warranty lasts four years or 50,000 miles, whichever comes first. "
    "The warranty does not cover tire wear."
)


def topic_vector(text: str) -> List[float]:
    lowered = text.lower()
    return [float(lowered.count(topic)) for topic in TOPICS] + [0.01]


class FakeEmbeddings:
    """Stands in for client.embeddings of the OpenAI SDK."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.error: Optional[Exception] = None
        self.poison_word: Optional[str] = None
        self.poison_error: Optional[Exception] = None

    def create(self, model: str, input: List[str]):
        self.calls.append(list(input))
        if self.error is not None:
            raise self.error
        if self.poison_word and any(self.poison_word in text for text in input):
            raise self.poison_error

        data = [SimpleNamespace(index=index, embedding=topic_vector(text)) for index, text in enumerate(input)]
        # Returned out of order on purpose; callers must sort by index
        data.reverse()
        return SimpleNamespace(
            data=data,
            usage=SimpleNamespace(total_tokens=sum(len(text.split()) for text in input)),
        )


def chat_response(text: str = "Generated answer", tokens: int = 42):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(total_tokens=tokens),
    )


class FakeS3Client:
    """Dict-backed subset of the boto3 S3 client."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.error: Optional[Exception] = None

    def put_object(self, Bucket, Key, Body, ContentType=None):
        if self.error is not None:
            raise self.error
        self.objects[Key] = Body

    def get_object(self, Bucket, Key):
        if self.error is not None:
            raise self.error
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "Not found"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def delete_object(self, Bucket, Key):
        if self.error is not None:
            raise self.error
        self.objects.pop(Key, None)


@pytest.fixture
def settings() -> Settings:
    """
    Settings for tests: small vectors and no backoff delays.

    Returns:
        Settings: Test settings
    """
    return Settings(
        openai_api_key="test-key",
        storage_bucket="test-bucket",
        redis_key_prefix="test",
        vector_size=VECTOR_SIZE,
        embedding_retry_delay_ms=0,
        queue_default_backoff_ms=0,
        document_queue_backoff_ms=0,
        embedding_queue_backoff_ms=0,
        deletion_queue_backoff_ms=0,
        search_score_threshold=0.6,
        duplicate_upload_policy="skip",
    )


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def job_queue(redis_client, settings) -> JobQueue:
    return JobQueue(
        tracker=JobTracker(redis_client, settings.redis_key_prefix),
        priority_queue=PriorityQueueManager(redis_client, settings.redis_key_prefix),
        queue_options=settings.queue_options(),
    )


@pytest.fixture
def qdrant_client() -> Generator[QdrantClient, None, None]:
    """
    Create a Qdrant client with an in-memory database for testing.

    Returns:
        QdrantClient: In-memory Qdrant client
    """
    client = QdrantClient(location=":memory:")
    yield client
    client.close()


@pytest.fixture
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def openai_client(fake_embeddings) -> MagicMock:
    client = MagicMock()
    client.embeddings = fake_embeddings
    client.chat.completions.create.return_value = chat_response()
    return client


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def storage(s3_client) -> ObjectStorage:
    return ObjectStorage(s3_client, "test-bucket", public_base_url="http://minio:9000/test-bucket")


@pytest.fixture
def services(settings, redis_client, qdrant_client, openai_client, storage) -> ServiceContainer:
    """
    Fully wired services with every successor job runnable immediately.

    Returns:
        ServiceContainer: Services under test
    """
    return build_services(
        settings,
        redis_client=redis_client,
        qdrant_client=qdrant_client,
        openai_client=openai_client,
        storage=storage,
        successor_delays_ms={},
        sleep=lambda seconds: None,
    )


def run_all_jobs(services: ServiceContainer, max_rounds: int = 50) -> int:
    """Drain every queue until no job is runnable. Returns the number of jobs run."""
    total = 0
    for _ in range(max_rounds):
        executed = sum(services.runner.drain(queue_name) for queue_name in QueueName)
        if executed == 0:
            break
        total += executed
    return total


@pytest.fixture
def run_jobs(services):
    return lambda: run_all_jobs(services)


@pytest.fixture
def upload(services):
    """Upload a text document for the default tenant and agent."""
    def _upload(content: str = SAMPLE_DOCUMENT, filename: str = "manual.txt", agent_id: str = "agent-1",
                tenant_id: str = "tenant-1", **kwargs):
        return services.document_service.upload_file(
            tenant_id=tenant_id,
            agent_id=agent_id,
            filename=filename,
            data=content.encode("utf-8"),
            mime_type="text/plain",
            uploaded_by="user-1",
            **kwargs,
        )
    return _upload
