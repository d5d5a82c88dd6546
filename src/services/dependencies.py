"""
Explicit wiring of every collaborator.

Nothing in the package reaches for module-level singletons; processes (the
dramatiq worker, scripts, tests) build a ServiceContainer and pass its parts
around. Any client can be injected, which is how the tests swap in fakes.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from dramatiq.broker import Broker
from openai import OpenAI
from qdrant_client import QdrantClient

from src.config.settings import Settings
from src.core.background.common import create_redis_client
from src.core.background.job_queue import JobQueue
from src.core.background.job_tracker import JobTracker
from src.core.background.priority_queue import PriorityQueueManager
from src.core.deletion import DeletionPipeline
from src.core.ingestion.chunking import ChunkingEngine
from src.core.ingestion.extraction import TextExtractor
from src.core.ingestion.pipeline import IngestionPipeline
from src.core.ingestion.stages import ChunkTextStage, ExtractTextStage, GenerateEmbeddingsStage, StoreVectorsStage
from src.core.llm import CompletionClient, EmbeddingClient, create_openai_client
from src.core.orchestration.job_runner import JobRunner
from src.core.orchestration.queue_manager import QueueManager
from src.core.query.rag_engine import RagQueryEngine
from src.core.registry import ChatRepository, FileRegistry
from src.core.storage import ObjectStorage
from src.core.vectorstore import QdrantStore
from src.models.enums import DuplicatePolicy, JobType

from .document_service import DocumentService

logger = logging.getLogger(__name__)

# Successor jobs wait briefly so the status transition of their parent lands first
DEFAULT_SUCCESSOR_DELAYS_MS = {
    JobType.CHUNK_TEXT: 500,
    JobType.GENERATE_EMBEDDINGS: 1000,
    JobType.STORE_VECTORS: 1500,
}


@dataclass
class ServiceContainer:
    settings: Settings
    redis_client: object
    job_queue: JobQueue
    runner: JobRunner
    registry: FileRegistry
    chat_repository: ChatRepository
    storage: ObjectStorage
    vector_store: QdrantStore
    embedder: EmbeddingClient
    completion: CompletionClient
    ingestion: IngestionPipeline
    deletion: DeletionPipeline
    query_engine: RagQueryEngine
    document_service: DocumentService
    queue_manager: Optional[QueueManager] = None

    def attach_broker(self, broker: Broker) -> QueueManager:
        """Declare the drain actors on broker and route queue wake-ups through them."""
        self.queue_manager = QueueManager(broker, self.runner)
        self.job_queue.set_notifier(self.queue_manager.notify)
        return self.queue_manager

    def close(self) -> None:
        try:
            self.vector_store.client.close()
        except Exception as e:
            logger.warning(f"Error closing Qdrant client: {e}")
        close = getattr(self.redis_client, "close", None)
        if close is not None:
            close()


def create_qdrant_client(settings: Settings) -> QdrantClient:
    if settings.qdrant_url:
        return QdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key)
    return QdrantClient(host=settings.qdrant_host, port=settings.qdrant_port, api_key=settings.qdrant_api_key)


def build_services(
        settings: Settings,
        redis_client=None,
        qdrant_client: Optional[QdrantClient] = None,
        openai_client: Optional[OpenAI] = None,
        storage: Optional[ObjectStorage] = None,
        broker: Optional[Broker] = None,
        successor_delays_ms=None,
        sleep=None,
) -> ServiceContainer:
    """
    Build the full object graph from settings.

    Args:
        settings: Application settings
        redis_client: Redis client (created from settings when omitted)
        qdrant_client: Qdrant client (created from settings when omitted)
        openai_client: OpenAI client (created from settings when omitted)
        storage: Object storage adapter (created from settings when omitted)
        broker: Dramatiq broker; when given, enqueues wake up its drain actors
        successor_delays_ms: Per job type delay before a successor stage runs
        sleep: Sleep function used between embedding retries

    Returns:
        The wired ServiceContainer
    """
    redis_client = redis_client if redis_client is not None else create_redis_client(settings)
    qdrant_client = qdrant_client if qdrant_client is not None else create_qdrant_client(settings)
    openai_client = openai_client if openai_client is not None else create_openai_client(settings)
    storage = storage if storage is not None else ObjectStorage.from_settings(settings)

    prefix = settings.redis_key_prefix
    job_queue = JobQueue(
        tracker=JobTracker(redis_client, prefix),
        priority_queue=PriorityQueueManager(redis_client, prefix),
        queue_options=settings.queue_options(),
        default_attempts=settings.queue_default_attempts,
        default_backoff_ms=settings.queue_default_backoff_ms,
    )
    runner = JobRunner(job_queue)
    registry = FileRegistry(redis_client, prefix)
    chat_repository = ChatRepository(redis_client, prefix)

    vector_store = QdrantStore(
        client=qdrant_client,
        vector_size=settings.vector_size,
        collection_prefix=settings.qdrant_collection_prefix,
        upsert_batch_size=settings.qdrant_upsert_batch_size,
    )
    embedder = EmbeddingClient(openai_client, model=settings.embedding_model)
    completion = CompletionClient(
        openai_client,
        model=settings.chat_model,
        temperature=settings.chat_temperature,
        max_tokens=settings.chat_max_tokens,
        fixed_temperature_models=settings.fixed_temperature_model_list,
    )

    embedding_stage_kwargs = {}
    if sleep is not None:
        embedding_stage_kwargs["sleep"] = sleep

    stages = [
        ExtractTextStage(job_queue, storage, TextExtractor()),
        ChunkTextStage(job_queue, ChunkingEngine(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            min_chunk_length=settings.min_chunk_length,
            max_chunk_length=settings.max_chunk_length,
        )),
        GenerateEmbeddingsStage(
            job_queue,
            embedder,
            batch_size=settings.embedding_batch_size,
            max_retries=settings.embedding_max_retries,
            retry_delay_ms=settings.embedding_retry_delay_ms,
            **embedding_stage_kwargs,
        ),
        StoreVectorsStage(job_queue, vector_store, registry),
    ]
    ingestion = IngestionPipeline(
        registry,
        job_queue,
        {stage.job_type: stage for stage in stages},
        successor_delays_ms=DEFAULT_SUCCESSOR_DELAYS_MS if successor_delays_ms is None else successor_delays_ms,
    )
    ingestion.register(runner)

    deletion = DeletionPipeline(registry, job_queue, storage, vector_store)
    deletion.register(runner)

    query_engine = RagQueryEngine(
        embedder,
        completion,
        vector_store,
        chat_repository,
        search_limit=settings.search_limit,
        search_limit_max=settings.search_limit_max,
        score_threshold=settings.search_score_threshold,
        max_context_chars=settings.max_context_chars,
    )
    document_service = DocumentService(
        registry,
        storage,
        ingestion,
        deletion,
        duplicate_policy=DuplicatePolicy(settings.duplicate_upload_policy),
    )

    container = ServiceContainer(
        settings=settings,
        redis_client=redis_client,
        job_queue=job_queue,
        runner=runner,
        registry=registry,
        chat_repository=chat_repository,
        storage=storage,
        vector_store=vector_store,
        embedder=embedder,
        completion=completion,
        ingestion=ingestion,
        deletion=deletion,
        query_engine=query_engine,
        document_service=document_service,
    )
    if broker is not None:
        container.attach_broker(broker)

    logger.info("Services initialized")
    return container
