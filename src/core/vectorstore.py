from typing import Any, Dict, List, Optional, Sequence
import logging

from pydantic import BaseModel
from qdrant_client import QdrantClient
from qdrant_client.http import models as rest
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.http.models import Filter, FieldCondition, MatchValue

from src.core.exceptions import DocumentDataError, TransientServiceError
from src.models.document_models import Chunk
from src.utils.helpers import chunk_point_id

# Configure logging
logger = logging.getLogger(__name__)


class ScoredChunk(BaseModel):
    """One retrieved vector record."""
    id: str
    score: float
    payload: Dict[str, Any]

    @property
    def file_id(self) -> str:
        return self.payload.get("file_id", "")

    @property
    def chunk_index(self) -> int:
        return int(self.payload.get("chunk_index", 0))

    @property
    def content(self) -> str:
        return self.payload.get("content", "")


class QdrantStore:
    """
    Qdrant vector store keyed by tenant.

    Every tenant gets its own collection; agent and file ids are payload
    fields with keyword indexes, used to filter queries and deletions.
    Point ids are derived from (file_id, chunk_index), so upserting the same
    chunk twice overwrites the same point.
    """

    def __init__(
            self,
            client: QdrantClient,
            vector_size: int,
            collection_prefix: str = "tenant",
            upsert_batch_size: int = 100,
    ):
        """
        Initialize the Qdrant vector store.

        Args:
            client: QdrantClient instance
            vector_size: Dimension of the embedding vectors
            collection_prefix: Prefix of the per-tenant collection names
            upsert_batch_size: Points sent per upsert request
        """
        self.client = client
        self.vector_size = vector_size
        self.collection_prefix = collection_prefix
        self.upsert_batch_size = upsert_batch_size
        self._known_collections = set()

    def collection_name(self, tenant_id: str) -> str:
        return f"{self.collection_prefix}_{tenant_id}_chunks"

    def _collection_exists(self, collection_name: str) -> bool:
        if collection_name in self._known_collections:
            return True
        collections = self.client.get_collections().collections
        exists = collection_name in [collection.name for collection in collections]
        if exists:
            self._known_collections.add(collection_name)
        return exists

    def ensure_collection(self, tenant_id: str) -> str:
        """
        Ensure the tenant's collection exists in Qdrant, creating it if necessary.
        """
        collection_name = self.collection_name(tenant_id)
        try:
            if not self._collection_exists(collection_name):
                logger.info(f"Creating collection '{collection_name}' with {self.vector_size} dimensions")
                self.client.create_collection(
                    collection_name=collection_name,
                    vectors_config=rest.VectorParams(
                        size=self.vector_size,
                        distance=rest.Distance.COSINE,
                    ),
                )
                self._create_payload_indexes(collection_name)
                self._known_collections.add(collection_name)
        except (UnexpectedResponse, ResponseHandlingException) as e:
            raise self._translate(e, f"ensure collection {collection_name}")
        return collection_name

    def _create_payload_indexes(self, collection_name: str) -> None:
        """
        Create payload indexes for the fields used in filters.
        """
        for field in ("tenant_id", "agent_id", "file_id"):
            try:
                self.client.create_payload_index(
                    collection_name=collection_name,
                    field_name=field,
                    field_schema=rest.PayloadSchemaType.KEYWORD,
                )
                logger.info(f"Created index for {field} on {collection_name}")
            except (UnexpectedResponse, ResponseHandlingException) as e:
                logger.warning(f"Failed to create index for {field}: {str(e)}")

    @staticmethod
    def _translate(error: Exception, operation: str) -> Exception:
        if isinstance(error, UnexpectedResponse) and error.status_code is not None \
                and 400 <= error.status_code < 500 and error.status_code not in (408, 429):
            return DocumentDataError(f"Qdrant rejected {operation}: {error}")
        return TransientServiceError(f"Qdrant unavailable during {operation}: {error}", service="qdrant")

    def _build_filter(self, tenant_id: str, agent_id: Optional[str] = None,
                      file_id: Optional[str] = None) -> Filter:
        must_conditions = [FieldCondition(key="tenant_id", match=MatchValue(value=tenant_id))]
        if agent_id:
            must_conditions.append(FieldCondition(key="agent_id", match=MatchValue(value=agent_id)))
        if file_id:
            must_conditions.append(FieldCondition(key="file_id", match=MatchValue(value=file_id)))
        return Filter(must=must_conditions)

    def upsert_chunks(
            self,
            tenant_id: str,
            agent_id: str,
            file_id: str,
            chunks: Sequence[Chunk],
            vectors: Sequence[Sequence[float]],
            file_name: str = "",
            progress_callback=None,
    ) -> int:
        """
        Store one vector record per chunk, in fixed-size batches.

        Args:
            tenant_id: Owning tenant (selects the collection)
            agent_id: Owning agent
            file_id: Source file
            chunks: Chunks to store
            vectors: One vector per chunk, same order
            file_name: Original file name, kept for citations
            progress_callback: Called with (stored, total) after each batch

        Returns:
            Number of vector records stored
        """
        if len(chunks) != len(vectors):
            raise DocumentDataError(f"Got {len(vectors)} vectors for {len(chunks)} chunks")
        if not chunks:
            return 0

        collection_name = self.ensure_collection(tenant_id)
        points = [
            rest.PointStruct(
                id=chunk_point_id(file_id, chunk.chunk_index),
                vector=list(vector),
                payload={
                    "tenant_id": tenant_id,
                    "agent_id": agent_id,
                    "file_id": file_id,
                    "file_name": file_name,
                    "chunk_index": chunk.chunk_index,
                    "content": chunk.content,
                    "content_hash": chunk.content_hash,
                    "start_offset": chunk.start_offset,
                    "end_offset": chunk.end_offset,
                    "strategy": chunk.strategy.value,
                },
            )
            for chunk, vector in zip(chunks, vectors)
        ]

        stored = 0
        for start in range(0, len(points), self.upsert_batch_size):
            batch = points[start:start + self.upsert_batch_size]
            batch_number = start // self.upsert_batch_size + 1
            try:
                self.client.upsert(collection_name=collection_name, points=batch, wait=True)
            except (UnexpectedResponse, ResponseHandlingException) as e:
                logger.error(f"Upsert batch {batch_number} for file {file_id} failed after {stored} points: {e}")
                raise self._translate(e, f"upsert batch {batch_number} of file {file_id}")

            stored += len(batch)
            if progress_callback:
                progress_callback(stored, len(points))

        logger.info(f"Stored {stored} vectors for file {file_id} in '{collection_name}'")
        return stored

    def query(
            self,
            tenant_id: str,
            agent_id: str,
            vector: Sequence[float],
            limit: int = 5,
            score_threshold: Optional[float] = None,
    ) -> List[ScoredChunk]:
        """
        Return the nearest chunks of one agent, best first.

        A tenant without a collection simply has no documents yet.
        """
        collection_name = self.collection_name(tenant_id)
        try:
            if not self._collection_exists(collection_name):
                logger.info(f"Collection '{collection_name}' does not exist yet, no results")
                return []

            response = self.client.query_points(
                collection_name=collection_name,
                query=list(vector),
                query_filter=self._build_filter(tenant_id, agent_id=agent_id),
                limit=limit,
                score_threshold=score_threshold,
                with_payload=True,
            )
        except (UnexpectedResponse, ResponseHandlingException) as e:
            raise self._translate(e, f"query on {collection_name}")

        results = [
            ScoredChunk(id=str(point.id), score=float(point.score), payload=dict(point.payload or {}))
            for point in response.points
        ]
        logger.info(f"Search in '{collection_name}' for agent {agent_id} returned {len(results)} results")
        return results

    def delete_by_file(self, tenant_id: str, file_id: str) -> None:
        """
        Delete every vector record of a file, selected by its file_id payload.
        """
        collection_name = self.collection_name(tenant_id)
        try:
            if not self._collection_exists(collection_name):
                logger.info(f"Collection '{collection_name}' does not exist, nothing to delete for {file_id}")
                return

            self.client.delete(
                collection_name=collection_name,
                points_selector=rest.FilterSelector(filter=self._build_filter(tenant_id, file_id=file_id)),
                wait=True,
            )
        except (UnexpectedResponse, ResponseHandlingException) as e:
            raise self._translate(e, f"delete vectors of file {file_id}")

        logger.info(f"Deleted vectors of file {file_id} from '{collection_name}'")

    def count_by_file(self, tenant_id: str, file_id: str) -> int:
        collection_name = self.collection_name(tenant_id)
        try:
            if not self._collection_exists(collection_name):
                return 0
            result = self.client.count(
                collection_name=collection_name,
                count_filter=self._build_filter(tenant_id, file_id=file_id),
                exact=True,
            )
        except (UnexpectedResponse, ResponseHandlingException) as e:
            raise self._translate(e, f"count vectors of file {file_id}")
        return int(result.count)

    def get_stats(self, tenant_id: str) -> Dict[str, Any]:
        """
        Get collection statistics for a tenant.
        """
        collection_name = self.collection_name(tenant_id)
        try:
            if not self._collection_exists(collection_name):
                return {"name": collection_name, "exists": False, "points_count": 0}
            info = self.client.get_collection(collection_name)
        except (UnexpectedResponse, ResponseHandlingException) as e:
            logger.error(f"Error getting collection stats: {str(e)}")
            return {"name": collection_name, "error": str(e)}

        return {
            "name": collection_name,
            "exists": True,
            "points_count": info.points_count,
            "status": str(info.status),
        }
