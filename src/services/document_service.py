"""
DocumentService - entry point for uploads, status, retries and deletions.

Validates and stores uploads, applies the duplicate upload policy and hands
files to the ingestion and deletion pipelines.
"""

import math
import time
import uuid
import logging
from typing import Any, Dict, List, Optional

from src.core.deletion import DeletionPipeline
from src.core.ingestion.pipeline import IngestionPipeline
from src.core.registry import FileRegistry
from src.core.storage import ObjectStorage
from src.models.document_models import ChunkingOptions, FileRecord, UploadResult
from src.models.enums import DuplicatePolicy, FileStatus, JobPriority
from src.models.job_models import JobHandle, JobStatusView
from src.utils.helpers import sha256_hash

from .upload_validation import validate_upload

logger = logging.getLogger(__name__)


def estimate_processing_time(file_size: int) -> Dict[str, Any]:
    """Rough processing time estimate in seconds, per stage."""
    megabytes = math.ceil(file_size / 1_000_000)
    estimated = {
        "extraction": megabytes * 2,
        "chunking": megabytes * 1,
        "embedding": math.ceil(file_size / 100_000) * 3,
        "storage": megabytes * 1,
    }
    estimated["total"] = sum(estimated.values())
    return {
        "estimated": estimated,
        "human": f"{math.ceil(estimated['total'] / 60)} minutes",
    }


class DocumentService:
    """
    Service for document lifecycle operations
    """

    def __init__(self, registry: FileRegistry, storage: ObjectStorage, ingestion: IngestionPipeline,
                 deletion: DeletionPipeline, duplicate_policy: DuplicatePolicy = DuplicatePolicy.SKIP):
        self.registry = registry
        self.storage = storage
        self.ingestion = ingestion
        self.deletion = deletion
        self.duplicate_policy = DuplicatePolicy(duplicate_policy)

    # ========================================================================
    # Uploads
    # ========================================================================

    def upload_file(
            self,
            tenant_id: str,
            agent_id: str,
            filename: str,
            data: bytes,
            mime_type: str,
            uploaded_by: Optional[str] = None,
            priority: str = "high",
            force_reprocess: bool = False,
            chunking: Optional[ChunkingOptions] = None,
    ) -> UploadResult:
        """
        Accept an uploaded document and start its ingestion.

        Args:
            tenant_id: Owning tenant
            agent_id: Agent the document belongs to
            filename: Original file name
            data: File content
            mime_type: Declared MIME type
            uploaded_by: Uploading user
            priority: Queue priority name (urgent, high, normal, low, background)
            force_reprocess: Ingest even when an identical completed file exists
            chunking: Chunking overrides for this file

        Returns:
            The file record, the ingestion job id and a processing time estimate;
            duplicate=True when an existing file was reused instead
        """
        effective_type = validate_upload(data, filename, mime_type)
        file_hash = sha256_hash(data)

        existing = self.registry.find_completed_by_hash(agent_id, file_hash)
        if existing is not None and self.duplicate_policy == DuplicatePolicy.SKIP and not force_reprocess:
            logger.info(f"Upload {filename} duplicates completed file {existing.file_id} of agent {agent_id}; "
                        f"not reprocessing")
            return UploadResult(file=existing, duplicate=True)

        now = time.time()
        storage_key = self.storage.build_key(agent_id, filename, now)
        storage_url = self.storage.put(storage_key, data, effective_type)

        record = self.registry.create(FileRecord(
            file_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            agent_id=agent_id,
            uploaded_by=uploaded_by,
            original_name=filename,
            size=len(data),
            mime_type=effective_type,
            file_hash=file_hash,
            storage_key=storage_key,
            storage_url=storage_url,
            status=FileStatus.UPLOADING,
            duplicate_of=existing.file_id if existing else None,
            created_at=now,
            updated_at=now,
        ))

        handle = self.ingestion.enqueue_ingestion(record.file_id, JobPriority.from_name(priority), chunking)

        logger.info(f"Accepted upload {filename} as file {record.file_id} ({len(data)} bytes, job {handle.job_id})")
        return UploadResult(
            file=self.registry.require(record.file_id),
            duplicate=False,
            job_id=handle.job_id,
            estimated_processing_time=estimate_processing_time(len(data)),
        )

    # ========================================================================
    # Status and retries
    # ========================================================================

    def get_file(self, file_id: str) -> FileRecord:
        return self.registry.require(file_id)

    def list_files(self, agent_id: str) -> List[FileRecord]:
        return self.registry.list_by_agent(agent_id)

    def get_file_status(self, file_id: str) -> Dict[str, Any]:
        return self.ingestion.get_file_status(file_id)

    def get_job_status(self, job_id: str) -> JobStatusView:
        return self.ingestion.job_queue.get_status(job_id)

    def retry_file(self, file_id: str) -> JobHandle:
        """Re-run a failed file from its failed stage."""
        return self.ingestion.retry_file(file_id)

    # ========================================================================
    # Deletion
    # ========================================================================

    def delete_file(self, tenant_id: str, agent_id: str, file_id: str,
                    requested_by: Optional[str] = None) -> JobHandle:
        return self.deletion.enqueue_deletion(file_id, tenant_id, agent_id, requested_by)

    def delete_files(self, tenant_id: str, agent_id: str, file_ids: List[str],
                     requested_by: Optional[str] = None) -> JobHandle:
        return self.deletion.enqueue_batch_deletion(file_ids, tenant_id, agent_id, requested_by)

    def cancel_deletion(self, job_id: str) -> bool:
        return self.deletion.cancel_deletion(job_id)

    def get_deletion_status(self, job_id: str) -> Dict[str, Any]:
        return self.deletion.get_deletion_status(job_id)
