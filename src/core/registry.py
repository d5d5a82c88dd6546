"""
Redis-backed file registry and chat store.

File records are JSON strings keyed by file id. Status changes go through a
WATCH/MULTI transaction on the file key so that two writers can never move a
file backwards.
"""

import time
import uuid
import logging
from typing import Callable, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from src.core.exceptions import FileRecordNotFoundError, InvalidStateError
from src.models.chat_models import ChatMessage, ChatSession
from src.models.document_models import FileRecord, StageInfo
from src.models.enums import FileStatus, PipelineStage, StageErrorReason, StageStatus

logger = logging.getLogger(__name__)

# Returns False to leave the record untouched
FileMutator = Callable[[FileRecord], bool]


class FileRegistry:
    def __init__(self, redis_client, key_prefix: str = "rag_system"):
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _file_key(self, file_id: str) -> str:
        return f"{self.key_prefix}:files:{file_id}"

    def _agent_key(self, agent_id: str) -> str:
        return f"{self.key_prefix}:agent_files:{agent_id}"

    def _hash_key(self, agent_id: str, file_hash: str) -> str:
        return f"{self.key_prefix}:file_hashes:{agent_id}:{file_hash}"

    def _load(self, raw: Optional[str], file_id: str) -> Optional[FileRecord]:
        if not raw:
            return None
        try:
            return FileRecord.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"File {file_id} has an unreadable record: {e}")
            return None

    # ------------------------------------------------------------------
    # Basic CRUD
    # ------------------------------------------------------------------

    def create(self, record: FileRecord) -> FileRecord:
        self.redis.set(self._file_key(record.file_id), record.model_dump_json())
        self.redis.sadd(self._agent_key(record.agent_id), record.file_id)
        self.redis.sadd(self._hash_key(record.agent_id, record.file_hash), record.file_id)
        logger.info(f"Registered file {record.file_id} ({record.original_name}) for agent {record.agent_id}")
        return record

    def get(self, file_id: str) -> Optional[FileRecord]:
        return self._load(self.redis.get(self._file_key(file_id)), file_id)

    def require(self, file_id: str) -> FileRecord:
        record = self.get(file_id)
        if record is None:
            raise FileRecordNotFoundError(file_id)
        return record

    def list_by_agent(self, agent_id: str) -> List[FileRecord]:
        records = []
        for file_id in sorted(self.redis.smembers(self._agent_key(agent_id))):
            record = self.get(file_id)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.created_at)
        return records

    def find_completed_by_hash(self, agent_id: str, file_hash: str) -> Optional[FileRecord]:
        """A completed, not-being-deleted file of the agent with the same content hash."""
        for file_id in sorted(self.redis.smembers(self._hash_key(agent_id, file_hash))):
            record = self.get(file_id)
            if record and record.status == FileStatus.COMPLETED and record.deletion_requested_at is None:
                return record
        return None

    def delete(self, file_id: str) -> bool:
        """Remove the record and its index entries. Returns False if it was already gone."""
        record = self.get(file_id)
        if record is None:
            return False
        self.redis.delete(self._file_key(file_id))
        self.redis.srem(self._agent_key(record.agent_id), file_id)
        self.redis.srem(self._hash_key(record.agent_id, record.file_hash), file_id)
        logger.info(f"Deleted registry record of file {file_id}")
        return True

    # ------------------------------------------------------------------
    # Conditional updates
    # ------------------------------------------------------------------

    def update(self, file_id: str, mutator: FileMutator) -> Tuple[Optional[FileRecord], bool]:
        """
        Apply mutator to the record inside a WATCH transaction.

        Returns:
            (record after the call, whether it was written); record is None
            when the file does not exist
        """
        key = self._file_key(file_id)

        def apply(pipe) -> Tuple[Optional[FileRecord], bool]:
            record = self._load(pipe.get(key), file_id)
            if record is None:
                return None, False
            if mutator(record) is False:
                return record, False
            record.updated_at = time.time()
            pipe.multi()
            pipe.set(key, record.model_dump_json())
            return record, True

        return self.redis.transaction(apply, key, value_from_callable=True)

    def advance_status(self, file_id: str, from_statuses: Iterable[FileStatus], to_status: FileStatus,
                       stage: Optional[PipelineStage] = None, stage_info: Optional[StageInfo] = None,
                       **fields) -> bool:
        """
        Move a file to to_status only if its status is one of from_statuses.

        Args:
            file_id: File to update
            from_statuses: Statuses the transition is allowed from
            to_status: New status
            stage: Stage whose processing info is replaced by stage_info
            stage_info: Processing info of that stage
            **fields: Other FileRecord fields written in the same transaction

        Returns:
            True if the transition happened
        """
        allowed = set(from_statuses)

        def mutate(record: FileRecord) -> bool:
            if record.status not in allowed:
                return False
            record.status = to_status
            if stage is not None and stage_info is not None:
                record.processing[stage.value] = stage_info
            for name, value in fields.items():
                setattr(record, name, value)
            return True

        record, changed = self.update(file_id, mutate)
        if changed:
            logger.info(f"File {file_id} status -> {to_status.value}")
        elif record is not None:
            logger.info(f"File {file_id} is {record.status.value}; not moving to {to_status.value}")
        return changed

    def start_stage(self, file_id: str, stage: PipelineStage, expected_status: FileStatus) -> bool:
        def mutate(record: FileRecord) -> bool:
            if record.status != expected_status:
                return False
            info = record.stage(stage)
            info.status = StageStatus.PROCESSING
            info.started_at = info.started_at or time.time()
            info.error = None
            return True

        return self.update(file_id, mutate)[1]

    def mark_error(self, file_id: str, stage: PipelineStage, expected_status: FileStatus,
                   error_reason: StageErrorReason, message: str, job_id: Optional[str] = None) -> bool:
        """
        Put a file into the error state for a failed stage.

        Only applies while the file is still in that stage, so a late failure
        of a stale job cannot overwrite newer progress.
        """
        def mutate(record: FileRecord) -> bool:
            in_stage = record.status == expected_status or (
                record.status == FileStatus.PROCESSING and record.resume_stage == stage
            )
            if not in_stage:
                return False
            record.status = FileStatus.ERROR
            record.error_reason = error_reason
            record.error_message = message
            record.failed_job_id = job_id
            record.resume_stage = stage
            info = record.stage(stage)
            info.status = StageStatus.FAILED
            info.error = message
            info.completed_at = time.time()
            return True

        changed = self.update(file_id, mutate)[1]
        if changed:
            logger.error(f"File {file_id} failed at {stage.value} ({error_reason.value}): {message}")
        return changed

    def reset_for_retry(self, file_id: str) -> FileRecord:
        """Move a failed file to processing and clear its error."""
        def mutate(record: FileRecord) -> bool:
            if record.status != FileStatus.ERROR:
                raise InvalidStateError(f"File {file_id} is {record.status.value}; only failed files can be retried")
            if record.deletion_requested_at is not None:
                raise InvalidStateError(f"File {file_id} is being deleted and cannot be retried")
            record.status = FileStatus.PROCESSING
            record.error_reason = None
            record.error_message = None
            record.retry_count += 1
            if record.resume_stage is not None:
                record.stage(record.resume_stage).status = StageStatus.PENDING
            return True

        record, _ = self.update(file_id, mutate)
        if record is None:
            raise FileRecordNotFoundError(file_id)
        return record

    def set_fields(self, file_id: str, **fields) -> Optional[FileRecord]:
        def mutate(record: FileRecord) -> bool:
            for name, value in fields.items():
                setattr(record, name, value)
            return True

        return self.update(file_id, mutate)[0]

    def mark_deletion_requested(self, file_id: str) -> FileRecord:
        record = self.set_fields(file_id, deletion_requested_at=time.time())
        if record is None:
            raise FileRecordNotFoundError(file_id)
        return record

    def clear_deletion_requested(self, file_id: str) -> Optional[FileRecord]:
        return self.set_fields(file_id, deletion_requested_at=None)


class ChatRepository:
    """Chat sessions and their message history."""

    def __init__(self, redis_client, key_prefix: str = "rag_system"):
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _session_key(self, session_id: str) -> str:
        return f"{self.key_prefix}:chat_sessions:{session_id}"

    def _messages_key(self, session_id: str) -> str:
        return f"{self.key_prefix}:chat_messages:{session_id}"

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        raw = self.redis.get(self._session_key(session_id))
        if not raw:
            return None
        return ChatSession.model_validate_json(raw)

    def create_session(self, tenant_id: str, agent_id: str, user_id: Optional[str] = None,
                       session_id: Optional[str] = None) -> ChatSession:
        session = ChatSession(
            session_id=session_id or str(uuid.uuid4()),
            tenant_id=tenant_id,
            agent_id=agent_id,
            user_id=user_id,
            created_at=time.time(),
        )
        self.redis.set(self._session_key(session.session_id), session.model_dump_json())
        logger.info(f"Created chat session {session.session_id} for agent {agent_id}")
        return session

    def append_exchange(self, session: ChatSession, user_message: ChatMessage,
                        assistant_message: ChatMessage) -> ChatSession:
        """Store a question and its answer and bump the session counters."""
        key = self._messages_key(session.session_id)
        self.redis.rpush(key, user_message.model_dump_json(), assistant_message.model_dump_json())

        session.total_messages += 2
        session.total_tokens += user_message.tokens_used + assistant_message.tokens_used
        session.last_message_at = assistant_message.created_at
        self.redis.set(self._session_key(session.session_id), session.model_dump_json())
        return session

    def get_messages(self, session_id: str, limit: int = 50) -> List[ChatMessage]:
        raw_messages = self.redis.lrange(self._messages_key(session_id), -limit, -1)
        return [ChatMessage.model_validate_json(raw) for raw in raw_messages]
