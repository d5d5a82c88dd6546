import os
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    # Redis settings (job queue, file registry, chat store)
    redis_host: str = os.getenv("REDIS_HOST", "localhost")
    redis_port: int = int(os.getenv("REDIS_PORT", "6379"))
    redis_password: Optional[str] = os.getenv("REDIS_PASSWORD", None)
    redis_db: int = int(os.getenv("REDIS_DB", "0"))
    redis_key_prefix: str = os.getenv("REDIS_KEY_PREFIX", "rag_system")

    # Qdrant settings
    qdrant_url: Optional[str] = os.getenv("QDRANT_URL", None)
    qdrant_host: str = os.getenv("QDRANT_HOST", "localhost")
    qdrant_port: int = int(os.getenv("QDRANT_PORT", "6333"))
    qdrant_api_key: Optional[str] = os.getenv("QDRANT_API_KEY", None)
    qdrant_collection_prefix: str = os.getenv("QDRANT_COLLECTION_PREFIX", "tenant")
    qdrant_upsert_batch_size: int = int(os.getenv("QDRANT_UPSERT_BATCH_SIZE", "100"))
    vector_size: int = int(os.getenv("VECTOR_SIZE", "1536"))

    # Object storage settings (AWS S3 or a MinIO endpoint)
    storage_bucket: str = os.getenv("STORAGE_BUCKET", "")
    storage_region: str = os.getenv("STORAGE_REGION", "us-east-1")
    storage_endpoint_url: Optional[str] = os.getenv("STORAGE_ENDPOINT_URL", None)
    storage_access_key_id: Optional[str] = os.getenv("STORAGE_ACCESS_KEY_ID", None)
    storage_secret_access_key: Optional[str] = os.getenv("STORAGE_SECRET_ACCESS_KEY", None)
    storage_force_path_style: bool = os.getenv("STORAGE_FORCE_PATH_STYLE", "false").lower() == "true"
    storage_key_prefix: str = os.getenv("STORAGE_KEY_PREFIX", "uploads")

    # OpenAI settings
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_timeout: float = float(os.getenv("OPENAI_TIMEOUT", "60"))
    embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    embedding_batch_size: int = int(os.getenv("EMBEDDING_BATCH_SIZE", "100"))
    embedding_max_retries: int = int(os.getenv("EMBEDDING_MAX_RETRIES", "3"))
    embedding_retry_delay_ms: int = int(os.getenv("EMBEDDING_RETRY_DELAY_MS", "1000"))
    chat_model: str = os.getenv("CHAT_MODEL", "gpt-4o")
    chat_temperature: float = float(os.getenv("CHAT_TEMPERATURE", "0.1"))
    chat_max_tokens: int = int(os.getenv("CHAT_MAX_TOKENS", "1000"))
    fixed_temperature_models: str = os.getenv("FIXED_TEMPERATURE_MODELS", "o3,gpt-5,gpt-5-mini,gpt-5-nano")

    # Chunking settings
    chunk_size: int = int(os.getenv("CHUNK_SIZE", "1000"))
    chunk_overlap: int = int(os.getenv("CHUNK_OVERLAP", "200"))
    min_chunk_length: int = int(os.getenv("MIN_CHUNK_LENGTH", "20"))
    max_chunk_length: int = int(os.getenv("MAX_CHUNK_LENGTH", "4000"))

    # Retrieval settings
    search_limit: int = int(os.getenv("SEARCH_LIMIT", "5"))
    search_limit_max: int = int(os.getenv("SEARCH_LIMIT_MAX", "20"))
    search_score_threshold: float = float(os.getenv("SEARCH_SCORE_THRESHOLD", "0.6"))
    max_context_chars: int = int(os.getenv("MAX_CONTEXT_CHARS", "12000"))

    # Job queue defaults
    queue_default_attempts: int = int(os.getenv("QUEUE_DEFAULT_ATTEMPTS", "3"))
    queue_default_backoff_ms: int = int(os.getenv("QUEUE_DEFAULT_BACKOFF_MS", "2000"))
    document_queue_attempts: int = int(os.getenv("DOCUMENT_QUEUE_ATTEMPTS", "5"))
    document_queue_backoff_ms: int = int(os.getenv("DOCUMENT_QUEUE_BACKOFF_MS", "5000"))
    embedding_queue_attempts: int = int(os.getenv("EMBEDDING_QUEUE_ATTEMPTS", "5"))
    embedding_queue_backoff_ms: int = int(os.getenv("EMBEDDING_QUEUE_BACKOFF_MS", "10000"))
    deletion_queue_attempts: int = int(os.getenv("DELETION_QUEUE_ATTEMPTS", "3"))
    deletion_queue_backoff_ms: int = int(os.getenv("DELETION_QUEUE_BACKOFF_MS", "2000"))
    job_retention_days: int = int(os.getenv("JOB_RETENTION_DAYS", "7"))

    # Upload handling: "skip" reuses a completed file with the same hash, "reprocess" always embeds
    duplicate_upload_policy: str = os.getenv("DUPLICATE_UPLOAD_POLICY", "skip")

    # Development/Debug
    debug_mode: bool = os.getenv("DEBUG_MODE", "false").lower() == "true"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: Optional[str] = os.getenv("LOG_FILE", None)
    environment: str = os.getenv("ENVIRONMENT", "production")

    @property
    def fixed_temperature_model_list(self) -> List[str]:
        return _csv(self.fixed_temperature_models)

    def queue_options(self) -> Dict[str, Dict[str, int]]:
        """Attempt budgets and backoff base delays per queue."""
        return {
            "document-processing": {
                "attempts": self.document_queue_attempts,
                "backoff_ms": self.document_queue_backoff_ms,
            },
            "embedding-generation": {
                "attempts": self.embedding_queue_attempts,
                "backoff_ms": self.embedding_queue_backoff_ms,
            },
            "file-deletion": {
                "attempts": self.deletion_queue_attempts,
                "backoff_ms": self.deletion_queue_backoff_ms,
            },
        }

    def validate_runtime(self) -> None:
        """Fail fast when credentials the workers need are missing."""
        from src.core.exceptions import ConfigurationError

        missing = []
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.storage_bucket:
            missing.append("STORAGE_BUCKET")
        if self.duplicate_upload_policy not in ("skip", "reprocess"):
            raise ConfigurationError(
                f"DUPLICATE_UPLOAD_POLICY must be 'skip' or 'reprocess', got '{self.duplicate_upload_policy}'"
            )
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

    def log_configuration(self, logger) -> None:
        """Log current configuration for debugging."""
        if self.debug_mode:
            logger.info("=== SETTINGS CONFIGURATION ===")
            logger.info(f"Environment: {self.environment}")
            logger.info(f"Redis: {self.redis_host}:{self.redis_port}/{self.redis_db}")
            logger.info(f"Qdrant: {self.qdrant_url or f'{self.qdrant_host}:{self.qdrant_port}'}")
            logger.info(f"Storage bucket: {self.storage_bucket} (endpoint: {self.storage_endpoint_url or 'aws'})")
            logger.info(f"Embedding model: {self.embedding_model} ({self.vector_size} dims)")
            logger.info(f"Chat model: {self.chat_model}")
            logger.info(f"Duplicate upload policy: {self.duplicate_upload_policy}")

    # Model config
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create settings instance
settings = Settings()
