"""
Tests for upload validation and the document service.
"""

import pytest

from src.core.exceptions import FileRecordNotFoundError, UploadValidationError
from src.models.enums import DuplicatePolicy, FileStatus, JobPriority, JobState, JobType, QueueName
from src.services.document_service import estimate_processing_time
from src.services.upload_validation import DOCX, PDF, UploadErrorCode, validate_upload

from conftest import SAMPLE_DOCUMENT


# ============================================================================
# Upload validation
# ============================================================================

@pytest.mark.parametrize("data,filename,mime_type,code", [
    (b"text", "", "text/plain", UploadErrorCode.INVALID_FILENAME),
    (b"text", "x" * 300 + ".txt", "text/plain", UploadErrorCode.INVALID_FILENAME),
    (b"MZ", "setup.exe", "application/octet-stream", UploadErrorCode.SUSPICIOUS_FILE),
    (b"", "empty.txt", "text/plain", UploadErrorCode.EMPTY_FILE),
    (b"\x89PNG", "photo.png", "image/png", UploadErrorCode.INVALID_FILE_TYPE),
    (b"a" * (2 * 1024 * 1024 + 1), "big.json", "application/json", UploadErrorCode.FILE_TOO_LARGE),
    (b"plain", "notes.pdf", "text/plain", UploadErrorCode.EXTENSION_MISMATCH),
    (b"not a pdf", "manual.pdf", PDF, UploadErrorCode.SIGNATURE_MISMATCH),
])
def test_upload_rejections(data, filename, mime_type, code):
    with pytest.raises(UploadValidationError) as excinfo:
        validate_upload(data, filename, mime_type)

    assert excinfo.value.code == code


def test_valid_uploads_return_effective_type():
    assert validate_upload(b"%PDF-1.7 ...", "manual.pdf", PDF) == PDF
    assert validate_upload(b"hello", "notes.txt", "text/plain") == "text/plain"
    assert validate_upload(b"# Title", "README.md", "text/markdown") == "text/markdown"


def test_octet_stream_resolves_by_extension():
    assert validate_upload(b"PK\x03\x04rest", "report.docx", "application/octet-stream") == DOCX

    with pytest.raises(UploadValidationError) as excinfo:
        validate_upload(b"not a zip", "report.docx", "application/octet-stream")
    assert excinfo.value.code == UploadErrorCode.SIGNATURE_MISMATCH


def test_estimate_processing_time():
    estimate = estimate_processing_time(2_500_000)

    assert estimate["estimated"]["extraction"] == 6
    assert estimate["estimated"]["total"] == sum(
        value for key, value in estimate["estimated"].items() if key != "total"
    )
    assert estimate["human"].endswith("minutes")


# ============================================================================
# Uploads
# ============================================================================

def test_upload_stores_file_and_queues_extraction(services, upload, s3_client):
    result = upload()

    assert not result.duplicate
    record = result.file
    assert record.status == FileStatus.EXTRACTING
    assert record.ingestion_job_id == result.job_id
    assert record.storage_key.startswith("uploads/agent-1/")
    assert record.storage_key.endswith("-manual.txt")
    assert record.storage_url == f"http://minio:9000/test-bucket/{record.storage_key}"
    assert s3_client.objects[record.storage_key] == SAMPLE_DOCUMENT.encode("utf-8")
    assert result.estimated_processing_time["estimated"]["total"] > 0

    job = services.job_queue.get_job(result.job_id)
    assert job.job_type == JobType.EXTRACT_TEXT
    assert job.priority == JobPriority.HIGH
    assert job.job_key == f"extract-text-{record.file_id}"
    assert job.payload.storage_key == record.storage_key


def test_upload_priority_name(services, upload):
    result = upload(priority="low")

    assert services.job_queue.get_job(result.job_id).priority == JobPriority.LOW


def test_invalid_upload_stores_nothing(services, s3_client):
    with pytest.raises(UploadValidationError):
        services.document_service.upload_file("tenant-1", "agent-1", "virus.exe", b"MZ", "application/octet-stream")

    assert s3_client.objects == {}
    assert services.registry.list_by_agent("agent-1") == []


def test_duplicate_of_completed_file_is_skipped(services, upload, run_jobs, s3_client):
    first = upload()
    run_jobs()
    assert services.registry.require(first.file.file_id).status == FileStatus.COMPLETED

    second = upload(filename="manual-copy.txt")

    assert second.duplicate
    assert second.file.file_id == first.file.file_id
    assert second.job_id is None
    assert len(s3_client.objects) == 1
    assert len(services.registry.list_by_agent("agent-1")) == 1


def test_force_reprocess_ingests_duplicate(services, upload, run_jobs):
    first = upload()
    run_jobs()

    second = upload(force_reprocess=True)

    assert not second.duplicate
    assert second.file.file_id != first.file.file_id
    assert second.file.duplicate_of == first.file.file_id
    assert second.job_id is not None


def test_reprocess_policy_ingests_duplicate(services, upload, run_jobs):
    services.document_service.duplicate_policy = DuplicatePolicy.REPROCESS
    upload()
    run_jobs()

    second = upload()

    assert not second.duplicate


def test_same_content_for_another_agent_is_not_a_duplicate(services, upload, run_jobs):
    upload()
    run_jobs()

    other = upload(agent_id="agent-2")

    assert not other.duplicate


def test_unfinished_file_is_not_a_duplicate(services, upload):
    upload()

    second = upload()

    assert not second.duplicate


def test_list_and_status(services, upload):
    result = upload()

    assert [record.file_id for record in services.document_service.list_files("agent-1")] == [result.file.file_id]
    status = services.document_service.get_file_status(result.file.file_id)
    assert status["status"] == "extracting"
    assert status["job"]["state"] == JobState.WAITING.value
    assert services.document_service.get_job_status(result.job_id).queue_name == QueueName.DOCUMENT_PROCESSING


def test_delete_requires_ownership(services, upload):
    result = upload()

    with pytest.raises(FileRecordNotFoundError):
        services.document_service.delete_file("tenant-1", "agent-2", result.file.file_id)
    with pytest.raises(FileRecordNotFoundError):
        services.document_service.delete_file("tenant-2", "agent-1", result.file.file_id)
