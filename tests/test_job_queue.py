"""
Tests for the Redis-backed job queue.
"""

import time
from unittest.mock import MagicMock

import pytest

from src.core.exceptions import InvalidStateError, JobNotFoundError
from src.models.enums import JobPriority, JobState, JobType, QueueName
from src.models.job_models import DeleteFilePayload, ExtractTextPayload, JobOptions


def delete_payload(file_id: str = "file-1") -> DeleteFilePayload:
    return DeleteFilePayload(file_id=file_id, tenant_id="tenant-1", agent_id="agent-1")


def test_enqueue_routes_job_type_to_its_queue(job_queue):
    """Test that each job type lands on its fixed queue."""
    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload())

    assert handle.queue_name == QueueName.FILE_DELETION
    assert handle.state == JobState.WAITING
    assert not handle.deduplicated

    record = job_queue.get_job(handle.job_id)
    assert record.payload.file_id == "file-1"
    assert record.max_attempts == 3  # deletion queue budget
    assert job_queue.get_queue_stats(QueueName.FILE_DELETION).waiting == 1


def test_enqueue_accepts_dict_payload(job_queue):
    handle = job_queue.enqueue(JobType.DELETE_FILE, {
        "type": "delete-file",
        "file_id": "file-2",
        "tenant_id": "tenant-1",
        "agent_id": "agent-1",
    })

    assert isinstance(job_queue.get_job(handle.job_id).payload, DeleteFilePayload)


def test_enqueue_rejects_mismatched_payload(job_queue):
    with pytest.raises(ValueError):
        job_queue.enqueue(JobType.EXTRACT_TEXT, delete_payload())


def test_reserve_orders_by_priority_then_fifo(job_queue):
    """Test that lower priority values run first and equal priorities keep arrival order."""
    low = job_queue.enqueue(JobType.DELETE_FILE, delete_payload("low"), JobOptions(priority=JobPriority.LOW))
    first_high = job_queue.enqueue(JobType.DELETE_FILE, delete_payload("high-1"), JobOptions(priority=JobPriority.HIGH))
    urgent = job_queue.enqueue(JobType.DELETE_FILE, delete_payload("urgent"), JobOptions(priority=JobPriority.URGENT))
    second_high = job_queue.enqueue(JobType.DELETE_FILE, delete_payload("high-2"), JobOptions(priority=JobPriority.HIGH))

    order = []
    while True:
        record = job_queue.reserve(QueueName.FILE_DELETION)
        if record is None:
            break
        order.append(record.job_id)
        job_queue.complete(record.job_id)

    assert order == [urgent.job_id, first_high.job_id, second_high.job_id, low.job_id]


def test_delayed_job_is_not_reserved_early(job_queue):
    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(), JobOptions(delay_ms=60000))

    assert handle.state == JobState.DELAYED
    assert job_queue.reserve(QueueName.FILE_DELETION) is None
    assert job_queue.get_queue_stats(QueueName.FILE_DELETION).delayed == 1


def test_job_key_collapses_open_jobs(job_queue):
    """Test that a second enqueue with the same job key returns the open job."""
    first = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(), JobOptions(job_key="file-deletion-file-1"))
    second = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(), JobOptions(job_key="file-deletion-file-1"))

    assert second.job_id == first.job_id
    assert second.deduplicated
    assert job_queue.get_queue_stats(QueueName.FILE_DELETION).waiting == 1


def test_job_key_is_reusable_after_completion(job_queue):
    first = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(), JobOptions(job_key="file-deletion-file-1"))
    record = job_queue.reserve(QueueName.FILE_DELETION)
    job_queue.complete(record.job_id, {"ok": True})

    second = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(), JobOptions(job_key="file-deletion-file-1"))

    assert second.job_id != first.job_id
    assert not second.deduplicated


def test_concurrent_enqueues_with_same_job_key_collapse(job_queue, monkeypatch):
    """Test that an enqueue racing another with the same job key is deduplicated to the winner."""
    original_create = job_queue.tracker.create_job
    racing = []

    def create_then_race(record):
        original_create(record)
        if not racing:
            racing.append(None)
            racing[0] = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(),
                                          JobOptions(job_key="file-deletion-file-1"))

    monkeypatch.setattr(job_queue.tracker, "create_job", create_then_race)

    outer = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(), JobOptions(job_key="file-deletion-file-1"))

    winner = racing[0]
    assert not winner.deduplicated
    assert outer.deduplicated
    assert outer.job_id == winner.job_id
    assert [job.job_id for job in job_queue.tracker.get_all_jobs()] == [winner.job_id]
    assert job_queue.get_queue_stats(QueueName.FILE_DELETION).waiting == 1


def test_job_key_of_a_cleaned_up_job_is_taken_over(job_queue):
    tracker = job_queue.tracker
    tracker.redis.hset(tracker.job_keys_key, "file-deletion-file-1", "gone-job")

    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(), JobOptions(job_key="file-deletion-file-1"))

    assert not handle.deduplicated
    assert tracker.redis.hget(tracker.job_keys_key, "file-deletion-file-1") == handle.job_id


def test_complete_stores_result(job_queue):
    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload())
    job_queue.reserve(QueueName.FILE_DELETION)

    job_queue.complete(handle.job_id, {"deleted": True})

    status = job_queue.get_status(handle.job_id)
    assert status.state == JobState.COMPLETED
    assert status.progress == 100.0
    assert status.result == {"deleted": True}
    assert status.attempts == 1


def test_complete_requires_active_job(job_queue):
    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload())

    with pytest.raises(InvalidStateError):
        job_queue.complete(handle.job_id)


def test_retryable_failure_backs_off_exponentially(job_queue):
    """Test that each retry waits base * 2^(attempts - 1)."""
    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(),
                               JobOptions(max_attempts=4, backoff_delay_ms=1000))

    record = job_queue.reserve(QueueName.FILE_DELETION)
    assert job_queue.backoff_delay_ms(record) == 1000
    before = time.time()
    failed = job_queue.fail(handle.job_id, "storage timeout", retryable=True)

    assert failed.state == JobState.DELAYED
    assert failed.failure_reason == "storage timeout"
    assert failed.available_at >= before + 1.0

    # Second attempt doubles the delay
    failed.attempts = 2
    assert job_queue.backoff_delay_ms(failed) == 2000
    failed.attempts = 3
    assert job_queue.backoff_delay_ms(failed) == 4000


def test_retry_runs_again_once_due(job_queue):
    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(), JobOptions(backoff_delay_ms=0))
    job_queue.reserve(QueueName.FILE_DELETION)
    job_queue.fail(handle.job_id, "flaky", retryable=True)

    record = job_queue.reserve(QueueName.FILE_DELETION)

    assert record is not None
    assert record.job_id == handle.job_id
    assert record.attempts == 2
    assert [attempt.outcome for attempt in record.attempt_history] == ["retry", None]


def test_retryable_failure_exhausts_attempts(job_queue):
    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(),
                               JobOptions(max_attempts=2, backoff_delay_ms=0))

    job_queue.reserve(QueueName.FILE_DELETION)
    job_queue.fail(handle.job_id, "flaky", retryable=True)
    job_queue.reserve(QueueName.FILE_DELETION)
    final = job_queue.fail(handle.job_id, "still flaky", retryable=True)

    assert final.state == JobState.FAILED
    assert final.attempts == 2
    assert job_queue.get_queue_stats(QueueName.FILE_DELETION).failed == 1


def test_fatal_failure_spends_remaining_attempts(job_queue):
    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(), JobOptions(max_attempts=5))
    job_queue.reserve(QueueName.FILE_DELETION)

    final = job_queue.fail(handle.job_id, "corrupt document", retryable=False, result={"steps": {}})

    assert final.state == JobState.FAILED
    assert final.max_attempts == final.attempts == 1
    assert final.result == {"steps": {}}


def test_cancel_pending_job(job_queue):
    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(), JobOptions(job_key="file-deletion-file-1"))

    assert job_queue.cancel(handle.job_id) is True

    with pytest.raises(JobNotFoundError):
        job_queue.get_job(handle.job_id)
    assert job_queue.reserve(QueueName.FILE_DELETION) is None

    # The job key was released with the job
    again = job_queue.enqueue(JobType.DELETE_FILE, delete_payload(), JobOptions(job_key="file-deletion-file-1"))
    assert not again.deduplicated


def test_cancel_active_job_is_refused(job_queue):
    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload())
    job_queue.reserve(QueueName.FILE_DELETION)

    assert job_queue.cancel(handle.job_id) is False
    assert job_queue.get_job(handle.job_id).state == JobState.ACTIVE


def test_update_progress_is_clamped(job_queue):
    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload())

    job_queue.update_progress(handle.job_id, 150, "almost")

    status = job_queue.get_status(handle.job_id)
    assert status.progress == 100.0
    assert status.progress_message == "almost"


def test_unknown_job_raises(job_queue):
    with pytest.raises(JobNotFoundError):
        job_queue.get_status("missing")
    with pytest.raises(JobNotFoundError):
        job_queue.update_progress("missing", 10)


def test_clean_removes_only_old_finished_jobs(job_queue):
    old = job_queue.enqueue(JobType.DELETE_FILE, delete_payload("old"))
    job_queue.reserve(QueueName.FILE_DELETION)
    job_queue.complete(old.job_id)

    record = job_queue.get_job(old.job_id)
    record.finished_at = time.time() - 10 * 24 * 3600
    job_queue.tracker.save_job(record)

    recent = job_queue.enqueue(JobType.DELETE_FILE, delete_payload("recent"))
    job_queue.reserve(QueueName.FILE_DELETION)
    job_queue.complete(recent.job_id)
    pending = job_queue.enqueue(JobType.DELETE_FILE, delete_payload("pending"))

    deleted = job_queue.clean(QueueName.FILE_DELETION, older_than_days=7)

    assert deleted == 1
    with pytest.raises(JobNotFoundError):
        job_queue.get_job(old.job_id)
    assert job_queue.get_job(recent.job_id).state == JobState.COMPLETED
    assert job_queue.get_job(pending.job_id).state == JobState.WAITING
    assert job_queue.get_queue_stats(QueueName.FILE_DELETION).completed == 1


def test_notifier_is_told_about_new_work(job_queue):
    notifier = MagicMock()
    job_queue.set_notifier(notifier)

    job_queue.enqueue(JobType.DELETE_FILE, delete_payload())
    job_queue.enqueue(JobType.EXTRACT_TEXT, ExtractTextPayload(
        file_id="file-1", tenant_id="tenant-1", agent_id="agent-1",
        storage_key="uploads/agent-1/1-a.txt", mime_type="text/plain",
    ), JobOptions(delay_ms=500))

    notifier.assert_any_call(QueueName.FILE_DELETION, 0)
    notifier.assert_any_call(QueueName.DOCUMENT_PROCESSING, 500)


def test_notifier_failure_does_not_lose_the_job(job_queue):
    job_queue.set_notifier(MagicMock(side_effect=ConnectionError("broker down")))

    handle = job_queue.enqueue(JobType.DELETE_FILE, delete_payload())

    assert job_queue.get_job(handle.job_id).state == JobState.WAITING
