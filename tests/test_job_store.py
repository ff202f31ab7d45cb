# tests/test_job_store.py

from datetime import timedelta

import pytest

from conftest import SHADER
from exceptions import InvalidTransitionError, JobNotFoundError
from job_store import JobStore
from models import ExportJob, JobStatus, utcnow
from schemas import ExportSettings


@pytest.fixture
def store(db):
    return JobStore(db)


def test_create_starts_pending(store):
    job = store.create(SHADER, ExportSettings(quality="4K", format="mov"), owner_id="user-1")

    assert job.status == JobStatus.PENDING.value
    assert job.owner_id == "user-1"
    assert job.settings["quality"] == "4K"
    assert job.format == "mov"
    assert job.attempts == 0
    assert job.output_url is None and job.error is None


def test_get_unknown_job_raises(store):
    with pytest.raises(JobNotFoundError):
        store.get("does-not-exist")


def test_transition_applies_only_from_expected_status(store):
    job = store.create(SHADER, ExportSettings(), owner_id="user-1")

    assert store.transition(job.id, JobStatus.PENDING, JobStatus.PROCESSING) is True
    assert store.transition(job.id, JobStatus.PENDING, JobStatus.PROCESSING) is False

    claimed = store.get(job.id)
    assert claimed.status == JobStatus.PROCESSING.value
    assert claimed.attempts == 1
    assert claimed.started_at is not None


def test_completed_job_is_terminal(store):
    job = store.create(SHADER, ExportSettings(), owner_id="user-1")
    store.transition(job.id, JobStatus.PENDING, JobStatus.PROCESSING)
    store.transition(job.id, JobStatus.PROCESSING, JobStatus.COMPLETED, output_url="http://x/download/a.mp4")

    assert store.transition(job.id, JobStatus.PROCESSING, JobStatus.FAILED, error="late") is False
    done = store.get(job.id)
    assert done.status == JobStatus.COMPLETED.value
    assert done.output_url == "http://x/download/a.mp4"
    assert done.error is None
    assert done.finished_at is not None


def test_pending_job_can_fail_directly(store):
    job = store.create(SHADER, ExportSettings(), owner_id="user-1")

    assert store.fail(job.id, "Queue unavailable", from_status=JobStatus.PENDING) is True
    assert store.get(job.id).error == "Queue unavailable"


def test_release_returns_job_to_pending(store):
    job = store.create(SHADER, ExportSettings(), owner_id="user-1")
    store.transition(job.id, JobStatus.PENDING, JobStatus.PROCESSING)

    assert store.release(job.id) is True
    assert store.transition(job.id, JobStatus.PENDING, JobStatus.PROCESSING) is True
    assert store.get(job.id).attempts == 2


@pytest.mark.parametrize("from_status, to_status", [
    (JobStatus.COMPLETED, JobStatus.PENDING),
    (JobStatus.FAILED, JobStatus.PROCESSING),
    (JobStatus.PENDING, JobStatus.COMPLETED),
])
def test_transitions_outside_the_state_machine_are_rejected(store, from_status, to_status):
    job = store.create(SHADER, ExportSettings(), owner_id="user-1")
    with pytest.raises(InvalidTransitionError):
        store.transition(job.id, from_status, to_status)


def test_transition_cannot_rewrite_payload(store):
    job = store.create(SHADER, ExportSettings(), owner_id="user-1")
    with pytest.raises(InvalidTransitionError):
        store.transition(job.id, JobStatus.PENDING, JobStatus.PROCESSING, shader_code="other")


def test_fail_stale_only_touches_long_running_processing_jobs(store, db):
    stuck, recent, waiting = (store.create(SHADER, ExportSettings(), owner_id="user-1") for _ in range(3))
    store.transition(stuck.id, JobStatus.PENDING, JobStatus.PROCESSING)
    store.transition(recent.id, JobStatus.PENDING, JobStatus.PROCESSING)
    db.query(ExportJob).filter(ExportJob.id == stuck.id).update({"started_at": utcnow() - timedelta(hours=1)})
    db.commit()

    reaped = store.fail_stale(utcnow() - timedelta(minutes=30), "Job timed out")

    assert reaped == 1
    assert store.get(stuck.id).status == JobStatus.FAILED.value
    assert store.get(stuck.id).error == "Job timed out"
    assert store.get(stuck.id).finished_at is not None
    assert store.get(recent.id).status == JobStatus.PROCESSING.value
    assert store.get(waiting.id).status == JobStatus.PENDING.value
