"""
Durable record of export jobs.

Every status change goes through transition(), a conditional UPDATE that
only applies when the row is still in the expected state. A False return
means another worker already owns or finished the job.
"""

import uuid
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from exceptions import InvalidTransitionError, JobNotFoundError
from models import ExportJob, JobStatus, utcnow
from schemas import ExportSettings

ALLOWED_TRANSITIONS = {
    (JobStatus.PENDING, JobStatus.PROCESSING),
    (JobStatus.PENDING, JobStatus.FAILED),  # enqueue failed
    (JobStatus.PROCESSING, JobStatus.COMPLETED),
    (JobStatus.PROCESSING, JobStatus.FAILED),
    (JobStatus.PROCESSING, JobStatus.PENDING),  # released for a queue retry
}

MUTABLE_FIELDS = {"output_url", "error"}


class JobStore:
    """Job Store backed by a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, shader_code: str, settings: ExportSettings, owner_id: str) -> ExportJob:
        job = ExportJob(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            status=JobStatus.PENDING.value,
            shader_code=shader_code,
            settings=settings.model_dump(),
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def get(self, job_id: str) -> ExportJob:
        job = self.db.query(ExportJob).filter(ExportJob.id == job_id).first()
        if not job:
            raise JobNotFoundError(f"Job {job_id} not found.")
        return job

    def transition(self, job_id: str, from_status: JobStatus, to_status: JobStatus, **fields) -> bool:
        from_status, to_status = JobStatus(from_status), JobStatus(to_status)
        if (from_status, to_status) not in ALLOWED_TRANSITIONS:
            raise InvalidTransitionError(f"{from_status.value} -> {to_status.value} is not a valid transition.")
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise InvalidTransitionError(f"Fields cannot be set by a transition: {', '.join(sorted(unknown))}")

        now = utcnow()
        values = dict(fields, status=to_status.value, updated_at=now)
        if to_status == JobStatus.PROCESSING:
            values["started_at"] = now
            values["attempts"] = ExportJob.attempts + 1
        if to_status.is_terminal:
            values["finished_at"] = now

        updated = (
            self.db.query(ExportJob)
            .filter(ExportJob.id == job_id, ExportJob.status == from_status.value)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        if not updated:
            logging.info(f"Job {job_id}: {from_status.value} -> {to_status.value} lost (status changed elsewhere)")
            return False
        self.db.expire_all()
        return True

    def release(self, job_id: str) -> bool:
        return self.transition(job_id, JobStatus.PROCESSING, JobStatus.PENDING)

    def fail(self, job_id: str, error: str, from_status: JobStatus = JobStatus.PROCESSING) -> bool:
        return self.transition(job_id, from_status, JobStatus.FAILED, error=error)


    def fail_stale(self, started_before: datetime, error: str) -> int:
        """Fail every processing job claimed before `started_before`. Returns how many."""
        now = utcnow()
        failed = (
            self.db.query(ExportJob)
            .filter(ExportJob.status == JobStatus.PROCESSING.value, ExportJob.started_at < started_before)
            .update(
                {"status": JobStatus.FAILED.value, "error": error, "updated_at": now, "finished_at": now},
                synchronize_session=False,
            )
        )
        self.db.commit()
        if failed:
            self.db.expire_all()
        return failed
