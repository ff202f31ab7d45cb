# models.py

import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text
from database import Base


def utcnow():
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ExportJob(Base):
    """Job model for tracking shader-to-video export requests."""

    __tablename__ = "export_jobs"

    id = Column(String, primary_key=True, index=True)
    owner_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=JobStatus.PENDING.value, index=True)
    shader_code = Column(Text, nullable=False)
    settings = Column(JSON, nullable=False)
    output_url = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def format(self) -> str:
        return (self.settings or {}).get("format", "mp4")

    def __repr__(self) -> str:
        return f"<ExportJob {self.id} ({self.status})>"
