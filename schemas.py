"""
Pydantic models for data validation in the Shader Export Service.
"""

from pydantic import BaseModel, Field
from typing import List, Literal, Optional

from config import QUEUE_BACKOFF_BASE, QUEUE_MAX_ATTEMPTS

AspectRatio = Literal["16:9", "9:16", "1:1"]
Quality = Literal["HD", "FHD", "4K"]
VideoFormat = Literal["mp4", "mov"]


class ExportSettings(BaseModel):
    """Rendering settings shared by the job row and its queue message."""
    aspect_ratio: AspectRatio = "16:9"
    quality: Quality = "HD"
    duration: float = Field(5, gt=0, le=60)
    fps: int = Field(30, ge=1, le=60)
    format: VideoFormat = "mp4"


class ExportRequest(BaseModel):
    """Request model for exporting a single shader to video."""
    shader_code: str = Field(..., min_length=1)
    settings: ExportSettings = Field(default_factory=ExportSettings)


class BatchArtwork(BaseModel):
    shader_code: str = Field(..., min_length=1)
    aspect_ratio: AspectRatio = "16:9"
    duration: float = Field(10, gt=0, le=60)


class BatchExportRequest(BaseModel):
    """Request model for exporting several artworks with shared settings."""
    artworks: List[BatchArtwork] = Field(..., min_length=1)
    quality: Quality = "HD"
    fps: int = Field(30, ge=1, le=60)
    format: VideoFormat = "mp4"


class JobResponse(BaseModel):
    """Response when submitting a background export job."""
    job_id: str
    status: str  # "pending" | "failed"


class BatchJobResponse(BaseModel):
    jobs: List[JobResponse]
    count: int


class StatusResponse(BaseModel):
    """Response for checking background job status."""
    job_id: str
    status: str  # "pending" | "processing" | "completed" | "failed"
    video_url: Optional[str] = None
    error: Optional[str] = None
    format: str = "mp4"


class EnqueueOptions(BaseModel):
    max_attempts: int = Field(QUEUE_MAX_ATTEMPTS, ge=1)
    backoff_base: float = Field(QUEUE_BACKOFF_BASE, ge=0)


class QueueMessage(BaseModel):
    """Body of a work-queue message. Settings are duplicated from the job row."""
    job_id: str
    shader_code: str
    settings: ExportSettings
    max_attempts: int = QUEUE_MAX_ATTEMPTS
    backoff_base: float = QUEUE_BACKOFF_BASE
    attempt: int = 1  # 1-based delivery number, set by the consumer

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts
