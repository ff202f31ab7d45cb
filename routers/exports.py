"""
Router for export endpoints.
Handles job submission, status polling and one-time video download.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from database import get_db
from exceptions import ExportError, QueueUnavailableError
from job_store import JobStore
from models import ExportJob, JobStatus
from queue_client import QueueClient
from schemas import (
    BatchExportRequest,
    BatchJobResponse,
    ExportRequest,
    ExportSettings,
    JobResponse,
    QueueMessage,
    StatusResponse,
)
from storage import DeliveryService


# Create the router
router = APIRouter(tags=["exports"])


def get_queue_client(request: Request) -> QueueClient:
    return request.app.state.queue_client


def get_delivery(request: Request) -> DeliveryService:
    return request.app.state.delivery


def get_owner_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Owner identity is established upstream; the pipeline only records it."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


def _enqueue(store: JobStore, queue: QueueClient, job: ExportJob, settings: ExportSettings):
    """Send a freshly created job to the queue, failing its row if the queue is down."""
    message = QueueMessage(job_id=job.id, shader_code=job.shader_code, settings=settings)
    try:
        queue.enqueue(message)
    except QueueUnavailableError as e:
        store.fail(job.id, e.message, from_status=JobStatus.PENDING)
        logging.error(f"Failed to submit job {job.id} to the queue: {e}")
        raise
    logging.info(f"✨ Job {job.id} submitted by {job.owner_id}")


@router.post("/exports", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
def create_export(request: ExportRequest, db: Session = Depends(get_db),
                  queue: QueueClient = Depends(get_queue_client), owner_id: str = Depends(get_owner_id)):
    """
    Creates a job record in the database, sends the job to the queue,
    and immediately returns a job ID.
    """
    store = JobStore(db)
    job = store.create(request.shader_code, request.settings, owner_id)
    try:
        _enqueue(store, queue, job, request.settings)
    except QueueUnavailableError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {"job_id": job.id, "status": JobStatus.PENDING.value}


@router.post("/exports/batch", response_model=BatchJobResponse, status_code=status.HTTP_202_ACCEPTED)
def create_batch_export(request: BatchExportRequest, db: Session = Depends(get_db),
                        queue: QueueClient = Depends(get_queue_client), owner_id: str = Depends(get_owner_id)):
    """
    Exports several artworks with shared quality/fps/format settings.

    If the queue goes down partway, the 503 body still lists every job
    created so far: the ones already queued keep running and can be polled.
    """
    store = JobStore(db)
    jobs = []
    for artwork in request.artworks:
        settings = ExportSettings(
            aspect_ratio=artwork.aspect_ratio,
            quality=request.quality,
            duration=artwork.duration,
            fps=request.fps,
            format=request.format,
        )
        job = store.create(artwork.shader_code, settings, owner_id)
        try:
            _enqueue(store, queue, job, settings)
        except QueueUnavailableError as e:
            # Later artworks would fail the same way.
            jobs.append({"job_id": job.id, "status": JobStatus.FAILED.value})
            raise HTTPException(status_code=e.status_code, detail={"message": e.message, "jobs": jobs})
        jobs.append({"job_id": job.id, "status": JobStatus.PENDING.value})
    return {"jobs": jobs, "count": len(jobs)}


@router.get("/status/{job_id}", response_model=StatusResponse)
def get_export_status(job_id: str, db: Session = Depends(get_db)):
    """
    Checks the status of a job by querying the database.
    """
    try:
        job = JobStore(db).get(job_id)
    except ExportError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return {
        "job_id": job.id,
        "status": job.status,
        "video_url": job.output_url if job.status == JobStatus.COMPLETED.value else None,
        "error": job.error if job.status == JobStatus.FAILED.value else None,
        "format": job.format,
    }


@router.get("/download/{filename}")
def download_video(filename: str, delivery: DeliveryService = Depends(get_delivery)):
    """
    Serves a finished video once. The file is deleted from disk after the
    response body has been fully sent; an interrupted transfer keeps it.
    """
    try:
        path = delivery.resolve(filename)
    except ExportError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return FileResponse(
        path,
        media_type=delivery.content_type(filename),
        filename=filename,
        background=BackgroundTask(delivery.discard, filename),
    )
