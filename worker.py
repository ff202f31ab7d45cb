"""
Job execution for export messages pulled off the work queue.

ExportWorker is the queue handler. It claims the job with a
pending -> processing compare-and-swap, so a redelivered message that
loses the race does no work at all.
"""

import os
import time
import logging
from datetime import timedelta
from typing import Optional

from config import JOB_TIMEOUT_SECONDS, STALE_JOB_SECONDS
from exceptions import ExportError, RetriableError
from job_store import JobStore
from models import JobStatus, utcnow
from schemas import QueueMessage
from services import ScratchDirectory, ShaderRenderer, VideoEncoder
from storage import DeliveryService


class ExportWorker:
    """Runs one export job end to end: claim, render, encode, publish, record."""

    def __init__(self, session_factory, renderer: ShaderRenderer = None, encoder: VideoEncoder = None,
                 delivery: DeliveryService = None, scratch_root: Optional[str] = None,
                 job_timeout: Optional[float] = JOB_TIMEOUT_SECONDS):
        self.session_factory = session_factory
        self.renderer = renderer or ShaderRenderer()
        self.encoder = encoder or VideoEncoder()
        self.delivery = delivery or DeliveryService()
        self.scratch_root = scratch_root
        self.job_timeout = job_timeout

    def __call__(self, message: QueueMessage) -> dict:
        job_id = message.job_id
        db = self.session_factory()
        try:
            store = JobStore(db)
            if not store.transition(job_id, JobStatus.PENDING, JobStatus.PROCESSING):
                logging.info(f"[Job {job_id}] Already claimed or finished, discarding delivery.")
                return {"job_id": job_id, "status": "discarded"}

            logging.info(f"📝 Worker claimed job {job_id} (attempt {message.attempt}/{message.max_attempts})")
            try:
                video_url = self._execute(message)
            except RetriableError as e:
                if message.is_last_attempt:
                    logging.error(f"❌ Worker failed job {job_id} after {message.attempt} attempts. Error: {e}")
                    store.fail(job_id, str(e))
                    return {"job_id": job_id, "status": JobStatus.FAILED.value, "error": str(e)}
                store.release(job_id)
                raise
            except ExportError as e:
                logging.error(f"❌ Worker failed job {job_id}. Error: {e}")
                store.fail(job_id, str(e))
                return {"job_id": job_id, "status": JobStatus.FAILED.value, "error": str(e)}
            except Exception as e:
                logging.exception(f"❌ Worker failed job {job_id} with an unexpected error")
                store.fail(job_id, f"Unexpected error: {e}")
                return {"job_id": job_id, "status": JobStatus.FAILED.value, "error": str(e)}

            store.transition(job_id, JobStatus.PROCESSING, JobStatus.COMPLETED, output_url=video_url)
            logging.info(f"✅ Worker finished job {job_id}. Video at: {video_url}")
            return {"job_id": job_id, "status": JobStatus.COMPLETED.value, "video_url": video_url}
        finally:
            db.close()

    def _execute(self, message: QueueMessage) -> str:
        settings = message.settings
        deadline = time.monotonic() + self.job_timeout if self.job_timeout else None

        with ScratchDirectory(message.job_id, root=self.scratch_root) as scratch:
            self.renderer.render(message.job_id, message.shader_code, settings, scratch.frames_dir,
                                 deadline=deadline)
            output_path = os.path.join(scratch.path, f"output.{settings.format}")
            self.encoder.encode(message.job_id, scratch.frames_dir, settings.fps, settings.quality, output_path)
            filename = self.delivery.publish(output_path, message.job_id, settings.format)

        return self.delivery.download_url(filename)

    def abandon(self, message: QueueMessage, reason: str):
        """Fail a job whose delivery ended without the handler returning."""
        db = self.session_factory()
        try:
            if JobStore(db).fail(message.job_id, f"Worker lost: {reason}"):
                logging.error(f"❌ Job {message.job_id} abandoned: {reason}")
        finally:
            db.close()

    def requeue_failed(self, message: QueueMessage, reason: str):
        """Fail a released job whose retry never made it back onto the queue."""
        db = self.session_factory()
        try:
            if JobStore(db).fail(message.job_id, reason, from_status=JobStatus.PENDING):
                logging.error(f"❌ Job {message.job_id} failed, retry was not queued: {reason}")
        finally:
            db.close()

    def reap_stale(self, max_age: float = STALE_JOB_SECONDS) -> int:
        """
        Fail processing jobs older than max_age. A worker killed at the hard
        time limit never reports back, so this is the only way out of
        processing for those jobs.
        """
        db = self.session_factory()
        try:
            reaped = JobStore(db).fail_stale(utcnow() - timedelta(seconds=max_age), "Job timed out")
        finally:
            db.close()
        if reaped:
            logging.warning(f"⏱️ Failed {reaped} job(s) stuck in processing for over {max_age:.0f}s")
        return reaped
