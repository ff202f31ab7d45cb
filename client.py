"""
Polling client for the export API.

Submits a job, polls /status on a fixed interval until the job is terminal,
and downloads the finished file. The service reports no real percentage, so
progress is an estimate that only ever grows and stays below 100 until the
job completes.
"""

import time
import logging
from typing import Callable, Optional

import requests

POLL_INTERVAL_SECONDS = 3
PROGRESS_STEP = 5
PROGRESS_CAP = 85
STATUS_LABELS = {
    "pending": "queued",
    "processing": "rendering",
    "completed": "completed",
    "failed": "failed",
}


class ExportFailed(Exception):
    pass


class ExportClient:
    def __init__(self, base_url: str, user_id: str, session: requests.Session = None, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.session = session or requests.Session()
        self.timeout = timeout

    def submit(self, shader_code: str, **settings) -> str:
        response = self.session.post(
            f"{self.base_url}/exports",
            json={"shader_code": shader_code, "settings": settings},
            headers={"X-User-Id": self.user_id},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()["job_id"]

    def status(self, job_id: str) -> dict:
        response = self.session.get(f"{self.base_url}/status/{job_id}", timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def wait(self, job_id: str, interval: float = POLL_INTERVAL_SECONDS, timeout: Optional[float] = None,
             on_progress: Callable[[int, str], None] = None, sleep=time.sleep) -> dict:
        """Poll until completed or failed. Raises ExportFailed for a failed job."""
        progress = 0
        started = time.monotonic()
        while True:
            job = self.status(job_id)
            state = job["status"]
            if state == "completed":
                if on_progress:
                    on_progress(100, STATUS_LABELS[state])
                return job
            if state == "failed":
                raise ExportFailed(job.get("error") or "Export failed")

            if state == "processing":
                progress = min(progress + PROGRESS_STEP, PROGRESS_CAP)
            if on_progress:
                on_progress(progress, STATUS_LABELS.get(state, state))

            if timeout is not None and time.monotonic() - started > timeout:
                raise TimeoutError(f"Job {job_id} did not finish within {timeout}s")
            sleep(interval)

    def download(self, video_url: str, destination: str) -> str:
        with self.session.get(video_url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            with open(destination, "wb") as f:
                for chunk in response.iter_content(chunk_size=1024 * 1024):
                    f.write(chunk)
        logging.info(f"Downloaded {video_url} to {destination}")
        return destination
