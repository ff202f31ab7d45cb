# tasks.py

import logging

from config import (
    LOG_LEVEL,
    REAPER_INTERVAL_SECONDS,
    REAPER_TASK_NAME,
    REDIS_URL,
    SCRATCH_ROOT,
    WORKER_CONCURRENCY,
)
from database import SessionLocal
from queue_client import QueueClient
from worker import ExportWorker

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")


def create_consumer(queue_client: QueueClient, session_factory=SessionLocal, **worker_options) -> ExportWorker:
    """Register an ExportWorker as the queue's handler, plus its stale-job sweep, and return it."""
    worker_options.setdefault("scratch_root", SCRATCH_ROOT)
    export_worker = ExportWorker(session_factory, **worker_options)
    queue_client.consume(export_worker, on_abandoned=export_worker.abandon,
                         on_requeue_failed=export_worker.requeue_failed)
    queue_client.every(REAPER_INTERVAL_SECONDS, REAPER_TASK_NAME, export_worker.reap_stale)
    return export_worker


def main():
    queue_client = QueueClient(REDIS_URL)
    queue_client.connect(max_retries=5)
    try:
        create_consumer(queue_client)
        logging.info(f"👷 Queue Worker Started! (concurrency: {WORKER_CONCURRENCY})")
        queue_client.run_worker(concurrency=WORKER_CONCURRENCY, loglevel=LOG_LEVEL)
    finally:
        queue_client.close()


if __name__ == "__main__":
    main()
