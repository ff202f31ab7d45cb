"""
Work queue client built on Celery with a Redis broker.

The client is constructed explicitly and handed to whoever needs it: the
API enqueues through it, the worker process registers its handler with
consume() and then runs the consumer loop.
"""

import logging
from typing import Callable, List, Optional

from celery import Celery, Task, signals
from celery.exceptions import Reject
from kombu.exceptions import OperationalError

from config import (
    EXPORT_QUEUE_NAME,
    EXPORT_TASK_NAME,
    JOB_HARD_TIME_LIMIT,
    JOB_TIMEOUT_SECONDS,
    QUEUE_BACKOFF_MAX,
    QUEUE_RESULT_RETENTION,
)
from exceptions import QueueUnavailableError, RetriableError
from schemas import EnqueueOptions, QueueMessage


def backoff_delay(attempt: int, base: float, cap: float = QUEUE_BACKOFF_MAX) -> float:
    """Exponential backoff: base * 2^(attempt-1), capped."""
    return min(base * (2 ** (attempt - 1)), cap)


class QueueClient:
    """At-least-once delivery of export jobs, with retry and exponential backoff."""

    def __init__(self, broker_url: str, queue_name: str = EXPORT_QUEUE_NAME,
                 backoff_cap: float = QUEUE_BACKOFF_MAX, result_backend: Optional[str] = None):
        self.broker_url = broker_url
        self.queue_name = queue_name
        self.backoff_cap = backoff_cap
        self._connection = None
        self._task: Optional[Task] = None
        self._on_abandoned = None
        self._periodic: List[str] = []

        self.app = Celery("shader_export", broker=broker_url, backend=result_backend or broker_url)
        self.app.conf.update(
            task_serializer="json",
            accept_content=["json"],
            result_serializer="json",
            enable_utc=True,
            task_default_queue=queue_name,
            task_acks_late=True,  # Acknowledge after the handler returns
            task_reject_on_worker_lost=False,  # A crashed job is failed, not resumed
            worker_prefetch_multiplier=1,  # One job per worker process at a time
            task_soft_time_limit=JOB_TIMEOUT_SECONDS,
            task_time_limit=JOB_HARD_TIME_LIMIT,
            result_expires=QUEUE_RESULT_RETENTION,
            broker_transport_options={"visibility_timeout": JOB_TIMEOUT_SECONDS * 2},
            broker_connection_retry_on_startup=True,
        )
        # Sent by the worker's parent process when a child dies mid-task, and by the
        # child when the task raises. Task.on_failure only covers the latter.
        signals.task_failure.connect(self._on_task_failure)

    # --- Lifecycle ---

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def connect(self, max_retries: int = 1):
        """Open the broker connection. Raises QueueUnavailableError if the broker is down."""
        connection = self.app.connection_for_write()
        try:
            connection.ensure_connection(max_retries=max_retries)
        except (OperationalError, OSError) as e:
            connection.release()
            logging.error(f"❌ Could not connect to queue broker at {self.broker_url}: {e}")
            raise QueueUnavailableError() from e
        self._connection = connection
        logging.info(f"✅ Connected to queue broker at {self.broker_url}")

    def close(self):
        if self._connection is not None:
            self._connection.release()
            self._connection = None
            logging.info("Queue broker connection closed.")

    # --- Producer ---

    def enqueue(self, message: QueueMessage, options: EnqueueOptions = None) -> str:
        """Publish a message; returns the delivery id (the job id)."""
        if not self.is_connected:
            raise QueueUnavailableError()
        options = options or EnqueueOptions()
        message = message.model_copy(update={
            "max_attempts": options.max_attempts,
            "backoff_base": options.backoff_base,
            "attempt": 1,
        })
        try:
            result = self.app.send_task(
                EXPORT_TASK_NAME,
                args=[message.model_dump()],
                task_id=message.job_id,
                queue=self.queue_name,
                connection=self._connection,
                retry=False,
            )
        except (OperationalError, OSError) as e:
            logging.error(f"❌ Failed to enqueue job {message.job_id}: {e}")
            raise QueueUnavailableError() from e
        logging.info(f"📨 Enqueued job {message.job_id} (max attempts: {options.max_attempts})")
        return result.id

    # --- Consumer ---

    def consume(self, handler: Callable[[QueueMessage], dict],
                on_abandoned: Callable[[QueueMessage, str], None] = None,
                on_requeue_failed: Callable[[QueueMessage, str], None] = None) -> Task:
        """
        Register handler as the consumer of export messages.

        A normal return acknowledges the message. RetriableError requeues it
        with backoff until max_attempts is reached, after which it propagates.
        on_abandoned is called for deliveries that end without the handler
        returning, such as a lost worker process. on_requeue_failed is called
        when a retry could not be published, so nothing is queued for the job.
        """
        backoff_cap = self.backoff_cap

        @self.app.task(name=EXPORT_TASK_NAME, bind=True, shared=False)
        def deliver(task, body):
            message = QueueMessage.model_validate(body)
            message = message.model_copy(update={"attempt": task.request.retries + 1})
            try:
                return handler(message)
            except RetriableError as e:
                if message.is_last_attempt:
                    raise
                delay = backoff_delay(message.attempt, message.backoff_base, backoff_cap)
                logging.warning(
                    f"🔁 Job {message.job_id} attempt {message.attempt}/{message.max_attempts} "
                    f"failed ({e}); retrying in {delay:.1f}s"
                )
                try:
                    raise task.retry(exc=e, countdown=delay, max_retries=message.max_attempts - 1)
                except Reject as rejected:
                    # Celery wraps a failed retry publish in Reject(requeue=False).
                    reason = rejected.reason
                    logging.error(f"❌ Could not requeue job {message.job_id}: {reason}")
                    if on_requeue_failed is not None:
                        on_requeue_failed(message, f"{e} (requeue failed: {reason})")
                    raise

        self._task = deliver
        self._on_abandoned = on_abandoned
        return deliver

    def _on_task_failure(self, sender=None, task_id=None, exception=None, args=None, **kwargs):
        if self._on_abandoned is None or sender is None or not args:
            return
        if sender.name != EXPORT_TASK_NAME or sender.app is not self.app:
            return
        message = QueueMessage.model_validate(args[0])
        self._on_abandoned(message, f"{type(exception).__name__}: {exception}")

    # --- Periodic work ---

    def every(self, seconds: float, name: str, func: Callable[[], object]) -> Task:
        """Run func every `seconds` from the worker's embedded beat scheduler."""
        @self.app.task(name=name, shared=False)
        def periodic():
            return func()

        self.app.conf.beat_schedule = dict(
            self.app.conf.beat_schedule or {},
            **{name: {"task": name, "schedule": seconds, "options": {"queue": self.queue_name}}},
        )
        self._periodic.append(name)
        return periodic

    def run_worker(self, concurrency: int = 1, loglevel: str = "INFO"):
        """Run the long-lived consumer loop. Blocks until the worker shuts down."""
        if self._task is None:
            raise RuntimeError("consume() must register a handler before the worker starts.")
        argv = [
            "worker",
            f"--loglevel={loglevel}",
            f"--concurrency={concurrency}",
            "-Q", self.queue_name,
        ]
        if self._periodic:
            argv.append("--beat")
        self.app.worker_main(argv)
