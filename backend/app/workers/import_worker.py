"""Consume import messages and run the ingestion pipeline for each job."""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable, Sequence
from typing import Any

from kombu import Consumer
from kombu.exceptions import KombuError
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.db.models.upload_job import TERMINAL_STATUSES, JobStatus
from app.ingestion.importers import EntityImporter, get_importer
from app.ingestion.pipeline import ingest
from app.ingestion.types import IngestionResult
from app.services import job_store
from app.services.progress_tracker import publish_progress
from app.workers.broker import QUEUE_NAMES, BrokerConnection, work_queue
from app.workers.publisher import JobMessage, JobPublisher, retry_count_from

logger = logging.getLogger(__name__)

ProgressPublisher = Callable[..., None]


def attempts_made(message: Any) -> int:
    """Attempts already used up before this delivery.

    A broker redelivery means the previous attempt ended without settling
    the message, so it counts on top of the ``x-retry-count`` header.
    """
    retry_count = retry_count_from(message.headers)
    delivery_info = getattr(message, "delivery_info", None) or {}
    if delivery_info.get("redelivered"):
        retry_count += 1
    return retry_count


def _default_session_factory() -> Session:
    from app.db.session import get_fresh_session

    return get_fresh_session()


class ImportWorker:
    """Single-threaded consumer over one or more import queues.

    Each message is processed to completion before the next is delivered.
    Pipeline failures are retried by republishing the body with an
    incremented ``x-retry-count`` until ``max_retries`` attempts were made.
    """

    def __init__(
        self,
        broker: BrokerConnection,
        *,
        queue_names: Sequence[str] = QUEUE_NAMES,
        publisher: JobPublisher | None = None,
        session_factory: Callable[[], Session] | None = None,
        progress_publisher: ProgressPublisher = publish_progress,
        max_retries: int | None = None,
        batch_size: int | None = None,
    ):
        settings = get_settings()
        self.broker = broker
        self.queue_names = tuple(queue_names)
        self.publisher = publisher or JobPublisher(broker)
        self.session_factory = session_factory or _default_session_factory
        self.progress_publisher = progress_publisher
        self.max_retries = max_retries or settings.import_max_retries
        self.batch_size = batch_size or settings.import_batch_size
        self._stopping = threading.Event()

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def _registration_for(self, queue_name: str) -> Callable[[Any], Consumer]:
        def register(channel: Any) -> Consumer:
            consumer = Consumer(
                channel,
                queues=[work_queue(queue_name)],
                on_message=self.on_message,
                no_ack=False,
            )
            consumer.qos(prefetch_count=self.broker.prefetch_count)
            consumer.consume()
            logger.info(f"Listening on queue: {queue_name}")
            return consumer

        return register

    def start(self) -> None:
        for queue_name in self.queue_names:
            self.broker.register_consumer(self._registration_for(queue_name))
        logger.info(f"Import worker started on {len(self.queue_names)} queue(s)")

    def run(self) -> None:
        """Consume until ``stop()`` is called, reconnecting on connection loss."""
        self.start()
        while not self._stopping.is_set():
            try:
                self.broker.drain_events(timeout=1)
            except socket.timeout:
                self.broker.heartbeat_check()
            except self.broker.connection_errors as e:
                if self._stopping.is_set():
                    break
                logger.warning(f"Lost broker connection: {e}")
                if not self.broker.reconnect():
                    break
        self.broker.shutdown()
        logger.info("Import worker stopped")

    def stop(self) -> None:
        self._stopping.set()

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    def on_message(self, message: Any) -> None:
        """Entry point for kombu; never lets a message stall the consumer."""
        try:
            self.handle_message(message)
        except self.broker.connection_errors:
            raise
        except Exception:
            logger.exception("Unhandled error in import message handler")
            if not message.acknowledged:
                message.reject(requeue=False)

    def handle_message(self, message: Any) -> None:
        try:
            job = JobMessage.from_body(message.body)
        except ValidationError as e:
            logger.error(f"Malformed import message, dead-lettering: {e}")
            message.reject(requeue=False)
            return

        retry_count = attempts_made(message)
        logger.info(
            f"Processing job {job.job_id} ({job.entity_type}), attempt {retry_count + 1}"
        )

        importer = get_importer(job.entity_type)
        db = self.session_factory()
        try:
            if importer is None:
                logger.error(f"No importer registered for entity type: {job.entity_type}")
                job_store.mark_failed(
                    db, job.job_id, f"No importer registered for {job.entity_type}"
                )
                message.reject(requeue=False)
                return

            try:
                if not self._claim(db, job, message, retry_count):
                    return
                result = self._run_import(db, job, importer)
                job_store.mark_completed(
                    db, job.job_id, result.success_count, result.failure_count, result.errors
                )
            except Exception as e:
                db.rollback()
                self._retry_or_fail(db, message, job, retry_count, e)
                return

            self.progress_publisher(
                job.job_id,
                result.success_count + result.failure_count,
                result.total_rows,
                status=JobStatus.COMPLETED.value,
                message=(
                    f"Completed: {result.success_count} succeeded, "
                    f"{result.failure_count} failed"
                ),
            )
            logger.info(
                f"Job {job.job_id} completed: {result.success_count} ok, "
                f"{result.failure_count} failed"
            )
            message.ack()
        finally:
            db.close()

    def _claim(self, db: Session, job: JobMessage, message: Any, retry_count: int) -> bool:
        """Move the job to RUNNING; settles the message and returns False to skip it."""
        if job_store.mark_running(db, job.job_id):
            return True
        record = job_store.get_job(db, job.job_id)
        if record is None:
            logger.error(f"Job {job.job_id} does not exist, dead-lettering")
            message.reject(requeue=False)
            return False
        if record.status in TERMINAL_STATUSES:
            logger.warning(f"Job {job.job_id} is already {record.status}; skipping redelivery")
            message.ack()
            return False
        # Already RUNNING: a retry of an attempt that crashed part-way.
        if retry_count >= self.max_retries:
            logger.error(
                f"Job {job.job_id} redelivered after {retry_count} interrupted attempt(s), giving up"
            )
            job_store.mark_failed(
                db,
                job.job_id,
                f"Max retries ({self.max_retries}) exceeded: attempt {retry_count} was interrupted",
            )
            message.reject(requeue=False)
            return False
        return True

    def _run_import(self, db: Session, job: JobMessage, importer: EntityImporter) -> IngestionResult:
        raw = job.decode_payload()

        def on_progress(processed_rows: int) -> None:
            job_store.update_progress(db, job.job_id, processed_rows)
            # Deliveries are consumed on this thread, so heartbeats are only
            # sent from here while an import runs.
            try:
                self.broker.heartbeat_check()
            except self.broker.connection_errors as e:
                logger.warning(f"Broker heartbeat failed during job {job.job_id}: {e}")
            self.progress_publisher(
                job.job_id, processed_rows, job.total_rows, status=JobStatus.RUNNING.value
            )

        return ingest(raw, importer, db, on_progress=on_progress, batch_size=self.batch_size)

    def _retry_or_fail(
        self, db: Session, message: Any, job: JobMessage, retry_count: int, error: Exception
    ) -> None:
        logger.error(f"Job {job.job_id} crashed on attempt {retry_count + 1}: {error}")
        if retry_count < self.max_retries - 1:
            message.reject(requeue=False)
            try:
                self.publisher.republish(message.body, job.entity_type, retry_count + 1)
            except (KombuError, OSError) as publish_error:
                job_store.mark_failed(
                    db, job.job_id, f"Could not schedule retry: {publish_error}"
                )
                return
            logger.info(f"Job {job.job_id} requeued for attempt {retry_count + 2}")
            return

        job_store.mark_failed(
            db, job.job_id, f"Max retries ({self.max_retries}) exceeded: {error}"
        )
        message.reject(requeue=False)
