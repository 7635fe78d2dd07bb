"""Tests for the import worker's ack/reject/retry behaviour."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from app.db.models import SchoolClass
from app.db.models.upload_job import JobStatus
from app.ingestion.importers import EntityType
from app.services import job_store
from app.workers import import_worker
from app.workers.broker import BrokerUnavailableError
from app.workers.import_worker import ImportWorker
from app.workers.publisher import RETRY_HEADER, JobMessage
from conftest import (
    ConnectionFactory,
    FakeBroker,
    FakeMessage,
    FakePublisher,
    csv_bytes,
    make_broker,
)

CLASS_CSV = csv_bytes("class_name,batch", "CSE-A,2024", "CSE-B,2024", "CSE-A,2025")


def crash(*args, **kwargs):
    raise RuntimeError("database went away")


@pytest.fixture
def worker(session_factory, fake_publisher, record_progress):
    return ImportWorker(
        FakeBroker(),
        publisher=fake_publisher,
        session_factory=session_factory,
        progress_publisher=record_progress,
        max_retries=3,
        batch_size=500,
    )


def queued_job(db, entity_type=EntityType.CLASS_IMPORT, raw=CLASS_CSV, total_rows=3):
    job = job_store.create_job(db, entity_type.value, total_rows)
    message = JobMessage.for_upload(job.id, entity_type, total_rows, raw)
    return job.id, message.to_body()


def reload(db, job_id):
    db.expire_all()
    return job_store.get_job(db, job_id)


class TestHappyPath:
    def test_completes_job_and_acks(self, worker, db, progress_calls):
        job_id, body = queued_job(db)
        message = FakeMessage(body, {RETRY_HEADER: 0})

        worker.handle_message(message)

        assert message.acked
        job = reload(db, job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert (job.success_count, job.failure_count, job.processed_rows) == (2, 1, 3)
        assert job.row_errors[0]["code"] == "DUPLICATE_IN_FILE"
        assert db.scalar(select(func.count()).select_from(SchoolClass)) == 2
        assert progress_calls[0] == (job_id, 2, 3, JobStatus.RUNNING.value)
        assert progress_calls[-1][3] == JobStatus.COMPLETED.value
        assert worker.broker.heartbeats == len(progress_calls) - 1

    def test_redelivery_of_finished_job_is_acked_without_rerun(self, worker, db, monkeypatch):
        job_id, body = queued_job(db)
        worker.handle_message(FakeMessage(body))

        monkeypatch.setattr(
            import_worker, "ingest", lambda *a, **k: pytest.fail("pipeline re-ran")
        )
        again = FakeMessage(body)
        worker.handle_message(again)

        assert again.acked
        assert reload(db, job_id).status == JobStatus.COMPLETED.value


class TestPoisonMessages:
    @pytest.mark.parametrize(
        "body",
        [
            b"{not json",
            b'{"jobId": "x", "entityType": "CLASS_IMPORT"}',
            b'{"jobId": "x", "entityType": "CLASS_IMPORT", "totalRows": 1, "csvPayload": "%%%"}',
        ],
    )
    def test_malformed_body_is_dead_lettered_without_retry(self, worker, fake_publisher, body):
        message = FakeMessage(body)

        worker.handle_message(message)

        assert message.rejected and message.requeue is False
        assert fake_publisher.republished == []

    def test_unknown_entity_type_fails_job(self, worker, db, fake_publisher):
        job = job_store.create_job(db, "LIBRARY_IMPORT", 1)
        body = JobMessage(
            job_id=job.id, entity_type="LIBRARY_IMPORT", total_rows=1, csv_payload=""
        ).to_body()
        message = FakeMessage(body)

        worker.handle_message(message)

        assert message.rejected and message.requeue is False
        assert fake_publisher.republished == []
        job = reload(db, job.id)
        assert job.status == JobStatus.FAILED.value
        assert "LIBRARY_IMPORT" in job.row_errors[0]["message"]


class TestRetries:
    def test_three_failures_fail_job_exactly_once(self, worker, db, fake_publisher, monkeypatch):
        """Attempts 1 and 2 are republished; attempt 3 is terminal."""
        monkeypatch.setattr(import_worker, "ingest", crash)
        fail_calls = []
        real_mark_failed = job_store.mark_failed

        def spy_mark_failed(db, job_id, message):
            fail_calls.append(message)
            return real_mark_failed(db, job_id, message)

        monkeypatch.setattr(job_store, "mark_failed", spy_mark_failed)
        job_id, body = queued_job(db)

        for attempt in range(3):
            message = FakeMessage(body, {RETRY_HEADER: attempt})
            worker.handle_message(message)
            assert message.rejected and message.requeue is False

        assert fake_publisher.republished == [
            (body, "CLASS_IMPORT", 1),
            (body, "CLASS_IMPORT", 2),
        ]
        assert fail_calls == ["Max retries (3) exceeded: database went away"]
        job = reload(db, job_id)
        assert job.status == JobStatus.FAILED.value

        # A stray fourth delivery is settled without running or retrying.
        fourth = FakeMessage(body, {RETRY_HEADER: 3})
        worker.handle_message(fourth)
        assert fourth.acked
        assert len(fake_publisher.republished) == 2

    def test_job_stays_running_between_attempts(self, worker, db, monkeypatch):
        monkeypatch.setattr(import_worker, "ingest", crash)
        job_id, body = queued_job(db)

        worker.handle_message(FakeMessage(body))

        assert reload(db, job_id).status == JobStatus.RUNNING.value

    def test_retry_succeeds_after_transient_failure(self, worker, db, monkeypatch):
        real_ingest = import_worker.ingest
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("transient")
            return real_ingest(*args, **kwargs)

        monkeypatch.setattr(import_worker, "ingest", flaky)
        job_id, body = queued_job(db)

        worker.handle_message(FakeMessage(body, {RETRY_HEADER: 0}))
        retry = FakeMessage(body, {RETRY_HEADER: 1})
        worker.handle_message(retry)

        assert retry.acked
        assert reload(db, job_id).status == JobStatus.COMPLETED.value

    def test_failed_republish_marks_job_failed(self, db, session_factory, record_progress, monkeypatch):
        worker = ImportWorker(
            FakeBroker(),
            publisher=FakePublisher(fail_with=OSError("broker down")),
            session_factory=session_factory,
            progress_publisher=record_progress,
            max_retries=3,
        )
        monkeypatch.setattr(import_worker, "ingest", crash)
        job_id, body = queued_job(db)
        message = FakeMessage(body)

        worker.handle_message(message)

        assert message.rejected
        job = reload(db, job_id)
        assert job.status == JobStatus.FAILED.value
        assert "broker down" in job.row_errors[0]["message"]

    def test_lost_reject_is_counted_on_redelivery(self, worker, db, fake_publisher, monkeypatch):
        monkeypatch.setattr(import_worker, "ingest", crash)
        job_id, body = queued_job(db)
        lost = FakeMessage(body, {RETRY_HEADER: 0}, reject_error=ConnectionResetError("reset"))

        with pytest.raises(ConnectionResetError):
            worker.on_message(lost)
        assert fake_publisher.republished == []

        redelivered = FakeMessage(body, {RETRY_HEADER: 0}, redelivered=True)
        worker.handle_message(redelivered)

        assert redelivered.rejected and redelivered.requeue is False
        assert fake_publisher.republished == [(body, "CLASS_IMPORT", 2)]

    def test_redelivered_job_past_ceiling_fails_without_rerun(
        self, worker, db, fake_publisher, monkeypatch
    ):
        job_id, body = queued_job(db)
        job_store.mark_running(db, job_id)
        monkeypatch.setattr(
            import_worker, "ingest", lambda *a, **k: pytest.fail("pipeline re-ran")
        )
        message = FakeMessage(body, {RETRY_HEADER: 2}, redelivered=True)

        worker.handle_message(message)

        assert message.rejected and message.requeue is False
        assert fake_publisher.republished == []
        job = reload(db, job_id)
        assert job.status == JobStatus.FAILED.value
        assert "interrupted" in job.row_errors[0]["message"]


class TestSafetyNet:
    def test_handler_bug_rejects_message(self, worker, monkeypatch):
        def broken(message):
            raise KeyError("bug")

        monkeypatch.setattr(worker, "handle_message", broken)
        message = FakeMessage(b"{}")

        worker.on_message(message)

        assert message.rejected and message.requeue is False

    def test_already_settled_message_is_left_alone(self, worker, monkeypatch):
        def ack_then_crash(message):
            message.ack()
            raise KeyError("bug")

        monkeypatch.setattr(worker, "handle_message", ack_then_crash)
        message = FakeMessage(b"{}")

        worker.on_message(message)

        assert message.acked and not message.rejected


class RecordingConsumer:
    def __init__(self, queue_name, channel):
        self.queue_name = queue_name
        self.channel = channel
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class TestRunLoop:
    @pytest.fixture
    def registered(self):
        return []

    def consuming_worker(self, factory, registered, session_factory, monkeypatch):
        worker = ImportWorker(
            make_broker(factory, heartbeat=30),
            queue_names=("class_import", "room_import"),
            publisher=FakePublisher(),
            session_factory=session_factory,
            progress_publisher=lambda *a, **k: None,
            max_retries=3,
        )

        def registration_for(queue_name):
            def register(channel):
                consumer = RecordingConsumer(queue_name, channel)
                registered.append(consumer)
                return consumer

            return register

        monkeypatch.setattr(worker, "_registration_for", registration_for)
        return worker

    def test_reconnects_and_resubscribes_until_stopped(
        self, registered, session_factory, monkeypatch
    ):
        drains = []

        def on_drain(connection):
            drains.append(connection)
            if len(drains) == 1:
                raise ConnectionResetError("connection reset")
            worker.stop()

        factory = ConnectionFactory(on_drain=on_drain)
        worker = self.consuming_worker(factory, registered, session_factory, monkeypatch)

        worker.run()

        first, second = factory.created
        assert drains == [first, second]
        assert [(c.queue_name, c.channel) for c in registered] == [
            ("class_import", first.channels[0]),
            ("room_import", first.channels[0]),
            ("class_import", second.channels[0]),
            ("room_import", second.channels[0]),
        ]
        assert all(c.cancelled for c in registered[2:])
        assert second.heartbeats == 1
        assert worker.broker.closing
        assert first.released and second.released

    def test_unreachable_broker_ends_the_loop(self, registered, session_factory, monkeypatch):
        def on_drain(connection):
            factory.refuse = True
            raise ConnectionResetError("connection reset")

        factory = ConnectionFactory(on_drain=on_drain)
        worker = self.consuming_worker(factory, registered, session_factory, monkeypatch)

        with pytest.raises(BrokerUnavailableError):
            worker.run()

        assert len(factory.created) == 4
        assert len(registered) == 2
