"""Tests for upload job lifecycle transitions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from app.db.models.upload_job import JobStatus
from app.ingestion.types import ErrorCode, IngestionError
from app.services import job_store


def reload(db, job_id):
    db.expire_all()
    return job_store.get_job(db, job_id)


class TestTransitions:
    def test_create_job_is_pending(self, db):
        job = job_store.create_job(db, "CLASS_IMPORT", 12)

        assert job.status == JobStatus.PENDING.value
        assert (job.total_rows, job.processed_rows, job.row_errors) == (12, 0, [])
        assert job.created_by == "admin"

    def test_mark_running_claims_only_once(self, db):
        job = job_store.create_job(db, "CLASS_IMPORT", 1)

        assert job_store.mark_running(db, job.id) is True
        assert job_store.mark_running(db, job.id) is False
        assert reload(db, job.id).status == JobStatus.RUNNING.value

    def test_progress_only_while_running(self, db):
        job = job_store.create_job(db, "CLASS_IMPORT", 10)

        assert job_store.update_progress(db, job.id, 5) is False
        job_store.mark_running(db, job.id)
        assert job_store.update_progress(db, job.id, 5) is True
        assert reload(db, job.id).processed_rows == 5

    def test_mark_completed_records_report(self, db):
        job = job_store.create_job(db, "CLASS_IMPORT", 3)
        job_store.mark_running(db, job.id)
        error = IngestionError(2, "class_name", ErrorCode.DUPLICATE_IN_FILE, "dup")

        assert job_store.mark_completed(db, job.id, 2, 1, [error]) is True

        job = reload(db, job.id)
        assert job.status == JobStatus.COMPLETED.value
        assert (job.success_count, job.failure_count, job.processed_rows) == (2, 1, 3)
        assert job.row_errors == [
            {"row": 2, "column": "class_name", "code": "DUPLICATE_IN_FILE", "message": "dup"}
        ]
        assert job.completed_at is not None

    def test_mark_failed_stores_single_job_level_error(self, db):
        job = job_store.create_job(db, "CLASS_IMPORT", 3)

        assert job_store.mark_failed(db, job.id, "boom") is True

        job = reload(db, job.id)
        assert job.status == JobStatus.FAILED.value
        assert job.row_errors == [
            {"row": 0, "column": "", "code": "INSERT_FAILED", "message": "boom"}
        ]

    def test_terminal_jobs_are_immutable(self, db):
        job = job_store.create_job(db, "CLASS_IMPORT", 3)
        job_store.mark_failed(db, job.id, "first")

        assert job_store.mark_failed(db, job.id, "second") is False
        assert job_store.mark_completed(db, job.id, 3, 0, []) is False
        assert job_store.mark_running(db, job.id) is False

        job = reload(db, job.id)
        assert job.status == JobStatus.FAILED.value
        assert job.row_errors[0]["message"] == "first"


class TestReads:
    def test_get_unknown_job(self, db):
        assert job_store.get_job(db, "missing") is None

    def test_list_filters_and_orders_newest_first(self, db):
        now = datetime.now(timezone.utc)
        older = job_store.create_job(db, "CLASS_IMPORT", 1)
        newer = job_store.create_job(db, "CLASS_IMPORT", 1)
        other = job_store.create_job(db, "ROOM_IMPORT", 1)
        older.created_at = now - timedelta(minutes=5)
        newer.created_at = now
        other.created_at = now - timedelta(minutes=1)
        db.commit()
        job_store.mark_failed(db, other.id, "x")

        assert [j.id for j in job_store.list_jobs(db)] == [newer.id, other.id, older.id]
        assert [j.id for j in job_store.list_jobs(db, entity_type="CLASS_IMPORT")] == [
            newer.id,
            older.id,
        ]
        assert [j.id for j in job_store.list_jobs(db, status="FAILED")] == [other.id]
        assert len(job_store.list_jobs(db, limit=1)) == 1
