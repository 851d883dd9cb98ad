from __future__ import annotations

import sqlite3
import tempfile

import pytest

from src.storage.sqlite_store import SCHEMA_VERSION, JobInput, JobNotFoundError, SQLiteStore


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? LIMIT 1;",
        (name,),
    ).fetchone()
    return row is not None


def test_migration_creates_idempotency_table() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            assert _table_exists(store._conn, "idempotency_keys")
            assert store._get_schema_version() == SCHEMA_VERSION
        finally:
            store.close()

        # Reopening an up-to-date DB is a no-op.
        store = SQLiteStore(f"{td}/jobs.db")
        store.close()


def test_claim_takes_oldest_queued_job_and_marks_running() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            first = store.insert_job(JobInput(tenant_id="t1", job_type="noop", payload={"n": 1}))
            second = store.insert_job(JobInput(tenant_id="t2", job_type="noop"))

            claimed = store.claim_next_job()
            assert claimed is not None
            assert claimed.id == first.job_id
            assert claimed.status == "running"
            assert claimed.started_at is not None
            assert claimed.payload == {"n": 1}

            claimed2 = store.claim_next_job()
            assert claimed2 is not None and claimed2.id == second.job_id
            assert store.claim_next_job() is None
        finally:
            store.close()


def test_insert_job_requires_tenant_and_type() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            with pytest.raises(ValueError):
                store.insert_job(JobInput(tenant_id=" ", job_type="noop"))
            with pytest.raises(ValueError):
                store.insert_job(JobInput(tenant_id="t1", job_type=""))
        finally:
            store.close()


def test_insert_inside_transaction_rolls_back_with_it() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            with pytest.raises(RuntimeError):
                with store.transaction() as tx:
                    job = store.insert_job(JobInput(tenant_id="t1", job_type="noop"), tx)
                    raise RuntimeError("abort unit of work")
            assert store.get_job(job_id=job.job_id) is None

            with store.transaction() as tx:
                kept = store.insert_job(JobInput(tenant_id="t1", job_type="noop"), tx)
            assert store.get_job(job_id=kept.job_id) is not None
        finally:
            store.close()


def test_transaction_handle_from_another_connection() -> None:
    with tempfile.TemporaryDirectory() as td:
        runner_store = SQLiteStore(f"{td}/jobs.db")
        request_store = SQLiteStore(f"{td}/jobs.db")
        try:
            with request_store.transaction() as tx:
                job = runner_store.insert_job(JobInput(tenant_id="t1", job_type="noop"), tx)
            claimed = runner_store.claim_next_job()
            assert claimed is not None and claimed.id == job.job_id
        finally:
            request_store.close()
            runner_store.close()


def test_requeue_or_fail_counts_retries() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            job = store.insert_job(JobInput(tenant_id="t1", job_type="noop"))
            store.claim_next_job()

            after_first = store.requeue_or_fail_job(job.job_id, error="boom", max_retries=1)
            assert after_first.status == "queued"
            assert after_first.retry == 1
            assert after_first.error == "boom"
            assert after_first.ended_at is None

            store.claim_next_job()
            after_second = store.requeue_or_fail_job(job.job_id, error="boom again", max_retries=1)
            assert after_second.status == "failed"
            assert after_second.retry == 2
            assert after_second.ended_at is not None
            assert store.claim_next_job() is None
        finally:
            store.close()


def test_complete_job_and_unknown_job() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            job = store.insert_job(JobInput(tenant_id="t1", job_type="noop"))
            store.claim_next_job()
            done = store.complete_job(job.job_id)
            assert done.status == "completed"
            assert done.ended_at is not None

            with pytest.raises(JobNotFoundError):
                store.requeue_or_fail_job("job_missing", error="x", max_retries=3)
        finally:
            store.close()


def test_reconcile_running_jobs_requeues_and_records_event() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            job = store.insert_job(JobInput(tenant_id="t1", job_type="noop"))
            store.claim_next_job()

            reconciled = store.reconcile_running_jobs(max_retries=3, reason="server_restarted")
            assert reconciled == 1

            row = store.get_job(job_id=job.job_id)
            assert row is not None
            assert row.status == "queued"
            assert row.retry == 1
            assert row.error == "server_restarted"

            events = store.list_events_page(job_id=job.job_id, limit=10, cursor=None)["items"]
            assert [e["event_type"] for e in events] == ["job_reconciled"]
            assert events[0]["payload"] == {"reason": "server_restarted", "status": "queued"}
        finally:
            store.close()


def test_list_jobs_page_and_counts() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            ids = {store.insert_job(JobInput(tenant_id="t1", job_type="noop")).job_id for _ in range(3)}
            store.insert_job(JobInput(tenant_id="t2", job_type="noop"))
            store.claim_next_job()

            page1 = store.list_jobs_page(limit=2, cursor=None, statuses=None, tenant_id="t1")
            assert page1["has_more"] is True
            assert page1["next_cursor"] is not None
            page2 = store.list_jobs_page(limit=2, cursor=page1["next_cursor"], statuses=None, tenant_id="t1")
            assert page2["has_more"] is False
            seen = {j["job_id"] for j in page1["items"] + page2["items"]}
            assert seen == ids

            running = store.list_jobs_page(limit=10, cursor=None, statuses=["running"])
            assert len(running["items"]) == 1

            assert store.count_jobs_by_status() == {"queued": 3, "running": 1}
        finally:
            store.close()


def test_events_are_listed_oldest_first_with_cursor() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            job = store.insert_job(JobInput(tenant_id="t1", job_type="noop"))
            for i in range(3):
                store.append_event(job.job_id, f"step_{i}", {"i": i})

            page1 = store.list_events_page(job_id=job.job_id, limit=2, cursor=None)
            assert [e["payload"]["i"] for e in page1["items"]] == [0, 1]
            page2 = store.list_events_page(job_id=job.job_id, limit=2, cursor=page1["next_cursor"])
            assert [e["payload"]["i"] for e in page2["items"]] == [2]

            only = store.list_events_page(job_id=job.job_id, limit=10, cursor=None, event_types=["step_1"])
            assert len(only["items"]) == 1
        finally:
            store.close()
