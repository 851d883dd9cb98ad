from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator


SCHEMA_VERSION = 2

JOB_STATUSES = ("queued", "running", "completed", "failed")


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    # Time-ordered prefix keeps (created_at, id) ordering stable for same-timestamp rows.
    return f"{prefix}_{time.time_ns():020d}{uuid.uuid4().hex[:12]}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _json_loads_dict(raw: Any) -> dict[str, Any]:
    try:
        obj = json.loads(str(raw or "{}"))
    except ValueError:
        return {}
    return obj if isinstance(obj, dict) else {}


def default_db_path() -> str:
    return os.getenv("JOBRUNNER_SQLITE_PATH", "data/jobs.db")


class JobNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class JobInput:
    tenant_id: str
    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    tenant_id: str
    job_type: str
    retry: int
    status: str
    payload: dict[str, Any]
    created_at: float
    started_at: float | None = None
    ended_at: float | None = None
    error: str | None = None

    @property
    def id(self) -> str:
        return self.job_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "tenant_id": self.tenant_id,
            "job_type": self.job_type,
            "retry": self.retry,
            "status": self.status,
            "payload": self.payload,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
        }


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        job_id=str(row["job_id"]),
        tenant_id=str(row["tenant_id"]),
        job_type=str(row["job_type"]),
        retry=int(row["retry"]),
        status=str(row["status"]),
        payload=_json_loads_dict(row["payload_json"]),
        created_at=float(row["created_at"]),
        started_at=float(row["started_at"]) if row["started_at"] is not None else None,
        ended_at=float(row["ended_at"]) if row["ended_at"] is not None else None,
        error=str(row["error"]) if row["error"] is not None else None,
    )


_JOB_COLUMNS = "job_id, tenant_id, job_type, retry, status, payload_json, created_at, started_at, ended_at, error"


@dataclass(frozen=True)
class SQLiteTransaction:
    """Handle for an open transaction; lets callers insert jobs as part of a larger unit of work."""

    store: "SQLiteStore"
    mode: str


class SQLiteStore:
    """SQLite-backed job queue and trace events.

    Design goals:
    - Single-instance: one runner claims jobs from this DB.
    - Claims are atomic (`BEGIN IMMEDIATE`) so an accidental second worker never double-claims.
    - The retry counter belongs to the store; the runner never reads it.
    """

    def __init__(self, db_path: str | Path | None = None, *, check_same_thread: bool = True) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # The runner's store is driven from worker threads (`check_same_thread=False`).
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=check_same_thread)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterator[SQLiteTransaction]:
        """Explicit SQLite transaction; yields a handle that `insert_job` accepts."""
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield SQLiteTransaction(store=self, mode=mode)
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              tenant_id TEXT NOT NULL,
              job_type TEXT NOT NULL,
              retry INTEGER NOT NULL DEFAULT 0,
              status TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              created_at REAL NOT NULL,
              started_at REAL,
              ended_at REAL,
              error TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              event_id TEXT PRIMARY KEY,
              job_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              FOREIGN KEY (job_id) REFERENCES jobs(job_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at, job_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_job_ts ON events(job_id, created_at, event_id);")

        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN;")
        try:
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Idempotency table for POST /jobs (API-level retries).
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
              key TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              request_hash TEXT NOT NULL,
              response_json TEXT NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_tenant_created ON jobs(tenant_id, created_at);")

    # --- Idempotency (API support)
    def get_idempotency(self, key: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT key, created_at, request_hash, response_json FROM idempotency_keys WHERE key = ? LIMIT 1;",
            (key,),
        ).fetchone()

    def put_idempotency(
        self, *, key: str, request_hash: str, response_json: str, commit: bool = True
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO idempotency_keys(key, created_at, request_hash, response_json)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(key) DO NOTHING;
            """,
            (key, _utc_ts(), request_hash, response_json),
        )
        if commit:
            self._conn.commit()

    # --- Jobs
    def insert_job(self, data: JobInput, tx: SQLiteTransaction | None = None) -> JobRecord:
        """Queue a new job.

        With `tx`, the insert runs on the transaction's connection and is committed
        (or rolled back) together with the rest of that transaction.
        """
        tenant_id = (data.tenant_id or "").strip()
        job_type = (data.job_type or "").strip()
        if not tenant_id:
            raise ValueError("tenant_id is required.")
        if not job_type:
            raise ValueError("job_type is required.")

        conn = tx.store._conn if tx is not None else self._conn
        job_id = _new_id("job")
        created_at = _utc_ts()
        payload = dict(data.payload or {})
        conn.execute(
            """
            INSERT INTO jobs(job_id, tenant_id, job_type, retry, status, payload_json, created_at)
            VALUES(?, ?, ?, 0, 'queued', ?, ?);
            """,
            (job_id, tenant_id, job_type, _json_dumps(payload), created_at),
        )
        if tx is None:
            conn.commit()
        return JobRecord(
            job_id=job_id,
            tenant_id=tenant_id,
            job_type=job_type,
            retry=0,
            status="queued",
            payload=payload,
            created_at=created_at,
        )

    def get_job(self, *, job_id: str) -> JobRecord | None:
        jid = (job_id or "").strip()
        if not jid:
            return None
        row = self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ? LIMIT 1;",
            (jid,),
        ).fetchone()
        return _row_to_job(row) if row is not None else None

    def claim_next_job(self) -> JobRecord | None:
        """Atomically claim the oldest queued job and mark it as running."""
        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                """
                SELECT job_id
                FROM jobs
                WHERE status = 'queued'
                ORDER BY created_at ASC, job_id ASC
                LIMIT 1;
                """
            ).fetchone()
            if row is None:
                return None

            job_id = str(row["job_id"])
            updated = self._conn.execute(
                """
                UPDATE jobs
                SET
                  status = 'running',
                  started_at = ?,
                  ended_at = NULL
                WHERE job_id = ? AND status = 'queued';
                """,
                (_utc_ts(), job_id),
            )
            if updated.rowcount != 1:
                return None

            return self.get_job(job_id=job_id)

    def complete_job(self, job_id: str) -> JobRecord:
        self._conn.execute(
            """
            UPDATE jobs
            SET status = 'completed', ended_at = ?, error = NULL
            WHERE job_id = ?;
            """,
            (_utc_ts(), job_id),
        )
        self._conn.commit()
        return self._require_job(job_id)

    def requeue_or_fail_job(self, job_id: str, *, error: str, max_retries: int) -> JobRecord:
        """Count a failed attempt; re-queue while retries remain, else mark failed."""
        with self.transaction(mode="IMMEDIATE"):
            job = self._require_job(job_id)
            retry = int(job.retry) + 1
            status = "queued" if retry <= int(max_retries) else "failed"
            self._conn.execute(
                """
                UPDATE jobs
                SET status = ?, retry = ?, ended_at = ?, error = ?
                WHERE job_id = ?;
                """,
                (status, retry, _utc_ts() if status == "failed" else None, error, job_id),
            )
        return self._require_job(job_id)

    def _require_job(self, job_id: str) -> JobRecord:
        job = self.get_job(job_id=job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    # --- Reconcile (startup safety)
    def reconcile_running_jobs(self, *, max_retries: int, reason: str = "server_restarted") -> int:
        """Re-surface jobs left 'running' by a previous process.

        Their execution cycle died with the process; each counts as a failed attempt.
        Returns the number of jobs reconciled.
        """
        rows = self._conn.execute("SELECT job_id FROM jobs WHERE status = 'running';").fetchall()
        for r in rows:
            job = self.requeue_or_fail_job(str(r["job_id"]), error=reason, max_retries=max_retries)
            self.append_event(job.job_id, "job_reconciled", {"reason": reason, "status": job.status})
        return len(rows)

    def count_jobs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def list_jobs_page(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
        tenant_id: str | None = None,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if tenant_id:
            where.append("tenant_id = ?")
            params.append(tenant_id)

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)

        if cursor is not None:
            created_at, job_id = cursor
            where.append("(created_at < ? OR (created_at = ? AND job_id < ?))")
            params.extend([float(created_at), float(created_at), str(job_id)])

        where_sql = " AND ".join(where)
        rows = self._conn.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM jobs
            WHERE {where_sql}
            ORDER BY created_at DESC, job_id DESC
            LIMIT ?;
            """,
            (*params, int(limit) + 1),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [_row_to_job(r).to_dict() for r in rows]
        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["job_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    # --- Events (trace)
    def append_event(self, job_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO events(event_id, job_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, job_id, _utc_ts(), event_type, _json_dumps(payload)),
        )
        self._conn.commit()
        return event_id

    def list_events_page(
        self,
        *,
        job_id: str,
        limit: int,
        cursor: tuple[float, str] | None,
        event_types: list[str] | None = None,
    ) -> dict[str, Any]:
        """Oldest-first page of trace events for one job."""
        where = ["job_id = ?"]
        params: list[Any] = [job_id]

        if event_types:
            where.append("event_type IN (%s)" % ",".join(["?"] * len(event_types)))
            params.extend(event_types)

        if cursor is not None:
            created_at, event_id = cursor
            where.append("(created_at > ? OR (created_at = ? AND event_id > ?))")
            params.extend([float(created_at), float(created_at), str(event_id)])

        where_sql = " AND ".join(where)
        rows = self._conn.execute(
            f"""
            SELECT event_id, job_id, created_at, event_type, payload_json
            FROM events
            WHERE {where_sql}
            ORDER BY created_at ASC, event_id ASC
            LIMIT ?;
            """,
            (*params, int(limit) + 1),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [
            {
                "event_id": str(r["event_id"]),
                "job_id": str(r["job_id"]),
                "created_at": float(r["created_at"]),
                "event_type": str(r["event_type"]),
                "payload": _json_loads_dict(r["payload_json"]),
            }
            for r in rows
        ]
        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["event_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}
