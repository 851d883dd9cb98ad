#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.storage.sqlite_store import JobInput, SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Queue a job directly in SQLite (picked up on the runner's next poll).")
    p.add_argument("--tenant-id", required=True, help="Owning tenant id.")
    p.add_argument("--job-type", required=True, help="Handler key (e.g. noop).")
    p.add_argument("--payload", default="{}", help="JSON object payload.")
    p.add_argument("--db-path", default="", help="SQLite path (default: env JOBRUNNER_SQLITE_PATH or data/jobs.db).")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    try:
        payload = json.loads(args.payload)
    except ValueError as e:
        print(f"--payload is not valid JSON: {e}", file=sys.stderr)
        return 2
    if not isinstance(payload, dict):
        print("--payload must be a JSON object", file=sys.stderr)
        return 2

    store = SQLiteStore(args.db_path or None)
    try:
        job = store.insert_job(JobInput(tenant_id=str(args.tenant_id), job_type=str(args.job_type), payload=payload))
        print(job.job_id)
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
