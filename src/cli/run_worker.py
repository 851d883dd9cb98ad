from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from src.config.load_config import ConfigError, load_app_config
from src.runtime.worker import JobWorker, WorkerConfig
from src.storage.sqlite_store import SQLiteStore


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the single-slot job runner without the HTTP API.")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env JOBRUNNER_SQLITE_PATH or data/jobs.db).",
    )
    parser.add_argument(
        "--tick-rate-ms",
        type=int,
        default=None,
        help="Backoff in ms after an empty fetch or a failed job (default: from config).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one poll cycle (until the queue is empty or a job fails), then exit.",
    )
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    return parser.parse_args(argv)


async def _run(worker: JobWorker, *, once: bool) -> None:
    if once:
        await worker.runner.poll()
        await worker.stop()
        return

    worker.start()
    try:
        # Runs until cancelled (Ctrl-C).
        await asyncio.Event().wait()
    finally:
        await worker.stop()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = load_app_config()
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    tick_rate_ms = cfg.runner.tick_rate_ms if args.tick_rate_ms is None else int(args.tick_rate_ms)
    if tick_rate_ms < 0:
        raise SystemExit(f"tick_rate_ms must be >= 0, got {tick_rate_ms}")

    store = SQLiteStore(args.db_path or None, check_same_thread=False)
    try:
        reconciled = store.reconcile_running_jobs(max_retries=cfg.jobs.max_retries)
        if reconciled:
            logging.getLogger(__name__).info("Reconciled %d job(s) left running", reconciled)

        worker = JobWorker(
            store=store,
            config=WorkerConfig(tick_rate_ms=tick_rate_ms, max_retries=cfg.jobs.max_retries),
        )
        try:
            asyncio.run(_run(worker, once=bool(args.once)))
        except KeyboardInterrupt:
            return 130
        return 0
    finally:
        store.close()
