#!/usr/bin/env python3
"""Run one import worker directly on a local batch file or directory of batch files.

Usage examples:
  python scripts/import_creatives.py ads.json --photo-bucket my-photos --video-bucket my-videos
  python scripts/import_creatives.py ads.ndjson --dry-run --report out/report.csv
  python scripts/import_creatives.py exports/ --dry-run   # every .json/.ndjson file inside

Progress events are printed to stdout as JSON lines, logs go to stderr.
"""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import os
import sys

from ad_ingest.config import WorkerConfig
from ad_ingest.db import CreativeRepository, ensure_schema, sql_connect
from ad_ingest.logging import configure_logging, logging_context, set_global_context
from ad_ingest.storage import ObjectStore
from ad_ingest.versioning import get_importer_version
from ad_ingest.worker import load_batch, run_import


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    base = WorkerConfig.from_env()
    p = argparse.ArgumentParser(description="Import ad creatives and their media from a JSON/NDJSON batch")
    p.add_argument(
        "input",
        help="Batch file (JSON array, wrapper object, single creative or NDJSON) or a directory of them",
    )
    p.add_argument("--photo-bucket", default=base.photo_bucket)
    p.add_argument("--video-bucket", default=base.video_bucket)
    p.add_argument("--preview-bucket", default=base.preview_bucket)
    p.add_argument("--concurrency", type=int, default=base.record_concurrency, help="Records in flight")
    p.add_argument("--io-concurrency", type=int, default=base.io_concurrency, help="Network/storage ops in flight")
    p.add_argument("--record-timeout", type=float, default=base.record_timeout_s)
    p.add_argument("--report", default=os.getenv("REPORT_PATH"), help="CSV report path")
    p.add_argument("--stop-file", default=os.getenv("STOP_FILE"))
    p.add_argument("--job-id", default=os.getenv("JOB_ID"))
    p.add_argument("--sql-conn")
    p.add_argument("--db-host", help="Host for TCP connection (e.g., 127.0.0.1 when using cloud-sql-proxy)")
    p.add_argument("--db-port", type=int)
    p.add_argument("--no-skip-existing", action="store_true", help="Re-import creatives already in the database")
    p.add_argument("--ensure-schema", action="store_true", help="Create tables before importing")
    p.add_argument("--dry-run", action="store_true", default=base.dry_run, help="Log writes instead of performing them")
    return p.parse_args(argv)


async def _run(args: argparse.Namespace, config: WorkerConfig) -> int:
    con = None
    if not config.dry_run:
        con = sql_connect(args.sql_conn, args.db_host, args.db_port)
        con.autocommit = True
        if args.ensure_schema:
            ensure_schema(con)
    try:
        result = await run_import(
            load_batch(args.input),
            config=config,
            store=ObjectStore(dry_run=config.dry_run),
            repo=CreativeRepository(con, job_id=args.job_id, dry_run=config.dry_run),
            job_id=args.job_id,
            report_path=args.report,
            stop_file=args.stop_file,
        )
    finally:
        if con is not None:
            con.close()
    return 0 if result.counters.failed == 0 else 1


def main() -> None:
    configure_logging()
    set_global_context(app="ad_ingest", component="import_cli")
    args = parse_args()
    config = dataclasses.replace(
        WorkerConfig.from_env(),
        photo_bucket=args.photo_bucket,
        video_bucket=args.video_bucket,
        preview_bucket=args.preview_bucket,
        record_concurrency=args.concurrency,
        io_concurrency=args.io_concurrency,
        record_timeout_s=args.record_timeout,
        skip_if_in_db=not args.no_skip_existing,
        dry_run=args.dry_run,
    )
    with logging_context(importer_version=get_importer_version(), job_id=args.job_id):
        sys.exit(asyncio.run(_run(args, config)))


if __name__ == "__main__":
    main()
