#!/usr/bin/env python3
"""Serve the import job-control API with uvicorn.

Usage:
  python scripts/serve_import_api.py --port 8080 --jobs-dir /var/lib/ad-imports
"""
from __future__ import annotations

import argparse

import uvicorn

from ad_ingest.api import create_app
from ad_ingest.config import DEFAULT_JOBS_DIR, DEFAULT_LOG_TAIL_LINES, JobsConfig
from ad_ingest.jobs import ImportJobManager
from ad_ingest.logging import configure_logging, set_global_context


def main() -> None:
    ap = argparse.ArgumentParser(description="Serve the bulk import job API")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=8080)
    ap.add_argument("--jobs-dir", default=DEFAULT_JOBS_DIR, help="Directory holding per-job state and artifacts")
    ap.add_argument("--log-tail-lines", type=int, default=DEFAULT_LOG_TAIL_LINES)
    args = ap.parse_args()

    configure_logging()
    set_global_context(app="ad_ingest", component="api")
    manager = ImportJobManager(JobsConfig(jobs_dir=args.jobs_dir, log_tail_lines=args.log_tail_lines))
    uvicorn.run(create_app(manager), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
