#!/usr/bin/env python3
"""Compute perceptual hashes for stored creatives that have none.

Usage examples:
  python scripts/recalc_creative_hash.py --db-host 127.0.0.1 --photo-bucket my-photos
  python scripts/recalc_creative_hash.py --sql-conn proj:region:instance --limit 100 --dry-run
"""
from __future__ import annotations

import argparse
import dataclasses

from ad_ingest.backfill import backfill_hashes
from ad_ingest.config import WorkerConfig
from ad_ingest.db import sql_connect
from ad_ingest.logging import configure_logging, set_global_context
from ad_ingest.storage import ObjectStore


def main() -> None:
    base = WorkerConfig.from_env()
    ap = argparse.ArgumentParser(description="Backfill creatives.creative_hash from stored media")
    ap.add_argument("--sql-conn", help="Cloud SQL connection name if using sockets")
    ap.add_argument("--db-host", help="Host for TCP connection (e.g., 127.0.0.1 when using cloud-sql-proxy)")
    ap.add_argument("--db-port", type=int)
    ap.add_argument("--photo-bucket", default=base.photo_bucket)
    ap.add_argument("--preview-bucket", default=base.preview_bucket_or_video)
    ap.add_argument("--batch-size", type=int, default=500)
    ap.add_argument("--limit", type=int)
    ap.add_argument("--dry-run", action="store_true")
    args = ap.parse_args()

    configure_logging()
    set_global_context(app="ad_ingest", component="hash_backfill")
    config = dataclasses.replace(base, photo_bucket=args.photo_bucket, preview_bucket=args.preview_bucket)
    con = sql_connect(args.sql_conn, args.db_host, args.db_port)
    try:
        stats = backfill_hashes(
            con,
            ObjectStore(),
            config=config,
            batch_size=args.batch_size,
            limit=args.limit,
            dry_run=args.dry_run,
        )
    finally:
        con.close()
    print(f"scanned={stats.scanned} hashed={stats.hashed} missing={stats.missing} failed={stats.failed}")


if __name__ == "__main__":
    main()
