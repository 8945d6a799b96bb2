#!/usr/bin/env python3
"""Print near-duplicate clusters and variation counts for stored creatives.

Usage examples:
  python scripts/cluster_creatives.py --db-host 127.0.0.1
  python scripts/cluster_creatives.py --page-name "Example Brand" --threshold 6 --top 20
"""
from __future__ import annotations

import argparse

from ad_ingest.config import DEFAULT_CLUSTER_THRESHOLD
from ad_ingest.db import fetch_creative_hashes, sql_connect
from ad_ingest.logging import configure_logging
from ad_ingest.ranking import dedupe_and_rank


def print_table(title, cols, rows):
    print(f"\n== {title} ==")
    if not rows:
        print("(no rows)")
        return
    widths = [max(len(str(c)), max((len(str(r[i])) for r in rows), default=0)) for i, c in enumerate(cols)]
    fmt = "  " + " | ".join("{:<" + str(w) + "}" for w in widths)
    print(fmt.format(*cols))
    print("  " + "-+-".join("-" * w for w in widths))
    for r in rows:
        print(fmt.format(*[str(x) for x in r]))


def main():
    ap = argparse.ArgumentParser(description="Cluster stored creatives by perceptual hash")
    ap.add_argument("--sql-conn", help="Cloud SQL connection name if using sockets")
    ap.add_argument("--db-host", help="Host for TCP connection (e.g., 127.0.0.1 when using cloud-sql-proxy)")
    ap.add_argument("--db-port", type=int)
    ap.add_argument("--page-name", help="Only creatives of this page")
    ap.add_argument("--threshold", type=int, default=DEFAULT_CLUSTER_THRESHOLD, help="Max Hamming distance")
    ap.add_argument("--top", type=int, default=50)
    args = ap.parse_args()

    configure_logging()
    con = sql_connect(args.sql_conn, args.db_host, args.db_port)
    try:
        creatives = fetch_creative_hashes(con, page_name=args.page_name)
    finally:
        con.close()

    ranked = dedupe_and_rank(creatives, threshold=args.threshold)
    rows = [
        (r["ad_archive_id"], r.get("page_name") or "", r["variation_count"], r["variation_bucket"], r.get("creative_hash") or "")
        for r in ranked[: args.top]
    ]
    print_table(
        f"Top clusters ({len(creatives)} creatives, {len(ranked)} clusters)",
        ["representative", "page", "variations", "bucket", "hash"],
        rows,
    )


if __name__ == "__main__":
    main()
