"""Fill ``creatives.creative_hash`` for rows imported without one.

Rows are paged in id order. For each, the stored main photo is hashed; when
that object is absent the row's ``link_to_creative`` and then the video
preview frame are tried.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, Mapping

from PIL import UnidentifiedImageError

from .config import WorkerConfig
from .db import fetch_creatives_missing_hash, update_creative_hash
from .hashing import average_hash
from .logging import adlog, jlog
from .storage import ObjectStore, canonical_media_path


@dataclass
class BackfillStats:
    scanned: int = 0
    hashed: int = 0
    missing: int = 0
    failed: int = 0


def candidate_paths(row: Mapping[str, Any], config: WorkerConfig) -> list[str]:
    """Stored image paths to try, in order: photo, linked creative, preview."""

    ad_id = str(row["ad_archive_id"])
    ordered: list[Any] = []
    if config.photo_bucket:
        ordered.append(canonical_media_path(config.photo_bucket, ad_id, "photo"))
    ordered.append(row.get("link_to_creative"))
    if config.preview_bucket_or_video:
        ordered.append(canonical_media_path(config.preview_bucket_or_video, ad_id, "preview"))
    ordered.append(row.get("video_preview_image_url"))

    paths: list[str] = []
    for path in ordered:
        if isinstance(path, str) and path.startswith("gs://") and not path.endswith(".mp4") and path not in paths:
            paths.append(path)
    return paths


def hash_stored_creative(store: ObjectStore, row: Mapping[str, Any], config: WorkerConfig) -> str | None:
    ad_id = str(row["ad_archive_id"])
    for path in candidate_paths(row, config):
        data = store.download(path)
        if not data:
            continue
        try:
            return average_hash(data, grid=config.hashing.grid)
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            adlog("hash_failed", ad_id=ad_id, level="warning", path=path, error=str(exc))
    return None


def iter_missing(con, *, batch_size: int = 500) -> Iterator[dict[str, Any]]:
    after_id: str | None = None
    while True:
        rows = fetch_creatives_missing_hash(con, limit=batch_size, after_id=after_id)
        if not rows:
            return
        yield from rows
        after_id = rows[-1]["ad_archive_id"]


def backfill_hashes(
    con,
    store: ObjectStore,
    *,
    config: WorkerConfig,
    batch_size: int = 500,
    limit: int | None = None,
    dry_run: bool = False,
) -> BackfillStats:
    stats = BackfillStats()
    for row in iter_missing(con, batch_size=batch_size):
        if limit is not None and stats.scanned >= limit:
            break
        stats.scanned += 1
        ad_id = str(row["ad_archive_id"])
        try:
            digest = hash_stored_creative(store, row, config)
        except Exception as exc:
            stats.failed += 1
            adlog("backfill_failed", ad_id=ad_id, level="error", error=str(exc))
            continue
        if digest is None:
            stats.missing += 1
            adlog("backfill_no_image", ad_id=ad_id, level="warning")
            continue
        update_creative_hash(con, ad_id=ad_id, creative_hash=digest, dry_run=dry_run)
        stats.hashed += 1
        adlog("backfill_hashed", ad_id=ad_id, creative_hash=digest)
    jlog("info", event="backfill_finished", **stats.__dict__)
    return stats


__all__ = ["BackfillStats", "backfill_hashes", "candidate_paths", "hash_stored_creative", "iter_missing"]
