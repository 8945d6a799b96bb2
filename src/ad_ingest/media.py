"""Per-creative fetch/store unit.

For one record: resolve its id, optionally skip it when already imported,
classify it as photo or video, copy every not-yet-stored asset from its
source URL into object storage, compute the perceptual hash, and upsert the
metadata rows. Object paths and row keys derive from the creative id only,
so a rerun overwrites rather than duplicates.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Iterable

import psycopg2
from PIL import UnidentifiedImageError

from .config import WorkerConfig
from .db import CreativeRepository
from .errors import DownloadFailed, UploadFailed
from .fetch import BoundedLimiter, Fetcher, download_with_retry
from .hashing import average_hash
from .logging import adlog
from .metadata import build_media_metadata
from .models import (
    CREATIVE_PHOTO,
    CREATIVE_UNKNOWN,
    CREATIVE_VIDEO,
    REASON_ALREADY_IN_DB,
    REASON_DB_ERROR,
    REASON_DOWNLOAD_FAILED,
    REASON_ERROR,
    REASON_MISSING_ID,
    REASON_NO_PHOTOS,
    REASON_TIMEOUT,
    REASON_UNKNOWN_TYPE,
    REASON_UPLOAD_FAILED,
    STATUS_FAILED,
    STATUS_OK,
    STATUS_SKIPPED,
    ImportOutcome,
    MediaAsset,
)
from .normalize import ID_FIELDS, CreativeRecord
from .storage import CONTENT_TYPE_BY_KIND, ObjectStore, canonical_media_path
from .versioning import get_importer_version

UTC = getattr(datetime, "UTC", timezone.utc)

IMAGE_URL_FIELDS = ("original_image_url", "resized_image_url", "image_url", "watermarked_resized_image_url")
VIDEO_URL_FIELDS = ("video_hd_url", "video_sd_url", "watermarked_video_hd_url", "watermarked_video_sd_url")
PREVIEW_URL_FIELDS = ("video_preview_image_url",)


@dataclass
class ProcessContext:
    config: WorkerConfig
    store: ObjectStore
    repo: CreativeRepository
    fetcher: Fetcher
    io_limiter: BoundedLimiter
    job_id: str | None = None
    importer_version: str = ""

    def __post_init__(self) -> None:
        if not self.importer_version:
            self.importer_version = get_importer_version()


# ============================
# Record inspection
# ============================


def resolve_ad_id(record: CreativeRecord) -> str | None:
    for name in ID_FIELDS:
        value = record.get(name)
        if value is None or isinstance(value, bool):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _snapshot(record: CreativeRecord) -> dict[str, Any]:
    snap = record.get("snapshot")
    return snap if isinstance(snap, dict) else {}


def _dict_list(*candidates: Any) -> list[dict[str, Any]]:
    for value in candidates:
        if isinstance(value, list):
            items = [x for x in value if isinstance(x, dict)]
            if items:
                return items
    return []


def _first_url(obj: dict[str, Any], fields: Iterable[str]) -> str | None:
    for name in fields:
        value = obj.get(name)
        if isinstance(value, str) and value.strip().startswith(("http://", "https://")):
            return value.strip()
    return None


def creative_cards(record: CreativeRecord) -> list[dict[str, Any]]:
    snap = _snapshot(record)
    return _dict_list(snap.get("cards"), record.get("cards"))


def creative_images(record: CreativeRecord) -> list[dict[str, Any]]:
    snap = _snapshot(record)
    return _dict_list(snap.get("images"), record.get("images"))


def creative_videos(record: CreativeRecord) -> list[dict[str, Any]]:
    snap = _snapshot(record)
    return _dict_list(snap.get("videos"), record.get("videos"))


def main_image_url(record: CreativeRecord) -> str | None:
    for image in creative_images(record):
        url = _first_url(image, IMAGE_URL_FIELDS)
        if url:
            return url
    return _first_url(record, ("image_url",)) or _first_url(_snapshot(record), ("image_url",))


def card_image_url(card: dict[str, Any]) -> str | None:
    return _first_url(card, IMAGE_URL_FIELDS)


def video_urls(record: CreativeRecord) -> tuple[str | None, str | None]:
    """Return ``(video_url, preview_url)`` from the first usable video descriptor."""

    for video in creative_videos(record):
        video_url = _first_url(video, VIDEO_URL_FIELDS)
        preview_url = _first_url(video, PREVIEW_URL_FIELDS)
        if video_url or preview_url:
            return video_url, preview_url
    return _first_url(record, VIDEO_URL_FIELDS), _first_url(record, PREVIEW_URL_FIELDS)


def classify_creative(record: CreativeRecord) -> str:
    video_url, preview_url = video_urls(record)
    if video_url or preview_url:
        return CREATIVE_VIDEO
    if main_image_url(record) or any(card_image_url(c) for c in creative_cards(record)):
        return CREATIVE_PHOTO
    return CREATIVE_UNKNOWN


def to_date_only(value: Any) -> str | None:
    """Coerce epoch seconds/milliseconds or an ISO string to ``YYYY-MM-DD``."""

    if value is None or value == "" or isinstance(value, bool):
        return None
    number: float | None = None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            number = None
    if number is not None:
        seconds = number if number < 10_000_000_000 else number / 1000.0
        try:
            return datetime.fromtimestamp(seconds, UTC).date().isoformat()
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        pass
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        return None


def _pick(snap: dict[str, Any], record: CreativeRecord, name: str) -> Any:
    value = snap.get(name)
    return value if value not in (None, "") else record.get(name)


def build_creative_row(record: CreativeRecord, ad_id: str, creative_type: str) -> dict[str, Any]:
    """Project a raw record onto the ``creatives`` columns (media fields excluded)."""

    snap = _snapshot(record)
    platforms = _pick(snap, record, "publisher_platform") or record.get("publisher_platforms")
    if isinstance(platforms, list):
        platforms = ", ".join(str(p) for p in platforms)
    body = snap.get("body")
    text = body.get("text") if isinstance(body, dict) else body
    cards = creative_cards(record)
    return {
        "ad_archive_id": ad_id,
        "page_name": _pick(snap, record, "page_name"),
        "publisher_platform": platforms,
        "text": text or record.get("text"),
        "caption": _pick(snap, record, "caption"),
        "title": _pick(snap, record, "title"),
        "link_url": _pick(snap, record, "link_url"),
        "display_format": _pick(snap, record, "display_format"),
        "start_date_formatted": to_date_only(_pick(snap, record, "start_date")),
        "end_date_formatted": to_date_only(_pick(snap, record, "end_date")),
        "creative_type": creative_type,
        "cards_count": len(cards),
        "cards_json": cards or None,
        "raw_json": record,
    }


# ============================
# Transfers
# ============================


@dataclass
class StoredAsset:
    path: str
    asset: MediaAsset | None = None  # None when the object already existed


async def _object_exists(ctx: ProcessContext, path: str) -> bool:
    return await ctx.io_limiter.run_blocking(ctx.store.exists, path)


async def _upload(ctx: ProcessContext, ad_id: str, path: str, asset: MediaAsset, kind: str, index: int | None) -> None:
    content_type = asset.content_type
    if content_type in ("", "application/octet-stream"):
        content_type = CONTENT_TYPE_BY_KIND[kind]
    metadata = build_media_metadata(
        ad_id=ad_id,
        kind=kind,
        content_type=content_type,
        size_bytes=asset.size,
        importer_version=ctx.importer_version,
        source_url=asset.url,
        card_index=index,
        job_id=ctx.job_id,
    )
    try:
        await ctx.io_limiter.run_blocking(
            ctx.store.upload,
            path,
            asset.data,
            content_type=content_type,
            metadata=metadata,
            timeout=ctx.config.download_timeout_s,
        )
    except Exception as exc:
        raise UploadFailed(f"upload to {path} failed: {str(exc) or exc.__class__.__name__}", path=path) from exc


async def transfer_asset(
    ctx: ProcessContext,
    ad_id: str,
    *,
    kind: str,
    url: str,
    path: str,
    index: int | None = None,
) -> StoredAsset | None:
    """Copy ``url`` to ``path`` unless already stored.

    A failed download returns ``None`` (the asset is simply missing); a
    failed upload raises :class:`UploadFailed`.
    """

    if await _object_exists(ctx, path):
        adlog("asset_already_stored", ad_id=ad_id, kind=kind, path=path)
        return StoredAsset(path=path)
    try:
        asset = await download_with_retry(
            ctx.fetcher,
            url,
            limiter=ctx.io_limiter,
            attempts=ctx.config.download_attempts,
            retry_base_s=ctx.config.retry_base_s,
            timeout_s=ctx.config.download_timeout_s,
            ad_id=ad_id,
        )
    except DownloadFailed as exc:
        adlog("asset_missing", ad_id=ad_id, level="warning", kind=kind, url=url, error=str(exc))
        return None
    await _upload(ctx, ad_id, path, asset, kind, index)
    adlog("asset_stored", ad_id=ad_id, kind=kind, path=path, bytes=asset.size)
    return StoredAsset(path=path, asset=asset)


async def _hash_asset(ctx: ProcessContext, ad_id: str, stored: StoredAsset | None) -> str | None:
    if stored is None or stored.asset is None:
        return None
    try:
        return await asyncio.to_thread(average_hash, stored.asset.data, grid=ctx.config.hashing.grid)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        adlog("hash_failed", ad_id=ad_id, level="warning", error=str(exc))
        return None


async def _gather_transfers(coros: list) -> list[StoredAsset | None]:
    results = await asyncio.gather(*coros, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


# ============================
# Per-type processing
# ============================


async def _process_photo(ctx: ProcessContext, record: CreativeRecord, ad_id: str) -> ImportOutcome:
    bucket = ctx.config.photo_bucket
    main_url = main_image_url(record)
    cards = creative_cards(record)

    main_coro = []
    if main_url:
        main_coro.append(
            transfer_asset(ctx, ad_id, kind="photo", url=main_url, path=canonical_media_path(bucket, ad_id, "photo"))
        )
    card_jobs: list[tuple[int, dict[str, Any]]] = [(i, c) for i, c in enumerate(cards) if card_image_url(c)]
    card_coros = [
        transfer_asset(
            ctx,
            ad_id,
            kind="card",
            url=card_image_url(card) or "",
            path=canonical_media_path(bucket, ad_id, "card", index),
            index=index,
        )
        for index, card in card_jobs
    ]
    results = await _gather_transfers(main_coro + card_coros)
    main = results[0] if main_coro else None
    card_results = results[len(main_coro):]

    saved_cards: list[tuple[int, dict[str, Any], StoredAsset]] = [
        (index, card, stored) for (index, card), stored in zip(card_jobs, card_results) if stored is not None
    ]
    if main is None and not saved_cards:
        return ImportOutcome(id=ad_id, status=STATUS_SKIPPED, creative_type=CREATIVE_PHOTO, reason=REASON_NO_PHOTOS)

    for index, card, stored in saved_cards:
        await ctx.io_limiter.run_blocking(
            ctx.repo.upsert_card,
            ad_id=ad_id,
            card_index=index,
            storage_path=stored.path,
            source_url=card_image_url(card),
            title=card.get("title"),
            body=card.get("body"),
            link_url=card.get("link_url"),
        )

    creative_hash = await _hash_asset(ctx, ad_id, main)
    if creative_hash is None and saved_cards:
        creative_hash = await _hash_asset(ctx, ad_id, saved_cards[0][2])

    row = build_creative_row(record, ad_id, CREATIVE_PHOTO)
    row["link_to_creative"] = main.path if main else saved_cards[0][2].path
    row["creative_hash"] = creative_hash
    await ctx.io_limiter.run_blocking(ctx.repo.upsert_creative, row)

    return ImportOutcome(
        id=ad_id,
        status=STATUS_OK,
        creative_type=CREATIVE_PHOTO,
        primary_path=main.path if main else "",
        secondary_path=";".join(stored.path for _, _, stored in saved_cards),
        sub_asset_count=len(saved_cards),
    )


async def _process_video(ctx: ProcessContext, record: CreativeRecord, ad_id: str) -> ImportOutcome:
    video_url, preview_url = video_urls(record)
    coros = []
    if video_url:
        coros.append(
            transfer_asset(
                ctx, ad_id, kind="video", url=video_url, path=canonical_media_path(ctx.config.video_bucket, ad_id, "video")
            )
        )
    if preview_url:
        coros.append(
            transfer_asset(
                ctx,
                ad_id,
                kind="preview",
                url=preview_url,
                path=canonical_media_path(ctx.config.preview_bucket_or_video, ad_id, "preview"),
            )
        )
    results = await _gather_transfers(coros)
    video = results[0] if video_url else None
    preview = results[-1] if preview_url else None

    video_path = video.path if video else ""
    preview_path = preview.path if preview else ""
    row = build_creative_row(record, ad_id, CREATIVE_VIDEO)
    row["video_hd_url"] = video_path
    row["video_preview_image_url"] = preview_path
    row["link_to_creative"] = preview_path or video_path or None
    row["creative_hash"] = await _hash_asset(ctx, ad_id, preview)
    await ctx.io_limiter.run_blocking(ctx.repo.upsert_creative, row)

    return ImportOutcome(
        id=ad_id,
        status=STATUS_OK,
        creative_type=CREATIVE_VIDEO,
        primary_path=video_path,
        preview_path=preview_path,
    )


async def process_record(ctx: ProcessContext, record: CreativeRecord) -> ImportOutcome:
    """Run one record through the unit. May raise; see :func:`process_record_safely`."""

    ad_id = resolve_ad_id(record)
    if not ad_id:
        return ImportOutcome(id="", status=STATUS_SKIPPED, reason=REASON_MISSING_ID)

    if ctx.config.skip_if_in_db:
        exists = await ctx.io_limiter.run_blocking(ctx.repo.exists, ad_id)
        if exists:
            return ImportOutcome(id=ad_id, status=STATUS_SKIPPED, reason=REASON_ALREADY_IN_DB)

    creative_type = classify_creative(record)
    if creative_type == CREATIVE_VIDEO:
        return await _process_video(ctx, record, ad_id)
    if creative_type == CREATIVE_PHOTO:
        return await _process_photo(ctx, record, ad_id)
    return ImportOutcome(id=ad_id, status=STATUS_SKIPPED, creative_type=CREATIVE_UNKNOWN, reason=REASON_UNKNOWN_TYPE)


def failure_reason(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return REASON_TIMEOUT
    if isinstance(exc, UploadFailed):
        return REASON_UPLOAD_FAILED
    if isinstance(exc, DownloadFailed):
        return REASON_DOWNLOAD_FAILED
    if isinstance(exc, psycopg2.Error):
        return REASON_DB_ERROR
    return REASON_ERROR


async def process_record_safely(ctx: ProcessContext, record: CreativeRecord) -> ImportOutcome:
    """Outermost per-record guard: hard timeout, and every error becomes an outcome."""

    ad_id = resolve_ad_id(record) or ""
    try:
        return await asyncio.wait_for(process_record(ctx, record), timeout=ctx.config.record_timeout_s)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        reason = failure_reason(exc)
        if reason == REASON_TIMEOUT:
            message = f"record timed out after {ctx.config.record_timeout_s:g}s"
        else:
            message = str(exc) or exc.__class__.__name__
        adlog("record_failed", ad_id=ad_id, level="error", reason=reason, error=message)
        return ImportOutcome(
            id=ad_id,
            status=STATUS_FAILED,
            creative_type=classify_creative(record),
            reason=reason,
            error=message,
        )


__all__ = [
    "ProcessContext",
    "build_creative_row",
    "card_image_url",
    "classify_creative",
    "creative_cards",
    "failure_reason",
    "main_image_url",
    "process_record",
    "process_record_safely",
    "resolve_ad_id",
    "to_date_only",
    "transfer_asset",
    "video_urls",
]
