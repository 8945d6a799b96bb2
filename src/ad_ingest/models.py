"""Value types passed between the importer's stages."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

STATUS_OK = "ok"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"

REASON_MISSING_ID = "no_ad_archive_id"
REASON_ALREADY_IN_DB = "already_in_db"
REASON_UNKNOWN_TYPE = "unknown_type"
REASON_NO_PHOTOS = "no_photos"
REASON_DOWNLOAD_FAILED = "download_failed"
REASON_UPLOAD_FAILED = "upload_failed"
REASON_TIMEOUT = "timeout"
REASON_DB_ERROR = "db_error"
REASON_ERROR = "error"

CREATIVE_PHOTO = "photo"
CREATIVE_VIDEO = "video"
CREATIVE_UNKNOWN = "unknown"


@dataclass(frozen=True)
class MediaAsset:
    """A downloaded blob; lives only for the download -> upload hand-off."""

    url: str
    data: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ImportOutcome:
    id: str
    status: str
    creative_type: str = ""
    reason: str = ""
    primary_path: str = ""
    secondary_path: str = ""
    preview_path: str = ""
    sub_asset_count: int = 0
    error: str = ""

    @property
    def cards_saved(self) -> int:
        return self.sub_asset_count

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RunCounters:
    total: int = 0
    ok: int = 0
    skipped: int = 0
    failed: int = 0
    processed: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)

    def add(self, outcome: ImportOutcome) -> None:
        if outcome.status == STATUS_OK:
            self.ok += 1
        elif outcome.status == STATUS_SKIPPED:
            self.skipped += 1
            reason = outcome.reason or REASON_ERROR
            self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1
        else:
            self.failed += 1
        self.processed += 1

    def snapshot(self) -> dict[str, int]:
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "failed": self.failed,
            "processed": self.processed,
            "total": self.total,
        }


__all__ = [
    "CREATIVE_PHOTO",
    "CREATIVE_UNKNOWN",
    "CREATIVE_VIDEO",
    "ImportOutcome",
    "MediaAsset",
    "REASON_ALREADY_IN_DB",
    "REASON_DB_ERROR",
    "REASON_DOWNLOAD_FAILED",
    "REASON_ERROR",
    "REASON_MISSING_ID",
    "REASON_NO_PHOTOS",
    "REASON_TIMEOUT",
    "REASON_UNKNOWN_TYPE",
    "REASON_UPLOAD_FAILED",
    "RunCounters",
    "STATUS_FAILED",
    "STATUS_OK",
    "STATUS_SKIPPED",
]
