"""Metadata helpers for canonical media uploads."""

from __future__ import annotations

from collections import OrderedDict
from typing import OrderedDict as OrderedDictType


def build_media_metadata(
    *,
    ad_id: str,
    kind: str,
    content_type: str,
    size_bytes: int,
    importer_version: str,
    source_url: str | None = None,
    card_index: int | None = None,
    job_id: str | None = None,
) -> OrderedDictType[str, str]:
    """Return blob metadata with deterministic ordering for auditability."""

    md: OrderedDictType[str, str] = OrderedDict()
    md["ad_id"] = ad_id
    md["media_kind"] = kind
    md["content_type"] = content_type
    md["bytes"] = str(size_bytes)
    md["importer_version"] = importer_version
    if card_index is not None:
        md["card_index"] = str(card_index)
    if job_id:
        md["job_id"] = job_id
    if source_url:
        md["source_url"] = source_url
    return md


__all__ = ["build_media_metadata"]
