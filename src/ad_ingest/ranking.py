"""Duplicate-aware views over stored creatives.

Creatives are grouped by a grouping key: ``phash:<hex>`` when a perceptual
hash is known, otherwise the image URL's host+directory joined with the
first 100 characters of the ad text. ``phash:`` groups are then merged
transitively by :func:`ad_ingest.clustering.build_clusters`.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Iterable, Mapping
from urllib.parse import urlsplit

from .clustering import PHASH_KEY_PREFIX, build_clusters
from .config import DEFAULT_CLUSTER_THRESHOLD
from .hashing import normalize_hex

_WS_RE = re.compile(r"\s+")

VARIATION_BUCKETS = ("less_than_3", "3_5", "5_10", "more_than_10")


def image_key(image_url: str) -> str:
    """``host/dir`` of an image URL (the file name and query dropped)."""

    parts = urlsplit(image_url)
    if parts.scheme and parts.netloc:
        return parts.netloc + parts.path.rsplit("/", 1)[0]
    return "/".join(image_url.split("?", 1)[0].split("/")[:-1])


def _creative_id(ad: Mapping[str, Any]) -> str:
    return str(ad.get("ad_archive_id") or ad.get("id") or "")


def grouping_key(ad: Mapping[str, Any]) -> str:
    digest = normalize_hex(ad.get("creative_hash"))
    if digest:
        return PHASH_KEY_PREFIX + digest
    image_url = ad.get("image_url") or ad.get("link_to_creative")
    img = image_key(image_url) if isinstance(image_url, str) and image_url else "no-image"
    text = ad.get("text")
    txt = _WS_RE.sub(" ", text[:100]).strip() if isinstance(text, str) and text else "no-text"
    return f"{img}|{txt}"


def _group(ads: Iterable[Mapping[str, Any]]) -> tuple[dict[str, list[Mapping[str, Any]]], dict[str, str]]:
    groups: dict[str, list[Mapping[str, Any]]] = {}
    key_of: dict[str, str] = {}
    for ad in ads:
        key = grouping_key(ad)
        groups.setdefault(key, []).append(ad)
        key_of[_creative_id(ad)] = key
    return groups, key_of


def compute_variation_counts(
    ads: Iterable[Mapping[str, Any]],
    *,
    threshold: int = DEFAULT_CLUSTER_THRESHOLD,
) -> dict[str, int]:
    """Map each creative id to the number of other creatives in its cluster."""

    ads = list(ads)
    groups, key_of = _group(ads)
    phash_keys = [k for k in groups if k.startswith(PHASH_KEY_PREFIX)]
    result = build_clusters(phash_keys, {k: len(groups[k]) for k in phash_keys}, threshold=threshold)

    counts: dict[str, int] = {}
    for ad_id, key in key_of.items():
        if key.startswith(PHASH_KEY_PREFIX):
            size = result.size(key)
        else:
            size = len(groups[key])
        counts[ad_id] = max(0, size - 1)
    return counts


def _created_sort_value(ad: Mapping[str, Any]) -> float:
    value = ad.get("created_at")
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return 0.0
    return 0.0


def dedupe_and_rank(
    ads: Iterable[Mapping[str, Any]],
    *,
    threshold: int = DEFAULT_CLUSTER_THRESHOLD,
) -> list[dict[str, Any]]:
    """Keep the newest creative of each cluster, most-varied clusters first.

    Each returned dict is a copy of the kept creative with
    ``variation_count`` and ``variation_bucket`` added.
    """

    ads = list(ads)
    groups, _ = _group(ads)
    phash_keys = [k for k in groups if k.startswith(PHASH_KEY_PREFIX)]
    result = build_clusters(phash_keys, {k: len(groups[k]) for k in phash_keys}, threshold=threshold)

    newest: dict[str, Mapping[str, Any]] = {}
    sizes: dict[str, int] = {}
    for key, members in groups.items():
        cluster = result.representative(key) if key.startswith(PHASH_KEY_PREFIX) else key
        sizes[cluster] = result.size(key) if key.startswith(PHASH_KEY_PREFIX) else len(members)
        for ad in members:
            best = newest.get(cluster)
            if best is None or _created_sort_value(ad) > _created_sort_value(best):
                newest[cluster] = ad

    ranked = []
    for cluster, ad in newest.items():
        count = max(0, sizes[cluster] - 1)
        ranked.append({**ad, "variation_count": count, "variation_bucket": variation_bucket(count)})
    ranked.sort(key=lambda r: (-r["variation_count"], -_created_sort_value(r)))
    return ranked


def variation_bucket(count: int) -> str:
    if count < 3:
        return "less_than_3"
    if count <= 5:
        return "3_5"
    if count <= 10:
        return "5_10"
    return "more_than_10"


__all__ = [
    "VARIATION_BUCKETS",
    "compute_variation_counts",
    "dedupe_and_rank",
    "grouping_key",
    "image_key",
    "variation_bucket",
]
