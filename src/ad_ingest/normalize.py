"""Normalize uploaded creative batches into a flat list of records.

Accepted shapes:
- a JSON array of records,
- a JSON object wrapping the array under ``data``/``items``/``ads``/``results``/``rows``
  (one level of ``{"data": {"items": [...]}}`` nesting is also accepted),
- a single JSON record (has an id-like field or a ``snapshot``),
- newline-delimited JSON, one record per line; unparsable lines are dropped.
"""

from __future__ import annotations

import json
from typing import Any

from .errors import EmptyInput, UnsupportedShape
from .logging import jlog

WRAPPER_KEYS = ("data", "items", "ads", "results", "rows")
ID_FIELDS = ("ad_archive_id", "adArchiveID", "adArchiveId", "ad_id", "id")

CreativeRecord = dict[str, Any]


def looks_like_creative(obj: Any) -> bool:
    if not isinstance(obj, dict):
        return False
    for name in ID_FIELDS:
        value = obj.get(name)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return True
    return bool(obj.get("snapshot"))


def _only_records(items: list[Any]) -> list[CreativeRecord]:
    return [x for x in items if isinstance(x, dict)]


def extract_records(payload: Any) -> list[CreativeRecord]:
    """Pull the record list out of an already parsed JSON payload."""

    if isinstance(payload, list):
        return _only_records(payload)
    if isinstance(payload, dict):
        for key in WRAPPER_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return _only_records(value)
            if isinstance(value, dict) and isinstance(value.get("items"), list):
                return _only_records(value["items"])
        if looks_like_creative(payload):
            return [payload]
    raise UnsupportedShape(
        "Unsupported JSON shape. Expected an array, an object containing "
        f"{'/'.join(WRAPPER_KEYS)}[], or a single creative object."
    )


def _parse_ndjson(text: str) -> list[CreativeRecord]:
    out: list[CreativeRecord] = []
    dropped = 0
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            dropped += 1
            continue
        if isinstance(obj, dict):
            out.append(obj)
        else:
            dropped += 1
    if dropped:
        jlog("info", event="ndjson_lines_dropped", dropped=dropped, kept=len(out))
    return out


def normalize_batch(raw: bytes | str) -> list[CreativeRecord]:
    """Return the canonical, input-ordered record list for an uploaded batch."""

    if isinstance(raw, bytes):
        text = raw.decode("utf-8-sig", errors="replace")
    else:
        text = raw
    text = text.strip()
    if not text:
        raise EmptyInput("Uploaded file is empty")

    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        records = _parse_ndjson(text)
        if not records:
            raise UnsupportedShape("Could not parse file as JSON or NDJSON.") from None
        return records
    return extract_records(payload)


__all__ = ["CreativeRecord", "ID_FIELDS", "WRAPPER_KEYS", "extract_records", "looks_like_creative", "normalize_batch"]
