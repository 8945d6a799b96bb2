"""Database helpers for the import pipeline."""

from .postgres import (
    CreativeRepository,
    creative_exists,
    ensure_schema,
    fetch_creative_hashes,
    fetch_creatives_missing_hash,
    record_outcome,
    sql_connect,
    update_creative_hash,
    upsert_card,
    upsert_creative,
)

__all__ = [
    "CreativeRepository",
    "creative_exists",
    "ensure_schema",
    "fetch_creative_hashes",
    "fetch_creatives_missing_hash",
    "record_outcome",
    "sql_connect",
    "update_creative_hash",
    "upsert_card",
    "upsert_creative",
]
