"""Postgres persistence helpers used by the importer."""

from __future__ import annotations

import os
from typing import Any, Mapping, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from ..logging import jlog

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS creatives (
    ad_archive_id            TEXT PRIMARY KEY,
    page_name                TEXT,
    publisher_platform       TEXT,
    text                     TEXT,
    caption                  TEXT,
    title                    TEXT,
    link_url                 TEXT,
    display_format           TEXT,
    start_date_formatted     DATE,
    end_date_formatted       DATE,
    creative_type            TEXT,
    link_to_creative         TEXT,
    video_hd_url             TEXT,
    video_preview_image_url  TEXT,
    cards_count              INTEGER NOT NULL DEFAULT 0,
    cards_json               JSONB,
    raw_json                 JSONB,
    creative_hash            TEXT,
    import_job_id            TEXT,
    created_at               TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at               TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS creative_cards (
    ad_archive_id  TEXT NOT NULL,
    card_index     INTEGER NOT NULL,
    storage_path   TEXT,
    source_url     TEXT,
    title          TEXT,
    body           TEXT,
    link_url       TEXT,
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (ad_archive_id, card_index)
);

CREATE TABLE IF NOT EXISTS import_outcomes (
    job_id           TEXT NOT NULL,
    ad_archive_id    TEXT NOT NULL,
    status           TEXT NOT NULL,
    reason           TEXT,
    creative_type    TEXT,
    primary_path     TEXT,
    secondary_path   TEXT,
    preview_path     TEXT,
    sub_asset_count  INTEGER NOT NULL DEFAULT 0,
    error            TEXT,
    recorded_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (job_id, ad_archive_id)
);
"""

CREATIVE_COLUMNS = (
    "ad_archive_id",
    "page_name",
    "publisher_platform",
    "text",
    "caption",
    "title",
    "link_url",
    "display_format",
    "start_date_formatted",
    "end_date_formatted",
    "creative_type",
    "link_to_creative",
    "video_hd_url",
    "video_preview_image_url",
    "cards_count",
    "cards_json",
    "raw_json",
    "creative_hash",
    "import_job_id",
)
_JSON_COLUMNS = {"cards_json", "raw_json"}
# Re-imports without a freshly computed hash keep the stored one.
_COALESCE_COLUMNS = {"creative_hash"}


def sql_connect(sql_conn: str | None = None, db_host: str | None = None, db_port: int | None = None):
    """Return a psycopg2 connection using either TCP or a Cloud SQL socket."""

    dbname = os.getenv("DB_NAME", "adsdb")
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD")
    if not password:
        raise RuntimeError("DB_PASSWORD environment variable is required for database connections")

    db_host = db_host or os.getenv("DB_HOST")
    if db_host:
        return psycopg2.connect(
            host=db_host,
            port=db_port or int(os.getenv("DB_PORT", "5432")),
            dbname=dbname,
            user=user,
            password=password,
            connect_timeout=10,
            sslmode=os.getenv("DB_SSLMODE", "prefer"),
        )

    sql_conn = sql_conn or os.getenv("DB_SQL_CONN")
    if not sql_conn:
        raise RuntimeError("sql_conn (or DB_SQL_CONN) must be provided when db_host is not set")
    return psycopg2.connect(
        host=f"/cloudsql/{sql_conn}",
        dbname=dbname,
        user=user,
        password=password,
        connect_timeout=10,
    )


def ensure_schema(con) -> None:
    with con.cursor() as cur:
        cur.execute(SCHEMA_SQL)
    con.commit()


def creative_exists(con, ad_id: str) -> bool:
    with con.cursor() as cur:
        cur.execute("SELECT 1 FROM creatives WHERE ad_archive_id = %s LIMIT 1", (ad_id,))
        return cur.fetchone() is not None


def _creative_upsert_sql() -> str:
    cols = ", ".join(CREATIVE_COLUMNS)
    placeholders = ", ".join(["%s"] * len(CREATIVE_COLUMNS))
    updates = []
    for col in CREATIVE_COLUMNS[1:]:
        if col in _COALESCE_COLUMNS:
            updates.append(f"{col} = COALESCE(EXCLUDED.{col}, creatives.{col})")
        else:
            updates.append(f"{col} = EXCLUDED.{col}")
    updates.append("updated_at = NOW()")
    return (
        f"INSERT INTO creatives({cols}) VALUES ({placeholders}) "
        f"ON CONFLICT (ad_archive_id) DO UPDATE SET {', '.join(updates)}"
    )


_CREATIVE_UPSERT_SQL = _creative_upsert_sql()


def upsert_creative(con, row: Mapping[str, Any], *, dry_run: bool = False) -> None:
    """Insert or overwrite the ``creatives`` row keyed by ``ad_archive_id``."""

    if not row.get("ad_archive_id"):
        raise ValueError("ad_archive_id required")
    if dry_run:
        jlog(
            "info",
            event="dry_run_upsert_creative",
            ad_id=row["ad_archive_id"],
            creative_type=row.get("creative_type"),
        )
        return
    params = []
    for col in CREATIVE_COLUMNS:
        value = row.get(col)
        if col in _JSON_COLUMNS and value is not None:
            value = Json(value)
        params.append(value)
    with con.cursor() as cur:
        cur.execute(_CREATIVE_UPSERT_SQL, params)
    con.commit()


def upsert_card(
    con,
    *,
    ad_id: str,
    card_index: int,
    storage_path: Optional[str],
    source_url: Optional[str] = None,
    title: Optional[str] = None,
    body: Optional[str] = None,
    link_url: Optional[str] = None,
    dry_run: bool = False,
) -> None:
    """Insert or overwrite one carousel card row keyed by (creative id, index)."""

    if dry_run:
        jlog("info", event="dry_run_upsert_card", ad_id=ad_id, card_index=card_index, path=storage_path)
        return
    with con.cursor() as cur:
        cur.execute(
            """
            INSERT INTO creative_cards(ad_archive_id, card_index, storage_path, source_url, title, body, link_url)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (ad_archive_id, card_index) DO UPDATE
               SET storage_path = EXCLUDED.storage_path,
                   source_url   = EXCLUDED.source_url,
                   title        = EXCLUDED.title,
                   body         = EXCLUDED.body,
                   link_url     = EXCLUDED.link_url,
                   updated_at   = NOW()
            """,
            (ad_id, card_index, storage_path, source_url, title, body, link_url),
        )
    con.commit()


def record_outcome(con, *, job_id: str, outcome: Mapping[str, Any], dry_run: bool = False) -> None:
    """Persist one import outcome row (latest attempt per job wins).

    Outcomes without a creative id have no row key and are only reported in
    the CSV report.
    """

    if dry_run or not outcome.get("id"):
        return
    with con.cursor() as cur:
        cur.execute(
            """
            INSERT INTO import_outcomes(job_id, ad_archive_id, status, reason, creative_type,
                                        primary_path, secondary_path, preview_path, sub_asset_count, error)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (job_id, ad_archive_id) DO UPDATE
               SET status          = EXCLUDED.status,
                   reason          = EXCLUDED.reason,
                   creative_type   = EXCLUDED.creative_type,
                   primary_path    = EXCLUDED.primary_path,
                   secondary_path  = EXCLUDED.secondary_path,
                   preview_path    = EXCLUDED.preview_path,
                   sub_asset_count = EXCLUDED.sub_asset_count,
                   error           = EXCLUDED.error,
                   recorded_at     = NOW()
            """,
            (
                job_id,
                outcome["id"],
                outcome.get("status"),
                outcome.get("reason") or None,
                outcome.get("creative_type") or None,
                outcome.get("primary_path") or None,
                outcome.get("secondary_path") or None,
                outcome.get("preview_path") or None,
                int(outcome.get("sub_asset_count") or 0),
                outcome.get("error") or None,
            ),
        )
    con.commit()


def update_creative_hash(con, *, ad_id: str, creative_hash: str, dry_run: bool = False) -> None:
    if dry_run:
        jlog("info", event="dry_run_update_hash", ad_id=ad_id, creative_hash=creative_hash)
        return
    with con.cursor() as cur:
        cur.execute(
            "UPDATE creatives SET creative_hash=%s, updated_at=NOW() WHERE ad_archive_id=%s",
            (creative_hash, ad_id),
        )
    con.commit()


def fetch_creatives_missing_hash(con, *, limit: int = 500, after_id: str | None = None) -> list[dict[str, Any]]:
    """Page through rows without a hash, ordered by id (keyset pagination)."""

    with con.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT ad_archive_id, link_to_creative, video_preview_image_url
              FROM creatives
             WHERE creative_hash IS NULL
               AND (%s IS NULL OR ad_archive_id > %s)
             ORDER BY ad_archive_id
             LIMIT %s
            """,
            (after_id, after_id, limit),
        )
        return [dict(r) for r in cur.fetchall()]


def fetch_creative_hashes(con, *, page_name: str | None = None) -> list[dict[str, Any]]:
    """Return the fields the duplicate-aware ranking needs for every creative."""

    with con.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT ad_archive_id, page_name, creative_hash, link_to_creative, text, title, created_at
              FROM creatives
             WHERE (%s IS NULL OR page_name = %s)
             ORDER BY created_at DESC
            """,
            (page_name, page_name),
        )
        return [dict(r) for r in cur.fetchall()]


class CreativeRepository:
    """Binds a connection and dry-run flag to the helpers above."""

    def __init__(self, con, *, job_id: str | None = None, dry_run: bool = False) -> None:
        self.con = con
        self.job_id = job_id
        self.dry_run = dry_run

    def exists(self, ad_id: str) -> bool:
        if self.dry_run:
            return False
        return creative_exists(self.con, ad_id)

    def upsert_creative(self, row: Mapping[str, Any]) -> None:
        upsert_creative(self.con, {**row, "import_job_id": self.job_id}, dry_run=self.dry_run)

    def upsert_card(self, **fields: Any) -> None:
        upsert_card(self.con, dry_run=self.dry_run, **fields)

    def record_outcome(self, outcome: Mapping[str, Any]) -> None:
        if self.job_id:
            record_outcome(self.con, job_id=self.job_id, outcome=outcome, dry_run=self.dry_run)


__all__ = [
    "CREATIVE_COLUMNS",
    "CreativeRepository",
    "SCHEMA_SQL",
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
