"""Incremental CSV audit report for an import run."""

from __future__ import annotations

import csv
import os
from typing import Mapping

from .models import ImportOutcome

REPORT_HEADER = (
    "id",
    "status",
    "creative_type",
    "reason",
    "primary_path",
    "secondary_path",
    "preview_path",
    "sub_asset_count",
    "error",
)
SUMMARY_ROW_ID = "#summary"


class CsvReport:
    """Append-only report: one header, one row per finished record, one summary row.

    Each row is written and flushed on its own so an interrupted run still
    leaves a readable partial report. Quoting follows RFC 4180.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.rows_written = 0

    def _append(self, row: list[str]) -> None:
        with open(self.path, "a", encoding="utf-8", newline="") as fh:
            csv.writer(fh).writerow(row)
            fh.flush()

    def open(self) -> None:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        if not os.path.exists(self.path) or os.path.getsize(self.path) == 0:
            self._append(list(REPORT_HEADER))

    def append(self, outcome: ImportOutcome) -> None:
        self._append(
            [
                outcome.id,
                outcome.status,
                outcome.creative_type,
                outcome.reason,
                outcome.primary_path,
                outcome.secondary_path,
                outcome.preview_path,
                str(outcome.sub_asset_count),
                outcome.error,
            ]
        )
        self.rows_written += 1

    def append_summary(self, status: str, counters: Mapping[str, int]) -> None:
        detail = ";".join(f"{k}={v}" for k, v in counters.items())
        self._append([SUMMARY_ROW_ID, status, "", detail, "", "", "", "", ""])


__all__ = ["CsvReport", "REPORT_HEADER", "SUMMARY_ROW_ID"]
