"""Importer version resolution helpers."""

from __future__ import annotations

import os

IMPORTER_NAME = "ad_ingest"
IMPORTER_VERSION = "2026-10-17.1"


def get_importer_version(name: str = IMPORTER_NAME, version: str = IMPORTER_VERSION) -> str:
    """Return a human-readable version string with an env override."""

    return os.getenv("AD_IMPORTER_VERSION", f"{name}:{version}")


__all__ = ["IMPORTER_NAME", "IMPORTER_VERSION", "get_importer_version"]
