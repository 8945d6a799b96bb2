"""Runtime configuration resolved from the environment.

Module-level ``DEFAULT_*`` values read the environment once at import time;
the dataclasses below carry resolved values through the pipeline and can be
overridden by CLI flags or constructed directly in tests.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from typing import Mapping

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


DEFAULT_RECORD_CONCURRENCY = _env_int(os.environ, "IMPORT_CONCURRENCY", 10)
DEFAULT_IO_CONCURRENCY = _env_int(os.environ, "IMPORT_IO_CONCURRENCY", DEFAULT_RECORD_CONCURRENCY * 3)
DEFAULT_RECORD_TIMEOUT_S = _env_float(os.environ, "IMPORT_RECORD_TIMEOUT_S", 180.0)
DEFAULT_DOWNLOAD_TIMEOUT_S = _env_float(os.environ, "IMPORT_DOWNLOAD_TIMEOUT_S", 30.0)
DEFAULT_DOWNLOAD_ATTEMPTS = 3
DEFAULT_RETRY_BASE_S = 0.5
DEFAULT_PROGRESS_INTERVAL_S = 2.0
DEFAULT_HEARTBEAT_INTERVAL_S = 10.0
DEFAULT_STOP_POLL_INTERVAL_S = 1.0
DEFAULT_USER_AGENT = "ad-media-ingest/1.0"

DEFAULT_PHASH_GRID = _env_int(os.environ, "PHASH_GRID", 8)
DEFAULT_CLUSTER_THRESHOLD = _env_int(os.environ, "PHASH_CLUSTER_THRESHOLD", 4)

DEFAULT_JOBS_DIR = os.getenv("IMPORT_JOBS_DIR") or os.path.join(tempfile.gettempdir(), "ads-import-jobs")
DEFAULT_LOG_TAIL_LINES = 200


@dataclass(frozen=True)
class HashConfig:
    grid: int = DEFAULT_PHASH_GRID
    cluster_threshold: int = DEFAULT_CLUSTER_THRESHOLD


@dataclass(frozen=True)
class WorkerConfig:
    photo_bucket: str = ""
    video_bucket: str = ""
    preview_bucket: str = ""
    record_concurrency: int = DEFAULT_RECORD_CONCURRENCY
    io_concurrency: int = DEFAULT_IO_CONCURRENCY
    record_timeout_s: float = DEFAULT_RECORD_TIMEOUT_S
    download_timeout_s: float = DEFAULT_DOWNLOAD_TIMEOUT_S
    download_attempts: int = DEFAULT_DOWNLOAD_ATTEMPTS
    retry_base_s: float = DEFAULT_RETRY_BASE_S
    progress_interval_s: float = DEFAULT_PROGRESS_INTERVAL_S
    heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S
    stop_poll_interval_s: float = DEFAULT_STOP_POLL_INTERVAL_S
    skip_if_in_db: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    dry_run: bool = False
    debug: bool = False
    hashing: HashConfig = field(default_factory=HashConfig)

    def __post_init__(self) -> None:
        if self.record_concurrency < 1:
            raise ValueError("record_concurrency must be >= 1")
        if self.io_concurrency < 1:
            raise ValueError("io_concurrency must be >= 1")
        if self.download_attempts < 1:
            raise ValueError("download_attempts must be >= 1")

    @property
    def preview_bucket_or_video(self) -> str:
        return self.preview_bucket or self.video_bucket

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "WorkerConfig":
        env = os.environ if env is None else env
        records = _env_int(env, "IMPORT_CONCURRENCY", DEFAULT_RECORD_CONCURRENCY)
        return cls(
            photo_bucket=env.get("BUCKET_PHOTO", ""),
            video_bucket=env.get("BUCKET_VIDEO", ""),
            preview_bucket=env.get("BUCKET_VIDEO_PREVIEW", ""),
            record_concurrency=records,
            io_concurrency=_env_int(env, "IMPORT_IO_CONCURRENCY", max(DEFAULT_IO_CONCURRENCY, records * 3)),
            record_timeout_s=_env_float(env, "IMPORT_RECORD_TIMEOUT_S", DEFAULT_RECORD_TIMEOUT_S),
            download_timeout_s=_env_float(env, "IMPORT_DOWNLOAD_TIMEOUT_S", DEFAULT_DOWNLOAD_TIMEOUT_S),
            download_attempts=_env_int(env, "IMPORT_DOWNLOAD_ATTEMPTS", DEFAULT_DOWNLOAD_ATTEMPTS),
            skip_if_in_db=_env_bool(env, "IMPORT_SKIP_IF_IN_DB", True),
            user_agent=env.get("IMPORT_USER_AGENT", DEFAULT_USER_AGENT),
            dry_run=_env_bool(env, "IMPORT_DRY_RUN", False),
            debug=_env_bool(env, "DEBUG_IMPORT", False),
            hashing=HashConfig(
                grid=_env_int(env, "PHASH_GRID", DEFAULT_PHASH_GRID),
                cluster_threshold=_env_int(env, "PHASH_CLUSTER_THRESHOLD", DEFAULT_CLUSTER_THRESHOLD),
            ),
        )


@dataclass(frozen=True)
class JobsConfig:
    jobs_dir: str = DEFAULT_JOBS_DIR
    log_tail_lines: int = DEFAULT_LOG_TAIL_LINES


__all__ = [
    "DEFAULT_CLUSTER_THRESHOLD",
    "DEFAULT_JOBS_DIR",
    "DEFAULT_LOG_TAIL_LINES",
    "DEFAULT_PHASH_GRID",
    "HashConfig",
    "JobsConfig",
    "WorkerConfig",
]
