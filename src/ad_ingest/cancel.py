"""Cooperative cancellation for import runs.

A stop request is an out-of-band marker tagged with the job id and a
millisecond timestamp. The worker polls it on a fixed interval and only
honors markers written at or after its own start, so a stale marker left by
an earlier run with the same id is ignored. Cancellation never interrupts
in-flight work; it only stops new records from starting.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from dataclasses import dataclass

from .logging import jlog


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class StopSignal:
    job_id: str
    requested_at_ms: int


def write_stop_signal(path: str, job_id: str, *, requested_at_ms: int | None = None) -> StopSignal:
    signal = StopSignal(job_id=job_id, requested_at_ms=requested_at_ms if requested_at_ms is not None else now_ms())
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as fh:
        json.dump({"jobId": signal.job_id, "ts": signal.requested_at_ms}, fh)
    os.replace(tmp, path)
    return signal


def read_stop_signal(path: str) -> StopSignal | None:
    """Read a stop marker; a bare job id body is dated by the file's mtime."""

    try:
        with open(path, "r", encoding="utf-8") as fh:
            body = fh.read().strip()
        mtime_ms = int(os.path.getmtime(path) * 1000)
    except FileNotFoundError:
        return None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        ts = data.get("ts")
        return StopSignal(
            job_id=str(data.get("jobId") or ""),
            requested_at_ms=int(ts) if isinstance(ts, (int, float)) else mtime_ms,
        )
    return StopSignal(job_id=body, requested_at_ms=mtime_ms)


class CancellationToken:
    """A flag the worker checks before starting each record."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "stop_requested") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason
            jlog("info", event="cancellation_requested", reason=reason)


class StopFileWatcher:
    """Poll a stop-marker file and trip ``token`` when a fresh marker appears."""

    def __init__(
        self,
        path: str,
        *,
        job_id: str,
        started_at_ms: int,
        token: CancellationToken,
        interval_s: float = 1.0,
    ) -> None:
        self.path = path
        self.job_id = job_id
        self.started_at_ms = started_at_ms
        self.token = token
        self.interval_s = interval_s
        self._stale_seen: set[int] = set()

    def is_honored(self, signal: StopSignal) -> bool:
        if signal.requested_at_ms < self.started_at_ms:
            return False
        return not signal.job_id or not self.job_id or signal.job_id == self.job_id

    def check(self) -> bool:
        signal = read_stop_signal(self.path)
        if signal is None:
            return False
        if not self.is_honored(signal):
            if signal.requested_at_ms in self._stale_seen:
                return False
            self._stale_seen.add(signal.requested_at_ms)
            jlog(
                "info",
                event="stale_stop_signal_ignored",
                job_id=self.job_id,
                signal_job_id=signal.job_id,
                signal_ts=signal.requested_at_ms,
                started_at=self.started_at_ms,
            )
            return False
        self.token.cancel("stop_signal")
        return True

    async def run(self) -> None:
        while not self.token.cancelled:
            self.check()
            await asyncio.sleep(self.interval_s)


__all__ = [
    "CancellationToken",
    "StopFileWatcher",
    "StopSignal",
    "now_ms",
    "read_stop_signal",
    "write_stop_signal",
]
