#!/usr/bin/env python3
"""
Import worker process.

Runs every record of a normalized batch through the fetch/store unit under
two nested limits: an outer limit on records in flight and an inner limit,
shared by all records, on simultaneous network/storage operations. Progress
is reported as JSON lines on stdout (see :mod:`ad_ingest.events`); logs go to
stderr. A CSV report is appended one row per finished record.

Run states: ``loading -> processing -> draining -> completed | stopped``.

Environment (set by the job orchestrator)
-----------------------------------------
- ``IMPORT_INPUT_PATH``  normalized JSON array (or pass the path as argv[1])
- ``REPORT_PATH``        CSV report destination
- ``STOP_FILE``          cooperative stop marker to poll
- ``JOB_ID``             job identifier, echoed in events
- ``STARTED_AT``         spawn time in epoch ms; older stop markers are ignored
- ``BUCKET_PHOTO`` / ``BUCKET_VIDEO`` / ``BUCKET_VIDEO_PREVIEW`` and the
  ``IMPORT_*`` tuning variables read by :class:`ad_ingest.config.WorkerConfig`
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from typing import Any, Sequence

from .cancel import CancellationToken, StopFileWatcher, now_ms
from .config import WorkerConfig
from .db import CreativeRepository, ensure_schema, sql_connect
from .errors import InvalidBatch
from .events import Emitter, build_event, stdout_emitter
from .fetch import BoundedLimiter, Fetcher, HttpFetcher
from .logging import configure_logging, jlog, logging_context, set_global_context
from .media import ProcessContext, process_record_safely
from .models import ImportOutcome, RunCounters
from .normalize import CreativeRecord, normalize_batch
from .report import CsvReport
from .storage import ObjectStore

RUN_LOADING = "loading"
RUN_PROCESSING = "processing"
RUN_DRAINING = "draining"
RUN_COMPLETED = "completed"
RUN_STOPPED = "stopped"

BATCH_FILE_EXTENSIONS = (".json", ".ndjson")


@dataclass
class WorkerResult:
    status: str
    counters: RunCounters
    outcomes: list[ImportOutcome] = field(default_factory=list)
    not_started: int = 0


class ImportWorker:
    def __init__(
        self,
        records: Sequence[CreativeRecord],
        ctx: ProcessContext,
        *,
        token: CancellationToken | None = None,
        report: CsvReport | None = None,
        emit: Emitter | None = None,
        watcher: StopFileWatcher | None = None,
    ) -> None:
        self.records = list(records)
        self.ctx = ctx
        self.config = ctx.config
        self.token = token or CancellationToken()
        self.report = report
        self.emit = emit or stdout_emitter()
        self.watcher = watcher
        self.state = RUN_LOADING
        self.counters = RunCounters(total=len(self.records))
        self.outcomes: list[ImportOutcome] = []
        self.record_limiter = BoundedLimiter(self.config.record_concurrency)
        self.not_started = 0
        self._dispatched = 0

    def _mark_dispatched(self) -> None:
        self._dispatched += 1
        if self._dispatched >= self.counters.total:
            self.state = RUN_DRAINING

    def _emit(self, kind: str, **fields: Any) -> None:
        self.emit(build_event(kind, jobId=self.ctx.job_id, **fields))

    async def _tick(self, kind: str, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            self._emit(kind, state=self.state, **self.counters.snapshot())

    async def _record_outcome_row(self, outcome: ImportOutcome) -> None:
        try:
            await asyncio.to_thread(self.ctx.repo.record_outcome, outcome.as_dict())
        except Exception as exc:
            jlog("warning", event="outcome_row_failed", ad_id=outcome.id, error=str(exc))

    def _finish_record(self, outcome: ImportOutcome) -> None:
        self.counters.add(outcome)
        self.outcomes.append(outcome)
        if self.report is not None:
            self.report.append(outcome)
        self._emit(
            "progress",
            trigger="record",
            last={"id": outcome.id, "status": outcome.status, "reason": outcome.reason},
            **self.counters.snapshot(),
        )

    async def _run_one(self, record: CreativeRecord) -> None:
        async with self.record_limiter.slot():
            if self.token.cancelled:
                self.not_started += 1
                self._mark_dispatched()
                return
            self._mark_dispatched()
            outcome = await process_record_safely(self.ctx, record)
            await self._record_outcome_row(outcome)
            self._finish_record(outcome)

    async def run(self) -> WorkerResult:
        self.state = RUN_LOADING
        if self.report is not None:
            self.report.open()
        self._emit("started", total=self.counters.total, startedAt=now_ms())
        self._emit("count", total=self.counters.total)

        background = [
            asyncio.create_task(self._tick("progress", self.config.progress_interval_s)),
            asyncio.create_task(self._tick("heartbeat", self.config.heartbeat_interval_s)),
        ]
        if self.watcher is not None:
            background.append(asyncio.create_task(self.watcher.run()))

        try:
            self.state = RUN_PROCESSING
            tasks = [asyncio.create_task(self._run_one(r)) for r in self.records]
            await asyncio.gather(*tasks)
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)

        self.state = RUN_STOPPED if self.not_started else RUN_COMPLETED
        snapshot = self.counters.snapshot()
        if self.report is not None:
            self.report.append_summary(self.state, snapshot)
        self._emit(
            "done",
            status=self.state,
            skipReasons=dict(self.counters.skip_reasons),
            notStarted=self.not_started,
            reportPath=self.report.path if self.report else None,
            ioPeak=self.ctx.io_limiter.peak,
            **snapshot,
        )
        jlog("info", event="import_finished", status=self.state, not_started=self.not_started, **snapshot)
        return WorkerResult(status=self.state, counters=self.counters, outcomes=self.outcomes, not_started=self.not_started)


async def run_import(
    records: Sequence[CreativeRecord],
    *,
    config: WorkerConfig,
    store: ObjectStore,
    repo: CreativeRepository,
    fetcher: Fetcher | None = None,
    job_id: str | None = None,
    report_path: str | None = None,
    stop_file: str | None = None,
    started_at_ms: int | None = None,
    token: CancellationToken | None = None,
    emit: Emitter | None = None,
) -> WorkerResult:
    """Wire a worker from its collaborators and run it to completion."""

    token = token or CancellationToken()
    ctx = ProcessContext(
        config=config,
        store=store,
        repo=repo,
        fetcher=fetcher or HttpFetcher(user_agent=config.user_agent, timeout_s=config.download_timeout_s),
        io_limiter=BoundedLimiter(config.io_concurrency),
        job_id=job_id,
    )
    watcher = None
    if stop_file:
        watcher = StopFileWatcher(
            stop_file,
            job_id=job_id or "",
            started_at_ms=started_at_ms if started_at_ms is not None else now_ms(),
            token=token,
            interval_s=config.stop_poll_interval_s,
        )
    worker = ImportWorker(
        records,
        ctx,
        token=token,
        report=CsvReport(report_path) if report_path else None,
        emit=emit,
        watcher=watcher,
    )
    try:
        return await worker.run()
    finally:
        ctx.io_limiter.close()


def _install_sigterm(token: CancellationToken) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, token.cancel, "sigterm")
    except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows
        pass


async def _amain(records: list[CreativeRecord], config: WorkerConfig, env: dict[str, str]) -> WorkerResult:
    token = CancellationToken()
    _install_sigterm(token)
    con = None
    if not config.dry_run:
        con = sql_connect()
        con.autocommit = True
        ensure_schema(con)
    job_id = env.get("JOB_ID") or env.get("IMPORT_JOB_ID") or None
    try:
        started_raw = env.get("STARTED_AT", "")
        return await run_import(
            records,
            config=config,
            store=ObjectStore(dry_run=config.dry_run),
            repo=CreativeRepository(con, job_id=job_id, dry_run=config.dry_run),
            job_id=job_id,
            report_path=env.get("REPORT_PATH") or None,
            stop_file=env.get("STOP_FILE") or None,
            started_at_ms=int(started_raw) if started_raw.isdigit() else None,
            token=token,
        )
    finally:
        if con is not None:
            con.close()


def load_records(path: str) -> list[CreativeRecord]:
    with open(path, "rb") as fh:
        return normalize_batch(fh.read())


def batch_files(path: str) -> list[str]:
    """``path`` itself, or the batch files directly inside it in name order."""

    if not os.path.isdir(path):
        return [path]
    return sorted(
        os.path.join(path, name)
        for name in os.listdir(path)
        if name.lower().endswith(BATCH_FILE_EXTENSIONS) and os.path.isfile(os.path.join(path, name))
    )


def load_batch(path: str) -> list[CreativeRecord]:
    """Records of one batch file, or of every batch file in a directory.

    Inside a directory, files without usable records are logged and skipped.
    """

    if not os.path.isdir(path):
        return load_records(path)
    records: list[CreativeRecord] = []
    for file_path in batch_files(path):
        try:
            loaded = load_records(file_path)
        except InvalidBatch as exc:
            jlog("warning", event="batch_file_skipped", path=file_path, error=str(exc))
            continue
        jlog("info", event="batch_file_loaded", path=file_path, records=len(loaded))
        records.extend(loaded)
    return records


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    env = dict(os.environ)
    config = WorkerConfig.from_env(env)
    configure_logging(logging.DEBUG if config.debug else logging.INFO)
    set_global_context(app="ad_ingest", component="worker")
    input_path = argv[0] if argv else env.get("IMPORT_INPUT_PATH", "")
    if not input_path:
        jlog("error", event="worker_missing_input", message="pass the batch path as argv[1] or IMPORT_INPUT_PATH")
        return 2
    with logging_context(job_id=env.get("JOB_ID")):
        records = load_records(input_path)
        jlog("info", event="worker_loaded", records=len(records), input_path=input_path, dry_run=config.dry_run)
        asyncio.run(_amain(records, config, env))
    return 0


if __name__ == "__main__":
    sys.exit(main())
