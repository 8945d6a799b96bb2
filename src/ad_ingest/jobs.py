"""Import job orchestration: start, poll and stop worker processes.

Each job owns a directory under the jobs root holding the raw upload, the
normalized batch, the CSV report, the stop marker, captured stdout/stderr and
``state.json``. The state file is the job registry entry: it is merged on
every write, survives orchestrator restarts, and is the only thing ``poll``
reads. A worker is a separate OS process; its stdout protocol events are
relayed into the state file by a reader thread.
"""

from __future__ import annotations

import json
import os
import re
import signal
import subprocess
import sys
import threading
import uuid
from dataclasses import dataclass
from typing import IO, Any, Mapping, Sequence

from .cancel import now_ms, write_stop_signal
from .config import JobsConfig
from .errors import JobNotFound, WorkerSpawnFailed
from .events import COUNTER_FIELDS, STATE_FIELD_BY_EVENT, parse_event_line
from .logging import jlog, utcnow_iso
from .normalize import normalize_batch

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_FAILED = "failed"
JOB_STOPPED = "stopped"
TERMINAL_JOB_STATUSES = frozenset({JOB_DONE, JOB_FAILED, JOB_STOPPED})

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_EXIT_JOIN_TIMEOUT_S = 5.0


@dataclass(frozen=True)
class JobPaths:
    dir: str
    raw_path: str
    input_path: str
    report_path: str
    stop_file: str
    state_path: str
    stdout_path: str
    stderr_path: str

    @classmethod
    def for_job(cls, jobs_dir: str, job_id: str) -> "JobPaths":
        d = os.path.join(jobs_dir, job_id)
        return cls(
            dir=d,
            raw_path=os.path.join(d, "raw.json"),
            input_path=os.path.join(d, "input.json"),
            report_path=os.path.join(d, "report.csv"),
            stop_file=os.path.join(d, "STOP"),
            state_path=os.path.join(d, "state.json"),
            stdout_path=os.path.join(d, "stdout.log"),
            stderr_path=os.path.join(d, "stderr.log"),
        )


def _check_job_id(job_id: str) -> str:
    if not job_id or not _JOB_ID_RE.match(job_id):
        raise JobNotFound(f"job {job_id!r} not found")
    return job_id


class JobStateStore:
    """Durable job id -> state registry, one merged JSON document per job."""

    def __init__(self, jobs_dir: str) -> None:
        self.jobs_dir = jobs_dir
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(job_id, threading.Lock())

    def paths(self, job_id: str) -> JobPaths:
        return JobPaths.for_job(self.jobs_dir, _check_job_id(job_id))

    def exists(self, job_id: str) -> bool:
        try:
            return os.path.exists(self.paths(job_id).state_path)
        except JobNotFound:
            return False

    def _read_unlocked(self, path: str) -> dict[str, Any]:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)

    def read(self, job_id: str) -> dict[str, Any]:
        path = self.paths(job_id).state_path
        with self._lock(job_id):
            try:
                return self._read_unlocked(path)
            except FileNotFoundError as exc:
                raise JobNotFound(f"job {job_id!r} not found") from exc

    def write(self, job_id: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        """Shallow-merge ``patch`` into the stored state and return the result."""

        path = self.paths(job_id).state_path
        with self._lock(job_id):
            try:
                prev = self._read_unlocked(path)
            except (FileNotFoundError, json.JSONDecodeError):
                prev = {}
            state = {**prev, **patch, "updatedAt": utcnow_iso()}
            tmp = f"{path}.tmp"
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(state, fh, indent=2, default=str)
            os.replace(tmp, path)
            return state

    def list_jobs(self) -> list[str]:
        try:
            names = os.listdir(self.jobs_dir)
        except FileNotFoundError:
            return []
        return sorted(n for n in names if _JOB_ID_RE.match(n) and self.exists(n))


def merge_event(state: Mapping[str, Any], event: Mapping[str, Any]) -> dict[str, Any]:
    """Return the state patch for one worker event (last write wins per kind)."""

    kind = event["event"]
    patch: dict[str, Any] = {STATE_FIELD_BY_EVENT[kind]: dict(event)}
    if any(k in event for k in COUNTER_FIELDS):
        counters = dict(state.get("counters") or {})
        counters.update({k: event[k] for k in COUNTER_FIELDS if k in event})
        patch["counters"] = counters
    if kind == "count" and "total" in event:
        patch["total"] = event["total"]
    return patch


def _tail(path: str, lines: int) -> list[str]:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as fh:
            return fh.read().split("\n")[-lines:]
    except FileNotFoundError:
        return []


def _pid_alive(pid: int | None) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class ImportJobManager:
    """Owns the lifecycle of import jobs and their worker processes."""

    def __init__(
        self,
        config: JobsConfig | None = None,
        *,
        worker_command: Sequence[str] | None = None,
        worker_env: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config or JobsConfig()
        self.store = JobStateStore(self.config.jobs_dir)
        self.worker_command = list(worker_command or [sys.executable, "-m", "ad_ingest.worker"])
        self.worker_env = dict(worker_env or {})
        self._procs: dict[str, subprocess.Popen] = {}
        self._relays: dict[str, threading.Thread] = {}

    # ---------------- start ----------------

    def start(self, raw: bytes, *, file_name: str | None = None, debug: bool = False) -> dict[str, Any]:
        """Normalize ``raw``, persist a queued job and spawn its worker.

        Raises :class:`~ad_ingest.errors.InvalidBatch` before anything is
        created when the batch cannot be normalized.
        """

        records = normalize_batch(raw)

        job_id = str(uuid.uuid4())
        paths = self.store.paths(job_id)
        os.makedirs(paths.dir, exist_ok=True)
        with open(paths.raw_path, "wb") as fh:
            fh.write(raw)
        with open(paths.input_path, "w", encoding="utf-8") as fh:
            json.dump(records, fh, ensure_ascii=False)

        self.store.write(
            job_id,
            {
                "jobId": job_id,
                "status": JOB_QUEUED,
                "createdAt": utcnow_iso(),
                "recordCount": len(records),
                "fileName": file_name,
                "fileSize": len(raw),
                "rawPath": paths.raw_path,
                "inputPath": paths.input_path,
                "reportPath": paths.report_path,
                "debug": debug,
                "stopRequested": False,
            },
        )
        jlog("info", event="job_queued", job_id=job_id, records=len(records), file_name=file_name)
        self._spawn(job_id, paths, debug=debug)
        return {"jobId": job_id, "recordCount": len(records)}

    def _spawn(self, job_id: str, paths: JobPaths, *, debug: bool) -> None:
        started_at = now_ms()
        env = {
            **os.environ,
            **self.worker_env,
            "IMPORT_INPUT_PATH": paths.input_path,
            "REPORT_PATH": paths.report_path,
            "STOP_FILE": paths.stop_file,
            "JOB_ID": job_id,
            "IMPORT_JOB_ID": job_id,
            "STARTED_AT": str(started_at),
        }
        if debug:
            env["DEBUG_IMPORT"] = "true"
        try:
            os.unlink(paths.stop_file)
        except FileNotFoundError:
            pass
        try:
            proc = subprocess.Popen(
                [*self.worker_command, paths.input_path],
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            self.store.write(
                job_id,
                {"status": JOB_FAILED, "exitCode": 1, "error": f"spawn error: {exc}", "finishedAt": utcnow_iso()},
            )
            jlog("error", event="worker_spawn_failed", job_id=job_id, error=str(exc))
            raise WorkerSpawnFailed(f"could not start worker: {exc}") from exc

        self._procs[job_id] = proc
        self.store.write(
            job_id,
            {
                "status": JOB_RUNNING,
                "pid": proc.pid,
                "startedAt": utcnow_iso(),
                "startedAtMs": started_at,
                "workdir": paths.dir,
                "exitCode": None,
            },
        )
        jlog("info", event="worker_spawned", job_id=job_id, pid=proc.pid, command=self.worker_command)

        stderr_thread = threading.Thread(
            target=self._drain_stderr, args=(job_id, proc.stderr, paths.stderr_path), daemon=True
        )
        stderr_thread.start()
        relay = threading.Thread(
            target=self._relay_stdout, args=(job_id, proc, paths.stdout_path, stderr_thread), daemon=True
        )
        self._relays[job_id] = relay
        relay.start()

    # ---------------- relay ----------------

    def handle_worker_line(self, job_id: str, line: str) -> dict[str, Any] | None:
        """Merge one stdout line into job state; returns the event if it was one."""

        event = parse_event_line(line)
        if event is None:
            if line.strip():
                jlog("debug", event="worker_line_unparsed", job_id=job_id, line=line.strip()[:500])
            return None
        state = self.store.read(job_id)
        self.store.write(job_id, merge_event(state, event))
        return event

    def _drain_stderr(self, job_id: str, stream: IO[str], log_path: str) -> None:
        with open(log_path, "a", encoding="utf-8") as log:
            for line in stream:
                log.write(line)
                log.flush()
        self.store.write(job_id, {"lastStderrAt": utcnow_iso()})

    def _relay_stdout(
        self,
        job_id: str,
        proc: subprocess.Popen,
        log_path: str,
        stderr_thread: threading.Thread,
    ) -> None:
        assert proc.stdout is not None
        with open(log_path, "a", encoding="utf-8") as log:
            for line in proc.stdout:
                log.write(line)
                log.flush()
                try:
                    self.handle_worker_line(job_id, line)
                except (OSError, ValueError) as exc:
                    jlog("warning", event="worker_event_merge_failed", job_id=job_id, error=str(exc))
        code = proc.wait()
        stderr_thread.join(timeout=_EXIT_JOIN_TIMEOUT_S)
        self._finalize(job_id, code)

    def _finalize(self, job_id: str, exit_code: int) -> dict[str, Any]:
        state = self.store.read(job_id)
        done = state.get("doneEvent") or {}
        patch: dict[str, Any] = {"exitCode": exit_code, "finishedAt": state.get("finishedAt") or utcnow_iso()}
        if done.get("status") == "stopped" or (state.get("stopRequested") and not done):
            patch["status"] = JOB_STOPPED
            patch.setdefault("error", state.get("error") or "Stopped by user")
        elif done and exit_code == 0:
            patch["status"] = JOB_DONE
        else:
            patch["status"] = JOB_FAILED
            patch["error"] = state.get("error") or (
                f"worker crashed: exited with code {exit_code} without a terminal event"
                if not done
                else f"worker exited with code {exit_code}"
            )
        jlog("info", event="worker_exited", job_id=job_id, exit_code=exit_code, status=patch["status"])
        state = self.store.write(job_id, patch)
        self._procs.pop(job_id, None)
        self._relays.pop(job_id, None)
        return state

    # ---------------- poll ----------------

    def _worker_alive(self, job_id: str, state: Mapping[str, Any]) -> bool:
        proc = self._procs.get(job_id)
        if proc is not None:
            if proc.poll() is None:
                return True
            relay = self._relays.get(job_id)
            if relay is not None:
                # let the relay record the exit before judging the job
                relay.join(timeout=_EXIT_JOIN_TIMEOUT_S)
            return False
        return _pid_alive(state.get("pid"))

    def poll(self, job_id: str, *, debug: bool = False) -> dict[str, Any]:
        state = self.store.read(job_id)
        if state.get("status") == JOB_RUNNING and not self._worker_alive(job_id, state):
            state = self.store.read(job_id)
            if state.get("status") == JOB_RUNNING:
                state = self.store.write(
                    job_id,
                    {
                        "status": JOB_STOPPED if state.get("stopRequested") else JOB_FAILED,
                        "exitCode": state.get("exitCode") if state.get("exitCode") is not None else 1,
                        "finishedAt": state.get("finishedAt") or utcnow_iso(),
                        "error": state.get("error") or "Worker process is not running",
                    },
                )
                jlog("warning", event="orphaned_job_reclassified", job_id=job_id, status=state["status"])

        if not debug:
            return state
        paths = self.store.paths(job_id)
        try:
            report_size = os.path.getsize(paths.report_path)
        except OSError:
            report_size = 0
        return {
            **state,
            "reportSize": report_size,
            "stdoutTail": _tail(paths.stdout_path, self.config.log_tail_lines),
            "stderrTail": _tail(paths.stderr_path, self.config.log_tail_lines),
        }

    # ---------------- stop ----------------

    def stop(self, job_id: str) -> dict[str, Any]:
        """Request cooperative cancellation; a no-op for finished jobs."""

        state = self.store.read(job_id)
        if state.get("status") in TERMINAL_JOB_STATUSES:
            return {"success": True, "jobId": job_id, "message": "Job already finished", "status": state["status"]}

        paths = self.store.paths(job_id)
        signal_written = write_stop_signal(paths.stop_file, job_id)
        self.store.write(job_id, {"stopRequested": True, "stopRequestedAt": signal_written.requested_at_ms})
        jlog("info", event="stop_requested", job_id=job_id)

        try:
            proc = self._procs.get(job_id)
            if proc is not None:
                if proc.poll() is None:
                    proc.send_signal(signal.SIGTERM)
            elif _pid_alive(state.get("pid")):
                os.kill(int(state["pid"]), signal.SIGTERM)
        except OSError as exc:
            # the worker still polls the stop marker
            jlog("warning", event="stop_terminate_failed", job_id=job_id, error=str(exc))

        return {"success": True, "jobId": job_id, "message": "Stop requested"}

    def wait(self, job_id: str, timeout: float | None = None) -> dict[str, Any]:
        """Block until the relay for ``job_id`` has recorded the worker's exit."""

        relay = self._relays.get(job_id)
        if relay is not None:
            relay.join(timeout=timeout)
        return self.store.read(job_id)


__all__ = [
    "ImportJobManager",
    "JOB_DONE",
    "JOB_FAILED",
    "JOB_QUEUED",
    "JOB_RUNNING",
    "JOB_STOPPED",
    "JobPaths",
    "JobStateStore",
    "TERMINAL_JOB_STATUSES",
    "merge_event",
]
