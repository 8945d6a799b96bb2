"""HTTP job-control surface for bulk imports."""

from __future__ import annotations

from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse

from .errors import InvalidBatch, JobNotFound, WorkerSpawnFailed
from .jobs import ImportJobManager
from .logging import jlog

router = APIRouter(prefix="/import-jobs", tags=["import_jobs"])

_manager: ImportJobManager | None = None

_TRUE_FLAGS = {"1", "true", "yes", "on"}


def get_job_manager() -> ImportJobManager:
    global _manager
    if _manager is None:
        _manager = ImportJobManager()
    return _manager


def set_job_manager(manager: ImportJobManager | None) -> None:
    global _manager
    _manager = manager


def _flag(raw: str | None) -> bool:
    return bool(raw) and raw.strip().lower() in _TRUE_FLAGS


@router.post("", status_code=202)
async def create_import_job(file: UploadFile = File(...), debug: str | None = Form(None)):
    """Upload a batch file and start a worker for it.

    Accepts a JSON array, a wrapper object, a single creative, or NDJSON.
    """
    raw = await file.read()
    try:
        return get_job_manager().start(raw, file_name=file.filename, debug=_flag(debug))
    except InvalidBatch as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except WorkerSpawnFailed as exc:
        jlog("error", event="import_job_spawn_failed", error=str(exc))
        raise HTTPException(status_code=500, detail=str(exc))


@router.get("/{job_id}")
def get_import_job(job_id: str, debug: str | None = Query(None)):
    try:
        return get_job_manager().poll(job_id, debug=_flag(debug))
    except JobNotFound:
        raise HTTPException(status_code=404, detail="job not found")


@router.post("/{job_id}/stop")
def stop_import_job(job_id: str):
    try:
        return get_job_manager().stop(job_id)
    except JobNotFound:
        return JSONResponse(status_code=404, content={"success": False, "error": "job not found"})


def create_app(manager: ImportJobManager | None = None) -> FastAPI:
    if manager is not None:
        set_job_manager(manager)
    app = FastAPI(title="ad-media-ingest", description="Bulk creative media import jobs.", version="1.0.0")
    app.include_router(router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


__all__ = ["create_app", "get_job_manager", "router", "set_job_manager"]
