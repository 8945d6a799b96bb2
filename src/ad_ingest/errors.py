"""Exception hierarchy for the import pipeline."""

from __future__ import annotations


class ImportPipelineError(RuntimeError):
    """Base class for every error raised by :mod:`ad_ingest`."""


class InvalidBatch(ImportPipelineError):
    """The uploaded batch could not be normalized into creative records."""


class EmptyInput(InvalidBatch):
    """The uploaded batch contained no bytes (or only whitespace)."""


class UnsupportedShape(InvalidBatch):
    """The payload parsed, but not into any recognized record shape."""


class MediaError(ImportPipelineError):
    """A media transfer for one asset failed."""

    def __init__(self, message: str, *, url: str | None = None, path: str | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.path = path


class DownloadFailed(MediaError):
    """Downloading an asset failed after every retry attempt."""


class UploadFailed(MediaError):
    """Uploading an asset to object storage failed."""


class JobNotFound(ImportPipelineError):
    """No persisted state exists for the requested job id."""


class WorkerSpawnFailed(ImportPipelineError):
    """The worker process could not be started."""


__all__ = [
    "DownloadFailed",
    "EmptyInput",
    "ImportPipelineError",
    "InvalidBatch",
    "JobNotFound",
    "MediaError",
    "UnsupportedShape",
    "UploadFailed",
    "WorkerSpawnFailed",
]
