"""Google Cloud Storage helpers for creative media."""

from __future__ import annotations

from typing import Mapping

from google.api_core.exceptions import NotFound
from google.cloud import storage  # type: ignore[attr-defined]

from .logging import jlog

MEDIA_KINDS = ("photo", "card", "video", "preview")

CONTENT_TYPE_BY_KIND = {
    "photo": "image/jpeg",
    "card": "image/jpeg",
    "video": "video/mp4",
    "preview": "image/jpeg",
}


def canonical_media_path(bucket: str, ad_id: str, kind: str, index: int | None = None) -> str:
    """Return the deterministic object path for one asset of a creative.

    Paths depend only on the creative id (and card index), so re-running an
    import overwrites instead of duplicating.
    """

    if not bucket:
        raise ValueError(f"no bucket configured for {kind} media")
    if kind == "photo":
        name = f"{ad_id}.jpeg"
    elif kind == "card":
        if index is None:
            raise ValueError("card paths require an index")
        name = f"{ad_id}/card_{index}.jpeg"
    elif kind == "video":
        name = f"{ad_id}.mp4"
    elif kind == "preview":
        name = f"{ad_id}.jpeg"
    else:
        raise ValueError(f"unknown media kind {kind!r}")
    return f"gs://{bucket}/{name}"


def split_gs_path(path: str) -> tuple[str, str]:
    assert path.startswith("gs://"), "path must be a gs:// path"
    bucket, _, name = path[len("gs://"):].partition("/")
    if not bucket or not name:
        raise ValueError(f"malformed object path: {path}")
    return bucket, name


class ObjectStore:
    """Thin wrapper over a GCS client addressing objects by ``gs://`` path."""

    def __init__(self, client: storage.Client | None = None, *, dry_run: bool = False) -> None:
        self._client = client
        self.dry_run = dry_run

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    def _blob(self, path: str) -> storage.Blob:
        bucket_name, name = split_gs_path(path)
        return self.client.bucket(bucket_name).blob(name)

    def exists(self, path: str) -> bool:
        if self.dry_run:
            return False
        return bool(self._blob(path).exists())

    def upload(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        if self.dry_run:
            jlog("info", event="dry_run_upload", path=path, bytes=len(data), content_type=content_type)
            return
        blob = self._blob(path)
        blob.cache_control = "public, max-age=31536000, immutable"
        blob.metadata = dict(metadata or {})
        blob.upload_from_string(data, content_type=content_type)

    def download(self, path: str) -> bytes | None:
        try:
            return self._blob(path).download_as_bytes()
        except NotFound:
            return None


__all__ = [
    "CONTENT_TYPE_BY_KIND",
    "MEDIA_KINDS",
    "ObjectStore",
    "canonical_media_path",
    "split_gs_path",
]
