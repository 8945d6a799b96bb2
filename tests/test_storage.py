import pytest

from ad_ingest.storage import ObjectStore, canonical_media_path, split_gs_path


def test_canonical_media_paths_per_kind():
    assert canonical_media_path("photos", "123", "photo") == "gs://photos/123.jpeg"
    assert canonical_media_path("photos", "123", "card", 2) == "gs://photos/123/card_2.jpeg"
    assert canonical_media_path("videos", "123", "video") == "gs://videos/123.mp4"
    assert canonical_media_path("previews", "123", "preview") == "gs://previews/123.jpeg"


def test_canonical_media_path_rejects_bad_input():
    with pytest.raises(ValueError):
        canonical_media_path("", "123", "photo")
    with pytest.raises(ValueError):
        canonical_media_path("b", "123", "card")
    with pytest.raises(ValueError):
        canonical_media_path("b", "123", "gif")


def test_split_gs_path():
    assert split_gs_path("gs://bucket/a/b.jpeg") == ("bucket", "a/b.jpeg")
    with pytest.raises(ValueError):
        split_gs_path("gs://bucket")


class _Blob:
    def __init__(self, bucket, name, blobs):
        self.key = (bucket, name)
        self.blobs = blobs
        self.cache_control = None
        self.metadata = None

    def exists(self):
        return self.key in self.blobs

    def upload_from_string(self, data, content_type=None):
        self.blobs[self.key] = {
            "data": data,
            "content_type": content_type,
            "metadata": self.metadata,
            "cache_control": self.cache_control,
        }


class _Bucket:
    def __init__(self, name, blobs):
        self.name = name
        self.blobs = blobs

    def blob(self, name):
        return _Blob(self.name, name, self.blobs)


class _Client:
    def __init__(self):
        self.blobs = {}

    def bucket(self, name):
        return _Bucket(name, self.blobs)


def test_object_store_uploads_with_metadata_and_checks_existence():
    client = _Client()
    store = ObjectStore(client)
    assert not store.exists("gs://photos/1.jpeg")
    store.upload("gs://photos/1.jpeg", b"jpeg", content_type="image/jpeg", metadata={"ad_id": "1"})
    assert store.exists("gs://photos/1.jpeg")
    stored = client.blobs[("photos", "1.jpeg")]
    assert stored["content_type"] == "image/jpeg"
    assert stored["metadata"] == {"ad_id": "1"}
    assert "immutable" in stored["cache_control"]


def test_dry_run_store_never_touches_the_client():
    client = _Client()
    store = ObjectStore(client, dry_run=True)
    store.upload("gs://photos/1.jpeg", b"jpeg", content_type="image/jpeg")
    assert not store.exists("gs://photos/1.jpeg")
    assert client.blobs == {}
