import ad_ingest.backfill as backfill
from ad_ingest.backfill import backfill_hashes, candidate_paths, hash_stored_creative

from conftest import FakeStore, image_bytes, make_config


def test_candidate_paths_prefer_photo_then_link_then_preview():
    config = make_config()
    row = {
        "ad_archive_id": "7",
        "link_to_creative": "gs://photos/7/card_0.jpeg",
        "video_preview_image_url": "gs://previews/7.jpeg",
    }
    assert candidate_paths(row, config) == [
        "gs://photos/7.jpeg",
        "gs://photos/7/card_0.jpeg",
        "gs://previews/7.jpeg",
    ]


def test_video_links_are_not_hash_candidates():
    config = make_config(photo_bucket="", preview_bucket="")
    row = {"ad_archive_id": "8", "link_to_creative": "gs://videos/8.mp4"}
    assert candidate_paths(row, config) == ["gs://videos/8.jpeg"]


def test_hash_falls_back_to_preview_when_photo_missing():
    store = FakeStore()
    store.objects["gs://previews/9.jpeg"] = image_bytes()
    digest = hash_stored_creative(store, {"ad_archive_id": "9"}, make_config())
    assert digest is not None and len(digest) == 16
    assert hash_stored_creative(FakeStore(), {"ad_archive_id": "9"}, make_config()) is None


def test_backfill_pages_through_rows_and_updates_hashes(monkeypatch):
    rows = [{"ad_archive_id": str(i)} for i in range(5)]
    pages = []
    updates = {}

    def fake_fetch(con, *, limit, after_id=None):
        pages.append(after_id)
        remaining = [r for r in rows if after_id is None or r["ad_archive_id"] > after_id]
        return remaining[:limit]

    def fake_update(con, *, ad_id, creative_hash, dry_run=False):
        updates[ad_id] = creative_hash

    monkeypatch.setattr(backfill, "fetch_creatives_missing_hash", fake_fetch)
    monkeypatch.setattr(backfill, "update_creative_hash", fake_update)

    store = FakeStore()
    for i in (0, 2, 4):
        store.objects[f"gs://photos/{i}.jpeg"] = image_bytes()
    store.objects["gs://photos/3.jpeg"] = b"not an image"

    stats = backfill_hashes(None, store, config=make_config(), batch_size=2)
    assert pages == [None, "1", "3", "4"]
    assert sorted(updates) == ["0", "2", "4"]
    assert (stats.scanned, stats.hashed, stats.missing, stats.failed) == (5, 3, 2, 0)


def test_backfill_respects_limit(monkeypatch):
    monkeypatch.setattr(
        backfill,
        "fetch_creatives_missing_hash",
        lambda con, *, limit, after_id=None: [] if after_id else [{"ad_archive_id": "1"}, {"ad_archive_id": "2"}],
    )
    monkeypatch.setattr(backfill, "update_creative_hash", lambda con, **kw: None)
    stats = backfill_hashes(None, FakeStore(), config=make_config(), limit=1)
    assert stats.scanned == 1
