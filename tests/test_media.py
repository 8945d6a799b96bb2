import asyncio
import threading
import time

import psycopg2
import pytest
import requests

from ad_ingest.errors import DownloadFailed
from ad_ingest.fetch import BoundedLimiter, HttpFetcher, download_with_retry
from ad_ingest.media import (
    ProcessContext,
    build_creative_row,
    classify_creative,
    process_record,
    process_record_safely,
    resolve_ad_id,
    to_date_only,
)
from ad_ingest.models import MediaAsset

from conftest import FakeFetcher, image_bytes, make_config

MAIN_URL = "https://cdn.test/img/111.jpg"
CARD0_URL = "https://cdn.test/cards/0.jpg"
CARD1_URL = "https://cdn.test/cards/1.jpg"
PREVIEW_URL = "https://cdn.test/video/222.jpg"
VIDEO_URL = "https://cdn.test/video/222.mp4"

PHOTO_RECORD = {
    "ad_archive_id": "111",
    "snapshot": {
        "page_name": "Brand",
        "body": {"text": "Buy now"},
        "publisher_platform": ["FACEBOOK", "INSTAGRAM"],
        "start_date": 1700000000,
        "images": [{"original_image_url": MAIN_URL}],
        "cards": [
            {"original_image_url": CARD0_URL, "title": "first", "body": "one"},
            {"resized_image_url": CARD1_URL, "title": "second"},
        ],
    },
}

PREVIEW_ONLY_VIDEO = {
    "adArchiveID": "222",
    "snapshot": {"videos": [{"video_preview_image_url": PREVIEW_URL}]},
}


def _ctx(store, repo, fetcher, **overrides):
    config = make_config(**overrides)
    return ProcessContext(
        config=config,
        store=store,
        repo=repo,
        fetcher=fetcher,
        io_limiter=BoundedLimiter(config.io_concurrency),
        job_id="job-1",
        importer_version="test:1",
    )


def _all_images():
    data = image_bytes()
    return {MAIN_URL: data, CARD0_URL: data, CARD1_URL: data, PREVIEW_URL: data, VIDEO_URL: b"\x00\x00mp4"}


def test_photo_record_stores_main_image_and_cards(store, repo):
    fetcher = FakeFetcher(_all_images())
    outcome = asyncio.run(process_record(_ctx(store, repo, fetcher), PHOTO_RECORD))

    assert outcome.status == "ok"
    assert outcome.creative_type == "photo"
    assert outcome.primary_path == "gs://photos/111.jpeg"
    assert outcome.secondary_path == "gs://photos/111/card_0.jpeg;gs://photos/111/card_1.jpeg"
    assert outcome.cards_saved == 2
    assert set(store.objects) == {
        "gs://photos/111.jpeg",
        "gs://photos/111/card_0.jpeg",
        "gs://photos/111/card_1.jpeg",
    }
    assert repo.cards[("111", 0)]["title"] == "first"
    assert repo.cards[("111", 1)]["storage_path"] == "gs://photos/111/card_1.jpeg"

    row = repo.creatives["111"]
    assert row["link_to_creative"] == "gs://photos/111.jpeg"
    assert row["publisher_platform"] == "FACEBOOK, INSTAGRAM"
    assert row["text"] == "Buy now"
    assert row["start_date_formatted"] == "2023-11-14"
    assert row["cards_count"] == 2
    assert len(row["creative_hash"]) == 16


def test_upload_metadata_describes_the_asset(store, repo):
    fetcher = FakeFetcher(_all_images())
    asyncio.run(process_record(_ctx(store, repo, fetcher), PHOTO_RECORD))
    card = next(u for u in store.uploads if u["path"].endswith("card_1.jpeg"))
    assert card["content_type"] == "image/jpeg"
    assert card["metadata"]["ad_id"] == "111"
    assert card["metadata"]["media_kind"] == "card"
    assert card["metadata"]["card_index"] == "1"
    assert card["metadata"]["job_id"] == "job-1"
    assert card["metadata"]["source_url"] == CARD1_URL


def test_preview_only_video_keeps_empty_video_path(store, repo):
    fetcher = FakeFetcher(_all_images())
    outcome = asyncio.run(process_record(_ctx(store, repo, fetcher), PREVIEW_ONLY_VIDEO))

    assert outcome.status == "ok"
    assert outcome.creative_type == "video"
    assert outcome.primary_path == ""
    assert outcome.preview_path == "gs://previews/222.jpeg"
    row = repo.creatives["222"]
    assert row["video_hd_url"] == ""
    assert row["video_preview_image_url"] == "gs://previews/222.jpeg"
    assert row["creative_hash"]


def test_video_goes_to_video_bucket_and_preview_falls_back_to_it(store, repo):
    record = {"ad_archive_id": "333", "videos": [{"video_hd_url": VIDEO_URL, "video_preview_image_url": PREVIEW_URL}]}
    fetcher = FakeFetcher(_all_images())
    outcome = asyncio.run(process_record(_ctx(store, repo, fetcher, preview_bucket=""), record))
    assert outcome.primary_path == "gs://videos/333.mp4"
    assert outcome.preview_path == "gs://videos/333.jpeg"
    assert set(store.objects) == {"gs://videos/333.mp4", "gs://videos/333.jpeg"}


def test_missing_main_image_falls_back_to_card_for_link_and_hash(store, repo):
    images = _all_images()
    del images[MAIN_URL]
    fetcher = FakeFetcher(images)
    outcome = asyncio.run(process_record(_ctx(store, repo, fetcher), PHOTO_RECORD))

    assert outcome.status == "ok"
    assert outcome.primary_path == ""
    assert outcome.cards_saved == 2
    assert repo.creatives["111"]["link_to_creative"] == "gs://photos/111/card_0.jpeg"
    assert repo.creatives["111"]["creative_hash"]
    assert fetcher.calls.count(MAIN_URL) == 2


def test_photo_with_no_downloadable_media_is_skipped(store, repo):
    outcome = asyncio.run(process_record(_ctx(store, repo, FakeFetcher()), PHOTO_RECORD))
    assert outcome.status == "skipped"
    assert outcome.reason == "no_photos"
    assert repo.creatives == {}


def test_stored_objects_are_not_downloaded_again(store, repo):
    store.objects["gs://photos/111.jpeg"] = b"existing"
    fetcher = FakeFetcher(_all_images())
    outcome = asyncio.run(process_record(_ctx(store, repo, fetcher), PHOTO_RECORD))
    assert outcome.primary_path == "gs://photos/111.jpeg"
    assert MAIN_URL not in fetcher.calls
    assert store.objects["gs://photos/111.jpeg"] == b"existing"
    # main image was not fetched, so the hash comes from the first card
    assert repo.creatives["111"]["creative_hash"]


def test_skip_reasons(store, repo):
    def run(record):
        return asyncio.run(process_record(_ctx(store, repo, FakeFetcher(_all_images())), record))

    missing_id = run({"snapshot": {"images": [{"image_url": MAIN_URL}]}})
    assert (missing_id.status, missing_id.reason) == ("skipped", "no_ad_archive_id")

    unknown = run({"ad_archive_id": "9", "snapshot": {"body": {"text": "t"}}})
    assert (unknown.status, unknown.reason, unknown.creative_type) == ("skipped", "unknown_type", "unknown")

    repo.creatives["111"] = {"ad_archive_id": "111"}
    again = run(PHOTO_RECORD)
    assert (again.status, again.reason) == ("skipped", "already_in_db")


def test_existing_rows_are_reimported_when_skip_is_disabled(store, repo):
    repo.creatives["111"] = {"ad_archive_id": "111"}
    ctx = _ctx(store, repo, FakeFetcher(_all_images()), skip_if_in_db=False)
    assert asyncio.run(process_record(ctx, PHOTO_RECORD)).status == "ok"


def test_upload_failure_fails_the_record(store, repo):
    store.fail_paths.add("gs://photos/111/card_1.jpeg")
    ctx = _ctx(store, repo, FakeFetcher(_all_images()))
    outcome = asyncio.run(process_record_safely(ctx, PHOTO_RECORD))
    assert outcome.status == "failed"
    assert outcome.reason == "upload_failed"
    assert "card_1" in outcome.error
    assert "111" not in repo.creatives


def test_metadata_write_failure_is_a_db_error(store, repo):
    def broken(row):
        raise psycopg2.OperationalError("connection reset")

    repo.upsert_creative = broken
    ctx = _ctx(store, repo, FakeFetcher(_all_images()))
    outcome = asyncio.run(process_record_safely(ctx, PREVIEW_ONLY_VIDEO))
    assert (outcome.status, outcome.reason) == ("failed", "db_error")
    assert outcome.id == "222"


def test_slow_record_times_out(store, repo):
    ctx = _ctx(store, repo, FakeFetcher(_all_images(), delay=1.0), record_timeout_s=0.05)
    outcome = asyncio.run(process_record_safely(ctx, PHOTO_RECORD))
    assert outcome.status == "failed"
    assert outcome.reason == "timeout"


def test_download_with_retry_recovers_from_transient_errors():
    class Flaky:
        def __init__(self):
            self.attempts = 0

        async def get(self, url):
            self.attempts += 1
            if self.attempts < 3:
                raise OSError("connection reset")
            return MediaAsset(url=url, data=b"ok", content_type="image/jpeg")

    flaky = Flaky()
    limiter = BoundedLimiter(1)
    asset = asyncio.run(
        download_with_retry(flaky, "https://x", limiter=limiter, attempts=3, retry_base_s=0.0, timeout_s=1.0)
    )
    assert asset.data == b"ok"
    assert flaky.attempts == 3
    assert limiter.in_flight == 0


def test_download_with_retry_rejects_empty_bodies():
    fetcher = FakeFetcher({"https://x": b""})
    limiter = BoundedLimiter(2)
    try:
        asyncio.run(
            download_with_retry(fetcher, "https://x", limiter=limiter, attempts=2, retry_base_s=0.0, timeout_s=1.0)
        )
    except DownloadFailed as exc:
        assert exc.url == "https://x"
    else:
        raise AssertionError("expected DownloadFailed")
    assert len(fetcher.calls) == 2


class StalledSession:
    """A requests session whose reads hang past the caller's timeout."""

    def __init__(self, delay):
        self.delay = delay
        self.calls = 0
        self.in_flight = 0
        self.peak = 0
        self._lock = threading.Lock()

    def get(self, url, timeout=None):
        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(self.delay)
            raise requests.ConnectionError("read timed out")
        finally:
            with self._lock:
                self.in_flight -= 1


def test_timed_out_download_keeps_its_io_slot_until_the_request_returns():
    session = StalledSession(delay=0.3)
    fetcher = HttpFetcher(user_agent="test", timeout_s=0.05, session=session)
    limiter = BoundedLimiter(1)

    async def run():
        with pytest.raises(DownloadFailed):
            await download_with_retry(
                fetcher, "https://slow.test/a.jpg", limiter=limiter, attempts=3, retry_base_s=0.0, timeout_s=0.05
            )
        await asyncio.sleep(session.delay + 0.2)

    try:
        asyncio.run(run())
    finally:
        limiter.close()
    assert session.calls == 3
    assert session.peak == 1
    assert limiter.peak == 1
    assert limiter.in_flight == 0


def test_run_blocking_returns_results_and_propagates_errors():
    limiter = BoundedLimiter(2)

    def boom():
        raise RuntimeError("storage unavailable")

    async def run():
        assert await limiter.run_blocking(sum, [1, 2, 3]) == 6
        with pytest.raises(RuntimeError, match="storage unavailable"):
            await limiter.run_blocking(boom)

    try:
        asyncio.run(run())
    finally:
        limiter.close()
    assert limiter.in_flight == 0


def test_record_inspection_helpers():
    assert resolve_ad_id({"ad_id": 42}) == "42"
    assert resolve_ad_id({"id": "  "}) is None
    assert classify_creative(PREVIEW_ONLY_VIDEO) == "video"
    assert classify_creative(PHOTO_RECORD) == "photo"
    assert to_date_only(1700000000000) == "2023-11-14"
    assert to_date_only("2024-02-03T10:00:00Z") == "2024-02-03"
    assert to_date_only("garbage") is None
    row = build_creative_row({"ad_archive_id": "5", "page_name": "Top", "text": "plain"}, "5", "photo")
    assert row["page_name"] == "Top"
    assert row["text"] == "plain"
    assert row["cards_json"] is None
