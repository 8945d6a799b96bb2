import asyncio
from io import BytesIO

import pytest
from PIL import Image

from ad_ingest.config import HashConfig, WorkerConfig
from ad_ingest.errors import DownloadFailed
from ad_ingest.models import MediaAsset


def gradient_image(width: int = 64, height: int = 64, shift: int = 0, invert: bool = False) -> Image.Image:
    img = Image.new("L", (width, height))
    for x in range(width):
        for y in range(height):
            value = min(255, (x + shift) * 2 + y)
            img.putpixel((x, y), 255 - value if invert else value)
    return img


def image_bytes(img: Image.Image | None = None, fmt: str = "JPEG") -> bytes:
    img = img or gradient_image()
    buf = BytesIO()
    img.convert("RGB").save(buf, format=fmt)
    return buf.getvalue()


def make_config(**overrides) -> WorkerConfig:
    values = dict(
        photo_bucket="photos",
        video_bucket="videos",
        preview_bucket="previews",
        record_concurrency=4,
        io_concurrency=8,
        record_timeout_s=5.0,
        download_timeout_s=2.0,
        download_attempts=2,
        retry_base_s=0.0,
        progress_interval_s=60.0,
        heartbeat_interval_s=60.0,
        stop_poll_interval_s=0.01,
        hashing=HashConfig(grid=8, cluster_threshold=4),
    )
    values.update(overrides)
    return WorkerConfig(**values)


class FakeStore:
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.uploads: list[dict] = []
        self.fail_paths: set[str] = set()

    def exists(self, path):
        return path in self.objects

    def upload(self, path, data, *, content_type, metadata=None):
        if path in self.fail_paths:
            raise RuntimeError("storage unavailable")
        self.objects[path] = data
        self.uploads.append({"path": path, "content_type": content_type, "metadata": dict(metadata or {})})

    def download(self, path):
        return self.objects.get(path)


class FakeRepo:
    def __init__(self):
        self.creatives: dict[str, dict] = {}
        self.cards: dict[tuple[str, int], dict] = {}
        self.outcomes: list[dict] = []

    def exists(self, ad_id):
        return ad_id in self.creatives

    def upsert_creative(self, row):
        self.creatives[row["ad_archive_id"]] = dict(row)

    def upsert_card(self, **fields):
        self.cards[(fields["ad_id"], fields["card_index"])] = fields

    def record_outcome(self, outcome):
        self.outcomes.append(dict(outcome))


class FakeFetcher:
    """Serves canned bytes per URL; unknown URLs fail like a 404."""

    def __init__(self, responses=None, delay: float = 0.0):
        self.responses: dict[str, bytes] = dict(responses or {})
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.peak = 0

    async def get(self, url):
        self.calls.append(url)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if url not in self.responses:
                raise DownloadFailed("HTTP 404", url=url)
            return MediaAsset(url=url, data=self.responses[url], content_type="image/jpeg")
        finally:
            self.in_flight -= 1


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def repo():
    return FakeRepo()


@pytest.fixture
def jpeg():
    return image_bytes()
