import pytest

from ad_ingest.ranking import compute_variation_counts, dedupe_and_rank, grouping_key, image_key, variation_bucket


def ad(ad_id, *, h=None, image=None, text=None, created=None, page="P"):
    return {
        "ad_archive_id": ad_id,
        "creative_hash": h,
        "image_url": image,
        "text": text,
        "created_at": created,
        "page_name": page,
    }


def test_grouping_key_prefers_hash_then_image_dir_and_text():
    assert grouping_key(ad("1", h="0xABCD")) == "phash:abcd"
    key = grouping_key(ad("2", image="https://cdn.test/a/b/img.jpg?x=1", text="  Buy\n\n now  "))
    assert key == "cdn.test/a/b|Buy now"
    assert grouping_key(ad("3")) == "no-image|no-text"
    assert grouping_key(ad("4", text="x" * 150)).endswith("|" + "x" * 100)


def test_image_key_without_scheme():
    assert image_key("bucket/dir/file.jpg?sig=1") == "bucket/dir"


def test_variation_counts_follow_transitive_clusters():
    ads = [
        ad("a", h="0000000000000000"),
        ad("b", h="0000000000000003"),
        ad("c", h="000000000000000f"),
        ad("d", h="ffffffffffffffff"),
        ad("e", image="https://x/i/1.jpg", text="same"),
        ad("f", image="https://x/i/2.jpg", text="same"),
    ]
    counts = compute_variation_counts(ads, threshold=2)
    assert counts == {"a": 2, "b": 2, "c": 2, "d": 0, "e": 1, "f": 1}


def test_identical_hashes_count_as_variations():
    ads = [ad(str(i), h="00000000000000ff") for i in range(4)]
    assert compute_variation_counts(ads) == {"0": 3, "1": 3, "2": 3, "3": 3}


def test_dedupe_keeps_newest_per_cluster_sorted_by_variations():
    ads = [
        ad("old", h="0000000000000000", created="2024-01-01T00:00:00Z"),
        ad("new", h="0000000000000001", created="2024-03-01T00:00:00Z"),
        ad("mid", h="0000000000000003", created="2024-02-01T00:00:00Z"),
        ad("solo", h="ffffffffffffffff", created="2024-04-01T00:00:00Z"),
    ]
    ranked = dedupe_and_rank(ads)
    assert [r["ad_archive_id"] for r in ranked] == ["new", "solo"]
    assert ranked[0]["variation_count"] == 2
    assert ranked[0]["variation_bucket"] == "less_than_3"
    assert ranked[1]["variation_count"] == 0


@pytest.mark.parametrize(
    "count, bucket",
    [(0, "less_than_3"), (2, "less_than_3"), (3, "3_5"), (5, "3_5"), (6, "5_10"), (10, "5_10"), (11, "more_than_10")],
)
def test_variation_bucket(count, bucket):
    assert variation_bucket(count) == bucket
