import pytest

from ad_ingest.clustering import DisjointSet, build_clusters, hash_from_key


def test_disjoint_set_keeps_smallest_index_as_root():
    dsu = DisjointSet(5)
    assert dsu.union(4, 2)
    assert dsu.union(2, 3)
    assert not dsu.union(3, 4)
    assert dsu.find(4) == 2
    assert dsu.union(0, 4)
    assert {dsu.find(i) for i in (0, 2, 3, 4)} == {0}
    assert dsu.find(1) == 1


def test_clusters_are_transitive_through_a_bridge():
    # A-B and B-C are within threshold, A-C is not
    a = "phash:0000000000000000"
    b = "phash:0000000000000003"
    c = "phash:000000000000000f"
    d = "phash:ffffffffffffffff"
    result = build_clusters([a, b, c, d], threshold=2)
    assert result.representative(a) == a
    assert result.representative(b) == a
    assert result.representative(c) == a
    assert result.representative(d) == d
    assert result.clusters[a] == [a, b, c]
    assert result.size(c) == 3
    assert result.variation_count(d) == 0


def test_representative_is_earliest_key_in_input_order():
    x = "phash:00000000000000ff"
    y = "phash:00000000000000fe"
    result = build_clusters([x, y])
    assert result.representative(y) == x
    result = build_clusters([y, x])
    assert result.representative(x) == y


def test_group_sizes_sum_over_cluster_members():
    a = "phash:1000000000000000"
    b = "phash:1000000000000001"
    result = build_clusters([a, b], {a: 3, b: 2})
    assert result.rep_size == {a: 5}
    assert result.variation_count(b) == 4


def test_threshold_zero_only_merges_identical_digests():
    a = "phash:0000000000000001"
    b = "phash:0x0000000000000001"
    c = "phash:0000000000000003"
    result = build_clusters([a, b, c], threshold=0)
    assert result.representative(b) == a
    assert result.representative(c) == c


def test_keys_without_digest_stay_singletons_and_duplicates_are_ignored():
    result = build_clusters(["img|text", "phash:00", "phash:00", "img|text"])
    assert result.clusters == {"img|text": ["img|text"], "phash:00": ["phash:00"]}
    assert hash_from_key("img|text") is None
    assert hash_from_key("phash:") is None


def test_negative_threshold_is_rejected():
    with pytest.raises(ValueError):
        build_clusters(["phash:00"], threshold=-1)


def test_empty_input_yields_empty_result():
    result = build_clusters([])
    assert result.clusters == {}
    assert result.size("phash:00") == 1
