"""Near-duplicate clustering over perceptual hashes.

Keys are grouping keys (``phash:<hex>`` by convention), each standing for one
or more creatives that already share that exact key. Every unordered pair of
keys is compared and joined when the Hamming distance of their digests is at
most ``threshold``; connected components are resolved with a union-find over
an index-addressed parent array.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Mapping, Sequence

from .config import DEFAULT_CLUSTER_THRESHOLD
from .hashing import hamming_distance

PHASH_KEY_PREFIX = "phash:"


def hash_from_key(key: str) -> str | None:
    """Return the digest carried by a ``phash:`` grouping key, else ``None``."""

    if key.startswith(PHASH_KEY_PREFIX):
        return key[len(PHASH_KEY_PREFIX):] or None
    return None


class DisjointSet:
    """Union-find with path halving; the smallest index is the component root."""

    __slots__ = ("parent",)

    def __init__(self, size: int) -> None:
        self.parent = list(range(size))

    def find(self, i: int) -> int:
        parent = self.parent
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    def union(self, a: int, b: int) -> bool:
        ra = self.find(a)
        rb = self.find(b)
        if ra == rb:
            return False
        if rb < ra:
            ra, rb = rb, ra
        self.parent[rb] = ra
        return True


@dataclass
class ClusterResult:
    key_to_rep: dict[str, str] = field(default_factory=dict)
    clusters: dict[str, list[str]] = field(default_factory=dict)
    rep_size: dict[str, int] = field(default_factory=dict)

    def representative(self, key: str) -> str:
        return self.key_to_rep.get(key, key)

    def size(self, key: str) -> int:
        """Total number of underlying items in ``key``'s cluster."""

        return self.rep_size.get(self.representative(key), 1)

    def variation_count(self, key: str) -> int:
        return max(0, self.size(key) - 1)


def build_clusters(
    keys: Sequence[str],
    group_sizes: Mapping[str, int] | None = None,
    *,
    threshold: int = DEFAULT_CLUSTER_THRESHOLD,
    digest_of: Callable[[str], str | None] = hash_from_key,
) -> ClusterResult:
    """Partition ``keys`` into near-duplicate clusters.

    ``group_sizes`` maps each key to the number of creatives that share it
    (defaults to 1). Each cluster's representative is the earliest key, in
    input order, among its members. Duplicate keys in the input are ignored.
    """

    if threshold < 0:
        raise ValueError("threshold must be >= 0")

    ordered: list[str] = list(dict.fromkeys(keys))
    n = len(ordered)
    digests = [digest_of(k) for k in ordered]
    dsu = DisjointSet(n)

    for i in range(n):
        da = digests[i]
        if da is None:
            continue
        for j in range(i + 1, n):
            db = digests[j]
            if db is None:
                continue
            dist = hamming_distance(da, db)
            if dist is not None and dist <= threshold:
                dsu.union(i, j)

    result = ClusterResult()
    for i, key in enumerate(ordered):
        rep = ordered[dsu.find(i)]
        result.key_to_rep[key] = rep
        result.clusters.setdefault(rep, []).append(key)

    sizes = group_sizes or {}
    for rep, members in result.clusters.items():
        result.rep_size[rep] = sum(max(0, int(sizes.get(k, 1))) for k in members)
    return result


__all__ = ["ClusterResult", "DisjointSet", "PHASH_KEY_PREFIX", "build_clusters", "hash_from_key"]
