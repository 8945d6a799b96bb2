"""Bulk media import and near-duplicate clustering for ad creatives."""

from .clustering import ClusterResult, build_clusters
from .errors import EmptyInput, ImportPipelineError, InvalidBatch, JobNotFound, UnsupportedShape
from .hashing import average_hash, hamming_distance
from .logging import adlog, jlog
from .metadata import build_media_metadata
from .normalize import normalize_batch
from .ranking import compute_variation_counts, dedupe_and_rank, grouping_key, variation_bucket
from .storage import canonical_media_path
from .versioning import get_importer_version

__all__ = [
    "adlog",
    "average_hash",
    "build_clusters",
    "build_media_metadata",
    "canonical_media_path",
    "ClusterResult",
    "compute_variation_counts",
    "dedupe_and_rank",
    "EmptyInput",
    "get_importer_version",
    "grouping_key",
    "hamming_distance",
    "ImportPipelineError",
    "InvalidBatch",
    "jlog",
    "JobNotFound",
    "normalize_batch",
    "UnsupportedShape",
    "variation_bucket",
]
