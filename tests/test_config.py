import pytest

from ad_ingest.config import WorkerConfig


def test_from_env_reads_buckets_limits_and_hashing():
    config = WorkerConfig.from_env(
        {
            "BUCKET_PHOTO": "p",
            "BUCKET_VIDEO": "v",
            "IMPORT_CONCURRENCY": "4",
            "IMPORT_RECORD_TIMEOUT_S": "12.5",
            "IMPORT_SKIP_IF_IN_DB": "false",
            "DEBUG_IMPORT": "1",
            "PHASH_CLUSTER_THRESHOLD": "6",
        }
    )
    assert (config.photo_bucket, config.video_bucket) == ("p", "v")
    assert config.preview_bucket_or_video == "v"
    assert config.record_concurrency == 4
    assert config.io_concurrency >= 12
    assert config.record_timeout_s == 12.5
    assert config.skip_if_in_db is False
    assert config.debug is True
    assert config.hashing.cluster_threshold == 6


def test_invalid_numbers_fail_fast():
    with pytest.raises(ValueError, match="IMPORT_CONCURRENCY"):
        WorkerConfig.from_env({"IMPORT_CONCURRENCY": "ten"})
    with pytest.raises(ValueError):
        WorkerConfig(record_concurrency=0)
