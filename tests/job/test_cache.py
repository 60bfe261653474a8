"""Tests for the job status cache."""

import pytest

from flux_sync.job import JobStatus, StatusCache, StatusString


def test_eviction() -> None:
    """Test the first job added is evicted when the cache is full."""
    cache = StatusCache(2)
    cache.set_status("a", JobStatus(StatusString.QUEUED))
    cache.set_status("b", JobStatus(StatusString.QUEUED))
    cache.set_status("c", JobStatus(StatusString.QUEUED))
    assert len(cache) == 2
    assert cache.status("a") is None
    assert cache.status("b") == JobStatus(StatusString.QUEUED)
    assert cache.status("c") == JobStatus(StatusString.QUEUED)


def test_update_in_place() -> None:
    """Test updating a job does not evict anything or change its position."""
    cache = StatusCache(2)
    cache.set_status("a", JobStatus(StatusString.QUEUED))
    cache.set_status("b", JobStatus(StatusString.QUEUED))
    cache.set_status("a", JobStatus(StatusString.FAILED, error="boom"))
    assert len(cache) == 2

    status = cache.status("a")
    assert status is not None
    assert status.status == StatusString.FAILED
    assert str(status) == "failed: boom"

    # "a" was still added first, so it goes first.
    cache.set_status("c", JobStatus(StatusString.RUNNING))
    assert cache.status("a") is None
    assert cache.status("b") is not None


def test_unknown() -> None:
    assert StatusCache(1).status("missing") is None


@pytest.mark.parametrize("size", [0, -1])
def test_invalid_size(size: int) -> None:
    with pytest.raises(ValueError):
        StatusCache(size)
