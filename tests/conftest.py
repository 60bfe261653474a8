"""Test fixtures for flux-sync."""

from collections.abc import Generator
from pathlib import Path

import pytest

from flux_sync.kinds import KindTable, default_kind_table

from .support import FakeCluster, FakeTransport, Upstream


@pytest.fixture
def kinds() -> KindTable:
    return default_kind_table()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_cluster(transport: FakeTransport, kinds: KindTable) -> FakeCluster:
    return FakeCluster(transport, kinds)


@pytest.fixture
def upstream(tmp_path: Path) -> Generator[Upstream, None, None]:
    yield Upstream(tmp_path)
