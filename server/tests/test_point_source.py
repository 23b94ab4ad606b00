"""Tests for chunked point streaming."""

import datetime

import pytest

from errors import StorageUnavailable
from point_source import PointSource
from tests.fakes import GeneratedPointStore, InMemoryStore
from tests.gps_test_fixtures import (
    DEMO_USER_ID,
    DUPLICATE_TIME_POINT,
    GPS_TRACE,
    commute_points,
    to_gps_point,
)
from generation import EPOCH


# =====================================================================
# Chunking
# =====================================================================

class TestChunking:
    def test_yields_every_point_in_order(self):
        store = InMemoryStore({DEMO_USER_ID: commute_points()})
        points = list(PointSource(store, DEMO_USER_ID, EPOCH, chunk_size=8))
        assert len(points) == len(GPS_TRACE)
        assert [p.timestamp for p in points] == sorted(p.timestamp for p in points)

    def test_fetches_at_increasing_offsets(self):
        store = InMemoryStore({DEMO_USER_ID: commute_points()})
        source = PointSource(store, DEMO_USER_ID, EPOCH, chunk_size=20)
        list(source)
        assert [call[2] for call in store.fetch_calls] == [0, 20, 40]
        assert source.chunks_fetched == 3

    def test_exact_multiple_needs_one_empty_fetch(self):
        store = InMemoryStore({DEMO_USER_ID: commute_points()})
        source = PointSource(store, DEMO_USER_ID, EPOCH, chunk_size=25)
        assert len(list(source)) == 50
        assert source.chunks_fetched == 3

    def test_from_ts_is_respected(self):
        store = InMemoryStore({DEMO_USER_ID: commute_points()})
        cutoff = GPS_TRACE[10]["timestamp"]
        points = list(PointSource(store, DEMO_USER_ID, cutoff, chunk_size=8))
        assert len(points) == 40
        assert points[0].timestamp == cutoff

    def test_unknown_user_yields_nothing(self):
        store = InMemoryStore({DEMO_USER_ID: commute_points()})
        assert list(PointSource(store, 999, EPOCH)) == []

    def test_rejects_non_positive_chunk_size(self):
        with pytest.raises(ValueError):
            PointSource(InMemoryStore(), DEMO_USER_ID, EPOCH, chunk_size=0)


# =====================================================================
# Memory bound
# =====================================================================

class TestBoundedMemory:
    def test_large_stream_holds_one_chunk_at_a_time(self):
        store = GeneratedPointStore(DEMO_USER_ID, total=50_000)
        source = PointSource(store, DEMO_USER_ID, EPOCH, chunk_size=500)

        count = 0
        last = None
        for point in source:
            count += 1
            last = point

        assert count == 50_000
        assert source.points_consumed == 50_000
        assert source.chunks_fetched == 101  # 100 full chunks plus the short one that ends the stream
        assert store.max_live_chunks <= 2
        assert last.timestamp == store.start + datetime.timedelta(seconds=30 * 49_999)

    def test_second_iteration_yields_nothing(self):
        store = InMemoryStore({DEMO_USER_ID: commute_points()})
        source = PointSource(store, DEMO_USER_ID, EPOCH)
        assert len(list(source)) == 50
        fetches = len(store.fetch_calls)
        assert list(source) == []
        assert len(store.fetch_calls) == fetches


# =====================================================================
# Duplicates and errors
# =====================================================================

class TestDuplicatesAndErrors:
    def test_duplicate_timestamp_and_source_is_dropped(self):
        points = commute_points() + [to_gps_point(DUPLICATE_TIME_POINT)]
        store = InMemoryStore({DEMO_USER_ID: points})
        source = PointSource(store, DEMO_USER_ID, EPOCH, chunk_size=1)
        assert len(list(source)) == 50
        assert source.points_consumed == 50

    def test_same_timestamp_from_another_source_is_kept(self):
        points = commute_points() + [to_gps_point(DUPLICATE_TIME_POINT, source="watch")]
        store = InMemoryStore({DEMO_USER_ID: points})
        assert len(list(PointSource(store, DEMO_USER_ID, EPOCH))) == 51

    def test_fetch_error_becomes_storage_unavailable(self):
        store = InMemoryStore({DEMO_USER_ID: commute_points()})
        store.fail_fetch_at_offset = 20
        source = PointSource(store, DEMO_USER_ID, EPOCH, chunk_size=10)

        seen = []
        with pytest.raises(StorageUnavailable) as excinfo:
            for point in source:
                seen.append(point)

        assert len(seen) == 20
        assert isinstance(excinfo.value.__cause__, ConnectionError)

    def test_storage_unavailable_passes_through(self):
        class DownStore(InMemoryStore):
            def fetch_chunk(self, user_id, from_ts, offset, limit):
                raise StorageUnavailable("down")

        with pytest.raises(StorageUnavailable, match="down"):
            list(PointSource(DownStore(), DEMO_USER_ID, EPOCH))
