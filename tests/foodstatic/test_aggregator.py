"""Index aggregation: deduplication, pagination, sharding and partial flush failures."""

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from FoodStatic.Processing.aggregator import (
    META_FILENAME,
    IndexAggregator,
    bucket_dir,
    page_filename,
    shard_for_key,
)
from FoodStatic.Processing.io import key_dirname
from FoodStatic.Processing.models import BRAND, CATEGORY


def _read(path):
    return json.loads(path.read_text(encoding="utf-8"))


def test_pagination_two_two_one(tmp_path) -> None:
    """Five codes with a page size of two produce pages of 2, 2 and 1."""

    aggregator = IndexAggregator(page_size=2, shard_count=16)
    for code in ["5", "3", "1", "4", "2"]:
        aggregator.record(CATEGORY, "en:snacks", code)

    report = aggregator.flush(tmp_path)

    directory = bucket_dir(tmp_path, CATEGORY, "en:snacks", 16)
    pages = [_read(directory / page_filename(n)) for n in (1, 2, 3)]
    assert [page["codes"] for page in pages] == [["1", "2"], ["3", "4"], ["5"]]
    assert [page["page"] for page in pages] == [1, 2, 3]
    assert not (directory / page_filename(4)).exists()

    meta = _read(directory / META_FILENAME)
    assert meta["count"] == 5
    assert meta["pages"] == 3
    assert meta["page_size"] == 2
    assert report.buckets_written == 1
    assert report.pages_written == 3
    assert report.ok


def test_duplicate_codes_are_counted_once(tmp_path) -> None:
    """Recording a code repeatedly leaves one entry in the bucket."""

    aggregator = IndexAggregator(page_size=10, shard_count=4)
    for _ in range(3):
        aggregator.record(BRAND, "Ferrero", "0001")
    aggregator.record(BRAND, "Ferrero", "0002")

    aggregator.flush(tmp_path)

    meta = _read(bucket_dir(tmp_path, BRAND, "Ferrero", 4) / META_FILENAME)
    assert meta["count"] == 2
    assert meta["pages"] == 1


def test_dimensions_are_independent() -> None:
    """The same key under category and brand forms two buckets."""

    aggregator = IndexAggregator()
    aggregator.record(CATEGORY, "Ferrero", "1")
    aggregator.record(BRAND, "Ferrero", "2")
    snapshot = aggregator.snapshot()
    assert snapshot[(CATEGORY, "Ferrero")] == ["1"]
    assert snapshot[(BRAND, "Ferrero")] == ["2"]
    assert aggregator.bucket_count() == 2


def test_shard_is_stable_and_padded() -> None:
    """Shard names are deterministic and zero-padded to the shard count."""

    first = shard_for_key("en:beverages", 256)
    assert first == shard_for_key("en:beverages", 256)
    assert len(first) == 3
    assert 0 <= int(first) < 256
    assert shard_for_key("anything", 1) == "0"
    with pytest.raises(ValueError):
        shard_for_key("x", 0)


def test_keys_with_separators_stay_inside_one_directory(tmp_path) -> None:
    """Separators and dot names are escaped into a single path component."""

    aggregator = IndexAggregator(shard_count=8)
    aggregator.record(CATEGORY, "a/b", "1")
    aggregator.record(CATEGORY, "..", "2")
    aggregator.flush(tmp_path)

    assert key_dirname("a/b") == "a%2Fb"
    assert key_dirname("..") == "%2E%2E"
    assert (bucket_dir(tmp_path, CATEGORY, "a/b", 8) / META_FILENAME).exists()
    assert (bucket_dir(tmp_path, CATEGORY, "..", 8) / META_FILENAME).exists()


def test_ordinary_keys_keep_their_text() -> None:
    """Keys without separators map to a directory of the same name."""

    assert key_dirname("en:spreads") == "en:spreads"
    assert key_dirname("Ferrero Rocher") == "Ferrero Rocher"
    assert key_dirname("Crème fraîche") == "Crème fraîche"
    assert key_dirname("...") == "..."
    assert key_dirname("50%") == "50%25"
    assert key_dirname("a\\b\x00") == "a%5Cb%00"
    assert key_dirname("~x") == "%7Ex"


def test_empty_key_rejected() -> None:
    """An empty key has no directory name and is refused."""

    with pytest.raises(ValueError):
        key_dirname("")
    with pytest.raises(ValueError):
        IndexAggregator().record(BRAND, "", "1")


def test_long_keys_are_truncated_with_digest() -> None:
    """Over-long names are capped by bytes and disambiguated by digest."""

    name = key_dirname("é" * 300)
    assert len(name.encode("utf-8")) <= 200
    assert name.startswith("é" * 50)
    assert "~" in name
    assert key_dirname("é" * 300) != key_dirname("é" * 301)
    assert key_dirname("x" + "/" * 100).split("~")[0] == "x" + "%2F" * 60


def test_concurrent_records_are_not_lost() -> None:
    """Concurrent recorders never lose an entry."""

    aggregator = IndexAggregator(lock_stripes=4)

    def _work(worker: int) -> None:
        for i in range(500):
            aggregator.record(BRAND, f"brand-{i % 7}", f"{worker:02d}{i:04d}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(_work, range(8)))

    snapshot = aggregator.snapshot()
    assert len(snapshot) == 7
    assert sum(len(codes) for codes in snapshot.values()) == 8 * 500


def test_failed_bucket_does_not_stop_flush(tmp_path) -> None:
    """A bucket whose directory cannot be created is reported; others are written."""

    aggregator = IndexAggregator(page_size=2, shard_count=4)
    aggregator.record(BRAND, "blocked", "1")
    aggregator.record(BRAND, "fine", "2")

    blocked = bucket_dir(tmp_path, BRAND, "blocked", 4)
    blocked.parent.mkdir(parents=True)
    blocked.write_text("not a directory", encoding="utf-8")

    report = aggregator.flush(tmp_path)

    assert [failure.label() for failure in report.failed] == ["brand:blocked"]
    assert not report.ok
    assert report.buckets_written == 1
    assert (bucket_dir(tmp_path, BRAND, "fine", 4) / META_FILENAME).exists()


def test_flush_runs_once_and_closes_recording(tmp_path) -> None:
    """A flushed aggregator rejects further flushes and records."""

    aggregator = IndexAggregator()
    aggregator.record(CATEGORY, "x", "1")
    aggregator.flush(tmp_path)
    with pytest.raises(RuntimeError):
        aggregator.flush(tmp_path)
    with pytest.raises(RuntimeError):
        aggregator.record(CATEGORY, "x", "2")


def test_unknown_dimension_rejected() -> None:
    """Only category and brand dimensions are accepted."""

    with pytest.raises(ValueError):
        IndexAggregator().record("origin", "fr", "1")


def test_no_temporary_files_left_behind(tmp_path) -> None:
    """Atomic writes leave no temp siblings after a flush."""

    aggregator = IndexAggregator(page_size=1)
    for code in "abc":
        aggregator.record(CATEGORY, "k", code)
    aggregator.flush(tmp_path)
    assert not [p for p in tmp_path.rglob("*") if ".tmp." in p.name]


def test_close_discards_buckets(tmp_path) -> None:
    """Closing drops pending buckets without touching the disk."""

    aggregator = IndexAggregator()
    aggregator.record(BRAND, "x", "1")
    aggregator.close()
    assert aggregator.bucket_count() == 0
    with pytest.raises(RuntimeError):
        aggregator.flush(tmp_path)
    assert list(tmp_path.iterdir()) == []
