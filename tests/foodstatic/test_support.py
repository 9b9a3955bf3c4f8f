"""Settings resolution, structured logging, executors and atomic writes."""

from __future__ import annotations

import json
import logging
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from pathlib import Path

import pytest

from FoodStatic.concurrency import create_executor, default_workers
from FoodStatic.Processing.errors import ConfigurationError
from FoodStatic.Processing.io import atomic_write, write_json_atomic
from FoodStatic.Processing.logging import JSONFormatter, get_logger, log_event
from FoodStatic.Processing.settings import PipelineCfg, RunnerPolicy, ServerCfg


def test_pipeline_defaults() -> None:
    cfg = PipelineCfg.from_overrides()
    assert cfg.batch_size == 1000
    assert cfg.page_size == 500
    assert cfg.shard_count == 256
    assert cfg.policy is RunnerPolicy.IO
    assert cfg.catalog_path == Path("static") / "indexes" / "catalog.jsonl.gz"


def test_overrides_beat_environment(monkeypatch) -> None:
    """CLI overrides take precedence over environment values."""

    monkeypatch.setenv("FOODSTATIC_BATCH_SIZE", "50")
    assert PipelineCfg.from_overrides().batch_size == 50
    assert PipelineCfg.from_overrides(batch_size=7).batch_size == 7
    assert PipelineCfg.from_overrides(batch_size=None).batch_size == 50


def test_invalid_values_raise_configuration_error() -> None:
    """Validation errors surface as ConfigurationError."""

    with pytest.raises(ConfigurationError):
        PipelineCfg.from_overrides(page_size=0)
    with pytest.raises(ConfigurationError):
        ServerCfg.from_overrides(port=70000)


def test_effective_max_in_flight() -> None:
    """Zero means twice the worker count, never below two."""

    assert PipelineCfg(workers=3).effective_max_in_flight == 6
    assert PipelineCfg(workers=1).effective_max_in_flight == 2
    assert PipelineCfg(workers=3, max_in_flight=5).effective_max_in_flight == 5


def test_create_executor_policies() -> None:
    """Each policy yields its pool type; one worker yields none."""

    executor, owned = create_executor("io", 1)
    assert executor is None and owned is False

    executor, owned = create_executor("io", 2)
    try:
        assert isinstance(executor, ThreadPoolExecutor)
        assert owned
    finally:
        executor.shutdown()

    executor, owned = create_executor("cpu", 2)
    try:
        assert isinstance(executor, ProcessPoolExecutor)
    finally:
        executor.shutdown()

    assert default_workers() >= 1


def test_json_formatter_includes_bound_fields() -> None:
    """Adapter fields reach the JSON payload."""

    logger = get_logger("FoodStatic.tests.formatter", base_fields={"stage": "test"})
    records = []

    class _Capture(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    handler = _Capture()
    logger.logger.addHandler(handler)
    logger.logger.setLevel(logging.INFO)
    try:
        log_event(logger, "warning", "Something odd", path="x.json")
    finally:
        logger.logger.removeHandler(handler)

    payload = json.loads(JSONFormatter().format(records[0]))
    assert payload["message"] == "Something odd"
    assert payload["level"] == "WARNING"
    assert payload["stage"] == "test"
    assert payload["path"] == "x.json"
    assert payload["error_code"] == "UNKNOWN"


def test_atomic_write_leaves_previous_file_on_error(tmp_path) -> None:
    """A failed atomic write keeps the old file and no temp sibling."""

    target = tmp_path / "doc.json"
    write_json_atomic(target, {"v": 1})

    with pytest.raises(RuntimeError):
        with atomic_write(target) as handle:
            handle.write('{"v": 2')
            raise RuntimeError("interrupted")

    assert json.loads(target.read_text(encoding="utf-8")) == {"v": 1}
    assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]


def test_unknown_policy_rejected() -> None:
    with pytest.raises(ValueError):
        create_executor("gpu", 4)


def test_get_logger_reuses_adapter_and_merges_fields() -> None:
    """A second lookup returns the cached adapter with the new fields bound."""

    first = get_logger("FoodStatic.tests.cached", base_fields={"stage": "a"})
    second = get_logger("FoodStatic.tests.cached", base_fields={"worker": 3, "skip": None})
    assert second is first
    assert first.base_fields == {"stage": "a", "worker": 3}
