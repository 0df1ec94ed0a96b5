"""Tests for structured logging."""

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import structlog
from structlog.contextvars import clear_contextvars

from codeweave.config.models import LoggingConfig, LogOutputConfig
from codeweave.core.logging import (
    configure_logging,
    get_logger,
    get_request_id,
    pass_scope,
    query_scope,
)
from codeweave.index.ops import IndexCoordinator


def _records(log_file: Path) -> list[dict[str, Any]]:
    return [json.loads(line) for line in log_file.read_text().splitlines() if line.strip()]


@pytest.fixture
def json_log(tmp_path: Path) -> Path:
    log_file = tmp_path / "out.log"
    configure_logging(
        config=LoggingConfig(outputs=[LogOutputConfig(format="json", destination=str(log_file))])
    )
    return log_file


class _ResetLogging:
    def setup_method(self) -> None:
        structlog.reset_defaults()
        logging.getLogger().handlers.clear()
        clear_contextvars()

    def teardown_method(self) -> None:
        clear_contextvars()
        logging.getLogger().handlers.clear()
        structlog.reset_defaults()


class TestQueryScope(_ResetLogging):
    """Request id binding for one query."""

    def test_given_request_id_when_scoped_then_can_retrieve(self) -> None:
        with query_scope("test-123") as rid:
            assert rid == "test-123"
            assert get_request_id() == "test-123"

    def test_given_no_id_when_scoped_then_generates_short_id(self) -> None:
        with query_scope() as rid:
            assert len(rid) == 12  # uuid4().hex[:12]

    def test_given_scope_exited_then_id_is_gone(self) -> None:
        with query_scope("to-clear"):
            pass

        assert get_request_id() is None

    def test_given_nested_scope_then_outer_id_is_restored(self) -> None:
        with query_scope("outer"):
            with query_scope("inner"):
                assert get_request_id() == "inner"
            assert get_request_id() == "outer"

    def test_given_request_id_when_log_then_merged_into_record(self, json_log: Path) -> None:
        with query_scope("req-42"):
            get_logger("codeweave.query.pipeline").info("inside query")
        get_logger("codeweave.query.pipeline").info("after query")

        inside, after = _records(json_log)[-2:]
        assert inside["request_id"] == "req-42"
        assert "request_id" not in after


class TestPassScope(_ResetLogging):
    """Pass identity binding for one indexing pass."""

    def test_pass_fields_reach_every_record_inside(self, json_log: Path) -> None:
        with pass_scope("pass-7", "incremental"):
            get_logger("codeweave.index.resolver").info("resolved")
            get_logger("codeweave.store.versions").info("published")
        get_logger("codeweave.index.ops").info("idle")

        resolved, published, idle = _records(json_log)[-3:]
        for record in (resolved, published):
            assert record["pass_id"] == "pass-7"
            assert record["mode"] == "incremental"
        assert "pass_id" not in idle

    def test_index_pass_records_carry_the_pass_id(
        self,
        json_log: Path,
        workspace: Path,
        make_config: Callable[..., Any],
        write_files: Callable[[dict[str, str]], None],
    ) -> None:
        write_files({"lib.py": "def compute():\n    return 1\n"})
        coord = IndexCoordinator(workspace, make_config())
        try:
            coord.index_workspace("full")
        finally:
            coord.close()

        records = _records(json_log)
        by_event = {r["event"]: r for r in records}
        complete = by_event["index_pass_complete"]
        resolution = by_event["cross_file_resolution_complete"]
        published = by_event["index_version_published"]
        assert complete["pass_id"]
        assert resolution["pass_id"] == complete["pass_id"]
        assert published["pass_id"] == complete["pass_id"]
        assert resolution["subsystem"] == "index"
        assert published["subsystem"] == "store"


class TestLoggingConfiguration(_ResetLogging):
    """Logging configuration tests."""

    def test_given_json_file_output_when_log_then_valid_json(self, json_log: Path) -> None:
        get_logger("test").info("test message", key="value")

        data = _records(json_log)[-1]
        assert data["event"] == "test message"
        assert data["key"] == "value"
        assert data["level"] == "info"
        assert "timestamp" in data
        assert "subsystem" not in data

    def test_given_package_logger_then_subsystem_is_derived(self, json_log: Path) -> None:
        get_logger("codeweave.watch.manager").info("batch")

        assert _records(json_log)[-1]["subsystem"] == "watch"

    def test_given_config_object_when_configure_then_takes_precedence(self, tmp_path: Path) -> None:
        log_file = tmp_path / "test.log"
        config = LoggingConfig(
            level="DEBUG",
            outputs=[LogOutputConfig(format="json", destination=str(log_file))],
        )

        configure_logging(config=config, json_format=False, level="ERROR")
        get_logger().debug("debug msg")

        assert "debug msg" in log_file.read_text()

    def test_given_multi_output_config_when_configure_then_levels_apply_per_output(
        self, tmp_path: Path
    ) -> None:
        debug_file = tmp_path / "debug.log"
        info_file = tmp_path / "info.log"
        config = LoggingConfig(
            level="DEBUG",
            outputs=[
                LogOutputConfig(format="json", destination=str(info_file), level="INFO"),
                LogOutputConfig(format="json", destination=str(debug_file)),
            ],
        )

        configure_logging(config=config)
        logger = get_logger()
        logger.debug("debug only")
        logger.info("info msg")

        info_content = info_file.read_text()
        assert "info msg" in info_content
        assert "debug only" not in info_content
        debug_content = debug_file.read_text()
        assert "debug only" in debug_content
        assert "info msg" in debug_content
