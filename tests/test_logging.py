"""Tests for logging setup and per-execution log fields."""

import asyncio
import json
import logging

import pytest

from flowgate.core.logging import (
    ExecutionContextFilter,
    JsonLogFormatter,
    RetryLogger,
    clear_logging_context,
    get_logging_context,
    set_logging_context,
    setup_logging,
)


@pytest.fixture(autouse=True)
def clean_context():
    clear_logging_context()
    yield
    clear_logging_context()


def make_record(message="hello", exc_info=None, **extra):
    record = logging.LogRecord("flowgate.test", logging.INFO, __file__, 10, message, None, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLoggingContext:
    """Test cases for execution fields on log records."""

    def test_set_and_clear(self):
        set_logging_context(execution_id="exec-1")
        set_logging_context(node_id="start")
        assert get_logging_context() == {"execution_id": "exec-1", "node_id": "start"}
        clear_logging_context()
        assert get_logging_context() == {}

    async def test_tasks_do_not_share_fields(self):
        async def run(execution_id):
            set_logging_context(execution_id=execution_id)
            await asyncio.sleep(0)
            return get_logging_context()["execution_id"]

        results = await asyncio.gather(run("a"), run("b"))
        assert results == ["a", "b"]
        assert get_logging_context() == {}

    def test_filter_merges_record_fields(self):
        set_logging_context(execution_id="exec-1")
        record = make_record(execution_fields={"operation": "create_task"})
        assert ExecutionContextFilter().filter(record)
        assert record.execution_fields == {"execution_id": "exec-1", "operation": "create_task"}


class TestJsonLogFormatter:
    """Test cases for JSON log lines."""

    def test_fields_at_top_level(self):
        record = make_record(execution_fields={"execution_id": "exec-1"})
        payload = json.loads(JsonLogFormatter().format(record))
        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "flowgate.test"
        assert payload["execution_id"] == "exec-1"
        assert "source" in payload

    def test_exception_details(self):
        try:
            raise ValueError("boom")
        except ValueError:
            import sys
            record = make_record(exc_info=sys.exc_info())
        payload = json.loads(JsonLogFormatter().format(record))
        assert payload["error"]["type"] == "ValueError"
        assert payload["error"]["message"] == "boom"


class TestSetupLogging:
    """Test cases for setup_logging."""

    def test_rotating_file(self, tmp_path):
        log_file = tmp_path / "logs" / "flowgate.log"
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            setup_logging(level="debug", log_file=str(log_file), structured=True)
            set_logging_context(execution_id="exec-9")
            logging.getLogger("flowgate.test").info("written")
            for handler in root.handlers:
                handler.flush()
            lines = log_file.read_text().strip().splitlines()
            assert json.loads(lines[-1])["execution_id"] == "exec-9"
            assert logging.getLogger("flowgate").level == logging.DEBUG
        finally:
            for handler in root.handlers[:]:
                handler.close()
                root.removeHandler(handler)
            for handler in saved[0]:
                root.addHandler(handler)
            root.setLevel(saved[1])


class TestRetryLogger:
    """Test cases for retry attempt logging."""

    def test_records_carry_operation(self, caplog):
        retry_logger = RetryLogger("create_task")
        with caplog.at_level(logging.INFO, logger="flowgate.retry"):
            retry_logger.attempt_failed(RuntimeError("down"), 1, 3, 0.5)
            retry_logger.recovered(2)
        failed, recovered = caplog.records
        assert failed.levelno == logging.WARNING
        assert failed.execution_fields["operation"] == "create_task"
        assert failed.execution_fields["error_type"] == "RuntimeError"
        assert recovered.execution_fields["attempts_used"] == 2
