"""Tests for the centralized exception logger."""

import json
import threading

import pytest

from modelvc.utils.exception_logger import ExceptionLogger


@pytest.fixture(autouse=True)
def reset_singleton():
    ExceptionLogger._instance = None
    original_hook = threading.excepthook
    yield
    ExceptionLogger._instance = None
    threading.excepthook = original_hook


def _entries(path):
    chunks = [c for c in path.read_text().split("\n---\n") if c.strip()]
    return [json.loads(c) for c in chunks]


class TestExceptionLogger:
    def test_initialize_creates_log_file_once(self, tmp_path):
        first = ExceptionLogger.initialize(tmp_path / "logs")

        assert first.log_file_path.exists()
        assert first.log_file_path.name.startswith("error_")
        assert ExceptionLogger.initialize(tmp_path / "other") is first
        assert ExceptionLogger.get_instance() is first

    def test_log_exception_writes_traceback(self, tmp_path):
        logger = ExceptionLogger.initialize(tmp_path)
        try:
            raise RuntimeError("observer died")
        except RuntimeError as e:
            logger.log_exception(e, context={"file": "model.3dm"})

        (entry,) = _entries(logger.log_file_path)
        assert entry["exception_type"] == "RuntimeError"
        assert entry["exception_message"] == "observer died"
        assert "raise RuntimeError" in entry["stack_trace"]
        assert entry["context"] == {"file": "model.3dm"}

    def test_thread_hook_captures_uncaught_errors(self, tmp_path):
        logger = ExceptionLogger.initialize(tmp_path)
        logger.install_thread_exception_hook()

        def fail():
            raise ValueError("debounce timer failed")

        thread = threading.Thread(target=fail, name="debounce")
        thread.start()
        thread.join()

        (entry,) = _entries(logger.log_file_path)
        assert entry["thread"] == "debounce"
        assert entry["exception_type"] == "ValueError"
        assert entry["context"]["exc_type"] == "ValueError"
