import logging

from previz.utils.logging_setup import (
    ContextFilter,
    LOG_FORMAT,
    LOG_OPERATION,
    LOG_PROJECT_ID,
    LOG_USER_ID,
    configure_logging,
    log_context,
)


def _record():
    return logging.LogRecord("test.logger", logging.INFO, __file__, 1, "hello", (), None)


def test_context_filter_defaults():
    record = _record()
    ContextFilter().filter(record)
    assert record.project_id == "-"
    assert record.user_id == "-"
    assert record.operation == "-"


def test_context_filter_injects_values():
    project_token = LOG_PROJECT_ID.set("42")
    user_token = LOG_USER_ID.set("user_1")
    op_token = LOG_OPERATION.set("decompose_script")
    try:
        record = _record()
        ContextFilter().filter(record)
        assert record.project_id == "42"
        assert record.user_id == "user_1"
        assert record.operation == "decompose_script"
    finally:
        LOG_OPERATION.reset(op_token)
        LOG_USER_ID.reset(user_token)
        LOG_PROJECT_ID.reset(project_token)


def test_log_context_sets_and_restores():
    with log_context(project_id=7, user_id="u", operation="outer"):
        with log_context(operation="inner"):
            record = _record()
            ContextFilter().filter(record)
            assert record.project_id == "7"
            assert record.operation == "inner"
        assert LOG_OPERATION.get() == "outer"
    assert LOG_PROJECT_ID.get() is None
    assert LOG_USER_ID.get() is None


def test_formatting_uses_expected_fields():
    record = _record()
    ContextFilter().filter(record)
    formatted = logging.Formatter(LOG_FORMAT).format(record)
    assert "test.logger" in formatted
    assert "hello" in formatted
    assert "|" in formatted


def test_configure_logging_writes_context_to_file(tmp_path):
    log_file = tmp_path / "logs" / "previz.log"
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    saved_flag = getattr(root, "_previz_logging_configured", False)
    try:
        configure_logging(log_file=str(log_file), force=True)
        with log_context(project_id=3, operation="ledger"):
            logging.getLogger("previz.test").info("entry written")
        for handler in root.handlers:
            handler.flush()
        text = log_file.read_text(encoding="utf-8")
        assert "entry written" in text
        assert "| 3 |" in text
        assert "ledger" in text
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
        root._previz_logging_configured = saved_flag
