import logging

import pytest

from sshpull.logger import get_logger, init_logger


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    log = get_logger()
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()


def test_creates_directory_and_writes_file(tmp_path):
    log_file = tmp_path / "logs" / "deep" / "sync.log"
    log = init_logger(str(log_file), "")
    log.info("hello %s", "world")
    assert log_file.exists()
    assert "hello world" in log_file.read_text(encoding="utf-8")


def test_default_level_includes_debug(tmp_path):
    log_file = tmp_path / "a.log"
    log = init_logger(str(log_file), "")
    log.debug("debug-line")
    assert "debug-line" in log_file.read_text(encoding="utf-8")
    assert log.level == logging.DEBUG


def test_error_level_filters_info(tmp_path):
    log_file = tmp_path / "b.log"
    log = init_logger(str(log_file), "error")
    log.info("quiet-line")
    log.error("loud-line")
    text = log_file.read_text(encoding="utf-8")
    assert "quiet-line" not in text
    assert "loud-line" in text


def test_level_is_case_insensitive(tmp_path):
    log = init_logger(str(tmp_path / "c.log"), "WARNING")
    assert log.level == logging.WARNING


def test_reinit_replaces_handlers(tmp_path):
    init_logger(str(tmp_path / "d.log"), "info")
    log = init_logger(str(tmp_path / "e.log"), "info")
    assert len(log.handlers) == 2
    assert log is get_logger()


def test_messages_go_to_stdout(tmp_path, capsys):
    log = init_logger(str(tmp_path / "f.log"), "info")
    log.warning("on-stdout")
    assert "on-stdout" in capsys.readouterr().out