from __future__ import annotations

import logging
from pathlib import Path

from cowork_vm_service.observability.logging_setup import LOGGER_NAME, configure_logging


def test_configure_logging_writes_file_and_is_idempotent(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "daemon.log"

    assert configure_logging(log_file=log_file, debug=True) == log_file
    assert configure_logging(log_file=log_file, debug=True) == log_file

    root = logging.getLogger(LOGGER_NAME)
    marked = [h for h in root.handlers if getattr(h, "_cowork_vm_service_handler", False)]
    assert len(marked) == 1

    logging.getLogger(f"{LOGGER_NAME}.runtime.server").debug("hello %s", "debug")
    for h in marked:
        h.flush()
    text = log_file.read_text(encoding="utf-8")
    assert "[DEBUG] [cowork-vm-service] hello debug" in text


def test_non_debug_level_only_keeps_warnings(tmp_path: Path) -> None:
    log_file = tmp_path / "daemon.log"
    configure_logging(log_file=log_file, debug=False)

    lg = logging.getLogger(f"{LOGGER_NAME}.core.supervisor")
    lg.debug("quiet")
    lg.error("loud")
    for h in logging.getLogger(LOGGER_NAME).handlers:
        h.flush()
    text = log_file.read_text(encoding="utf-8")
    assert "quiet" not in text
    assert "[ERROR] [cowork-vm-service] loud" in text


def test_unwritable_log_dir_falls_back_to_null_handler(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")

    assert configure_logging(log_file=blocker / "daemon.log", debug=True) is None
    handlers = logging.getLogger(LOGGER_NAME).handlers
    assert any(isinstance(h, logging.NullHandler) for h in handlers)
