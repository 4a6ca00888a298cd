from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOGGER_NAME = "cowork_vm_service"
LOG_FORMAT = "%(asctime)s [%(levelname)s] [cowork-vm-service] %(message)s"

_HANDLER_MARKER = "_cowork_vm_service_handler"


def configure_logging(*, log_file: Path, debug: bool) -> Optional[Path]:
    """
    为 `cowork_vm_service` logger 配置文件日志（幂等）。

    规则：
    - debug 打开时记录 DEBUG 及以上，否则仅记录 WARNING 及以上（错误总会落盘）；
    - 不向 stdout/stderr 输出（detached 拉起时这些流会被丢弃）；
    - 日志目录无法创建/文件无法打开时退化为 NullHandler（不影响 daemon 启动）。

    参数：
    - log_file：日志文件路径（append 模式）
    - debug：是否打开 debug 日志

    返回：
    - 实际写入的日志路径；退化为 NullHandler 时返回 None
    """

    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        if getattr(h, _HANDLER_MARKER, False):
            logger.removeHandler(h)
            h.close()

    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    logger.propagate = False

    handler: logging.Handler
    written: Optional[Path] = None
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        written = log_file
    except OSError:
        handler = logging.NullHandler()
    setattr(handler, _HANDLER_MARKER, True)
    logger.addHandler(handler)
    return written
