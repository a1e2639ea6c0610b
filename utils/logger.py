# ============================================================
# Biometric Matching Core
# utils/logger.py
# ============================================================
# Loguru configuration shared by every component.
#
#   setup_logger(...)        replace all sinks (stdout + optional file)
#   setup_from_settings(cfg) same, driven by LoggingSettings / LOG_* env
#   get_logger(__name__)     module-bound logger used throughout core/
#
# Importing this module installs an INFO stdout sink so library
# code logs sensibly before the host application configures it.
# ============================================================

from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from loguru import logger

if TYPE_CHECKING:
    from config.settings import LoggingSettings

_LINE = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]} | {message}"
_COLOR_LINE = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> | <level>{message}</level>"
)


def setup_logger(
    level: str = "INFO",
    file_path: Optional[Path | str] = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    json_logs: bool = False,
    colorize: bool = True,
) -> None:
    """
    (Re)configure the global Loguru logger.

    Args:
        level:     Minimum level emitted by every sink.
        file_path: Rotating log file in addition to stdout; parent
                   directories are created.
        rotation:  Loguru rotation rule for the file sink.
        retention: Loguru retention rule for rotated files.
        json_logs: Serialise records as JSON on every sink.
        colorize:  ANSI colours on stdout (ignored with ``json_logs``).
    """
    logger.remove()
    logger.configure(extra={"component": "core"})

    logger.add(
        sys.stdout,
        level=level,
        format=_COLOR_LINE if colorize else _LINE,
        colorize=colorize and not json_logs,
        serialize=json_logs,
        enqueue=True,
    )
    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(path),
            level=level,
            format=_LINE,
            serialize=json_logs,
            rotation=rotation,
            retention=retention,
            enqueue=True,
            encoding="utf-8",
        )

    logger.debug("Logging configured | level={} | file={}", level, file_path or "-")


def setup_from_settings(log_cfg: Optional["LoggingSettings"] = None) -> None:
    """Configure logging from ``LoggingSettings`` (read from ``LOG_*`` when omitted)."""
    if log_cfg is None:
        # Deferred: config imports nothing from utils, keep it that way
        from config.settings import LoggingSettings  # noqa: PLC0415

        log_cfg = LoggingSettings()

    setup_logger(
        level=log_cfg.level,
        file_path=log_cfg.file_path,
        rotation=log_cfg.rotation,
        retention=log_cfg.retention,
        json_logs=log_cfg.json_logs,
        colorize=log_cfg.colorize,
    )


def get_logger(name: str):
    """Logger whose records carry *name* as their component."""
    return logger.bind(component=name)


setup_logger()
