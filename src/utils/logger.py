from __future__ import annotations

import logging
import os
import re
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import threading

_formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")
_loggers: dict[tuple[str, str], logging.Logger] = {}
_lock = threading.Lock()

_DEFAULT_LOG_ROOT = Path(__file__).resolve().parents[2] / "logs"
_LOG_FILE = "viewer.log"


def _log_root() -> Path:
    override = os.getenv("VIEWER_LOG_DIR")
    return Path(override) if override else _DEFAULT_LOG_ROOT


def _log_level() -> int:
    name = (os.getenv("VIEWER_LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _component(name: str | None) -> str:
    cleaned = re.sub(r"[^\w.-]+", "_", (name or "").strip()).strip("._")
    return cleaned or "default"


def get_logger(module_name: str, source: str | None = None) -> logging.Logger:
    """คืน logger ที่เขียนไฟล์ ``<log root>/log_<source or module>/viewer.log``

    ``source`` ใช้แยก log ราย tile เช่น ``get_logger("viewer_tiles", "cam-1")``
    ไฟล์หมุนรายวัน เก็บย้อนหลัง 7 วัน
    """
    key = (module_name, source or "")
    with _lock:
        logger = _loggers.get(key)
        if logger is not None:
            return logger
        logger = logging.getLogger(f"{module_name}:{source}" if source else module_name)
        for existing in list(logger.handlers):
            logger.removeHandler(existing)
            existing.close()
        logger.setLevel(_log_level())
        log_dir = _log_root() / f"log_{_component(source or module_name)}"
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = TimedRotatingFileHandler(
            str(log_dir / _LOG_FILE), when="D", interval=1, backupCount=7
        )
        handler.setFormatter(_formatter)
        logger.addHandler(handler)
        logger.propagate = False
        _loggers[key] = logger
        return logger


def close_logger(module_name: str, source: str | None = None) -> None:
    """ปิด file handler ของ logger ราย tile หลัง tile ถูก unmount"""
    with _lock:
        logger = _loggers.pop((module_name, source or ""), None)
    if logger is None:
        return
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
