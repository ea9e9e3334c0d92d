import logging
from pathlib import Path
from typing import Optional

import psutil

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def _level_from_name(name: str, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


def setup_logging(log_file: Optional[Path] = None, level: int = logging.INFO) -> None:
    """Configure root logger with optional file output."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=_LOG_FORMAT, handlers=handlers, force=True)
    logging.captureWarnings(True)


def apply_logging_config(config) -> None:
    """Set the root level from ``config.log_level`` and attach ``config.log_file``."""
    root = logging.getLogger()
    root.setLevel(_level_from_name(config.log_level))
    if config.log_file is None:
        return
    target = Path(config.log_file).resolve()
    for h in root.handlers:
        if isinstance(h, logging.FileHandler) and Path(h.baseFilename) == target:
            return
    target.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(target, encoding="utf-8")
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)


def log_memory_usage(prefix: str = "") -> None:
    """Log current process RSS at debug level."""
    try:
        mem_mb = psutil.Process().memory_info().rss / 1024**2
    except psutil.Error as exc:
        logging.debug("Failed to log memory usage: %s", exc)
        return
    logging.debug("%sMemory usage: %.2f MB", prefix, mem_mb)
