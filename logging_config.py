"""JSON file logging and the log viewer helpers."""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path
from typing import List, Optional, Union

from pythonjsonlogger.json import JsonFormatter


LOGGER_NAME = "cdn_mirror"
DEFAULT_LOG_LINES = 1000


def build_formatter() -> JsonFormatter:
    return JsonFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={
            "asctime": "timestamp",
            "levelname": "level",
            "name": "logger",
        },
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )


def setup_logging(log_level: str = "INFO", log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """Attach a JSON handler to the ``cdn_mirror`` logger tree.

    Calling it again replaces the previous handler, so a settings change can
    switch the level without duplicating output.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(path, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(build_formatter())
    logger.addHandler(handler)
    return logger


def read_log_lines(log_file: Union[str, Path], lines: int = DEFAULT_LOG_LINES) -> List[str]:
    path = Path(log_file)
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="replace") as fh:
        tail = deque(fh, maxlen=max(1, int(lines)))
    return [line.rstrip("\n") for line in tail]


def clear_log(log_file: Union[str, Path]) -> bool:
    path = Path(log_file)
    if not path.exists():
        return True
    for handler in logging.getLogger(LOGGER_NAME).handlers:
        handler.flush()
    path.write_text("", encoding="utf-8")
    return True
