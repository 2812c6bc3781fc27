"""Logging helpers for the bot jobs."""
from __future__ import annotations

import json
import logging
import logging.handlers
from pathlib import Path
import sys
from typing import Any

MAX_BYTES = 5_000_000
BACKUPS = 10
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured = False


def configure_logging(log_dir: str | Path | None = None, level: str = "INFO") -> None:
    """Install console and rotating file handlers on the package logger once."""
    global _configured
    if _configured:
        return
    logger = logging.getLogger("obtrader")
    logger.setLevel(level.upper())

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console)

    if log_dir is not None:
        target = Path(log_dir)
        target.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=target / "obtrader.log",
            maxBytes=MAX_BYTES,
            backupCount=BACKUPS,
            encoding="utf-8",
            mode="a",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)
    _configured = True


def append_jsonl(path: str | Path, payload: dict[str, Any]) -> None:
    path_obj = Path(path)
    path_obj.parent.mkdir(parents=True, exist_ok=True)
    with path_obj.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False, default=str))
        handle.write("\n")
