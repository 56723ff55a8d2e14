"""Rotating file logger shared by the synchronisation components."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from core.settings import SYNC_LOG_PATH


LOGGER_NAME = "biosync.sync"


def get_sync_logger(name: Optional[str] = None, log_path: Path | str = SYNC_LOG_PATH) -> logging.Logger:
    """Return the ``biosync.sync`` logger (or one of its children).

    The rotating handler is attached once to the parent logger; children
    propagate into it.
    """

    root = logging.getLogger(LOGGER_NAME)
    if not root.handlers:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    if not name:
        return root
    return root.getChild(name)


def read_sync_log(lines: int = 100, log_path: Path | str = SYNC_LOG_PATH) -> str:
    try:
        with open(log_path, "r", encoding="utf-8") as fh:
            content = fh.readlines()
    except FileNotFoundError:
        return "Sync log has not been created yet."
    content = [line.rstrip("\n") for line in content[-lines:]]
    return "\n".join(content)


__all__ = ["LOGGER_NAME", "get_sync_logger", "read_sync_log"]
