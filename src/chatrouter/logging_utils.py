"""Logging helpers: root logger setup and the per-request JSONL log."""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

__all__ = ["configure_logging", "JsonlLogger"]

_MANAGED_HANDLER_FLAG = "_chatrouter_managed_handler"


def _default_log_directory() -> Path:
    env_override = os.environ.get("CHAT_ROUTER_LOG_DIR")
    if env_override:
        return Path(env_override).expanduser()
    return Path.cwd() / "logs"


def _remove_managed_handlers(logger: logging.Logger) -> None:
    """Detach any handlers previously installed by :func:`configure_logging`."""

    for handler in list(logger.handlers):
        if getattr(handler, _MANAGED_HANDLER_FLAG, False):
            logger.removeHandler(handler)
            handler.close()


def configure_logging(
    log_name: str,
    *,
    log_dir: Optional[Path] = None,
    include_console: bool = True,
) -> Path:
    """Send INFO and above to ``<log_dir>/<log_name>.log`` and, optionally, the console."""

    target_directory = (
        Path(log_dir).expanduser() if log_dir else _default_log_directory()
    )
    target_directory.mkdir(parents=True, exist_ok=True)
    log_path = target_directory / f"{log_name}.log"

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    _remove_managed_handlers(root_logger)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    setattr(file_handler, _MANAGED_HANDLER_FLAG, True)
    root_logger.addHandler(file_handler)

    if include_console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        setattr(console_handler, _MANAGED_HANDLER_FLAG, True)
        root_logger.addHandler(console_handler)

    return log_path


class JsonlLogger:
    """Append one JSON record per request, rotating the file past ``max_bytes``."""

    def __init__(self, path: str, max_bytes: int = 25_000_000):
        self.path = path
        self.max_bytes = max_bytes
        log_dir = os.path.dirname(path)
        if log_dir:
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError:
                logging.getLogger(__name__).warning(
                    "[request-log] Cannot create %s; request log disabled", log_dir
                )

    def _rotate_if_needed(self):
        try:
            if (
                os.path.exists(self.path)
                and os.path.getsize(self.path) > self.max_bytes
            ):
                ts = time.strftime("%Y%m%d-%H%M%S")
                os.rename(self.path, f"{self.path}.{ts}")
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "[request-log] Rotation of %s failed: %s", self.path, exc
            )

    def log(self, record: Dict[str, Any]):
        self._rotate_if_needed()
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "[request-log] Cannot write %s: %s", self.path, exc
            )
