"""Utility helpers for configuring optimizer logging outputs."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

DEFAULT_LOG_FILE = os.path.join("storage", "logs", "optimizer.log")


class SafeRotatingFileHandler(RotatingFileHandler):
    """Rotating handler that tolerates missing rollover files."""

    def doRollover(self) -> None:  # type: ignore[override]
        if self.stream:
            try:
                self.stream.close()
            finally:
                self.stream = None

        for i in range(self.backupCount - 1, 0, -1):
            try:
                os.replace(f"{self.baseFilename}.{i}", f"{self.baseFilename}.{i + 1}")
            except OSError:
                continue

        try:
            os.replace(self.baseFilename, f"{self.baseFilename}.1")
        except OSError:
            pass

        if not self.delay:
            self.stream = self._open()


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Configure console + rotating file logging for optimizer runs.

    Level comes from `level`, else LOG_LEVEL; the file from `log_file`, else
    EVO_LOG_FILE, else storage/logs/optimizer.log.
    """

    log_level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, log_level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    has_console = any(
        type(h) is logging.StreamHandler for h in root_logger.handlers
    )
    if not has_console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    file_path = os.path.abspath(log_file or os.getenv("EVO_LOG_FILE") or DEFAULT_LOG_FILE)
    try:
        os.makedirs(os.path.dirname(file_path), exist_ok=True)
    except OSError:
        # Logging stays console-only when the directory cannot be created.
        return root_logger

    if not any(isinstance(h, RotatingFileHandler) and getattr(h, "baseFilename", "") == file_path for h in root_logger.handlers):
        try:
            file_handler = SafeRotatingFileHandler(file_path, maxBytes=5 * 1024 * 1024, backupCount=3)
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError:
            # File handler is best-effort; fall back to console only if it fails.
            pass

    return root_logger


__all__ = ["setup_logging", "SafeRotatingFileHandler", "DEFAULT_LOG_FILE"]
