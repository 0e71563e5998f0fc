"""Process-wide logging configuration."""

from __future__ import annotations

import logging
import os
import sys

_NOISY_LOGGERS = ("httpx", "httpcore", "engineio", "socketio", "google_genai", "openai")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install a stdout handler on the root logger once and apply level overrides.

    ``UNBIAS_LOG_LEVELS`` accepts ``name=LEVEL`` pairs separated by commas,
    e.g. ``unbias_pipeline.queue=DEBUG,httpx=INFO``.
    """

    level_name = (level or os.getenv("UNBIAS_LOG_LEVEL", "INFO")).upper()
    root = logging.getLogger()
    resolved = getattr(logging, level_name, logging.INFO)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(resolved)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
    _apply_log_overrides(os.getenv("UNBIAS_LOG_LEVELS", ""))


def _apply_log_overrides(overrides: str) -> None:
    for item in overrides.split(","):
        if not item.strip() or "=" not in item:
            continue
        name, level = item.split("=", 1)
        logging.getLogger(name.strip()).setLevel(
            getattr(logging, level.strip().upper(), logging.INFO),
        )
