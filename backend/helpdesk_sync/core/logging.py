"""Simple logging setup for the application."""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str | None = None) -> None:
    if logging.getLogger().handlers:
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=level_name, format=LOG_FORMAT)
    # httpx logs every request at INFO; a full sync issues thousands of them.
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLogger().level))
