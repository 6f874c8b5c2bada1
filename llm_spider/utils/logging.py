from __future__ import annotations

import logging
import os
import sys

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def setup_logging(level: str | int | None = None) -> None:
    """
    Configure application logging on stderr; stdout is reserved for the report.
    """
    if level is None:
        level = os.getenv("LLM_SPIDER_LOG_LEVEL", "WARNING")

    if isinstance(level, str):
        level = _LEVELS.get(level.upper(), logging.WARNING)

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        stream=sys.stderr,
    )
    # aiohttp access/client chatter is rarely useful at INFO.
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))
