"""Logging helpers."""
import logging
from typing import Union


def setup_logging(level: Union[int, str] = logging.INFO, *, force: bool = False):
    """Configure root logger with a simple format."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=force,
    )
