"""Logging setup."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)6s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging; an already configured root only gets its level changed."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(log_level)
