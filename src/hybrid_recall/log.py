from __future__ import annotations

import logging
import sys

LOGGER_NAME = "hybrid_recall"


def setup_logging(level: str = "WARNING") -> logging.Logger:
    """Attach a stderr handler to the package logger (idempotent).

    stdout is left alone: the CLI prints results there and the MCP server
    speaks its protocol over it.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.WARNING))

    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    ))
    logger.addHandler(handler)
    return logger
