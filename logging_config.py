# logging_config.py
import logging
import os
from pathlib import Path

LOG_DIR = Path(os.environ.get("VICON_GRAPH_LOG_DIR", "logs"))
LOG_FILE = LOG_DIR / "vicon_graph.log"

CONSOLE_LEVEL = os.environ.get("VICON_GRAPH_LOG_LEVEL", "INFO").upper()


def _file_handler() -> logging.Handler:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(LOG_FILE)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    ))
    return fh


def _console_handler() -> logging.Handler:
    ch = logging.StreamHandler()
    ch.setLevel(getattr(logging, CONSOLE_LEVEL, logging.INFO))
    ch.setFormatter(logging.Formatter("%(levelname)s: [%(name)s] %(message)s"))
    return ch


def get_logger(name: str) -> logging.Logger:
    """
    Logger for one module of the calibration.

    Build events, pruned timestamps and per-round summaries go to the console
    (INFO, or VICON_GRAPH_LOG_LEVEL); the per-factor and per-query detail
    only reaches the DEBUG log file.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(logging.DEBUG)
        logger.addHandler(_file_handler())
        logger.addHandler(_console_handler())

    return logger
