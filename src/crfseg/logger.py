"""
Logging helpers shared by every module of the pipeline.

Usage:
    from crfseg.logger import get_logger
    log = get_logger("crf_inference")
"""

import logging
import os
from pathlib import Path

from crfseg.cste import GeneralConfig, GeneralPath

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Return a configured logger.

    ! Handlers are attached once per logger name, repeated calls are cheap
    ! A file handler is added under GeneralPath.LOG_PATH only if GeneralConfig.LOG_TO_FILE

    Args:
        name: Logger name (a trailing '.log' is stripped)
        level: Logging level for the console handler

    Returns:
        logging.Logger instance
    """
    if name.endswith(".log"):
        name = name[: -len(".log")]

    logger = logging.getLogger(f"crfseg.{name}")
    if logger.handlers:
        return logger

    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if GeneralConfig.LOG_TO_FILE:
        log_dir = Path(os.environ.get("CRFSEG_LOG_DIR", GeneralPath.LOG_PATH))
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{name}.log")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Avoid duplicate lines through the root logger
    logger.propagate = False
    return logger
