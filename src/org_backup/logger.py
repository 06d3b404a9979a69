"""Process-wide logging configuration for the backup CLI."""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"

_NOISY_LOGGERS = ("boto3", "botocore", "s3transfer", "urllib3")


def configure_logging(level: Optional[str] = None) -> None:
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    root_logger = logging.getLogger()
    # Configure handlers once to avoid duplicates when the scheduler reruns
    if not root_logger.handlers:
        logging.basicConfig(level=log_level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    root_logger.setLevel(log_level)

    # SDK wire logging only when DEBUG is enabled at the root
    library_level = logging.DEBUG if root_logger.level == logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
