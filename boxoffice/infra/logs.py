"""Centralized logging configuration."""

import sys
from typing import Optional

from loguru import logger


# extra field every record carries
COMPONENT = "component"

log_format = " | ".join(
    (
        "<lk>{time:YYYY-MM-DD HH:mm:ss.SSS}</>",
        "<lvl>{level:<8}</>",
        f"<lg>{{extra[{COMPONENT}]:<10}}</>",
        "<c>{name}:{function}:{line}</>",
        "{message}",
    )
)

logger.configure(extra={COMPONENT: "-"})


def configure_logging(level: str = "INFO", log_dir: Optional[str] = None):
    # Remove default handler to avoid duplicate output and use custom format
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=log_format)
    if log_dir:
        # daily rotation and compression
        logger.add(
            f"{log_dir}/boxoffice_{{time:YYYY-MM-DD}}.log",
            level=level.upper(),
            format=log_format,
            rotation="1 day",
            retention="30 days",
            compression="zip",
            enqueue=True,
        )


def get_logger(component: str):
    return logger.bind(**{COMPONENT: component})
